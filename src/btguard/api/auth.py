"""
API key authentication.

The API key is supplied in the X-API-Key header or the api_key query
parameter. Keys are kept only as salted HMAC hashes.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader, APIKeyQuery

logger = logging.getLogger(__name__)


# API key can be provided via header or query parameter
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
api_key_query = APIKeyQuery(name="api_key", auto_error=False)

AUTH_MODES = ("none", "api_key")


def hash_api_key(key: str, salt: str | None = None) -> str:
    """
    Hash an API key using HMAC-SHA256.

    Args:
        key: Plain text API key
        salt: Optional salt (defaults to the key prefix)

    Returns:
        Hex digest of the key
    """
    if salt is None:
        salt = key[:8] if len(key) >= 8 else key
    return hmac.new(salt.encode(), key.encode(), hashlib.sha256).hexdigest()


def generate_api_key() -> str:
    """Generate a new random API key."""
    return f"btg_{secrets.token_urlsafe(32)}"


class APIKeyManager:
    """Holds the configured API key hash and authentication mode."""

    def __init__(self) -> None:
        self._key_hash: str | None = None
        self.auth_mode = "api_key"

    def configure(self, key: str | None, auth_mode: str = "api_key") -> None:
        if auth_mode not in AUTH_MODES:
            raise ValueError(f"Invalid auth_mode: {auth_mode}")
        self.auth_mode = auth_mode
        self._key_hash = hash_api_key(key) if key else None

    @property
    def required(self) -> bool:
        return self.auth_mode != "none"

    def validate_key(self, key: str | None) -> bool:
        """
        Check a key in constant time.

        Always True when authentication is disabled.
        """
        if not self.required:
            return True
        if not key or self._key_hash is None:
            return False
        return hmac.compare_digest(hash_api_key(key), self._key_hash)


# Global key manager instance
key_manager = APIKeyManager()


async def get_api_key(
    header_key: str | None = Security(api_key_header),
    query_key: str | None = Security(api_key_query),
) -> str | None:
    """
    FastAPI dependency validating the API key.

    Raises:
        HTTPException: 401 if authentication is required and the key is
            missing or wrong
    """
    key = header_key or query_key

    if not key_manager.required:
        return key

    if key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not key_manager.validate_key(key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return key


def init_auth(api_key: str | None = None, auth_mode: str = "api_key") -> str | None:
    """
    Initialize authentication.

    Generates a key if authentication is required and none is configured.

    Returns:
        The generated key, if one was generated
    """
    generated = None
    if auth_mode == "api_key" and not api_key:
        generated = api_key = generate_api_key()
        logger.warning("Generated API key: %s", generated)

    key_manager.configure(api_key, auth_mode)
    if auth_mode == "none":
        logger.warning("API authentication disabled")
    return generated
