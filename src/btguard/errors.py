"""
Error taxonomy for the trust decision engine.

Errors raised by collaborators are converted into OperationResult values
at the engine boundary so that callers never see uncontrolled exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class BTGuardError(Exception):
    """Base class for all btguard errors."""

    code = "error"


class StorageUnavailable(BTGuardError):
    """Persistence layer could not be reached while loading policy."""

    code = "storage_unavailable"


class StorageWriteError(BTGuardError):
    """Policy could not be durably written."""

    code = "storage_write_error"


class MalformedEventError(BTGuardError):
    """Pairing notification did not carry a usable device identity."""

    code = "malformed_event"


class PairingCancelFailed(BTGuardError):
    """The OS refused or failed to cancel an in-progress bonding."""

    code = "pairing_cancel_failed"


class PermissionDenied(BTGuardError):
    """The OS collaborator lacks the connect permission."""

    code = "permission_denied"


class NotClassified(BTGuardError):
    """Identity is not present in the requested policy set."""

    code = "not_classified"


class PromptNotFound(BTGuardError):
    """No outstanding decision prompt exists for the identity."""

    code = "prompt_not_found"


class InvalidDecision(BTGuardError):
    """Prompt answer is not one of the known decisions."""

    code = "invalid_decision"


@dataclass(frozen=True)
class OperationResult:
    """
    Explicit success/failure outcome of an engine operation.

    Attributes:
        ok: Whether the operation was durably applied
        value: Operation payload on success
        error: The error on failure
    """

    ok: bool
    value: Any = None
    error: BTGuardError | None = None

    @classmethod
    def success(cls, value: Any = None) -> OperationResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: BTGuardError) -> OperationResult:
        return cls(ok=False, error=error)

    @property
    def message(self) -> str | None:
        """Human-readable error message, if any."""
        return str(self.error) if self.error is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error.code if self.error is not None else None,
            "message": self.message,
        }

    def __bool__(self) -> bool:
        return self.ok
