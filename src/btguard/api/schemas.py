"""
Pydantic schemas for API request/response validation.

Provides type-safe models for all API endpoints.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, field_validator


# ============================================================================
# Enums
# ============================================================================


class ClassificationType(str, Enum):
    """Device policy classification."""

    TRUSTED = "trusted"
    BLOCKED = "blocked"


class DecisionType(str, Enum):
    """Answers to a pairing decision prompt."""

    TRUST = "trust"
    BLOCK = "block"
    IGNORE = "ignore"


# ============================================================================
# Device Schemas
# ============================================================================


class DeviceResponse(BaseModel):
    """Classified device as shown in the device list."""

    identity: str
    name: str
    classification: ClassificationType
    is_connected: bool = False

    model_config = {"from_attributes": True}


class DeviceListResponse(BaseModel):
    """Device list response."""

    items: list[DeviceResponse]
    total: int


class PolicyChangeResponse(BaseModel):
    """Result of a trust, block or remove operation."""

    ok: bool
    identity: str
    classification: str
    previous: str | None = None


# ============================================================================
# Prompt Schemas
# ============================================================================


class PromptResponse(BaseModel):
    """Outstanding pairing decision prompt."""

    identity: str
    display_name: str | None = None
    opened_at: datetime
    attempts: int = 1


class PromptListResponse(BaseModel):
    """Outstanding prompts, oldest first."""

    items: list[PromptResponse]
    total: int


class DecisionRequest(BaseModel):
    """Answer for a pairing decision prompt."""

    decision: DecisionType

    @field_validator("decision", mode="before")
    @classmethod
    def normalize_decision(cls, v: Any) -> Any:
        """Accept decisions case-insensitively."""
        if isinstance(v, str):
            return v.strip().lower()
        return v


class DecisionResponse(BaseModel):
    """Result of answering a prompt."""

    ok: bool
    identity: str
    decision: DecisionType


# ============================================================================
# Event Schemas
# ============================================================================


class EventResponse(BaseModel):
    """Audit event response model."""

    id: int
    timestamp: datetime
    identity: str | None = None
    display_name: str | None = None
    event_type: str
    action: str | None = None
    decision: str | None = None
    detail: str | None = None

    model_config = {"from_attributes": True}


class EventListResponse(BaseModel):
    """Audit event list response."""

    items: list[EventResponse]
    total: int


# ============================================================================
# System Schemas
# ============================================================================


class HealthCheck(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    uptime_seconds: float
    engine_started: bool = False
    storage_available: bool = False
    audit_enabled: bool = False
    pending_prompts: int = 0


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str
    detail: str | None = None
    code: str | None = None

