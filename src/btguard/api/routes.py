"""
REST API routes for btguard.

Provides endpoints for the trusted/blocked device lists, outstanding
pairing prompts and the audit log.
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Query, status

from btguard import __version__
from btguard.api.auth import get_api_key
from btguard.api.schemas import (
    ClassificationType,
    DecisionRequest,
    DecisionResponse,
    DeviceListResponse,
    DeviceResponse,
    ErrorResponse,
    EventListResponse,
    EventResponse,
    HealthCheck,
    PolicyChangeResponse,
    PromptListResponse,
    PromptResponse,
)
from btguard.errors import (
    InvalidDecision,
    MalformedEventError,
    NotClassified,
    OperationResult,
    PromptNotFound,
    StorageUnavailable,
    StorageWriteError,
)
from btguard.policy.models import Classification

logger = logging.getLogger(__name__)

# API Router with prefix
router = APIRouter(prefix="/api")


# ============================================================================
# Dependencies
# ============================================================================


class ServiceDependencies:
    """
    Container for service dependencies.

    Set these after app initialization to inject the engine and audit log.
    """

    engine = None  # TrustEngine instance
    audit = None  # AuditLog instance
    start_time: float = time.time()


deps = ServiceDependencies()


def get_engine():
    """Get trust engine instance."""
    if deps.engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Trust engine not initialized",
        )
    return deps.engine


def get_audit():
    """Get audit log instance."""
    if deps.audit is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit log not enabled",
        )
    return deps.audit


_ERROR_STATUS = {
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    StorageWriteError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PromptNotFound: status.HTTP_404_NOT_FOUND,
    NotClassified: status.HTTP_404_NOT_FOUND,
    MalformedEventError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidDecision: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def raise_for_result(result: OperationResult) -> None:
    """Map a failed OperationResult onto an HTTP error."""
    if result.ok:
        return
    code = _ERROR_STATUS.get(type(result.error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=code, detail=result.message)


# ============================================================================
# Health Check Endpoints
# ============================================================================


@router.get("/health", response_model=HealthCheck, tags=["Health"])
async def health_check() -> HealthCheck:
    """
    Check system health status.

    Reports degraded when the policy store could not be read.
    """
    engine = deps.engine
    degraded = engine is None or engine.degraded
    return HealthCheck(
        status="degraded" if degraded else "healthy",
        version=__version__,
        uptime_seconds=time.time() - deps.start_time,
        engine_started=engine is not None and engine.started,
        storage_available=engine is not None and not engine.degraded,
        audit_enabled=deps.audit is not None,
        pending_prompts=len(engine.pending_prompts()) if engine is not None else 0,
    )


# ============================================================================
# Device Endpoints
# ============================================================================


@router.get(
    "/devices",
    response_model=DeviceListResponse,
    tags=["Devices"],
    responses={401: {"model": ErrorResponse}},
)
async def list_devices(
    classification: ClassificationType | None = Query(
        None, description="Only trusted or only blocked devices"
    ),
    api_key: str | None = Depends(get_api_key),
) -> DeviceListResponse:
    """
    List classified devices, sorted by name.

    Names come from the bonded device list; devices that are not bonded
    are shown as "Unknown device".
    """
    engine = get_engine()

    wanted = Classification(classification.value) if classification else None
    result = engine.get_snapshot(wanted)
    raise_for_result(result)

    items = [
        DeviceResponse(
            identity=entry.identity,
            name=entry.name,
            classification=ClassificationType(entry.classification.value),
            is_connected=entry.is_connected,
        )
        for entry in result.value
    ]
    return DeviceListResponse(items=items, total=len(items))


@router.post(
    "/devices/{identity}/trust",
    response_model=PolicyChangeResponse,
    tags=["Devices"],
    responses={503: {"model": ErrorResponse}},
)
async def trust_device(
    identity: str,
    api_key: str | None = Depends(get_api_key),
) -> PolicyChangeResponse:
    """Add a device to the trusted list."""
    engine = get_engine()
    result = await engine.trust_device(identity)
    raise_for_result(result)
    logger.info("Device trusted via API: %s", identity)
    return _policy_change(identity, Classification.TRUSTED, result)


@router.post(
    "/devices/{identity}/block",
    response_model=PolicyChangeResponse,
    tags=["Devices"],
    responses={503: {"model": ErrorResponse}},
)
async def block_device(
    identity: str,
    api_key: str | None = Depends(get_api_key),
) -> PolicyChangeResponse:
    """Add a device to the blocked list."""
    engine = get_engine()
    result = await engine.block_device(identity)
    raise_for_result(result)
    logger.info("Device blocked via API: %s", identity)
    return _policy_change(identity, Classification.BLOCKED, result)


@router.delete(
    "/devices/trusted/{identity}",
    response_model=PolicyChangeResponse,
    tags=["Devices"],
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def remove_trusted(
    identity: str,
    api_key: str | None = Depends(get_api_key),
) -> PolicyChangeResponse:
    """Remove a device from the trusted list."""
    engine = get_engine()
    result = await engine.remove_trusted(identity)
    raise_for_result(result)
    return _policy_change(identity, Classification.UNCLASSIFIED, result)


@router.delete(
    "/devices/blocked/{identity}",
    response_model=PolicyChangeResponse,
    tags=["Devices"],
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def remove_blocked(
    identity: str,
    api_key: str | None = Depends(get_api_key),
) -> PolicyChangeResponse:
    """Remove a device from the blocked list."""
    engine = get_engine()
    result = await engine.remove_blocked(identity)
    raise_for_result(result)
    return _policy_change(identity, Classification.UNCLASSIFIED, result)


def _policy_change(
    identity: str,
    classification: Classification,
    result: OperationResult,
) -> PolicyChangeResponse:
    previous = result.value.value if isinstance(result.value, Classification) else None
    return PolicyChangeResponse(
        ok=result.ok,
        identity=identity.strip(),
        classification=classification.value,
        previous=previous,
    )


# ============================================================================
# Prompt Endpoints
# ============================================================================


@router.get("/prompts", response_model=PromptListResponse, tags=["Prompts"])
async def list_prompts(
    api_key: str | None = Depends(get_api_key),
) -> PromptListResponse:
    """List pairing requests waiting for a decision, oldest first."""
    engine = get_engine()
    items = [
        PromptResponse(
            identity=prompt.identity,
            display_name=prompt.display_name,
            opened_at=prompt.opened_at,
            attempts=len(prompt.attempts),
        )
        for prompt in engine.pending_prompts()
    ]
    return PromptListResponse(items=items, total=len(items))


@router.post(
    "/prompts/{identity}",
    response_model=DecisionResponse,
    tags=["Prompts"],
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def resolve_prompt(
    identity: str,
    request: DecisionRequest,
    api_key: str | None = Depends(get_api_key),
) -> DecisionResponse:
    """
    Answer a pairing request.

    trust adds the device to the trusted list, block adds it to the
    blocked list and refuses the pending request, ignore lets this
    request through without remembering the device.
    """
    engine = get_engine()
    result = await engine.resolve_prompt(identity, request.decision.value)
    raise_for_result(result)
    return DecisionResponse(ok=True, identity=identity.strip(), decision=request.decision)


# ============================================================================
# Event Endpoints
# ============================================================================


@router.get("/events", response_model=EventListResponse, tags=["Events"])
async def list_events(
    identity: str | None = Query(None, description="Filter by device identity"),
    event_type: str | None = Query(None, description="Filter by event type"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of events"),
    api_key: str | None = Depends(get_api_key),
) -> EventListResponse:
    """Query the audit log, newest first."""
    audit = get_audit()
    try:
        events = audit.get_events(identity=identity, event_type=event_type, limit=limit)
        total = audit.count_events(identity=identity, event_type=event_type)
    except Exception as e:
        logger.error("Audit query failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit log unavailable",
        )

    return EventListResponse(
        items=[EventResponse.model_validate(event) for event in events],
        total=total,
    )
