"""
Referral API Router

REST API endpoints for sending, triaging and resolving referrals.
"""

from datetime import timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from structlog import get_logger

from ..auth.dependencies import get_current_actor, require_role
from ..auth.models import Actor, UserRole
from .audit import AuditSink
from .errors import ReferralError
from .lifecycle import ReferralLifecycleEngine
from .models import Referral, ReferralStatus
from .schema import (
    AcceptReferralRequest,
    ConvertReferralRequest,
    ReferralAuditResponse,
    ReferralCreateRequest,
    ReferralListResponse,
    RejectReferralRequest,
)
from .triage import TriageQueue, TriageQueueBuilder

logger = get_logger()

router = APIRouter(prefix="/referrals", tags=["Referrals"])


def get_lifecycle_engine(request: Request) -> ReferralLifecycleEngine:
    """Dependency to get the lifecycle engine."""
    return request.app.state.lifecycle_engine


def get_triage_builder(request: Request) -> TriageQueueBuilder:
    """Dependency to get the triage queue builder."""
    return request.app.state.triage_builder


def get_audit_sink(request: Request) -> AuditSink:
    """Dependency to get the referral audit sink."""
    return request.app.state.audit_sink


async def referral_error_handler(request: Request, exc: ReferralError) -> JSONResponse:
    """Translate lifecycle errors into their HTTP responses."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "referral_request_failed",
        path=request.url.path,
        error_code=exc.code,
        detail=exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@router.post(
    "",
    response_model=Referral,
    status_code=status.HTTP_201_CREATED,
    summary="Send referral",
    description="Create a PENDING referral from the caller's provider record",
)
async def create_referral(
    body: ReferralCreateRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
) -> Referral:
    """Create a new referral."""
    return await engine.create(
        from_provider_id=body.from_provider_id or actor.provider_id or "",
        to_provider_id=body.to_provider_id,
        patient_id=body.patient_id,
        reason=body.reason,
        urgency=body.urgency,
        clinical_notes=body.clinical_notes,
        requested_tests=body.requested_tests,
        ttl=timedelta(hours=body.ttl_hours) if body.ttl_hours else None,
        actor=actor,
    )


@router.get(
    "",
    response_model=ReferralListResponse,
    summary="List referrals",
    description="List referrals visible to the caller, sent or received",
)
async def list_referrals(
    direction: Optional[Literal["sent", "received"]] = Query(None),
    provider_id: Optional[str] = Query(None, description="Receiving provider (operators and admins)"),
    status_filter: Optional[ReferralStatus] = Query(None, alias="status"),
    patient_id: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(get_current_actor),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
) -> ReferralListResponse:
    """List referrals with filtering and pagination."""
    referrals = await engine.list_for_actor(
        actor,
        direction=direction,
        provider_id=provider_id,
        status=status_filter,
        patient_id=patient_id,
        skip=skip,
        limit=limit,
    )
    return ReferralListResponse(referrals=referrals, direction=direction, skip=skip, limit=limit)


@router.get(
    "/triage-queue",
    response_model=TriageQueue,
    summary="Triage queue",
    description="PENDING referrals ordered by urgency, then age",
)
async def get_triage_queue(
    provider_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_current_actor),
    builder: TriageQueueBuilder = Depends(get_triage_builder),
) -> TriageQueue:
    """Get the caller's triage queue."""
    return await builder.build(actor, provider_id=provider_id)


@router.get(
    "/{referral_id}",
    response_model=Referral,
    summary="Get referral by ID",
)
async def get_referral(
    referral_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
) -> Referral:
    """Get referral details by ID."""
    return await engine.get(referral_id, actor)


@router.post(
    "/{referral_id}/accept",
    response_model=Referral,
    summary="Accept referral",
    description="Accept a PENDING referral, optionally booking the appointment at once",
)
async def accept_referral(
    referral_id: str,
    body: AcceptReferralRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
) -> Referral:
    return await engine.accept(
        referral_id,
        actor,
        body.expected_version,
        note=body.note,
        auto_convert=body.auto_convert,
    )


@router.post(
    "/{referral_id}/reject",
    response_model=Referral,
    summary="Reject referral",
)
async def reject_referral(
    referral_id: str,
    body: RejectReferralRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
) -> Referral:
    return await engine.reject(referral_id, actor, body.expected_version, body.reason)


@router.post(
    "/{referral_id}/convert",
    response_model=Referral,
    summary="Convert referral to appointment",
)
async def convert_referral(
    referral_id: str,
    body: ConvertReferralRequest,
    actor: Actor = Depends(get_current_actor),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
) -> Referral:
    return await engine.convert(
        referral_id,
        actor,
        body.expected_version,
        date_time=body.date_time,
        appointment_reason=body.appointment_reason,
        appointment_notes=body.appointment_notes,
    )


@router.get(
    "/{referral_id}/audit",
    response_model=ReferralAuditResponse,
    summary="Referral audit trail",
)
async def get_referral_audit(
    referral_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(require_role(UserRole.ADMIN, UserRole.OPERATOR)),
    engine: ReferralLifecycleEngine = Depends(get_lifecycle_engine),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> ReferralAuditResponse:
    """List audit entries for a referral, newest first."""
    # Same scope as reading the referral itself
    await engine.get(referral_id, actor)

    logs = await audit_sink.list_logs(referral_id=referral_id, skip=skip, limit=limit)
    return ReferralAuditResponse(referral_id=referral_id, logs=logs)
