"""
SLA Controllers (API Routes)
=============================

FastAPI routes for SLA policies and the SLA lifecycle hooks the helpdesk
calls when a conversation is created, receives a customer message or gets
an agent reply.

Controllers are thin - they delegate to application services. Application
exceptions are mapped to status codes by the shared exception handler.
"""

from typing import List

from fastapi import APIRouter, Depends, Request, status

from helpdesk_sla.sla.application import (
    SLAService,
    SLAPolicyRequest,
    ApplySLARequest,
    NextResponseEventRequest,
    SLAEventMetRequest,
    SLAPolicyResponse,
    SLAEventDeadlineResponse,
    SLAEventMetResponse,
    ErrorResponse,
    utc_now,
)

from helpdesk_sla.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA"])


# ========== Example payloads for Swagger ==========

POLICY_EXAMPLE = {
    "name": "Standard support",
    "description": "Business hours support for all customers",
    "first_response_time": "30m",
    "resolution_time": "4h",
    "next_response_time": "1h",
    "notifications": [
        {
            "type": "warning",
            "metric": "all",
            "recipients": ["assigned_user"],
            "time_delay": "10m",
            "time_delay_type": "before"
        },
        {
            "type": "breach",
            "metric": "first_response",
            "recipients": ["assigned_user", "7"],
            "time_delay_type": "immediately"
        }
    ]
}


# ========== Dependencies ==========

def get_sla_service(request: Request) -> SLAService:
    """SLA service built at startup."""
    return request.app.state.sla_service


# ========== Policy routes ==========

@router.get(
    "/policies",
    response_model=List[SLAPolicyResponse],
    summary="List SLA policies"
)
async def list_policies(sla_service: SLAService = Depends(get_sla_service)):
    policies = await sla_service.get_all()
    return [SLAPolicyResponse.from_domain(p) for p in policies]


@router.get(
    "/policies/{policy_id}",
    response_model=SLAPolicyResponse,
    summary="Get an SLA policy",
    responses={404: {"model": ErrorResponse, "description": "Policy not found"}}
)
async def get_policy(policy_id: int, sla_service: SLAService = Depends(get_sla_service)):
    policy = await sla_service.get(policy_id)
    return SLAPolicyResponse.from_domain(policy)


@router.post(
    "/policies",
    response_model=SLAPolicyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an SLA policy",
    description="""
    Durations use Go-style strings (`30m`, `4h`, `1h30m`). At least one of
    `first_response_time`, `resolution_time` or `next_response_time` is required.

    Recipients are agent IDs or the token `assigned_user`.
    """,
    responses={
        201: {"content": {"application/json": {"example": {"id": 1, **POLICY_EXAMPLE}}}},
        422: {"model": ErrorResponse, "description": "Invalid policy"}
    }
)
async def create_policy(
    request: SLAPolicyRequest,
    sla_service: SLAService = Depends(get_sla_service)
):
    policy = await sla_service.create(
        name=request.name,
        description=request.description,
        first_response_time=request.first_response_time,
        resolution_time=request.resolution_time,
        next_response_time=request.next_response_time,
        notifications=request.rules(),
    )
    return SLAPolicyResponse.from_domain(policy)


@router.put(
    "/policies/{policy_id}",
    response_model=SLAPolicyResponse,
    summary="Update an SLA policy",
    description="Deadlines of SLAs already applied are not recalculated.",
    responses={
        404: {"model": ErrorResponse, "description": "Policy not found"},
        422: {"model": ErrorResponse, "description": "Invalid policy"}
    }
)
async def update_policy(
    policy_id: int,
    request: SLAPolicyRequest,
    sla_service: SLAService = Depends(get_sla_service)
):
    policy = await sla_service.update(
        policy_id,
        name=request.name,
        description=request.description,
        first_response_time=request.first_response_time,
        resolution_time=request.resolution_time,
        next_response_time=request.next_response_time,
        notifications=request.rules(),
    )
    return SLAPolicyResponse.from_domain(policy)


@router.delete(
    "/policies/{policy_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an SLA policy",
    responses={404: {"model": ErrorResponse, "description": "Policy not found"}}
)
async def delete_policy(policy_id: int, sla_service: SLAService = Depends(get_sla_service)):
    await sla_service.delete(policy_id)


# ========== Lifecycle routes ==========

@router.post(
    "/apply",
    response_model=SLAPolicyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Apply an SLA policy to a conversation",
    description="""
    Computes first response and resolution deadlines from `start_time`
    (default now) in business time and schedules the warning notifications.
    """,
    responses={
        400: {"model": ErrorResponse, "description": "Business hours or timezone not configured"},
        404: {"model": ErrorResponse, "description": "Policy or business hours not found"}
    }
)
async def apply_sla(
    request: ApplySLARequest,
    sla_service: SLAService = Depends(get_sla_service)
):
    policy = await sla_service.apply_sla(
        start_time=request.start_time or utc_now(),
        conversation_id=request.conversation_id,
        team_id=request.team_id,
        policy_id=request.policy_id,
    )
    return SLAPolicyResponse.from_domain(policy)


@router.post(
    "/applied/{applied_sla_id}/next-response",
    response_model=SLAEventDeadlineResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a next response clock",
    description="Called when a customer message arrives on a conversation.",
    responses={
        404: {"model": ErrorResponse, "description": "Policy or applied SLA not found"},
        409: {"model": ErrorResponse, "description": "An open event already exists"},
        422: {"model": ErrorResponse, "description": "No next response target, or wrong conversation"}
    }
)
async def create_next_response_event(
    applied_sla_id: int,
    request: NextResponseEventRequest,
    sla_service: SLAService = Depends(get_sla_service)
):
    deadline = await sla_service.create_next_response_sla_event(
        conversation_id=request.conversation_id,
        applied_sla_id=applied_sla_id,
        policy_id=request.policy_id,
        team_id=request.team_id,
    )
    return SLAEventDeadlineResponse(deadline_at=deadline)


@router.post(
    "/applied/{applied_sla_id}/met",
    response_model=SLAEventMetResponse,
    summary="Mark the latest open SLA event as met",
    description="Called when an agent replies to a conversation.",
    responses={404: {"model": ErrorResponse, "description": "No open SLA event"}}
)
async def mark_event_met(
    applied_sla_id: int,
    request: SLAEventMetRequest,
    sla_service: SLAService = Depends(get_sla_service)
):
    met_at = await sla_service.set_latest_sla_event_met_at(applied_sla_id, request.metric)
    return SLAEventMetResponse(met_at=met_at)


# Export router for inclusion in main app
sla_router = router
