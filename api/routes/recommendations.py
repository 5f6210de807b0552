"""
Recommendation routes

Endpoints:
- POST /generate - Run the pipeline now for the caller
- GET / - List recommendations (Active by default)
- GET /history - Resolved recommendations in a date range
- GET /{id} - One recommendation
- POST /{id}/accept - Accept, then execute
- POST /{id}/dismiss - Dismiss with an optional reason
- POST /{id}/snooze - Snooze until a time (default 4 hours)
- POST /{id}/execute - Retry execution of an Accepted recommendation

Mounted at /api/recommendations
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from services.supabase import CurrentUser
from services.recommendations.errors import (
    LifecycleError,
    PipelineTimeoutError,
    RecommendationNotFound,
)
from services.recommendations.executor import ExecutionResult
from services.recommendations.models import (
    ActionKind,
    Recommendation,
    RecommendationContext,
    RecommendationStatus,
    RecommendationType,
    TargetKind,
    as_utc,
)
from services.recommendations.service import RecommendationService, get_recommendation_service

logger = logging.getLogger(__name__)

router = APIRouter()

Service = Annotated[RecommendationService, Depends(get_recommendation_service)]


# =============================================================================
# Request / Response Models
# =============================================================================

class RecommendationResponse(BaseModel):
    id: str
    type: RecommendationType
    context: RecommendationContext
    status: RecommendationStatus
    target_kind: TargetKind
    target_entity_id: Optional[str] = None
    target_entity_title: Optional[str] = None
    action_kind: ActionKind
    action_payload: Optional[dict] = None
    action_summary: Optional[str] = None
    title: str
    rationale: str
    score: float
    created_at: datetime
    accepted_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    dismiss_reason: Optional[str] = None
    snoozed_until: Optional[datetime] = None
    executed_at: Optional[datetime] = None

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "RecommendationResponse":
        return cls(
            id=rec.id,
            type=rec.type,
            context=rec.context,
            status=rec.status,
            target_kind=rec.target_kind,
            target_entity_id=rec.target_entity_id,
            target_entity_title=rec.target_entity_title,
            action_kind=rec.action_kind,
            action_payload=rec.action_payload,
            action_summary=rec.action_summary,
            title=rec.title,
            rationale=rec.rationale,
            score=rec.score,
            created_at=rec.created_at,
            accepted_at=rec.accepted_at,
            dismissed_at=rec.dismissed_at,
            dismiss_reason=rec.dismiss_reason,
            snoozed_until=rec.snoozed_until,
            executed_at=rec.executed_at,
        )


class ExecutionResultResponse(BaseModel):
    success: bool
    entity_id: Optional[str] = None
    entity_kind: Optional[TargetKind] = None
    error_message: Optional[str] = None
    action_kind: ActionKind
    target_kind: TargetKind
    target_entity_id: Optional[str] = None
    action_payload: Optional[dict] = None
    requires_client_action: bool = False

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "ExecutionResultResponse":
        return cls(
            success=result.success,
            entity_id=result.entity_id,
            entity_kind=result.entity_kind,
            error_message=result.error_message,
            action_kind=result.action_kind,
            target_kind=result.target_kind,
            target_entity_id=result.target_entity_id,
            action_payload=result.action_payload,
            requires_client_action=result.requires_client_action,
        )


class ExecutionResponse(BaseModel):
    recommendation: RecommendationResponse
    execution: ExecutionResultResponse


class GenerateRequest(BaseModel):
    context: Optional[RecommendationContext] = None


class GenerateResponse(BaseModel):
    run_id: str
    window_type: str
    signals_consumed: int
    expired: int
    recommendations: list[RecommendationResponse]


class DismissRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class SnoozeRequest(BaseModel):
    until: Optional[datetime] = None
    minutes: Optional[int] = Field(default=None, ge=1, le=60 * 24 * 30)


# =============================================================================
# Helpers
# =============================================================================

def _domain_error(e: Exception) -> HTTPException:
    if isinstance(e, RecommendationNotFound):
        return HTTPException(status_code=404, detail="Recommendation not found")
    if isinstance(e, LifecycleError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PipelineTimeoutError):
        return HTTPException(status_code=504, detail="Recommendation run timed out")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    logger.exception(f"[RECOMMENDATIONS] Unexpected error: {e}")
    return HTTPException(status_code=500, detail="Recommendation request failed")


def _execution_response(rec: Recommendation, result: ExecutionResult) -> ExecutionResponse:
    return ExecutionResponse(
        recommendation=RecommendationResponse.from_recommendation(rec),
        execution=ExecutionResultResponse.from_result(result),
    )


# =============================================================================
# Routes
# =============================================================================

@router.post("/generate", response_model=GenerateResponse)
async def generate_recommendations(
    auth: CurrentUser,
    service: Service,
    request: Optional[GenerateRequest] = None,
):
    """Flush pending signals and evaluate the caller's state now."""
    try:
        result = await service.generate(auth.user_id, request.context if request else None)
    except Exception as e:
        raise _domain_error(e)

    return GenerateResponse(
        run_id=result.run_id,
        window_type=result.window_type.value,
        signals_consumed=result.signals_consumed,
        expired=result.expired,
        recommendations=[RecommendationResponse.from_recommendation(r) for r in result.recommendations],
    )


@router.get("", response_model=list[RecommendationResponse])
async def list_recommendations(
    auth: CurrentUser,
    service: Service,
    status: RecommendationStatus = RecommendationStatus.ACTIVE,
    context: Optional[RecommendationContext] = None,
):
    recs = await service.list_recommendations(auth.user_id, status=status, context=context)
    return [RecommendationResponse.from_recommendation(r) for r in recs]


@router.get("/history", response_model=list[RecommendationResponse])
async def recommendation_history(
    auth: CurrentUser,
    service: Service,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    days: int = Query(default=30, ge=1, le=365),
):
    if date_from is None:
        date_from = datetime.now(timezone.utc) - timedelta(days=days)
    recs = await service.history(auth.user_id, date_from=date_from, date_to=date_to)
    return [RecommendationResponse.from_recommendation(r) for r in recs]


@router.get("/{recommendation_id}", response_model=RecommendationResponse)
async def get_recommendation(recommendation_id: str, auth: CurrentUser, service: Service):
    try:
        rec = await service.get_recommendation(auth.user_id, recommendation_id)
    except Exception as e:
        raise _domain_error(e)
    return RecommendationResponse.from_recommendation(rec)


@router.post("/{recommendation_id}/accept", response_model=ExecutionResponse)
async def accept_recommendation(recommendation_id: str, auth: CurrentUser, service: Service):
    """Accept and execute. A failed execution is reported in the body, not as an error status."""
    try:
        rec, result = await service.accept(auth.user_id, recommendation_id)
    except Exception as e:
        raise _domain_error(e)
    return _execution_response(rec, result)


@router.post("/{recommendation_id}/execute", response_model=ExecutionResponse)
async def execute_recommendation(recommendation_id: str, auth: CurrentUser, service: Service):
    try:
        rec, result = await service.execute(auth.user_id, recommendation_id)
    except Exception as e:
        raise _domain_error(e)
    return _execution_response(rec, result)


@router.post("/{recommendation_id}/dismiss", response_model=RecommendationResponse)
async def dismiss_recommendation(
    recommendation_id: str,
    auth: CurrentUser,
    service: Service,
    request: Optional[DismissRequest] = None,
):
    try:
        rec = await service.dismiss(
            auth.user_id, recommendation_id, reason=request.reason if request else None
        )
    except Exception as e:
        raise _domain_error(e)
    return RecommendationResponse.from_recommendation(rec)


@router.post("/{recommendation_id}/snooze", response_model=RecommendationResponse)
async def snooze_recommendation(
    recommendation_id: str,
    auth: CurrentUser,
    service: Service,
    request: Optional[SnoozeRequest] = None,
):
    until = None
    if request and request.until:
        until = as_utc(request.until)
    elif request and request.minutes:
        until = datetime.now(timezone.utc) + timedelta(minutes=request.minutes)

    try:
        rec = await service.snooze(auth.user_id, recommendation_id, until=until)
    except Exception as e:
        raise _domain_error(e)
    return RecommendationResponse.from_recommendation(rec)
