"""
Admin routes for recommendation pipeline observability.

Endpoints:
- GET /recommendation-traces - Paginated, filterable trace listing
- GET /recommendation-traces/{trace_id} - One trace with its agent runs
- GET /queue-status - Background queue health
- GET /jobs/{job_id} - Status of one queued pipeline run
- POST /trigger-run/{user_id} - Force a pipeline run for a user

Mounted at /api/admin
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from services.supabase import AdminAuth
from services.job_queue import get_job_status, get_queue_status
from services.recommendations.errors import PipelineTimeoutError
from services.recommendations.models import (
    AgentRunStat,
    RecommendationContext,
    RecommendationStatus,
    RecommendationTrace,
    SelectionMethod,
    TraceQuery,
    TraceRow,
    as_utc,
)
from routes.recommendations import Service

router = APIRouter()

MAX_PAGE_SIZE = 100


# --- Pydantic Models ---

class AgentRunRow(BaseModel):
    id: str
    tier: int
    duration_ms: int
    tokens: int
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_stat(cls, run: AgentRunStat) -> "AgentRunRow":
        return cls(
            id=run.id,
            tier=run.tier,
            duration_ms=run.duration_ms,
            tokens=run.tokens,
            input_tokens=run.input_tokens,
            output_tokens=run.output_tokens,
            model=run.model,
            provider=run.provider,
            error=run.error,
        )


class AdminTraceRow(BaseModel):
    id: str
    user_id: str
    recommendation_id: Optional[str] = None
    recommendation_title: Optional[str] = None
    recommendation_status: Optional[RecommendationStatus] = None
    context: RecommendationContext
    selection_method: SelectionMethod
    final_tier: int
    processing_window_type: str
    total_duration_ms: int
    status: str
    rule_id: Optional[str] = None
    context_key: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    agent_run_count: int
    total_tokens: int

    @classmethod
    def from_trace(cls, trace: RecommendationTrace, row: Optional[TraceRow] = None) -> "AdminTraceRow":
        return cls(
            id=trace.id,
            user_id=trace.user_id,
            recommendation_id=trace.recommendation_id,
            recommendation_title=row.recommendation_title if row else None,
            recommendation_status=row.recommendation_status if row else None,
            context=trace.context,
            selection_method=trace.selection_method,
            final_tier=trace.final_tier,
            processing_window_type=trace.processing_window_type.value,
            total_duration_ms=trace.total_duration_ms,
            status=trace.status.value,
            rule_id=trace.rule_id,
            context_key=trace.context_key,
            error=trace.error,
            created_at=trace.created_at,
            agent_run_count=row.agent_run_count if row else len(trace.agent_runs),
            total_tokens=row.total_tokens if row else trace.total_tokens,
        )


class AdminTracePage(BaseModel):
    items: list[AdminTraceRow]
    total: int
    page: int
    page_size: int


class AdminTraceDetail(AdminTraceRow):
    agent_runs: list[AgentRunRow]


class TriggerRunResult(BaseModel):
    success: bool
    user_id: str
    message: str
    run: Optional[dict] = None


# --- Routes ---

@router.get("/recommendation-traces", response_model=AdminTracePage)
async def list_recommendation_traces(
    admin: AdminAuth,
    service: Service,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    context: Optional[RecommendationContext] = None,
    status: Optional[RecommendationStatus] = None,
    user_id: Optional[str] = None,
    selection_method: Optional[SelectionMethod] = None,
    final_tier: Optional[int] = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
):
    """Traces newest first, each joined with its agent-run count and token total."""
    date_from, date_to = as_utc(date_from), as_utc(date_to)
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=400, detail="date_from must be before date_to")

    try:
        result = await service.list_traces(TraceQuery(
            date_from=date_from,
            date_to=date_to,
            context=context,
            status=status,
            user_id=user_id,
            selection_method=selection_method,
            final_tier=final_tier,
            page=page,
            page_size=page_size,
        ))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to fetch traces: {str(e)}")

    return AdminTracePage(
        items=[AdminTraceRow.from_trace(row.trace, row) for row in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get("/recommendation-traces/{trace_id}", response_model=AdminTraceDetail)
async def get_recommendation_trace(trace_id: str, admin: AdminAuth, service: Service):
    trace = await service.store.get_trace(trace_id)
    if trace is None:
        raise HTTPException(status_code=404, detail="Trace not found")

    row = AdminTraceRow.from_trace(trace)
    return AdminTraceDetail(
        **row.model_dump(),
        agent_runs=[AgentRunRow.from_stat(run) for run in trace.agent_runs],
    )


@router.get("/queue-status")
async def queue_status(admin: AdminAuth):
    return get_queue_status()


@router.get("/jobs/{job_id}")
async def job_status(job_id: str, admin: AdminAuth):
    """Status of a run queued by signal ingest or the scheduler."""
    status = get_job_status(job_id)
    if status["status"] == "not_found":
        raise HTTPException(status_code=404, detail="Job not found")
    return status


@router.post("/trigger-run/{user_id}", response_model=TriggerRunResult)
async def trigger_run(user_id: str, admin: AdminAuth, service: Service):
    """Force a pipeline run for one user, bypassing window timing."""
    try:
        result = await service.generate(user_id)
    except PipelineTimeoutError as e:
        return TriggerRunResult(success=False, user_id=user_id, message=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Run failed: {str(e)}")

    return TriggerRunResult(
        success=True,
        user_id=user_id,
        message=f"{len(result.recommendations)} recommendation(s), {len(result.traces)} trace(s)",
        run=result.to_dict(),
    )
