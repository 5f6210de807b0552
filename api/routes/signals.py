"""
Signal ingestion routes

Endpoints:
- POST /events - Classify a domain event and queue it for its window

CRUD services post their domain events here (task completed, check-in
skipped, ...). Events the pipeline ignores come back as dropped.

Mounted at /api/signals
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from services.supabase import CurrentUser
from services.recommendations.errors import PipelineTimeoutError
from services.recommendations.models import DomainEvent
from routes.recommendations import Service

logger = logging.getLogger(__name__)

router = APIRouter()


class DomainEventRequest(BaseModel):
    event_type: str = Field(min_length=1, max_length=100)
    payload: dict = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None
    timezone: str = "UTC"


class SignalIngestResponse(BaseModel):
    status: str  # queued, dropped
    signal_id: Optional[str] = None
    priority: Optional[str] = None
    window_type: Optional[str] = None
    window_closes_at: Optional[datetime] = None
    job_id: Optional[str] = None
    run_id: Optional[str] = None


@router.post("/events", response_model=SignalIngestResponse)
async def ingest_event(request: DomainEventRequest, auth: CurrentUser, service: Service):
    occurred_at = request.occurred_at or datetime.now(timezone.utc)
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)

    event = DomainEvent(
        user_id=auth.user_id,
        event_type=request.event_type,
        payload=request.payload,
        occurred_at=occurred_at,
    )

    try:
        result = await service.ingest_event(event, tz_name=request.timezone)
    except PipelineTimeoutError:
        # The signal is stored; its run will be retried by the scheduler.
        logger.warning(f"[SIGNALS] Inline run for {auth.user_id} timed out")
        return SignalIngestResponse(status="queued")
    except Exception as e:
        logger.exception(f"[SIGNALS] Failed to ingest {request.event_type}: {e}")
        raise HTTPException(status_code=500, detail="Failed to ingest event")

    if result.dropped:
        return SignalIngestResponse(status="dropped")

    signal = result.signal
    return SignalIngestResponse(
        status="queued",
        signal_id=signal.id,
        priority=signal.priority.value,
        window_type=signal.window_type.value,
        window_closes_at=signal.window_closes_at,
        job_id=result.job_id,
        run_id=result.run.run_id if result.run else None,
    )
