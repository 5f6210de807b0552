"""
RecommendationService

The one object routes, workers and the scheduler talk to. Wires the
pipeline pieces together and exposes the user-facing operations.

Usage:
    from services.recommendations.service import get_recommendation_service

    service = get_recommendation_service()
    await service.ingest_event(DomainEvent(user_id, "HabitMissed"))
    recs = await service.list_recommendations(user_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Awaitable, Callable, Optional

from services.recommendations.config import PipelineSettings
from services.recommendations.escalation import EscalationController
from services.recommendations.executor import EntityCommands, ExecutionResult, Executor, SupabaseEntityCommands
from services.recommendations.lifecycle import LifecycleListener, LifecycleManager
from services.recommendations.models import (
    DomainEvent,
    Recommendation,
    RecommendationContext,
    RecommendationStatus,
    SignalEntry,
    TracePage,
    TraceQuery,
    WindowType,
    as_utc,
    utcnow,
)
from services.recommendations.pipeline import PipelineRunner, PipelineRunResult
from services.recommendations.playbook import Playbook, SupabasePlaybook
from services.recommendations.rules import RuleEngine, build_rules
from services.recommendations.selector import AnthropicTierSelector, TierSelector
from services.recommendations.signal_classifier import SignalClassifier
from services.recommendations.snapshot import SnapshotAssembler, SupabaseSnapshotAssembler
from services.recommendations.store import RecommendationStore
from services.recommendations.supabase_store import SupabaseRecommendationStore
from services.recommendations.windows import WindowAggregator

logger = logging.getLogger(__name__)

DEFAULT_SNOOZE = timedelta(hours=4)

# Returns a job id, or None when runs cannot be queued
RunEnqueuer = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class IngestResult:
    signal: Optional[SignalEntry]
    job_id: Optional[str] = None
    run: Optional[PipelineRunResult] = None

    @property
    def dropped(self) -> bool:
        return self.signal is None


class RecommendationService:

    def __init__(
        self,
        store: RecommendationStore,
        aggregator: WindowAggregator,
        runner: PipelineRunner,
        lifecycle: LifecycleManager,
        executor: Executor,
        enqueue_run: Optional[RunEnqueuer] = None,
    ):
        self.store = store
        self.aggregator = aggregator
        self.runner = runner
        self.lifecycle = lifecycle
        self.executor = executor
        self.enqueue_run = enqueue_run

    # =========================================================================
    # Signals and runs
    # =========================================================================

    async def ingest_event(self, event: DomainEvent, tz_name: str = "UTC") -> IngestResult:
        """
        Classify and queue a domain event.

        Immediate signals request a run right away: queued when a worker
        queue is available, otherwise run inline.
        """
        signal = await self.aggregator.ingest(event, tz_name=tz_name)
        if signal is None or signal.window_type != WindowType.IMMEDIATE:
            return IngestResult(signal=signal)

        if self.enqueue_run is not None:
            job_id = await self.enqueue_run(event.user_id)
            if job_id:
                return IngestResult(signal=signal, job_id=job_id)

        run = await self.runner.run_for_user(event.user_id)
        return IngestResult(signal=signal, run=run)

    async def generate(
        self,
        user_id: str,
        context: Optional[RecommendationContext] = None,
    ) -> PipelineRunResult:
        """Explicit request: flush pending signals and evaluate now."""
        return await self.runner.run_for_user(user_id, force=True, context=context)

    async def run_due_window(self, user_id: str) -> PipelineRunResult:
        return await self.runner.run_for_user(user_id)

    async def wake_snoozed(self, now: Optional[datetime] = None) -> int:
        return len(await self.lifecycle.wake_snoozed(now))

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_recommendations(
        self,
        user_id: str,
        status: Optional[RecommendationStatus] = RecommendationStatus.ACTIVE,
        context: Optional[RecommendationContext] = None,
    ) -> list[Recommendation]:
        return await self.store.list_recommendations(user_id, status=status, context=context)

    async def get_recommendation(self, user_id: str, recommendation_id: str) -> Recommendation:
        return await self.lifecycle.get(recommendation_id, user_id)

    async def history(
        self,
        user_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Recommendation]:
        """Resolved recommendations (anything no longer Active), newest first."""
        date_from, date_to = as_utc(date_from), as_utc(date_to)
        recs = [
            r for r in await self.store.list_recommendations(user_id)
            if r.status != RecommendationStatus.ACTIVE
            and (date_from is None or r.created_at >= date_from)
            and (date_to is None or r.created_at <= date_to)
        ]
        return sorted(recs, key=lambda r: r.created_at, reverse=True)

    async def list_traces(self, query: TraceQuery) -> TracePage:
        return await self.store.list_traces(query)

    # =========================================================================
    # User actions
    # =========================================================================

    async def accept(self, user_id: str, recommendation_id: str) -> tuple[Recommendation, ExecutionResult]:
        """Accept, then execute. Execution failures leave the recommendation Accepted."""
        accepted = await self.lifecycle.accept(recommendation_id, user_id=user_id)
        return await self.executor.execute(accepted)

    async def execute(self, user_id: str, recommendation_id: str) -> tuple[Recommendation, ExecutionResult]:
        rec = await self.lifecycle.get(recommendation_id, user_id)
        return await self.executor.execute(rec)

    async def dismiss(
        self,
        user_id: str,
        recommendation_id: str,
        reason: Optional[str] = None,
    ) -> Recommendation:
        return await self.lifecycle.dismiss(recommendation_id, reason=reason, user_id=user_id)

    async def snooze(
        self,
        user_id: str,
        recommendation_id: str,
        until: Optional[datetime] = None,
    ) -> Recommendation:
        until = until or utcnow() + DEFAULT_SNOOZE
        return await self.lifecycle.snooze(recommendation_id, until, user_id=user_id)


# =============================================================================
# Builder
# =============================================================================

def build_recommendation_service(
    store: RecommendationStore,
    assembler: SnapshotAssembler,
    playbook: Playbook,
    commands: EntityCommands,
    selector: Optional[TierSelector] = None,
    settings: Optional[PipelineSettings] = None,
    classifier: Optional[SignalClassifier] = None,
    rule_engine: Optional[RuleEngine] = None,
    listener: Optional[LifecycleListener] = None,
    enqueue_run: Optional[RunEnqueuer] = None,
) -> RecommendationService:
    settings = settings or PipelineSettings()

    aggregator = WindowAggregator(
        store,
        classifier or SignalClassifier(),
        lease_seconds=settings.signal_lease_seconds,
    )
    lifecycle = LifecycleManager(
        store,
        max_active_per_context=settings.max_active_per_context,
        stale_after=timedelta(hours=settings.stale_recommendation_hours),
        playbook=playbook,
        listener=listener,
    )
    escalation = EscalationController(
        playbook,
        selector=selector,
        min_attempts=settings.playbook_min_attempts,
        min_success_rate=settings.playbook_min_success_rate,
        selector_timeout=settings.selector_timeout_seconds,
        max_per_context=settings.max_active_per_context,
    )
    runner = PipelineRunner(
        store=store,
        aggregator=aggregator,
        assembler=assembler,
        rule_engine=rule_engine or RuleEngine(build_rules(settings.disabled_rules)),
        escalation=escalation,
        lifecycle=lifecycle,
        run_timeout=settings.run_timeout_seconds,
    )
    return RecommendationService(
        store=store,
        aggregator=aggregator,
        runner=runner,
        lifecycle=lifecycle,
        executor=Executor(commands, lifecycle),
        enqueue_run=enqueue_run,
    )


def build_supabase_service(client, enqueue_run: Optional[RunEnqueuer] = None) -> RecommendationService:
    """Production wiring on a service-role Supabase client."""
    from services.activity_log import recommendation_listener

    settings = PipelineSettings.from_env()
    return build_recommendation_service(
        store=SupabaseRecommendationStore(client),
        assembler=SupabaseSnapshotAssembler(client),
        playbook=SupabasePlaybook(client),
        commands=SupabaseEntityCommands(client),
        selector=AnthropicTierSelector(model=settings.selector_model),
        settings=settings,
        listener=recommendation_listener(client),
        enqueue_run=enqueue_run,
    )


@lru_cache()
def get_recommendation_service() -> RecommendationService:
    """Process-wide service for the API. Use as a FastAPI dependency."""
    from services.job_queue import enqueue_pipeline_run
    from services.supabase import get_service_client

    return build_supabase_service(get_service_client(), enqueue_run=enqueue_pipeline_run)
