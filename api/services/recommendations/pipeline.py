"""
Recommendation Pipeline Runner

One run for one user:

1. Lease the user's pending signals that existed when the run started
2. Assemble the user-state snapshot and derive its ContextKey
3. Evaluate the deterministic rules
4. Escalate where needed and merge into a ranked candidate list
5. Plan inserts, in-place merges and stale expirations
6. Commit signals, recommendations and traces in one store call

Runs for different users proceed concurrently. Runs for the same user
queue behind a per-user lock, so a second run only sees signals the
first did not consume. The whole run is bounded by a timeout; on
timeout, cancellation or error the lease is released and nothing is
written.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from services.recommendations.context_key import DEFAULT_THRESHOLDS, BucketThresholds
from services.recommendations.errors import PipelineTimeoutError
from services.recommendations.escalation import Decision, EscalationController
from services.recommendations.lifecycle import LifecycleManager, MaterializationPlan
from services.recommendations.models import (
    Recommendation,
    RecommendationContext,
    RecommendationTrace,
    TraceStatus,
    WindowType,
    utcnow,
)
from services.recommendations.rules import RuleEngine
from services.recommendations.snapshot import SnapshotAssembler
from services.recommendations.store import RecommendationStore, RunCommit
from services.recommendations.windows import SignalClaim, WindowAggregator

logger = logging.getLogger(__name__)


# Processing window recorded for an explicit generate request, by context.
CONTEXT_WINDOWS = {
    RecommendationContext.WEEKLY_REVIEW: WindowType.WEEKLY,
    RecommendationContext.MORNING_CHECK_IN: WindowType.DAILY,
    RecommendationContext.EVENING_CHECK_IN: WindowType.DAILY,
}


@dataclass
class PipelineRunResult:
    user_id: str
    run_id: str
    window_type: WindowType
    skipped: bool = False
    signals_consumed: int = 0
    recommendations: list[Recommendation] = field(default_factory=list)
    expired: int = 0
    traces: list[RecommendationTrace] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "run_id": self.run_id,
            "window_type": self.window_type.value,
            "skipped": self.skipped,
            "signals_consumed": self.signals_consumed,
            "recommendations": len(self.recommendations),
            "expired": self.expired,
            "traces": len(self.traces),
            "duration_ms": self.duration_ms,
        }


class PipelineRunner:

    def __init__(
        self,
        store: RecommendationStore,
        aggregator: WindowAggregator,
        assembler: SnapshotAssembler,
        rule_engine: RuleEngine,
        escalation: EscalationController,
        lifecycle: LifecycleManager,
        run_timeout: float = 20.0,
        thresholds: BucketThresholds = DEFAULT_THRESHOLDS,
    ):
        self.store = store
        self.aggregator = aggregator
        self.assembler = assembler
        self.rule_engine = rule_engine
        self.escalation = escalation
        self.lifecycle = lifecycle
        self.run_timeout = run_timeout
        self.thresholds = thresholds
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def run_for_user(
        self,
        user_id: str,
        force: bool = False,
        context: Optional[RecommendationContext] = None,
    ) -> PipelineRunResult:
        """
        Run the pipeline for one user.

        Without `force` the run only proceeds when a processing window has
        closed on at least one pending signal; otherwise it is skipped.
        A forced run (explicit generate) flushes everything pending and
        evaluates the rules even with no signals.

        Raises PipelineTimeoutError when the run exceeds its budget.
        """
        lock = self._lock_for(user_id)
        async with lock:
            try:
                return await asyncio.wait_for(
                    self._run(user_id, force, context),
                    timeout=self.run_timeout,
                )
            except asyncio.TimeoutError:
                logger.error(f"[PIPELINE] Run for {user_id} timed out after {self.run_timeout}s")
                raise PipelineTimeoutError(user_id, self.run_timeout)

    async def _run(
        self,
        user_id: str,
        force: bool,
        context: Optional[RecommendationContext],
    ) -> PipelineRunResult:
        started = time.monotonic()
        now = utcnow()
        run_id = str(uuid4())

        claim = await self.aggregator.claim(user_id, cutoff=now, force=force, now=now)
        if claim.signals:
            window_type = claim.window_type
        else:
            window_type = CONTEXT_WINDOWS.get(context, WindowType.IMMEDIATE)

        if not claim.signals and not force:
            logger.debug(f"[PIPELINE] {user_id}: no closed windows, skipping")
            return PipelineRunResult(user_id=user_id, run_id=run_id, window_type=window_type, skipped=True)

        try:
            snapshot = await self.assembler.assemble(user_id, now)
            context_key = snapshot.context_key(self.thresholds).to_storage_key()

            results = self.rule_engine.evaluate(snapshot, claim.signals)
            decisions = await self.escalation.decide_all(results, snapshot, context_key)
            ranked = self.escalation.merge(decisions)
            plan = await self.lifecycle.plan(user_id, ranked, now)
            traces = self._build_traces(user_id, decisions, plan, window_type)

            await self.store.commit_run(RunCommit(
                user_id=user_id,
                lease_holder=claim.holder if claim.signals else None,
                consumed_signal_ids=claim.signal_ids,
                inserts=plan.inserts,
                updates=plan.updates,
                expirations=plan.expirations,
                traces=traces,
                committed_at=utcnow(),
            ))
        except (Exception, asyncio.CancelledError):
            await self._release(claim)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[PIPELINE] {user_id} ({window_type.value}, {context_key}): "
            f"{len(claim.signals)} signal(s), {len(decisions)} decision(s), "
            f"+{len(plan.inserts)} new, {len(plan.updates)} merged, "
            f"{len(plan.expirations)} expired in {duration_ms}ms"
        )

        return PipelineRunResult(
            user_id=user_id,
            run_id=run_id,
            window_type=window_type,
            signals_consumed=len(claim.signals),
            recommendations=plan.inserts + plan.updates,
            expired=len(plan.expirations),
            traces=traces,
            duration_ms=duration_ms,
        )

    def _build_traces(
        self,
        user_id: str,
        decisions: list[Decision],
        plan: MaterializationPlan,
        window_type: WindowType,
    ) -> list[RecommendationTrace]:
        """One trace per decision; decisions whose candidates were all dropped carry no recommendation."""
        traces = []
        for decision in decisions:
            recommendation_id = next(
                (rid for rid in (plan.recommendation_id_for(user_id, c) for c in decision.candidates) if rid),
                None,
            )
            status = decision.status
            if status == TraceStatus.SELECTED and recommendation_id is None:
                status = TraceStatus.NO_RECOMMENDATION

            traces.append(RecommendationTrace(
                user_id=user_id,
                recommendation_id=recommendation_id,
                context=decision.context,
                selection_method=decision.selection_method,
                final_tier=decision.final_tier,
                processing_window_type=window_type,
                total_duration_ms=decision.duration_ms,
                status=status,
                rule_id=decision.rule_result.rule_id,
                context_key=decision.context_key,
                error=decision.error,
                agent_runs=decision.agent_runs,
            ))
        return traces

    async def _release(self, claim: SignalClaim) -> None:
        try:
            await self.aggregator.release(claim)
        except Exception as e:
            # The lease lapses on its own; the next run picks the signals up.
            logger.warning(f"[PIPELINE] Failed to release lease {claim.holder[:8]}: {e}")
