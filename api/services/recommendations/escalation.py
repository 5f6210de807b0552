"""
Escalation Controller

Turns each triggered rule result into a decision:

- Tier 0 (Deterministic): the rule supplied a direct candidate and did
  not ask for escalation.
- Tier 1 (PlaybookLookup): escalation requested and the playbook has a
  well-attested intervention for the current ContextKey.
- Tier N (Escalated): otherwise the pluggable selector runs, bounded by
  a timeout.
- Fallback: the selector timed out or failed. The rule's own direct
  candidate is used if it has one, then the best weakly-attested
  playbook entry, else the decision yields nothing.

Decisions are then merged: one candidate per (context, target kind,
target id), highest score wins, and each context is capped at top-K.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

from services.recommendations.models import (
    ActionKind,
    AgentRunStat,
    DirectRecommendationCandidate,
    RecommendationContext,
    RecommendationType,
    RuleResult,
    SelectionMethod,
    TargetKind,
    TraceStatus,
)
from services.recommendations.playbook import Playbook, best_any_entry, best_attested_entry
from services.recommendations.selector import TierSelector
from services.recommendations.snapshot import UserStateSnapshot

logger = logging.getLogger(__name__)


PLAYBOOK_TEMPLATES: dict[RecommendationType, tuple[str, str]] = {
    RecommendationType.PLAN_REALISM_ADJUSTMENT: (
        "Lighten today's plan",
        "Trimming the plan has helped on days like this.",
    ),
    RecommendationType.HABIT_MODE_SUGGESTION: (
        "Switch a struggling habit to its minimum version",
        "Scaling habits down has kept streaks alive in similar weeks.",
    ),
    RecommendationType.SCHEDULE_ADJUSTMENT: (
        "Move one task off today",
        "Rescheduling a single task has worked well in this situation.",
    ),
    RecommendationType.CHECK_IN_CONSISTENCY_NUDGE: (
        "Take two minutes for a check-in",
        "Checking in has helped you reset on days like this.",
    ),
    RecommendationType.EXPERIMENT: (
        "Try a one-week experiment",
        "Small experiments have helped you get unstuck before.",
    ),
}

_DEFAULT_TEMPLATE = (
    "Take a moment to reset your plan",
    "This kind of step has helped in similar situations.",
)


@dataclass
class Decision:
    """Outcome for one triggered rule. Becomes one trace."""
    rule_result: RuleResult
    context: RecommendationContext
    candidates: list[DirectRecommendationCandidate]
    selection_method: SelectionMethod
    final_tier: int
    duration_ms: int
    context_key: Optional[str] = None
    agent_runs: list[AgentRunStat] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def status(self) -> TraceStatus:
        if self.candidates:
            return TraceStatus.SELECTED
        if self.error and self.selection_method != SelectionMethod.FALLBACK:
            return TraceStatus.FAILED
        return TraceStatus.NO_RECOMMENDATION


@dataclass
class RankedCandidate:
    candidate: DirectRecommendationCandidate
    decision: Decision

    @property
    def sort_key(self) -> tuple:
        result = self.decision.rule_result
        return (self.candidate.score, result.severity.rank, -result.priority)


def candidate_from_playbook(entry, result: RuleResult) -> DirectRecommendationCandidate:
    """Build a candidate for a playbook intervention, reusing the rule's own wording when it matches."""
    direct = result.direct_recommendation
    score = round(min(max(entry.success_rate, 0.0), 1.0), 2)
    if direct is not None and direct.type == entry.intervention_type:
        return replace(direct, score=max(direct.score, score))

    title, rationale = PLAYBOOK_TEMPLATES.get(entry.intervention_type, _DEFAULT_TEMPLATE)
    return DirectRecommendationCandidate(
        type=entry.intervention_type,
        context=result.context or RecommendationContext.DRIFT_ALERT,
        target_kind=direct.target_kind if direct else TargetKind.USER_PROFILE,
        target_entity_id=direct.target_entity_id if direct else None,
        target_entity_title=direct.target_entity_title if direct else None,
        action_kind=ActionKind.REFLECT_PROMPT,
        title=title,
        rationale=(
            f"{rationale} It worked {entry.success_count} of {entry.attempt_count} "
            f"times in similar situations."
        ),
        score=score,
    )


class EscalationController:

    def __init__(
        self,
        playbook: Playbook,
        selector: Optional[TierSelector] = None,
        min_attempts: int = 5,
        min_success_rate: float = 0.6,
        selector_timeout: float = 5.0,
        max_per_context: int = 5,
    ):
        self.playbook = playbook
        self.selector = selector
        self.min_attempts = min_attempts
        self.min_success_rate = min_success_rate
        self.selector_timeout = selector_timeout
        self.max_per_context = max_per_context

    async def decide_all(
        self,
        results: Sequence[RuleResult],
        snapshot: UserStateSnapshot,
        context_key: str,
    ) -> list[Decision]:
        """Decisions for every triggered result. Independent, so they run concurrently."""
        triggered = [r for r in results if r.triggered]
        if not triggered:
            return []
        return list(await asyncio.gather(
            *(self.decide(r, snapshot, context_key) for r in triggered)
        ))

    async def decide(
        self,
        result: RuleResult,
        snapshot: UserStateSnapshot,
        context_key: str,
    ) -> Decision:
        started = time.monotonic()
        direct = result.direct_recommendation
        context = result.context or (direct.context if direct else RecommendationContext.DRIFT_ALERT)

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        if not result.requires_escalation:
            return Decision(
                rule_result=result,
                context=context,
                candidates=[direct] if direct else [],
                selection_method=SelectionMethod.DETERMINISTIC,
                final_tier=0,
                duration_ms=_elapsed(),
                context_key=context_key,
            )

        entries = await self._lookup(context_key)
        attested = best_attested_entry(entries, self.min_attempts, self.min_success_rate)
        if attested is not None:
            logger.info(
                f"[ESCALATION] {result.rule_id}: playbook hit {attested.intervention_type.value} "
                f"({attested.success_count}/{attested.attempt_count}) for {context_key}"
            )
            return Decision(
                rule_result=result,
                context=context,
                candidates=[candidate_from_playbook(attested, result)],
                selection_method=SelectionMethod.PLAYBOOK_LOOKUP,
                final_tier=1,
                duration_ms=_elapsed(),
                context_key=context_key,
            )

        weak = best_any_entry(entries)
        pool = []
        if direct is not None:
            pool.append(direct)
        if weak is not None:
            pool.append(candidate_from_playbook(weak, result))

        if self.selector is None:
            return self._fallback(result, context, context_key, direct, weak, _elapsed(), [],
                                  "no tier selector configured")

        selector_started = time.monotonic()
        try:
            selection = await asyncio.wait_for(
                self.selector.select(dict(result.evidence), snapshot, pool),
                timeout=self.selector_timeout,
            )
        except asyncio.TimeoutError:
            run = AgentRunStat(
                tier=getattr(self.selector, "tier", 2),
                duration_ms=int((time.monotonic() - selector_started) * 1000),
                provider=getattr(self.selector, "provider", None),
                error=f"timed out after {self.selector_timeout}s",
            )
            logger.warning(f"[ESCALATION] {result.rule_id}: selector timed out, falling back")
            return self._fallback(result, context, context_key, direct, weak, _elapsed(), [run], run.error)
        except Exception as e:
            run = AgentRunStat(
                tier=getattr(self.selector, "tier", 2),
                duration_ms=int((time.monotonic() - selector_started) * 1000),
                provider=getattr(self.selector, "provider", None),
                error=str(e),
            )
            logger.warning(f"[ESCALATION] {result.rule_id}: selector failed ({e}), falling back")
            return self._fallback(result, context, context_key, direct, weak, _elapsed(), [run], str(e))

        usage = selection.token_usage
        run = AgentRunStat(
            tier=selection.tier,
            duration_ms=selection.duration_ms,
            tokens=usage.total if usage else 0,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            model=selection.model,
            provider=selection.provider,
        )
        return Decision(
            rule_result=result,
            context=context,
            candidates=list(selection.candidates),
            selection_method=SelectionMethod.ESCALATED,
            final_tier=selection.tier,
            duration_ms=_elapsed(),
            context_key=context_key,
            agent_runs=[run],
        )

    def _fallback(self, result, context, context_key, direct, weak, duration_ms, runs, error) -> Decision:
        if direct is not None:
            candidates, tier = [direct], 0
        elif weak is not None:
            candidates, tier = [candidate_from_playbook(weak, result)], 1
        else:
            candidates, tier = [], 0
        return Decision(
            rule_result=result,
            context=context,
            candidates=candidates,
            selection_method=SelectionMethod.FALLBACK,
            final_tier=tier,
            duration_ms=duration_ms,
            context_key=context_key,
            agent_runs=runs,
            error=error,
        )

    async def _lookup(self, context_key: str):
        try:
            return await self.playbook.lookup(context_key)
        except Exception as e:
            logger.warning(f"[ESCALATION] Playbook lookup failed for {context_key}: {e}")
            return []

    def merge(self, decisions: Sequence[Decision]) -> list[RankedCandidate]:
        """
        Deduplicate by (context, target kind, target id) and cap each context.

        Highest score wins; ties go to the higher rule severity, then the
        lower rule priority number.
        """
        best: dict[tuple, RankedCandidate] = {}
        for decision in decisions:
            for candidate in decision.candidates:
                ranked = RankedCandidate(candidate=candidate, decision=decision)
                current = best.get(candidate.dedup_key)
                if current is None or ranked.sort_key > current.sort_key:
                    best[candidate.dedup_key] = ranked

        by_context: dict[RecommendationContext, list[RankedCandidate]] = {}
        for ranked in best.values():
            by_context.setdefault(ranked.candidate.context, []).append(ranked)

        merged = []
        for context, items in by_context.items():
            items.sort(key=lambda r: r.sort_key, reverse=True)
            if len(items) > self.max_per_context:
                logger.info(
                    f"[ESCALATION] {context.value}: keeping {self.max_per_context} of {len(items)} candidates"
                )
            merged.extend(items[:self.max_per_context])

        merged.sort(key=lambda r: r.sort_key, reverse=True)
        return merged
