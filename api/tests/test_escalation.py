"""
Escalation controller tests

Tests:
1. Tier 0 passes the rule's own candidate through
2. Tier 1 playbook hit at and above the attestation thresholds
3. Tier N selector output, token accounting
4. Selector timeout / failure falls back within budget
5. Merge: one candidate per target, score then severity, top-K per context

Run: cd api && python tests/test_escalation.py
"""

import asyncio
import os
import sys
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import TEST_USER_ID, StubSelector, make_candidate, utc
from services.recommendations.escalation import EscalationController
from services.recommendations.models import (
    PlaybookEntry,
    RecommendationContext,
    RecommendationType,
    RuleResult,
    RuleSeverity,
    SelectionMethod,
    TraceStatus,
)
from services.recommendations.playbook import InMemoryPlaybook
from services.recommendations.snapshot import UserStateSnapshot

CONTEXT_KEY = "Medium:Light:Weekday:Medium"
SNAPSHOT = UserStateSnapshot(user_id=TEST_USER_ID, as_of=utc(2026, 10, 16, 9))


def _result(direct=None, escalate=False, severity=RuleSeverity.HIGH, priority=50, rule_id="TEST_RULE") -> RuleResult:
    return RuleResult(
        rule_id=rule_id,
        rule_name=rule_id.title(),
        triggered=True,
        severity=severity,
        evidence={"reason": "test"},
        direct_recommendation=direct,
        requires_escalation=escalate,
        priority=priority,
        context=direct.context if direct else RecommendationContext.DRIFT_ALERT,
    )


def _entry(rec_type, success, attempts, key=CONTEXT_KEY) -> PlaybookEntry:
    return PlaybookEntry(context_key=key, intervention_type=rec_type, success_count=success, attempt_count=attempts)


def test_deterministic_tier():
    async def _run():
        controller = EscalationController(InMemoryPlaybook(), selector=StubSelector())
        direct = make_candidate()
        decision = await controller.decide(_result(direct), SNAPSHOT, CONTEXT_KEY)

        assert decision.selection_method == SelectionMethod.DETERMINISTIC
        assert decision.final_tier == 0
        assert decision.candidates == [direct]
        assert decision.status == TraceStatus.SELECTED
        assert decision.context_key == CONTEXT_KEY
        assert controller.selector.calls == 0

    asyncio.run(_run())
    print("✅ deterministic_tier: PASSED")


def test_playbook_hit_at_threshold():
    """5 attempts at exactly 60% counts as attested."""
    async def _run():
        playbook = InMemoryPlaybook([
            _entry(RecommendationType.HABIT_MODE_SUGGESTION, success=3, attempts=5),
            _entry(RecommendationType.EXPERIMENT, success=9, attempts=10, key="High:Full:Weekend:Low"),
        ])
        selector = StubSelector()
        controller = EscalationController(playbook, selector=selector)

        decision = await controller.decide(_result(escalate=True), SNAPSHOT, CONTEXT_KEY)
        assert decision.selection_method == SelectionMethod.PLAYBOOK_LOOKUP
        assert decision.final_tier == 1
        assert len(decision.candidates) == 1
        assert decision.candidates[0].type == RecommendationType.HABIT_MODE_SUGGESTION
        assert decision.candidates[0].score == 0.6
        assert selector.calls == 0

    asyncio.run(_run())
    print("✅ playbook_hit_at_threshold: PASSED")


def test_playbook_below_threshold_escalates():
    async def _run():
        playbook = InMemoryPlaybook([
            _entry(RecommendationType.HABIT_MODE_SUGGESTION, success=4, attempts=4),   # too few attempts
            _entry(RecommendationType.SCHEDULE_ADJUSTMENT, success=5, attempts=10),    # rate too low
        ])
        selector = StubSelector()
        controller = EscalationController(playbook, selector=selector)
        direct = make_candidate()

        decision = await controller.decide(_result(direct, escalate=True), SNAPSHOT, CONTEXT_KEY)
        assert decision.selection_method == SelectionMethod.ESCALATED
        assert decision.final_tier == 2
        assert selector.calls == 1
        # Pool: the direct candidate plus the best weak playbook entry
        assert len(decision.candidates) == 2
        assert decision.candidates[0] is direct
        assert decision.agent_runs[0].tokens == 150
        assert decision.agent_runs[0].model == "stub-model"

    asyncio.run(_run())
    print("✅ playbook_below_threshold_escalates: PASSED")


def test_selector_timeout_falls_back_to_direct():
    async def _run():
        controller = EscalationController(
            InMemoryPlaybook(), selector=StubSelector(delay=2.0), selector_timeout=0.05,
        )
        direct = make_candidate()

        started = time.monotonic()
        decision = await controller.decide(_result(direct, escalate=True), SNAPSHOT, CONTEXT_KEY)
        elapsed = time.monotonic() - started

        assert elapsed < 1.0, f"fallback took {elapsed:.2f}s"
        assert decision.selection_method == SelectionMethod.FALLBACK
        assert decision.final_tier == 0
        assert decision.candidates == [direct]
        assert decision.status == TraceStatus.SELECTED
        assert "timed out" in decision.error
        assert len(decision.agent_runs) == 1
        assert decision.agent_runs[0].error == decision.error

    asyncio.run(_run())
    print("✅ selector_timeout_falls_back_to_direct: PASSED")


def test_selector_failure_falls_back_to_weak_playbook():
    async def _run():
        playbook = InMemoryPlaybook([_entry(RecommendationType.CHECK_IN_CONSISTENCY_NUDGE, success=1, attempts=2)])
        controller = EscalationController(playbook, selector=StubSelector(error=RuntimeError("model down")))

        decision = await controller.decide(_result(escalate=True), SNAPSHOT, CONTEXT_KEY)
        assert decision.selection_method == SelectionMethod.FALLBACK
        assert decision.final_tier == 1
        assert decision.candidates[0].type == RecommendationType.CHECK_IN_CONSISTENCY_NUDGE
        assert decision.candidates[0].score == 0.5
        assert decision.error == "model down"

    asyncio.run(_run())
    print("✅ selector_failure_falls_back_to_weak_playbook: PASSED")


def test_nothing_to_fall_back_on():
    async def _run():
        controller = EscalationController(InMemoryPlaybook(), selector=None)
        decision = await controller.decide(_result(escalate=True), SNAPSHOT, CONTEXT_KEY)
        assert decision.selection_method == SelectionMethod.FALLBACK
        assert decision.candidates == []
        assert decision.status == TraceStatus.NO_RECOMMENDATION

    asyncio.run(_run())
    print("✅ nothing_to_fall_back_on: PASSED")


def test_decide_all_skips_untriggered():
    async def _run():
        controller = EscalationController(InMemoryPlaybook())
        quiet = RuleResult(rule_id="QUIET", rule_name="Quiet", triggered=False)
        decisions = await controller.decide_all([quiet, _result(make_candidate())], SNAPSHOT, CONTEXT_KEY)
        assert len(decisions) == 1
        assert decisions[0].rule_result.rule_id == "TEST_RULE"

    asyncio.run(_run())
    print("✅ decide_all_skips_untriggered: PASSED")


def test_merge_dedups_and_caps():
    async def _run():
        controller = EscalationController(InMemoryPlaybook(), max_per_context=2)
        low = make_candidate("task-1", score=0.6, title="Low")
        high = make_candidate("task-1", score=0.9, title="High")
        tie_weak = make_candidate("task-2", score=0.7, title="Tie weak")
        tie_strong = make_candidate("task-2", score=0.7, title="Tie strong")
        extra = make_candidate("task-3", score=0.5, title="Extra")
        other_context = make_candidate("task-4", score=0.4, context=RecommendationContext.EVENING_CHECK_IN)

        decisions = await controller.decide_all([
            _result(low, rule_id="A"),
            _result(high, rule_id="B"),
            _result(tie_weak, severity=RuleSeverity.LOW, rule_id="C"),
            _result(tie_strong, severity=RuleSeverity.CRITICAL, rule_id="D"),
            _result(extra, rule_id="E"),
            _result(other_context, rule_id="F"),
        ], SNAPSHOT, CONTEXT_KEY)
        merged = controller.merge(decisions)

        titles = [r.candidate.title for r in merged]
        assert titles[:2] == ["High", "Tie strong"], titles
        assert "Low" not in titles and "Tie weak" not in titles
        assert "Extra" not in titles  # capped at 2 per context
        assert other_context.title in titles
        assert len(merged) == 3

    asyncio.run(_run())
    print("✅ merge_dedups_and_caps: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running escalation tests...\n")

    test_deterministic_tier()
    test_playbook_hit_at_threshold()
    test_playbook_below_threshold_escalates()
    test_selector_timeout_falls_back_to_direct()
    test_selector_failure_falls_back_to_weak_playbook()
    test_nothing_to_fall_back_on()
    test_decide_all_skips_untriggered()
    test_merge_dedups_and_caps()

    print("\n✅ All escalation tests passed!")
