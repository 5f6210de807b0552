"""
Snapshot assembler tests

Rows shaped like the CRUD tables go through SupabaseSnapshotAssembler and
on into the rules, so column names and value formats are checked end to
end rather than against hand-built snapshots.

Run: cd api && python tests/test_snapshot.py
"""

import asyncio
import os
import sys
from datetime import date, datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytz

from fakes import TEST_USER_ID, chain_mock, seed, utc
from services.recommendations.executor import Executor, SupabaseEntityCommands
from services.recommendations.lifecycle import LifecycleManager
from services.recommendations.models import (
    ActionKind,
    Recommendation,
    RecommendationStatus,
    RuleSeverity,
)
from services.recommendations.rules import RuleEngine
from services.recommendations.rules.goals import DeadlineProximityRule
from services.recommendations.rules.habits import HabitAdherenceThresholdRule
from services.recommendations.snapshot import SupabaseSnapshotAssembler, _to_deadline
from services.recommendations.store import InMemoryRecommendationStore

NOW = utc(2026, 10, 18, 12)  # Sunday noon UTC, 14:00 in Berlin


def _habit_row(mode="Full", adherence=0.3) -> dict:
    return {
        "id": "habit-1", "title": "Morning run", "current_streak": 0,
        "adherence_7d": adherence, "current_mode": mode,
        "scheduled_days": None, "last_completed_on": None,
    }


def _goal_row(deadline) -> dict:
    return {
        "id": "goal-1", "title": "Launch the newsletter", "priority": 1, "status": "Active",
        "deadline": deadline, "progress": 0.2,
        "metrics": [{"kind": "Lead"}, {"kind": "Lag"}],
        "next_task_id": "task-9", "next_task_title": "Write the launch post",
    }


def _assembler_client(habits=(), goals=()):
    # profile, tasks, habits, goals, check-ins, season
    return chain_mock(
        [{"timezone": "Europe/Berlin", "daily_capacity_minutes": 480}],
        [],
        list(habits),
        list(goals),
        [],
        [],
    )


def _habit_columns(client) -> set[str]:
    selects = [c.args[0] for c in client.select.call_args_list if "adherence_7d" in c.args[0]]
    assert len(selects) == 1
    return {column.strip() for column in selects[0].split(",")}


def test_deadline_parsing():
    berlin = pytz.timezone("Europe/Berlin")

    assert _to_deadline("2026-10-19", berlin) == datetime(2026, 10, 18, 22, tzinfo=timezone.utc)
    assert _to_deadline(date(2026, 12, 24), berlin) == datetime(2026, 12, 23, 23, tzinfo=timezone.utc)
    print("  ✓ date-only deadlines fall due at local midnight")

    assert _to_deadline("2026-10-19T09:30:00Z", berlin) == datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)
    assert _to_deadline("2026-10-19T09:30:00", berlin) == datetime(2026, 10, 19, 7, 30, tzinfo=timezone.utc)
    assert _to_deadline(None, berlin) is None
    print("  ✓ timestamps stay aware, naive ones read as local")

    print("✅ deadline_parsing: PASSED")


def test_date_only_deadline_reaches_rule():
    async def _run():
        client = _assembler_client(goals=[_goal_row("2026-10-19")])
        snapshot = await SupabaseSnapshotAssembler(client).assemble(TEST_USER_ID, now=NOW)

        goal = snapshot.goals[0]
        assert goal.deadline == datetime(2026, 10, 18, 22, tzinfo=timezone.utc)
        print("  ✓ deadline is timezone-aware")

        [result] = RuleEngine([DeadlineProximityRule()]).evaluate(snapshot, [])
        assert "error" not in result.evidence, result.evidence
        assert result.triggered
        assert result.severity == RuleSeverity.CRITICAL
        assert result.evidence["hours_remaining"] == 10
        assert result.direct_recommendation.target_entity_id == "task-9"
        print("  ✓ DEADLINE_PROXIMITY fires on the assembled snapshot")

        # Past deadlines do not trigger
        client = _assembler_client(goals=[_goal_row("2026-10-17")])
        snapshot = await SupabaseSnapshotAssembler(client).assemble(TEST_USER_ID, now=NOW)
        [result] = RuleEngine([DeadlineProximityRule()]).evaluate(snapshot, [])
        assert not result.triggered
        assert "error" not in result.evidence

    asyncio.run(_run())
    print("✅ date_only_deadline_reaches_rule: PASSED")


def test_executed_habit_update_is_read_back():
    async def _run():
        client = _assembler_client(habits=[_habit_row(mode="Full")])
        snapshot = await SupabaseSnapshotAssembler(client).assemble(TEST_USER_ID, now=NOW)
        columns = _habit_columns(client)

        result = HabitAdherenceThresholdRule().evaluate(snapshot, [])
        assert result.direct_recommendation.action_kind == ActionKind.UPDATE

        store = InMemoryRecommendationStore()
        lifecycle = LifecycleManager(store)
        rec = Recommendation.from_candidate(TEST_USER_ID, result.direct_recommendation, now=NOW)
        await seed(store, rec)
        accepted = await lifecycle.accept(rec.id)

        writes = chain_mock([{"id": "habit-1"}])
        executed, outcome = await Executor(SupabaseEntityCommands(writes), lifecycle).execute(accepted)
        assert outcome.success, outcome.error_message
        assert executed.status == RecommendationStatus.EXECUTED

        writes.table.assert_called_with("habits")
        changes = writes.update.call_args[0][0]
        assert changes == {"current_mode": "Minimum"}
        assert set(changes) <= columns, f"{set(changes) - columns} not read by the assembler"
        print("  ✓ update writes a column the assembler selects")

        # The next run sees the new mode and stops suggesting the same change
        client = _assembler_client(habits=[_habit_row(mode=changes["current_mode"])])
        snapshot = await SupabaseSnapshotAssembler(client).assemble(TEST_USER_ID, now=NOW)
        assert snapshot.habits[0].mode == "Minimum"
        again = HabitAdherenceThresholdRule().evaluate(snapshot, [])
        assert again.direct_recommendation.action_kind == ActionKind.REFLECT_PROMPT
        print("  ✓ next run reads the downgraded mode")

    asyncio.run(_run())
    print("✅ executed_habit_update_is_read_back: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running snapshot tests...\n")

    test_deadline_parsing()
    test_date_only_deadline_reaches_rule()
    test_executed_habit_update_is_read_back()

    print("\n✅ All snapshot tests passed!")
