"""
Recommendation executor tests

Run: cd api && python tests/test_executor.py
"""

import asyncio
import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import TEST_USER_ID, FakeEntityCommands, make_recommendation, seed
from services.recommendations.errors import AlreadyExecutedError, LifecycleError
from services.recommendations.executor import Executor
from services.recommendations.lifecycle import LifecycleManager
from services.recommendations.models import (
    ActionKind,
    RecommendationStatus,
    RecommendationType,
    TargetKind,
)
from services.recommendations.store import InMemoryRecommendationStore


async def _accepted(store, lifecycle, **fields):
    rec = make_recommendation(**fields)
    await seed(store, rec)
    return await lifecycle.accept(rec.id, user_id=TEST_USER_ID)


def _setup(commands=None):
    store = InMemoryRecommendationStore()
    lifecycle = LifecycleManager(store)
    commands = commands or FakeEntityCommands(today=date(2026, 10, 16))
    return store, lifecycle, commands, Executor(commands, lifecycle)


def test_execute_today_schedules_task():
    async def _run():
        store, lifecycle, commands, executor = _setup()
        rec = await _accepted(store, lifecycle, target_id="task-1", action_kind=ActionKind.EXECUTE_TODAY)

        updated, result = await executor.execute(rec)
        assert result.success
        assert result.entity_id == "task-1"
        assert result.entity_kind == TargetKind.TASK
        assert not result.requires_client_action
        assert commands.scheduled == [(TEST_USER_ID, "task-1", date(2026, 10, 16))]
        assert updated.status == RecommendationStatus.EXECUTED
        assert (await store.get_recommendation(rec.id)).status == RecommendationStatus.EXECUTED

    asyncio.run(_run())
    print("✅ execute_today_schedules_task: PASSED")


def test_defer_uses_payload_date_or_tomorrow():
    async def _run():
        store, lifecycle, commands, executor = _setup()
        with_date = await _accepted(
            store, lifecycle, target_id="task-1", action_kind=ActionKind.DEFER,
            action_payload={"scheduled_on": "2026-10-20"},
        )
        without_date = await _accepted(store, lifecycle, target_id="task-2", action_kind=ActionKind.DEFER)

        await executor.execute(with_date)
        await executor.execute(without_date)
        assert commands.scheduled == [
            (TEST_USER_ID, "task-1", date(2026, 10, 20)),
            (TEST_USER_ID, "task-2", date(2026, 10, 17)),
        ]

    asyncio.run(_run())
    print("✅ defer_uses_payload_date_or_tomorrow: PASSED")


def test_habit_update_filters_fields():
    async def _run():
        store, lifecycle, commands, executor = _setup()
        rec = await _accepted(
            store, lifecycle,
            target_id="habit-1",
            target_kind=TargetKind.HABIT,
            action_kind=ActionKind.UPDATE,
            rec_type=RecommendationType.HABIT_MODE_SUGGESTION,
            action_payload={"current_mode": "Minimum", "user_id": "someone-else", "mode": "Minimum"},
        )

        updated, result = await executor.execute(rec)
        assert result.success
        assert commands.habit_updates == [(TEST_USER_ID, "habit-1", {"current_mode": "Minimum"})]
        assert updated.status == RecommendationStatus.EXECUTED

    asyncio.run(_run())
    print("✅ habit_update_filters_fields: PASSED")


def test_prompts_and_client_actions_stay_accepted():
    async def _run():
        store, lifecycle, commands, executor = _setup()

        prompt = await _accepted(store, lifecycle, target_id="goal-1", target_kind=TargetKind.GOAL,
                                 action_kind=ActionKind.REFLECT_PROMPT)
        updated, result = await executor.execute(prompt)
        assert result.success and not result.requires_client_action
        assert updated.status == RecommendationStatus.ACCEPTED
        print("  ✓ reflect prompt is a no-op")

        archive = await _accepted(store, lifecycle, target_id="task-9", action_kind=ActionKind.REMOVE,
                                  rec_type=RecommendationType.TASK_ARCHIVE)
        updated, result = await executor.execute(archive)
        assert result.success and result.requires_client_action
        assert result.target_entity_id == "task-9"
        assert updated.status == RecommendationStatus.ACCEPTED
        print("  ✓ archive handed back to the client")

        assert commands.scheduled == [] and commands.habit_updates == []

    asyncio.run(_run())
    print("✅ prompts_and_client_actions_stay_accepted: PASSED")


def test_failure_leaves_accepted():
    async def _run():
        commands = FakeEntityCommands(fail=ValueError("Task task-1 not found"))
        store, lifecycle, commands, executor = _setup(commands)
        rec = await _accepted(store, lifecycle, target_id="task-1", action_kind=ActionKind.EXECUTE_TODAY)

        updated, result = await executor.execute(rec)
        assert not result.success
        assert result.error_message == "Task task-1 not found"
        assert updated.status == RecommendationStatus.ACCEPTED
        assert (await store.get_recommendation(rec.id)).status == RecommendationStatus.ACCEPTED

        # Retry succeeds once the command works again
        commands.fail = None
        updated, result = await executor.execute(rec)
        assert result.success
        assert updated.status == RecommendationStatus.EXECUTED

    asyncio.run(_run())
    print("✅ failure_leaves_accepted: PASSED")


def test_execute_is_idempotent():
    async def _run():
        store, lifecycle, commands, executor = _setup()
        rec = await _accepted(store, lifecycle, target_id="task-1", action_kind=ActionKind.EXECUTE_TODAY)

        outcomes = await asyncio.gather(executor.execute(rec), executor.execute(rec), return_exceptions=True)
        successes = [o for o in outcomes if not isinstance(o, BaseException)]
        failures = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1 and isinstance(failures[0], AlreadyExecutedError)
        assert len(commands.scheduled) == 1

    asyncio.run(_run())
    print("✅ execute_is_idempotent: PASSED")


def test_execute_requires_accepted():
    async def _run():
        store, lifecycle, commands, executor = _setup()
        rec = make_recommendation(target_id="task-1")
        await seed(store, rec)

        try:
            await executor.execute(rec)
            assert False, "expected LifecycleError"
        except LifecycleError as e:
            assert not isinstance(e, AlreadyExecutedError)
            assert e.current == "Active"

    asyncio.run(_run())
    print("✅ execute_requires_accepted: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running executor tests...\n")

    test_execute_today_schedules_task()
    test_defer_uses_payload_date_or_tomorrow()
    test_habit_update_filters_fields()
    test_prompts_and_client_actions_stay_accepted()
    test_failure_leaves_accepted()
    test_execute_is_idempotent()
    test_execute_requires_accepted()

    print("\n✅ All executor tests passed!")
