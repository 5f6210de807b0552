"""
Activity log tests

Run: cd api && python tests/test_activity_log.py
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fakes import TEST_USER_ID, chain_mock, make_recommendation, seed
from services.activity_log import recommendation_listener, write_activity
from services.recommendations.lifecycle import LifecycleManager
from services.recommendations.store import InMemoryRecommendationStore


def test_write_activity():
    async def _run():
        client = chain_mock([{"id": "act-1"}])
        row_id = await write_activity(
            client, TEST_USER_ID, "scheduler_heartbeat", "Scheduler cycle: 1/1 runs",
            metadata={"users": 1},
        )
        assert row_id == "act-1"
        client.table.assert_called_with("activity_log")
        row = client.insert.call_args[0][0]
        assert row == {
            "user_id": TEST_USER_ID,
            "event_type": "scheduler_heartbeat",
            "summary": "Scheduler cycle: 1/1 runs",
            "metadata": {"users": 1},
        }
        print("  ✓ row written")

        assert await write_activity(client, TEST_USER_ID, "memory_written", "nope") is None
        print("  ✓ unknown event type ignored")

        failing = chain_mock()
        failing.execute.side_effect = RuntimeError("insert failed")
        assert await write_activity(failing, TEST_USER_ID, "scheduler_heartbeat", "x") is None
        print("  ✓ write failure is non-fatal")

    asyncio.run(_run())
    print("✅ write_activity: PASSED")


def test_listener_mirrors_lifecycle():
    async def _run():
        client = chain_mock([{"id": "act-1"}], [{"id": "act-2"}])
        store = InMemoryRecommendationStore()
        lifecycle = LifecycleManager(store, listener=recommendation_listener(client))
        a = make_recommendation(target_id="task-a", title="Finish the draft")
        b = make_recommendation(target_id="task-b")
        await seed(store, a, b)

        await lifecycle.accept(a.id)
        await lifecycle.dismiss(b.id, reason="busy week")

        accepted_row = client.insert.call_args_list[0][0][0]
        assert accepted_row["event_type"] == "recommendation_accepted"
        assert accepted_row["summary"] == "Accepted: Finish the draft"
        assert accepted_row["event_ref"] == a.id
        assert accepted_row["metadata"]["type"] == "NextBestAction"

        dismissed_row = client.insert.call_args_list[1][0][0]
        assert dismissed_row["event_type"] == "recommendation_dismissed"
        assert dismissed_row["metadata"]["reason"] == "busy week"

    asyncio.run(_run())
    print("✅ listener_mirrors_lifecycle: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running activity log tests...\n")

    test_write_activity()
    test_listener_mirrors_lifecycle()

    print("\n✅ All activity log tests passed!")
