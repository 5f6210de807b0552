"""
Supabase store tests against a mocked query builder

Run: cd api && python tests/test_supabase_store.py
"""

import asyncio
import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from postgrest.exceptions import APIError

from fakes import OTHER_USER_ID, TEST_USER_ID, chain_mock, make_recommendation, make_signal, utc
from services.recommendations.errors import ConcurrentModificationError
from services.recommendations.models import (
    RecommendationContext,
    RecommendationStatus,
    TraceQuery,
)
from services.recommendations.store import RunCommit
from services.recommendations.supabase_store import SupabaseRecommendationStore


def _trace_row(trace_id="trace-1", rec=None):
    row = {
        "id": trace_id,
        "user_id": TEST_USER_ID,
        "recommendation_id": "rec-1" if rec else None,
        "context": "DriftAlert",
        "selection_method": "Escalated",
        "final_tier": 2,
        "processing_window_type": "DailyWindow",
        "total_duration_ms": 840,
        "status": "Selected",
        "rule_id": "DISENGAGEMENT_PATTERN",
        "context_key": "Low:Overloaded:Weekday:High",
        "error": None,
        "created_at": "2026-10-16T08:00:00+00:00",
    }
    if rec is not None:
        row["recommendations"] = rec
    return row


def test_compare_and_set_detects_lost_race():
    async def _run():
        client = chain_mock([])
        store = SupabaseRecommendationStore(client)
        rec = make_recommendation(status=RecommendationStatus.ACCEPTED)

        try:
            await store.compare_and_set(rec, RecommendationStatus.ACTIVE)
            assert False, "expected ConcurrentModificationError"
        except ConcurrentModificationError as e:
            assert "no longer Active" in str(e)

        client.eq.assert_any_call("id", rec.id)
        client.eq.assert_any_call("status", "Active")
        update_row = client.update.call_args[0][0]
        assert "id" not in update_row
        assert update_row["status"] == "Accepted"

    asyncio.run(_run())
    print("✅ compare_and_set_detects_lost_race: PASSED")


def test_compare_and_set_maps_unique_violation():
    async def _run():
        client = chain_mock()
        client.execute.side_effect = APIError({"code": "23505", "message": "duplicate key"})
        store = SupabaseRecommendationStore(client)

        try:
            await store.compare_and_set(make_recommendation(), RecommendationStatus.SNOOZED)
            assert False, "expected ConcurrentModificationError"
        except ConcurrentModificationError:
            pass

    asyncio.run(_run())
    print("✅ compare_and_set_maps_unique_violation: PASSED")


def test_commit_run_conflicts():
    async def _run():
        client = chain_mock()
        client.execute.side_effect = APIError({"code": "P0409", "message": "signal already consumed"})
        store = SupabaseRecommendationStore(client)

        try:
            await store.commit_run(RunCommit(user_id=TEST_USER_ID, consumed_signal_ids=["sig-1"]))
            assert False, "expected ConcurrentModificationError"
        except ConcurrentModificationError:
            pass

        name, params = client.rpc.call_args[0]
        assert name == "commit_recommendation_run"
        assert params["p_consumed_signal_ids"] == ["sig-1"]
        print("  ✓ precondition failure is a conflict")

        client.execute.side_effect = APIError({"code": "42P01", "message": "relation missing"})
        try:
            await store.commit_run(RunCommit(user_id=TEST_USER_ID))
            assert False, "expected APIError"
        except APIError:
            pass
        print("  ✓ other database errors propagate")

    asyncio.run(_run())
    print("✅ commit_run_conflicts: PASSED")


def test_lease_signals_rpc():
    async def _run():
        signal = make_signal("HabitMissed", created_at=utc(2026, 10, 16, 7))
        earlier = make_signal("TaskRescheduled", created_at=utc(2026, 10, 16, 6))
        client = chain_mock([signal.to_row(), earlier.to_row()])
        store = SupabaseRecommendationStore(client)

        leased = await store.lease_signals(
            user_id=TEST_USER_ID,
            holder="holder-1",
            cutoff=utc(2026, 10, 16, 9),
            lease_until=utc(2026, 10, 16, 9, 2),
            now=utc(2026, 10, 16, 9),
        )

        name, params = client.rpc.call_args[0]
        assert name == "lease_recommendation_signals"
        assert params["p_user_id"] == TEST_USER_ID
        assert params["p_holder"] == "holder-1"
        assert params["p_cutoff"] == "2026-10-16T09:00:00+00:00"
        assert params["p_closed_by"] is None
        assert [s.id for s in leased] == [earlier.id, signal.id]

    asyncio.run(_run())
    print("✅ lease_signals_rpc: PASSED")


def test_due_signal_users_dedups():
    async def _run():
        client = chain_mock([
            {"user_id": TEST_USER_ID},
            {"user_id": OTHER_USER_ID},
            {"user_id": TEST_USER_ID},
        ])
        store = SupabaseRecommendationStore(client)

        users = await store.due_signal_users(utc(2026, 10, 16, 9))
        assert users == sorted([TEST_USER_ID, OTHER_USER_ID])
        client.or_.assert_called_once_with(
            "leased_until.is.null,leased_until.lte.2026-10-16T09:00:00+00:00"
        )

    asyncio.run(_run())
    print("✅ due_signal_users_dedups: PASSED")


def test_list_traces_embed_and_count():
    async def _run():
        page_data = MagicMock(
            data=[_trace_row(rec={"status": "Accepted", "title": "Take a lighter day"})],
            count=7,
        )
        agent_runs = [{
            "id": "run-1", "trace_id": "trace-1", "tier": 2, "duration_ms": 800,
            "tokens": 150, "input_tokens": 120, "output_tokens": 30,
            "model": "claude-sonnet-4-20250514", "provider": "anthropic", "error": None,
        }]
        client = chain_mock(page_data, agent_runs)
        store = SupabaseRecommendationStore(client)

        page = await store.list_traces(TraceQuery(
            status=RecommendationStatus.ACCEPTED,
            context=RecommendationContext.DRIFT_ALERT,
            page=2,
            page_size=5,
        ))

        client.select.assert_any_call("*, recommendations!inner(status, title)", count="exact")
        client.eq.assert_any_call("recommendations.status", "Accepted")
        client.eq.assert_any_call("context", "DriftAlert")
        client.range.assert_called_once_with(5, 9)

        assert page.total == 7
        assert page.page == 2
        row = page.items[0]
        assert row.recommendation_status == RecommendationStatus.ACCEPTED
        assert row.recommendation_title == "Take a lighter day"
        assert row.agent_run_count == 1
        assert row.total_tokens == 150
        print("  ✓ status filter uses an inner join")

        client = chain_mock([_trace_row()], [])
        store = SupabaseRecommendationStore(client)
        page = await store.list_traces(TraceQuery())
        client.select.assert_any_call("*, recommendations(status, title)", count="exact")
        assert page.total == 1
        assert page.items[0].recommendation_status is None
        assert page.items[0].agent_run_count == 0
        print("  ✓ unfiltered listing keeps traces without a recommendation")

    asyncio.run(_run())
    print("✅ list_traces_embed_and_count: PASSED")


if __name__ == "__main__":
    print("\n🧪 Running Supabase store tests...\n")

    test_compare_and_set_detects_lost_race()
    test_compare_and_set_maps_unique_violation()
    test_commit_run_conflicts()
    test_lease_signals_rpc()
    test_due_signal_users_dedups()
    test_list_traces_embed_and_count()

    print("\n✅ All Supabase store tests passed!")
