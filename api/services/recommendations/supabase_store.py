"""
Supabase-backed recommendation store.

Tables:
- recommendation_signals   (queued SignalEntry rows)
- recommendations          (partial unique index on user_id, context,
                            target_kind, coalesce(target_entity_id, '')
                            where status = 'Active')
- recommendation_traces
- recommendation_agent_runs

Multi-row operations go through Postgres functions so they run in one
transaction:
- lease_recommendation_signals: FOR UPDATE SKIP LOCKED claim
- commit_recommendation_run: consume signals, write recommendations,
  traces and agent runs, or raise and write nothing
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from postgrest.exceptions import APIError

from services.recommendations.errors import ConcurrentModificationError
from services.recommendations.models import (
    AgentRunStat,
    Recommendation,
    RecommendationContext,
    RecommendationStatus,
    RecommendationTrace,
    SignalEntry,
    TracePage,
    TraceQuery,
    TraceRow,
)
from services.recommendations.store import RecommendationStore, RunCommit

logger = logging.getLogger(__name__)

SIGNALS_TABLE = "recommendation_signals"
RECOMMENDATIONS_TABLE = "recommendations"
TRACES_TABLE = "recommendation_traces"
AGENT_RUNS_TABLE = "recommendation_agent_runs"

# unique_violation, serialization_failure, and the code raised by
# commit_recommendation_run when a precondition no longer holds
_CONFLICT_CODES = {"23505", "40001", "P0409"}


def _is_conflict(error: APIError) -> bool:
    return str(getattr(error, "code", "")) in _CONFLICT_CODES


class SupabaseRecommendationStore(RecommendationStore):

    def __init__(self, client):
        self.client = client

    # -- signals --------------------------------------------------------------

    async def add_signal(self, signal: SignalEntry) -> SignalEntry:
        self.client.table(SIGNALS_TABLE).insert(signal.to_row()).execute()
        return signal

    async def list_unconsumed_signals(self, user_id: str, now: datetime) -> list[SignalEntry]:
        result = (
            self.client.table(SIGNALS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .is_("consumed_at", "null")
            .gt("expires_at", now.isoformat())
            .order("created_at")
            .execute()
        )
        return [SignalEntry.from_row(row) for row in result.data or []]

    async def lease_signals(
        self,
        user_id: str,
        holder: str,
        cutoff: datetime,
        lease_until: datetime,
        now: datetime,
        closed_by: Optional[datetime] = None,
    ) -> list[SignalEntry]:
        result = self.client.rpc("lease_recommendation_signals", {
            "p_user_id": user_id,
            "p_holder": holder,
            "p_cutoff": cutoff.isoformat(),
            "p_lease_until": lease_until.isoformat(),
            "p_now": now.isoformat(),
            "p_closed_by": closed_by.isoformat() if closed_by else None,
        }).execute()
        signals = [SignalEntry.from_row(row) for row in result.data or []]
        return sorted(signals, key=lambda s: s.created_at)

    async def release_signals(self, holder: str) -> int:
        result = (
            self.client.table(SIGNALS_TABLE)
            .update({"lease_holder": None, "leased_until": None})
            .eq("lease_holder", holder)
            .is_("consumed_at", "null")
            .execute()
        )
        return len(result.data or [])

    async def due_signal_users(self, now: datetime) -> list[str]:
        ts = now.isoformat()
        result = (
            self.client.table(SIGNALS_TABLE)
            .select("user_id")
            .is_("consumed_at", "null")
            .gt("expires_at", ts)
            .lte("window_closes_at", ts)
            .or_(f"leased_until.is.null,leased_until.lte.{ts}")
            .execute()
        )
        return sorted({row["user_id"] for row in result.data or []})

    # -- recommendations ------------------------------------------------------

    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        result = (
            self.client.table(RECOMMENDATIONS_TABLE)
            .select("*")
            .eq("id", recommendation_id)
            .limit(1)
            .execute()
        )
        return Recommendation.from_row(result.data[0]) if result.data else None

    async def list_recommendations(
        self,
        user_id: str,
        status: Optional[RecommendationStatus] = None,
        context: Optional[RecommendationContext] = None,
    ) -> list[Recommendation]:
        query = self.client.table(RECOMMENDATIONS_TABLE).select("*").eq("user_id", user_id)
        if status:
            query = query.eq("status", status.value)
        if context:
            query = query.eq("context", context.value)
        result = query.order("score", desc=True).order("created_at").execute()
        return [Recommendation.from_row(row) for row in result.data or []]

    async def list_due_snoozed(self, now: datetime, user_id: Optional[str] = None) -> list[Recommendation]:
        query = (
            self.client.table(RECOMMENDATIONS_TABLE)
            .select("*")
            .eq("status", RecommendationStatus.SNOOZED.value)
            .lte("snoozed_until", now.isoformat())
        )
        if user_id:
            query = query.eq("user_id", user_id)
        result = query.execute()
        return [Recommendation.from_row(row) for row in result.data or []]

    async def compare_and_set(
        self,
        recommendation: Recommendation,
        expected_status: RecommendationStatus,
    ) -> Recommendation:
        row = recommendation.to_row()
        row.pop("id")
        try:
            result = (
                self.client.table(RECOMMENDATIONS_TABLE)
                .update(row)
                .eq("id", recommendation.id)
                .eq("status", expected_status.value)
                .execute()
            )
        except APIError as e:
            if _is_conflict(e):
                raise ConcurrentModificationError(
                    f"An active recommendation already exists for {recommendation.dedup_key}"
                ) from e
            raise
        if not result.data:
            raise ConcurrentModificationError(
                f"Recommendation {recommendation.id} is no longer {expected_status.value}"
            )
        return Recommendation.from_row(result.data[0])

    async def commit_run(self, commit: RunCommit) -> None:
        agent_runs = [run.to_row() for trace in commit.traces for run in trace.agent_runs]
        try:
            self.client.rpc("commit_recommendation_run", {
                "p_user_id": commit.user_id,
                "p_lease_holder": commit.lease_holder,
                "p_consumed_signal_ids": commit.consumed_signal_ids,
                "p_inserts": [r.to_row() for r in commit.inserts],
                "p_updates": [r.to_row() for r in commit.updates],
                "p_expirations": [r.to_row() for r in commit.expirations],
                "p_traces": [t.to_row() for t in commit.traces],
                "p_agent_runs": agent_runs,
                "p_committed_at": commit.committed_at.isoformat(),
            }).execute()
        except APIError as e:
            if _is_conflict(e):
                raise ConcurrentModificationError(str(e)) from e
            raise

    # -- traces ---------------------------------------------------------------

    def _agent_runs_for(self, trace_ids: list[str]) -> dict[str, list[AgentRunStat]]:
        if not trace_ids:
            return {}
        result = (
            self.client.table(AGENT_RUNS_TABLE)
            .select("*")
            .in_("trace_id", trace_ids)
            .execute()
        )
        runs: dict[str, list[AgentRunStat]] = {}
        for row in result.data or []:
            runs.setdefault(row["trace_id"], []).append(AgentRunStat(
                id=row["id"],
                trace_id=row["trace_id"],
                tier=row.get("tier") or 0,
                duration_ms=row.get("duration_ms") or 0,
                tokens=row.get("tokens") or 0,
                input_tokens=row.get("input_tokens") or 0,
                output_tokens=row.get("output_tokens") or 0,
                model=row.get("model"),
                provider=row.get("provider"),
                error=row.get("error"),
            ))
        return runs

    async def get_trace(self, trace_id: str) -> Optional[RecommendationTrace]:
        result = self.client.table(TRACES_TABLE).select("*").eq("id", trace_id).limit(1).execute()
        if not result.data:
            return None
        runs = self._agent_runs_for([trace_id])
        return RecommendationTrace.from_row(result.data[0], runs.get(trace_id, []))

    async def list_traces(self, query: TraceQuery) -> TracePage:
        # Status filters on the joined recommendation; the embed makes the
        # join an inner one only when that filter is present.
        embed = "recommendations!inner(status, title)" if query.status else "recommendations(status, title)"
        q = self.client.table(TRACES_TABLE).select(f"*, {embed}", count="exact")

        if query.date_from:
            q = q.gte("created_at", query.date_from.isoformat())
        if query.date_to:
            q = q.lte("created_at", query.date_to.isoformat())
        if query.context:
            q = q.eq("context", query.context.value)
        if query.status:
            q = q.eq("recommendations.status", query.status.value)
        if query.user_id:
            q = q.eq("user_id", query.user_id)
        if query.selection_method:
            q = q.eq("selection_method", query.selection_method.value)
        if query.final_tier is not None:
            q = q.eq("final_tier", query.final_tier)

        start = (query.page - 1) * query.page_size
        result = q.order("created_at", desc=True).range(start, start + query.page_size - 1).execute()

        rows = result.data or []
        runs = self._agent_runs_for([row["id"] for row in rows])
        items = []
        for row in rows:
            rec = row.pop("recommendations", None) or {}
            trace = RecommendationTrace.from_row(row, runs.get(row["id"], []))
            items.append(TraceRow(
                trace=trace,
                agent_run_count=len(trace.agent_runs),
                total_tokens=trace.total_tokens,
                recommendation_status=RecommendationStatus(rec["status"]) if rec.get("status") else None,
                recommendation_title=rec.get("title"),
            ))

        return TracePage(
            items=items,
            total=result.count if result.count is not None else len(items),
            page=query.page,
            page_size=query.page_size,
        )
