"""
Recommendation store contract.

Everything a pipeline run writes goes through `commit_run` in a single
call so a cancelled or crashed run leaves nothing half-persisted. Lifecycle
transitions outside a run use `compare_and_set`, which refuses to write
when the stored status is no longer the one the caller read.

InMemoryRecommendationStore backs tests. SupabaseRecommendationStore lives in
supabase_store.py.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from services.recommendations.errors import ConcurrentModificationError
from services.recommendations.models import (
    Recommendation,
    RecommendationContext,
    RecommendationStatus,
    RecommendationTrace,
    SignalEntry,
    TracePage,
    TraceQuery,
    TraceRow,
    utcnow,
)


@dataclass
class RunCommit:
    """All writes of one pipeline run."""
    user_id: str
    lease_holder: Optional[str] = None
    consumed_signal_ids: list[str] = field(default_factory=list)
    inserts: list[Recommendation] = field(default_factory=list)
    updates: list[Recommendation] = field(default_factory=list)
    expirations: list[Recommendation] = field(default_factory=list)
    traces: list[RecommendationTrace] = field(default_factory=list)
    committed_at: datetime = field(default_factory=utcnow)


class RecommendationStore(ABC):

    # -- signals --------------------------------------------------------------

    @abstractmethod
    async def add_signal(self, signal: SignalEntry) -> SignalEntry: ...

    @abstractmethod
    async def list_unconsumed_signals(self, user_id: str, now: datetime) -> list[SignalEntry]:
        """Unconsumed, unexpired signals for a user, leased or not."""

    @abstractmethod
    async def lease_signals(
        self,
        user_id: str,
        holder: str,
        cutoff: datetime,
        lease_until: datetime,
        now: datetime,
        closed_by: Optional[datetime] = None,
    ) -> list[SignalEntry]:
        """
        Claim the user's available signals created at or before `cutoff`.

        A signal is available when unconsumed, unexpired, and either never
        leased or its lease has lapsed. Claimed signals are invisible to
        other holders until released, consumed, or the lease lapses.
        With `closed_by`, only signals whose window closed by then are claimed.
        """

    @abstractmethod
    async def release_signals(self, holder: str) -> int: ...

    @abstractmethod
    async def due_signal_users(self, now: datetime) -> list[str]:
        """Users holding available signals whose window has closed."""

    # -- recommendations ------------------------------------------------------

    @abstractmethod
    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]: ...

    @abstractmethod
    async def list_recommendations(
        self,
        user_id: str,
        status: Optional[RecommendationStatus] = None,
        context: Optional[RecommendationContext] = None,
    ) -> list[Recommendation]: ...

    @abstractmethod
    async def list_due_snoozed(self, now: datetime, user_id: Optional[str] = None) -> list[Recommendation]: ...

    @abstractmethod
    async def compare_and_set(
        self,
        recommendation: Recommendation,
        expected_status: RecommendationStatus,
    ) -> Recommendation:
        """Persist `recommendation` only if the stored status still equals `expected_status`."""

    @abstractmethod
    async def commit_run(self, commit: RunCommit) -> None: ...

    # -- traces ---------------------------------------------------------------

    @abstractmethod
    async def get_trace(self, trace_id: str) -> Optional[RecommendationTrace]: ...

    @abstractmethod
    async def list_traces(self, query: TraceQuery) -> TracePage: ...


def _overlaps(rec: Recommendation, others: Iterable[Recommendation]) -> bool:
    return any(
        other.id != rec.id
        and other.status == RecommendationStatus.ACTIVE
        and other.dedup_key == rec.dedup_key
        for other in others
    )


class InMemoryRecommendationStore(RecommendationStore):
    """Process-local store. Returns copies so callers never alias stored rows."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._signals: dict[str, SignalEntry] = {}
        self._recommendations: dict[str, Recommendation] = {}
        self._traces: dict[str, RecommendationTrace] = {}

    # -- signals --------------------------------------------------------------

    async def add_signal(self, signal: SignalEntry) -> SignalEntry:
        async with self._lock:
            self._signals[signal.id] = copy.deepcopy(signal)
        return signal

    async def list_unconsumed_signals(self, user_id: str, now: datetime) -> list[SignalEntry]:
        async with self._lock:
            return [
                copy.deepcopy(s) for s in self._signals.values()
                if s.user_id == user_id
                and s.consumed_at is None
                and (s.expires_at is None or s.expires_at > now)
            ]

    async def lease_signals(
        self,
        user_id: str,
        holder: str,
        cutoff: datetime,
        lease_until: datetime,
        now: datetime,
        closed_by: Optional[datetime] = None,
    ) -> list[SignalEntry]:
        leased = []
        async with self._lock:
            for signal in self._signals.values():
                if signal.user_id != user_id or not signal.is_available(now):
                    continue
                if signal.created_at > cutoff:
                    continue
                if (
                    closed_by is not None
                    and signal.window_closes_at is not None
                    and signal.window_closes_at > closed_by
                ):
                    continue
                signal.leased_until = lease_until
                signal.lease_holder = holder
                signal.attempts += 1
                leased.append(copy.deepcopy(signal))
        return sorted(leased, key=lambda s: s.created_at)

    async def release_signals(self, holder: str) -> int:
        released = 0
        async with self._lock:
            for signal in self._signals.values():
                if signal.lease_holder == holder and signal.consumed_at is None:
                    signal.lease_holder = None
                    signal.leased_until = None
                    released += 1
        return released

    async def due_signal_users(self, now: datetime) -> list[str]:
        async with self._lock:
            users = {
                s.user_id for s in self._signals.values()
                if s.is_available(now) and (s.window_closes_at is None or s.window_closes_at <= now)
            }
        return sorted(users)

    # -- recommendations ------------------------------------------------------

    async def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        async with self._lock:
            rec = self._recommendations.get(recommendation_id)
            return copy.deepcopy(rec) if rec else None

    async def list_recommendations(
        self,
        user_id: str,
        status: Optional[RecommendationStatus] = None,
        context: Optional[RecommendationContext] = None,
    ) -> list[Recommendation]:
        async with self._lock:
            recs = [
                copy.deepcopy(r) for r in self._recommendations.values()
                if r.user_id == user_id
                and (status is None or r.status == status)
                and (context is None or r.context == context)
            ]
        return sorted(recs, key=lambda r: (-r.score, r.created_at))

    async def list_due_snoozed(self, now: datetime, user_id: Optional[str] = None) -> list[Recommendation]:
        async with self._lock:
            return [
                copy.deepcopy(r) for r in self._recommendations.values()
                if r.status == RecommendationStatus.SNOOZED
                and r.snoozed_until is not None
                and r.snoozed_until <= now
                and (user_id is None or r.user_id == user_id)
            ]

    async def compare_and_set(
        self,
        recommendation: Recommendation,
        expected_status: RecommendationStatus,
    ) -> Recommendation:
        async with self._lock:
            current = self._recommendations.get(recommendation.id)
            if current is None or current.status != expected_status:
                raise ConcurrentModificationError(
                    f"Recommendation {recommendation.id} is no longer {expected_status.value}"
                )
            if (
                recommendation.status == RecommendationStatus.ACTIVE
                and _overlaps(recommendation, self._recommendations.values())
            ):
                raise ConcurrentModificationError(
                    f"An active recommendation already exists for {recommendation.dedup_key}"
                )
            self._recommendations[recommendation.id] = copy.deepcopy(recommendation)
        return recommendation

    async def commit_run(self, commit: RunCommit) -> None:
        async with self._lock:
            # Validate everything before touching state.
            for signal_id in commit.consumed_signal_ids:
                signal = self._signals.get(signal_id)
                if signal is None or signal.consumed_at is not None:
                    raise ConcurrentModificationError(f"Signal {signal_id} already consumed")
                if commit.lease_holder and signal.lease_holder != commit.lease_holder:
                    raise ConcurrentModificationError(
                        f"Signal {signal_id} is leased by another run"
                    )
            for rec in commit.updates + commit.expirations:
                current = self._recommendations.get(rec.id)
                if current is None or current.status != RecommendationStatus.ACTIVE:
                    raise ConcurrentModificationError(f"Recommendation {rec.id} is no longer Active")

            expiring = {r.id for r in commit.expirations}
            remaining = [r for r in self._recommendations.values() if r.id not in expiring]
            for rec in commit.inserts:
                if _overlaps(rec, remaining + commit.inserts):
                    raise ConcurrentModificationError(
                        f"An active recommendation already exists for {rec.dedup_key}"
                    )

            for signal_id in commit.consumed_signal_ids:
                signal = self._signals[signal_id]
                signal.consumed_at = commit.committed_at
                signal.lease_holder = None
                signal.leased_until = None
            for rec in commit.expirations + commit.updates + commit.inserts:
                self._recommendations[rec.id] = copy.deepcopy(rec)
            for trace in commit.traces:
                self._traces[trace.id] = copy.deepcopy(trace)

    # -- traces ---------------------------------------------------------------

    async def get_trace(self, trace_id: str) -> Optional[RecommendationTrace]:
        async with self._lock:
            trace = self._traces.get(trace_id)
            return copy.deepcopy(trace) if trace else None

    async def list_traces(self, query: TraceQuery) -> TracePage:
        async with self._lock:
            rows = []
            for trace in self._traces.values():
                rec = self._recommendations.get(trace.recommendation_id) if trace.recommendation_id else None
                if query.date_from and trace.created_at < query.date_from:
                    continue
                if query.date_to and trace.created_at > query.date_to:
                    continue
                if query.context and trace.context != query.context:
                    continue
                if query.status and (rec is None or rec.status != query.status):
                    continue
                if query.user_id and trace.user_id != query.user_id:
                    continue
                if query.selection_method and trace.selection_method != query.selection_method:
                    continue
                if query.final_tier is not None and trace.final_tier != query.final_tier:
                    continue
                rows.append(TraceRow(
                    trace=copy.deepcopy(trace),
                    agent_run_count=len(trace.agent_runs),
                    total_tokens=trace.total_tokens,
                    recommendation_status=rec.status if rec else None,
                    recommendation_title=rec.title if rec else None,
                ))

        rows.sort(key=lambda row: row.trace.created_at, reverse=True)
        start = (query.page - 1) * query.page_size
        return TracePage(
            items=rows[start:start + query.page_size],
            total=len(rows),
            page=query.page,
            page_size=query.page_size,
        )
