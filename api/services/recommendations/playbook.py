"""
Context-bucketed playbook.

Maps a ContextKey storage form to intervention types with their observed
success counts. The pipeline only reads it; outcomes are recorded by the
feedback path (accept counts as a success, dismiss as a failed attempt).

Entries may be stale or missing. Callers treat both as "no hit".
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Iterable, Optional

from services.recommendations.models import PlaybookEntry, RecommendationType, utcnow

logger = logging.getLogger(__name__)


class Playbook(ABC):

    @abstractmethod
    async def lookup(self, context_key: str) -> list[PlaybookEntry]: ...

    @abstractmethod
    async def record_outcome(
        self,
        context_key: str,
        intervention_type: RecommendationType,
        success: bool,
    ) -> None: ...


def best_attested_entry(
    entries: Iterable[PlaybookEntry],
    min_attempts: int,
    min_success_rate: float,
) -> Optional[PlaybookEntry]:
    """Highest success rate among entries with enough attempts and a good enough rate."""
    attested = [
        e for e in entries
        if e.attempt_count >= min_attempts and e.success_rate >= min_success_rate
    ]
    if not attested:
        return None
    return max(attested, key=lambda e: (e.success_rate, e.attempt_count))


def best_any_entry(entries: Iterable[PlaybookEntry]) -> Optional[PlaybookEntry]:
    """Best entry regardless of attestation, used only as a last-resort fallback."""
    tried = [e for e in entries if e.attempt_count > 0 and e.success_count > 0]
    if not tried:
        return None
    return max(tried, key=lambda e: (e.success_rate, e.attempt_count))


class InMemoryPlaybook(Playbook):

    def __init__(self, entries: Iterable[PlaybookEntry] = ()):
        self._lock = asyncio.Lock()
        self._entries: dict[tuple[str, RecommendationType], PlaybookEntry] = {
            (e.context_key, e.intervention_type): e for e in entries
        }

    async def lookup(self, context_key: str) -> list[PlaybookEntry]:
        async with self._lock:
            return [replace(e) for (key, _), e in self._entries.items() if key == context_key]

    async def record_outcome(
        self,
        context_key: str,
        intervention_type: RecommendationType,
        success: bool,
    ) -> None:
        async with self._lock:
            key = (context_key, intervention_type)
            entry = self._entries.get(key) or PlaybookEntry(
                context_key=context_key,
                intervention_type=intervention_type,
            )
            entry.attempt_count += 1
            if success:
                entry.success_count += 1
            entry.last_updated_at = utcnow()
            self._entries[key] = entry


class SupabasePlaybook(Playbook):
    """
    Backed by the `playbook_entries` table.

    Increments go through the `record_playbook_outcome` function so
    concurrent feedback events cannot lose updates.
    """

    def __init__(self, client):
        self.client = client

    async def lookup(self, context_key: str) -> list[PlaybookEntry]:
        result = (
            self.client.table("playbook_entries")
            .select("context_key, intervention_type, success_count, attempt_count, last_updated_at")
            .eq("context_key", context_key)
            .execute()
        )
        entries = []
        for row in result.data or []:
            try:
                intervention = RecommendationType(row["intervention_type"])
            except ValueError:
                logger.warning(
                    f"[PLAYBOOK] Unknown intervention type '{row.get('intervention_type')}' "
                    f"for {context_key}, skipping"
                )
                continue
            entries.append(PlaybookEntry(
                context_key=row["context_key"],
                intervention_type=intervention,
                success_count=row.get("success_count") or 0,
                attempt_count=row.get("attempt_count") or 0,
            ))
        return entries

    async def record_outcome(
        self,
        context_key: str,
        intervention_type: RecommendationType,
        success: bool,
    ) -> None:
        self.client.rpc("record_playbook_outcome", {
            "p_context_key": context_key,
            "p_intervention_type": intervention_type.value,
            "p_success": success,
        }).execute()
        logger.info(
            f"[PLAYBOOK] Recorded {'success' if success else 'attempt'} for "
            f"{intervention_type.value} @ {context_key}"
        )
