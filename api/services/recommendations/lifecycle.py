"""
Recommendation Lifecycle Manager

State machine:

    Active -> Accepted | Dismissed | Snoozed | Expired
    Snoozed -> Active            (wake-up, or Expired if the slot is taken)
    Accepted -> Executed         (server-side execution succeeded)

Dismissed, Expired and Executed are terminal. Accept, dismiss and snooze
are only valid from Active.

Dedup invariant: at most one Active recommendation per
(user, context, target kind, target id). A new candidate for an occupied
slot updates the Active record in place instead of inserting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence

from services.recommendations.errors import (
    ConcurrentModificationError,
    LifecycleError,
    RecommendationNotFound,
)
from services.recommendations.escalation import RankedCandidate
from services.recommendations.models import (
    Recommendation,
    RecommendationStatus,
    utcnow,
)
from services.recommendations.playbook import Playbook
from services.recommendations.store import RecommendationStore

logger = logging.getLogger(__name__)

LifecycleListener = Callable[[str, Recommendation, dict], Awaitable[None]]


@dataclass
class MaterializationPlan:
    """What a run will write. Applied by the pipeline inside commit_run."""
    inserts: list[Recommendation] = field(default_factory=list)
    updates: list[Recommendation] = field(default_factory=list)
    expirations: list[Recommendation] = field(default_factory=list)
    slot_owner: dict[tuple, str] = field(default_factory=dict)

    def recommendation_id_for(self, user_id: str, candidate) -> Optional[str]:
        return self.slot_owner.get((user_id,) + candidate.dedup_key)


class LifecycleManager:

    def __init__(
        self,
        store: RecommendationStore,
        max_active_per_context: int = 5,
        stale_after: timedelta = timedelta(hours=24),
        playbook: Optional[Playbook] = None,
        listener: Optional[LifecycleListener] = None,
    ):
        self.store = store
        self.max_active_per_context = max_active_per_context
        self.stale_after = stale_after
        self.playbook = playbook
        self.listener = listener

    # =========================================================================
    # Materialization (called inside a pipeline run)
    # =========================================================================

    async def plan(
        self,
        user_id: str,
        ranked: Sequence[RankedCandidate],
        now: Optional[datetime] = None,
    ) -> MaterializationPlan:
        now = now or utcnow()
        plan = MaterializationPlan()

        active = await self.store.list_recommendations(user_id, status=RecommendationStatus.ACTIVE)
        cutoff = now - self.stale_after
        slots: dict[tuple, Recommendation] = {}
        for rec in active:
            if rec.created_at <= cutoff:
                plan.expirations.append(replace(
                    rec,
                    status=RecommendationStatus.EXPIRED,
                    expired_at=now,
                    updated_at=now,
                ))
            else:
                slots[rec.dedup_key] = rec

        updated: dict[str, Recommendation] = {}
        for item in ranked:
            candidate = item.candidate
            key = (user_id,) + candidate.dedup_key
            existing = slots.get(key)

            if existing is not None:
                try:
                    merged = replace(
                        existing,
                        type=candidate.type,
                        title=candidate.title,
                        rationale=candidate.rationale,
                        score=candidate.score,
                        action_kind=candidate.action_kind,
                        action_payload=candidate.action_payload,
                        action_summary=candidate.action_summary,
                        target_entity_title=candidate.target_entity_title or existing.target_entity_title,
                        context_key=item.decision.context_key or existing.context_key,
                        updated_at=now,
                    )
                except ValueError as e:
                    logger.warning(f"[LIFECYCLE] Discarding invalid update to {existing.id} for {user_id}: {e}")
                    continue
                slots[key] = merged
                updated[merged.id] = merged
                plan.slot_owner[key] = merged.id
                continue

            in_context = sum(1 for k in slots if k[1] == candidate.context)
            if in_context >= self.max_active_per_context:
                logger.info(
                    f"[LIFECYCLE] {user_id}: {candidate.context.value} already has "
                    f"{in_context} active, skipping '{candidate.title}'"
                )
                continue

            try:
                rec = Recommendation.from_candidate(
                    user_id, candidate, context_key=item.decision.context_key, now=now
                )
            except ValueError as e:
                logger.warning(f"[LIFECYCLE] Discarding invalid candidate for {user_id}: {e}")
                continue

            slots[key] = rec
            plan.inserts.append(rec)
            plan.slot_owner[key] = rec.id

        plan.updates = list(updated.values())
        return plan

    # =========================================================================
    # User-driven transitions
    # =========================================================================

    async def get(self, recommendation_id: str, user_id: Optional[str] = None) -> Recommendation:
        rec = await self.store.get_recommendation(recommendation_id)
        if rec is None or (user_id is not None and rec.user_id != user_id):
            raise RecommendationNotFound(recommendation_id)
        return rec

    async def accept(
        self,
        recommendation_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Recommendation:
        now = now or utcnow()
        rec = await self._transition(
            recommendation_id, user_id, "accept",
            lambda r: replace(r, status=RecommendationStatus.ACCEPTED, accepted_at=now, updated_at=now),
        )
        await self._record_feedback(rec, success=True)
        await self._notify("recommendation_accepted", rec, {})
        return rec

    async def dismiss(
        self,
        recommendation_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Recommendation:
        now = now or utcnow()
        reason = reason.strip() if reason and reason.strip() else None
        rec = await self._transition(
            recommendation_id, user_id, "dismiss",
            lambda r: replace(
                r,
                status=RecommendationStatus.DISMISSED,
                dismissed_at=now,
                dismiss_reason=reason,
                updated_at=now,
            ),
        )
        await self._record_feedback(rec, success=False)
        await self._notify("recommendation_dismissed", rec, {"reason": reason})
        return rec

    async def snooze(
        self,
        recommendation_id: str,
        until: datetime,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Recommendation:
        now = now or utcnow()
        if until <= now:
            raise ValueError("Snooze time must be in the future")
        rec = await self._transition(
            recommendation_id, user_id, "snooze",
            lambda r: replace(r, status=RecommendationStatus.SNOOZED, snoozed_until=until, updated_at=now),
        )
        await self._notify("recommendation_snoozed", rec, {"until": until.isoformat()})
        return rec

    async def mark_executed(self, rec: Recommendation, now: Optional[datetime] = None) -> Recommendation:
        now = now or utcnow()
        if rec.status != RecommendationStatus.ACCEPTED:
            raise LifecycleError(rec.id, rec.status.value, "execute")
        executed = replace(rec, status=RecommendationStatus.EXECUTED, executed_at=now, updated_at=now)
        try:
            await self.store.compare_and_set(executed, RecommendationStatus.ACCEPTED)
        except ConcurrentModificationError:
            current = await self.get(rec.id)
            raise LifecycleError(rec.id, current.status.value, "execute")
        await self._notify("recommendation_executed", executed, {})
        return executed

    # =========================================================================
    # Scheduled maintenance
    # =========================================================================

    async def wake_snoozed(self, now: Optional[datetime] = None, user_id: Optional[str] = None) -> list[Recommendation]:
        """
        Return due snoozed recommendations to Active.

        If another Active recommendation took the slot meanwhile, the woken
        one expires instead so the slot keeps a single Active record.
        """
        now = now or utcnow()
        due = await self.store.list_due_snoozed(now, user_id=user_id)
        changed = []
        for rec in due:
            occupied = any(
                r.dedup_key == rec.dedup_key
                for r in await self.store.list_recommendations(
                    rec.user_id, status=RecommendationStatus.ACTIVE, context=rec.context
                )
            )
            if not occupied:
                woken = replace(rec, status=RecommendationStatus.ACTIVE, snoozed_until=None, updated_at=now)
                try:
                    changed.append(await self.store.compare_and_set(woken, RecommendationStatus.SNOOZED))
                    continue
                except ConcurrentModificationError:
                    logger.info(f"[LIFECYCLE] Slot for {rec.id} taken during wake-up, expiring")

            expired = replace(rec, status=RecommendationStatus.EXPIRED, expired_at=now, updated_at=now)
            try:
                changed.append(await self.store.compare_and_set(expired, RecommendationStatus.SNOOZED))
            except ConcurrentModificationError:
                logger.info(f"[LIFECYCLE] {rec.id} changed during wake-up, leaving as is")

        if changed:
            logger.info(f"[LIFECYCLE] Processed {len(changed)} snoozed recommendation(s)")
        return changed

    # =========================================================================
    # Internals
    # =========================================================================

    async def _transition(self, recommendation_id, user_id, attempted, mutate) -> Recommendation:
        rec = await self.get(recommendation_id, user_id)
        if rec.status != RecommendationStatus.ACTIVE:
            logger.info(
                f"[LIFECYCLE] Rejected {attempted} on {recommendation_id}: status {rec.status.value}"
            )
            raise LifecycleError(recommendation_id, rec.status.value, attempted)

        changed = mutate(rec)
        try:
            await self.store.compare_and_set(changed, RecommendationStatus.ACTIVE)
        except ConcurrentModificationError:
            current = await self.get(recommendation_id, user_id)
            raise LifecycleError(recommendation_id, current.status.value, attempted)

        logger.info(f"[LIFECYCLE] {recommendation_id}: Active -> {changed.status.value}")
        return changed

    async def _record_feedback(self, rec: Recommendation, success: bool) -> None:
        if self.playbook is None or not rec.context_key:
            return
        try:
            await self.playbook.record_outcome(rec.context_key, rec.type, success)
        except Exception as e:
            logger.warning(f"[LIFECYCLE] Playbook feedback failed for {rec.id}: {e}")

    async def _notify(self, event_type: str, rec: Recommendation, metadata: dict) -> None:
        if self.listener is None:
            return
        try:
            await self.listener(event_type, rec, metadata)
        except Exception as e:
            logger.warning(f"[LIFECYCLE] Listener failed for {event_type} on {rec.id}: {e}")
