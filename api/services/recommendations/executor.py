"""
Recommendation Executor

Turns an Accepted recommendation into an effect:

| action_kind    | target_kind | effect                                  |
|----------------|-------------|-----------------------------------------|
| ExecuteToday   | Task        | schedule the task for the user's today  |
| Defer          | Task        | reschedule (payload date or tomorrow)   |
| Update         | Habit       | apply the payload's field changes       |
| ReflectPrompt  | any         | nothing to do, stays Accepted           |
| LearnPrompt    | any         | nothing to do, stays Accepted           |
| anything else  | any         | returned to the client for a form       |

Server-side success moves the recommendation to Executed. A failure is
reported in the result and the recommendation stays Accepted so the
caller can retry.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import pytz

from services.recommendations.errors import AlreadyExecutedError, LifecycleError
from services.recommendations.lifecycle import LifecycleManager
from services.recommendations.models import (
    NON_EXECUTABLE_ACTIONS,
    ActionKind,
    Recommendation,
    RecommendationStatus,
    TargetKind,
)

logger = logging.getLogger(__name__)

# Habit columns a recommendation may change server-side. Must match the
# columns SupabaseSnapshotAssembler reads back.
HABIT_UPDATABLE_FIELDS = frozenset({"current_mode"})


@dataclass
class ExecutionResult:
    success: bool
    action_kind: ActionKind
    target_kind: TargetKind
    target_entity_id: Optional[str] = None
    entity_id: Optional[str] = None
    entity_kind: Optional[TargetKind] = None
    error_message: Optional[str] = None
    action_payload: Optional[dict] = None
    requires_client_action: bool = False

    @classmethod
    def server_executed(cls, rec: Recommendation, entity_id: str) -> "ExecutionResult":
        return cls(
            success=True,
            action_kind=rec.action_kind,
            target_kind=rec.target_kind,
            target_entity_id=rec.target_entity_id,
            entity_id=entity_id,
            entity_kind=rec.target_kind,
            action_payload=rec.action_payload,
        )

    @classmethod
    def client_action(cls, rec: Recommendation) -> "ExecutionResult":
        """Nothing written; the client pre-fills a form from action_payload."""
        return cls(
            success=True,
            action_kind=rec.action_kind,
            target_kind=rec.target_kind,
            target_entity_id=rec.target_entity_id,
            action_payload=rec.action_payload,
            requires_client_action=True,
        )

    @classmethod
    def non_executable(cls, rec: Recommendation) -> "ExecutionResult":
        return cls(
            success=True,
            action_kind=rec.action_kind,
            target_kind=rec.target_kind,
            target_entity_id=rec.target_entity_id,
        )

    @classmethod
    def failed(cls, rec: Recommendation, error_message: str) -> "ExecutionResult":
        return cls(
            success=False,
            action_kind=rec.action_kind,
            target_kind=rec.target_kind,
            target_entity_id=rec.target_entity_id,
            error_message=error_message,
            action_payload=rec.action_payload,
        )


# =============================================================================
# Entity commands (owned by the CRUD services)
# =============================================================================

class EntityCommands(ABC):

    @abstractmethod
    async def schedule_task(self, user_id: str, task_id: str, scheduled_on: date) -> str:
        """Set the task's scheduled date. Returns the task id."""

    @abstractmethod
    async def update_habit(self, user_id: str, habit_id: str, changes: dict) -> str:
        """Apply field changes to the habit. Returns the habit id."""

    async def local_today(self, user_id: str) -> date:
        return datetime.now(timezone.utc).date()


class SupabaseEntityCommands(EntityCommands):
    """Writes through the service client; every update is scoped to the owning user."""

    def __init__(self, client):
        self.client = client

    async def schedule_task(self, user_id: str, task_id: str, scheduled_on: date) -> str:
        result = (
            self.client.table("tasks")
            .update({"scheduled_on": scheduled_on.isoformat()})
            .eq("id", task_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not result.data:
            raise ValueError(f"Task {task_id} not found")
        return result.data[0]["id"]

    async def update_habit(self, user_id: str, habit_id: str, changes: dict) -> str:
        result = (
            self.client.table("habits")
            .update(changes)
            .eq("id", habit_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not result.data:
            raise ValueError(f"Habit {habit_id} not found")
        return result.data[0]["id"]

    async def local_today(self, user_id: str) -> date:
        result = (
            self.client.table("user_profiles")
            .select("timezone")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        tz_name = (result.data[0].get("timezone") if result.data else None) or "UTC"
        try:
            tz = pytz.timezone(tz_name)
        except pytz.UnknownTimeZoneError:
            tz = pytz.UTC
        return datetime.now(timezone.utc).astimezone(tz).date()


# =============================================================================
# Executor
# =============================================================================

class Executor:

    def __init__(self, commands: EntityCommands, lifecycle: LifecycleManager):
        self.commands = commands
        self.lifecycle = lifecycle
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers: dict[tuple[ActionKind, TargetKind], Callable[[Recommendation], Awaitable[str]]] = {
            (ActionKind.EXECUTE_TODAY, TargetKind.TASK): self._schedule_today,
            (ActionKind.DEFER, TargetKind.TASK): self._defer_task,
            (ActionKind.UPDATE, TargetKind.HABIT): self._update_habit,
        }

    def is_server_executable(self, rec: Recommendation) -> bool:
        return (rec.action_kind, rec.target_kind) in self._handlers

    async def execute(self, rec: Recommendation) -> tuple[Recommendation, ExecutionResult]:
        """
        Execute an Accepted recommendation.

        Returns the (possibly updated) recommendation and the result.
        Raises AlreadyExecutedError for an Executed recommendation and
        LifecycleError for any other non-Accepted status.
        """
        lock = self._locks.get(rec.id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[rec.id] = lock
        async with lock:
            return await self._execute(rec)

    async def _execute(self, rec: Recommendation) -> tuple[Recommendation, ExecutionResult]:
        current = await self.lifecycle.get(rec.id, rec.user_id)
        if current.status == RecommendationStatus.EXECUTED:
            raise AlreadyExecutedError(current.id)
        if current.status != RecommendationStatus.ACCEPTED:
            raise LifecycleError(current.id, current.status.value, "execute")

        if current.action_kind in NON_EXECUTABLE_ACTIONS:
            return current, ExecutionResult.non_executable(current)

        handler = self._handlers.get((current.action_kind, current.target_kind))
        if handler is None:
            return current, ExecutionResult.client_action(current)

        try:
            entity_id = await handler(current)
        except Exception as e:
            logger.warning(f"[EXECUTOR] {current.id} ({current.action_kind.value}) failed: {e}")
            return current, ExecutionResult.failed(current, str(e))

        executed = await self.lifecycle.mark_executed(current)
        logger.info(
            f"[EXECUTOR] {current.id}: {current.action_kind.value} on "
            f"{current.target_kind.value} {entity_id}"
        )
        return executed, ExecutionResult.server_executed(executed, entity_id)

    # -------------------------------------------------------------------------

    def _require_target(self, rec: Recommendation) -> str:
        if not rec.target_entity_id:
            raise ValueError(f"{rec.action_kind.value} needs a target {rec.target_kind.value}")
        return rec.target_entity_id

    async def _schedule_today(self, rec: Recommendation) -> str:
        task_id = self._require_target(rec)
        today = await self.commands.local_today(rec.user_id)
        return await self.commands.schedule_task(rec.user_id, task_id, today)

    async def _defer_task(self, rec: Recommendation) -> str:
        task_id = self._require_target(rec)
        payload = rec.action_payload or {}
        if payload.get("scheduled_on"):
            scheduled_on = date.fromisoformat(str(payload["scheduled_on"]))
        else:
            scheduled_on = await self.commands.local_today(rec.user_id) + timedelta(days=1)
        return await self.commands.schedule_task(rec.user_id, task_id, scheduled_on)

    async def _update_habit(self, rec: Recommendation) -> str:
        habit_id = self._require_target(rec)
        changes = {
            k: v for k, v in (rec.action_payload or {}).items()
            if k in HABIT_UPDATABLE_FIELDS
        }
        if not changes:
            raise ValueError("No habit changes in action payload")
        return await self.commands.update_habit(rec.user_id, habit_id, changes)
