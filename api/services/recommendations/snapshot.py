"""
User-state snapshot.

A read-only, point-in-time projection of the user's tasks, habits, goals
and check-ins, assembled once per pipeline run. The pipeline never writes
through it; rules read it, and ContextKey derivation reads it.

The CRUD tables belong to other services. SupabaseSnapshotAssembler is
the adapter that reads them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytz

from services.recommendations.context_key import (
    DEFAULT_THRESHOLDS,
    BucketThresholds,
    ContextKey,
)

logger = logging.getLogger(__name__)

# Neutral midpoint used when the user has not reported energy today.
DEFAULT_ENERGY_LEVEL = 3
DEFAULT_SEASON_INTENSITY = 3
DEFAULT_DAILY_CAPACITY_MINUTES = 480


@dataclass(frozen=True)
class TaskSnapshot:
    id: str
    title: str
    status: str = "Ready"
    due_on: Optional[date] = None
    scheduled_on: Optional[date] = None
    reschedule_count: int = 0
    estimated_minutes: int = 30
    energy_cost: int = 3
    goal_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status not in ("Completed", "Cancelled", "Archived")


@dataclass(frozen=True)
class HabitSnapshot:
    id: str
    title: str
    current_streak: int = 0
    adherence_7d: float = 1.0
    mode: str = "Full"
    due_today: bool = False
    completed_today: bool = False


@dataclass(frozen=True)
class GoalSnapshot:
    id: str
    title: str
    priority: int = 3
    status: str = "Active"
    deadline: Optional[datetime] = None
    progress: float = 0.0
    has_lead_metric: bool = True
    has_lag_metric: bool = True
    next_task_id: Optional[str] = None
    next_task_title: Optional[str] = None


@dataclass(frozen=True)
class CheckInState:
    morning_done: bool = False
    evening_done: bool = False
    energy_level: Optional[int] = None
    streak_days: int = 0
    missed_days: int = 0


@dataclass(frozen=True)
class UserStateSnapshot:
    user_id: str
    as_of: datetime
    timezone: str = "UTC"
    daily_capacity_minutes: int = DEFAULT_DAILY_CAPACITY_MINUTES
    season_intensity: int = DEFAULT_SEASON_INTENSITY
    tasks: tuple[TaskSnapshot, ...] = ()
    habits: tuple[HabitSnapshot, ...] = ()
    goals: tuple[GoalSnapshot, ...] = ()
    check_in: CheckInState = field(default_factory=CheckInState)

    @property
    def local_now(self) -> datetime:
        try:
            tz = pytz.timezone(self.timezone)
        except pytz.UnknownTimeZoneError:
            tz = pytz.UTC
        return self.as_of.astimezone(tz)

    @property
    def local_date(self) -> date:
        return self.local_now.date()

    @property
    def energy_level(self) -> int:
        if self.check_in.energy_level is None:
            return DEFAULT_ENERGY_LEVEL
        return self.check_in.energy_level

    @property
    def tasks_today(self) -> list[TaskSnapshot]:
        today = self.local_date
        return [t for t in self.tasks if t.is_open and t.scheduled_on == today]

    @property
    def planned_minutes(self) -> int:
        return sum(t.estimated_minutes for t in self.tasks_today)

    @property
    def capacity_utilization(self) -> float:
        if self.daily_capacity_minutes <= 0:
            return 0.0
        return self.planned_minutes / self.daily_capacity_minutes

    def context_key(self, thresholds: BucketThresholds = DEFAULT_THRESHOLDS) -> ContextKey:
        return ContextKey.from_values(
            energy_level=self.energy_level,
            capacity_utilization=self.capacity_utilization,
            day=self.local_date,
            season_intensity=self.season_intensity,
            thresholds=thresholds,
        )


class SnapshotAssembler(ABC):

    @abstractmethod
    async def assemble(self, user_id: str, now: Optional[datetime] = None) -> UserStateSnapshot: ...


# =============================================================================
# Supabase adapter
# =============================================================================

def _to_date(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _to_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _to_deadline(value, tz) -> Optional[datetime]:
    """
    Goal deadlines are stored as dates. A date-only deadline falls due at
    local midnight in the user's timezone; naive timestamps are read as local.
    """
    if not value:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        day = value
    elif isinstance(value, str) and len(value) == 10:
        day = date.fromisoformat(value)
    else:
        parsed = _to_datetime(value)
        if parsed.tzinfo is None:
            parsed = tz.localize(parsed)
        return parsed.astimezone(timezone.utc)
    return tz.localize(datetime.combine(day, time.min)).astimezone(timezone.utc)


class SupabaseSnapshotAssembler(SnapshotAssembler):
    """Reads the CRUD tables with the service client."""

    def __init__(self, client):
        self.client = client

    async def assemble(self, user_id: str, now: Optional[datetime] = None) -> UserStateSnapshot:
        now = now or datetime.now(timezone.utc)

        profile = self._fetch_profile(user_id)
        tz_name = profile.get("timezone") or "UTC"
        try:
            tz = pytz.timezone(tz_name)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"[SNAPSHOT] {user_id}: unknown timezone {tz_name!r}, using UTC")
            tz = pytz.utc
        local_today = now.astimezone(tz).date()

        tasks = self._fetch_tasks(user_id)
        habits = self._fetch_habits(user_id, local_today)
        goals = self._fetch_goals(user_id, tz)
        check_in = self._fetch_check_in_state(user_id, local_today)
        season = self._fetch_active_season(user_id)

        logger.debug(
            f"[SNAPSHOT] {user_id}: {len(tasks)} tasks, {len(habits)} habits, {len(goals)} goals"
        )

        return UserStateSnapshot(
            user_id=user_id,
            as_of=now,
            timezone=tz_name,
            daily_capacity_minutes=profile.get("daily_capacity_minutes") or DEFAULT_DAILY_CAPACITY_MINUTES,
            season_intensity=season.get("intensity") or DEFAULT_SEASON_INTENSITY,
            tasks=tuple(tasks),
            habits=tuple(habits),
            goals=tuple(goals),
            check_in=check_in,
        )

    def _fetch_profile(self, user_id: str) -> dict:
        result = (
            self.client.table("user_profiles")
            .select("timezone, daily_capacity_minutes")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else {}

    def _fetch_active_season(self, user_id: str) -> dict:
        result = (
            self.client.table("seasons")
            .select("intensity")
            .eq("user_id", user_id)
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else {}

    def _fetch_tasks(self, user_id: str) -> list[TaskSnapshot]:
        result = (
            self.client.table("tasks")
            .select("id, title, status, due_on, scheduled_on, reschedule_count, estimated_minutes, energy_cost, goal_id")
            .eq("user_id", user_id)
            .not_.in_("status", ["Completed", "Cancelled", "Archived"])
            .execute()
        )
        return [
            TaskSnapshot(
                id=row["id"],
                title=row.get("title") or "Untitled task",
                status=row.get("status") or "Ready",
                due_on=_to_date(row.get("due_on")),
                scheduled_on=_to_date(row.get("scheduled_on")),
                reschedule_count=row.get("reschedule_count") or 0,
                estimated_minutes=row.get("estimated_minutes") or 30,
                energy_cost=row.get("energy_cost") or 3,
                goal_id=row.get("goal_id"),
            )
            for row in (result.data or [])
        ]

    def _fetch_habits(self, user_id: str, local_today: date) -> list[HabitSnapshot]:
        result = (
            self.client.table("habits")
            .select("id, title, current_streak, adherence_7d, current_mode, scheduled_days, last_completed_on")
            .eq("user_id", user_id)
            .eq("status", "Active")
            .execute()
        )
        habits = []
        for row in result.data or []:
            scheduled_days = row.get("scheduled_days")
            due_today = scheduled_days is None or local_today.weekday() in scheduled_days
            habits.append(HabitSnapshot(
                id=row["id"],
                title=row.get("title") or "Untitled habit",
                current_streak=row.get("current_streak") or 0,
                adherence_7d=float(row["adherence_7d"]) if row.get("adherence_7d") is not None else 1.0,
                mode=row.get("current_mode") or "Full",
                due_today=due_today,
                completed_today=_to_date(row.get("last_completed_on")) == local_today,
            ))
        return habits

    def _fetch_goals(self, user_id: str, tz=pytz.utc) -> list[GoalSnapshot]:
        result = (
            self.client.table("goals")
            .select("id, title, priority, status, deadline, progress, metrics, next_task_id, next_task_title")
            .eq("user_id", user_id)
            .eq("status", "Active")
            .execute()
        )
        goals = []
        for row in result.data or []:
            metrics = row.get("metrics") or []
            kinds = {m.get("kind") for m in metrics if isinstance(m, dict)}
            goals.append(GoalSnapshot(
                id=row["id"],
                title=row.get("title") or "Untitled goal",
                priority=row.get("priority") or 3,
                status=row.get("status") or "Active",
                deadline=_to_deadline(row.get("deadline"), tz),
                progress=float(row.get("progress") or 0.0),
                has_lead_metric="Lead" in kinds,
                has_lag_metric="Lag" in kinds,
                next_task_id=row.get("next_task_id"),
                next_task_title=row.get("next_task_title"),
            ))
        return goals

    def _fetch_check_in_state(self, user_id: str, local_today: date) -> CheckInState:
        since = (local_today - timedelta(days=30)).isoformat()
        result = (
            self.client.table("check_ins")
            .select("check_in_date, type, status, energy_level")
            .eq("user_id", user_id)
            .gte("check_in_date", since)
            .order("check_in_date", desc=True)
            .execute()
        )
        rows = result.data or []
        today_rows = [r for r in rows if _to_date(r.get("check_in_date")) == local_today]
        morning = next((r for r in today_rows if r.get("type") == "Morning" and r.get("status") == "Completed"), None)
        evening = next((r for r in today_rows if r.get("type") == "Evening" and r.get("status") == "Completed"), None)

        completed_days = {
            _to_date(r.get("check_in_date")) for r in rows if r.get("status") == "Completed"
        }
        streak = 0
        day = local_today if morning else local_today - timedelta(days=1)
        while day in completed_days:
            streak += 1
            day -= timedelta(days=1)

        missed = 0
        day = local_today - timedelta(days=1)
        while day not in completed_days and missed < 30:
            missed += 1
            day -= timedelta(days=1)

        return CheckInState(
            morning_done=morning is not None,
            evening_done=evening is not None,
            energy_level=morning.get("energy_level") if morning else None,
            streak_days=streak,
            missed_days=missed,
        )
