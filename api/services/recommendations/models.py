"""
Recommendation pipeline data model.

Enums are `str, Enum` so values round-trip through Supabase rows and JSON
without conversion. Dataclasses are the in-process shape; `to_row` /
`from_row` convert to the table layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_ts(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Enums
# =============================================================================

class SignalPriority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class WindowType(str, Enum):
    IMMEDIATE = "Immediate"
    DAILY = "DailyWindow"
    WEEKLY = "WeeklyWindow"


class RuleSeverity(str, Enum):
    NONE = "None"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    RuleSeverity.NONE: 0,
    RuleSeverity.LOW: 1,
    RuleSeverity.MEDIUM: 2,
    RuleSeverity.HIGH: 3,
    RuleSeverity.CRITICAL: 4,
}


class RecommendationStatus(str, Enum):
    ACTIVE = "Active"
    ACCEPTED = "Accepted"
    DISMISSED = "Dismissed"
    SNOOZED = "Snoozed"
    EXPIRED = "Expired"
    EXECUTED = "Executed"


TERMINAL_STATUSES = frozenset({
    RecommendationStatus.DISMISSED,
    RecommendationStatus.EXPIRED,
    RecommendationStatus.EXECUTED,
})


class RecommendationType(str, Enum):
    NEXT_BEST_ACTION = "NextBestAction"
    HABIT_MODE_SUGGESTION = "HabitModeSuggestion"
    PLAN_REALISM_ADJUSTMENT = "PlanRealismAdjustment"
    SCHEDULE_ADJUSTMENT = "ScheduleAdjustmentSuggestion"
    TASK_ARCHIVE = "TaskArchiveSuggestion"
    CHECK_IN_CONSISTENCY_NUDGE = "CheckInConsistencyNudge"
    GOAL_SCOREBOARD = "GoalScoreboardSuggestion"
    EXPERIMENT = "ExperimentRecommendation"
    TASK_BREAKDOWN = "TaskBreakdownSuggestion"
    HABIT_STREAK_PROTECTION = "HabitStreakProtection"
    ENERGY_REBALANCE = "EnergyRebalance"


class RecommendationContext(str, Enum):
    DRIFT_ALERT = "DriftAlert"
    MORNING_CHECK_IN = "MorningCheckIn"
    EVENING_CHECK_IN = "EveningCheckIn"
    WEEKLY_REVIEW = "WeeklyReview"
    PROACTIVE_CHECK = "ProactiveCheck"
    ONBOARDING = "Onboarding"
    MIDDAY = "Midday"


class TargetKind(str, Enum):
    TASK = "Task"
    HABIT = "Habit"
    HABIT_OCCURRENCE = "HabitOccurrence"
    GOAL = "Goal"
    PROJECT = "Project"
    EXPERIMENT = "Experiment"
    METRIC = "Metric"
    USER_PROFILE = "UserProfile"


class ActionKind(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    REMOVE = "Remove"
    EXECUTE_TODAY = "ExecuteToday"
    DEFER = "Defer"
    REFLECT_PROMPT = "ReflectPrompt"
    LEARN_PROMPT = "LearnPrompt"


# Prompts only ask the user to think; nothing to write.
NON_EXECUTABLE_ACTIONS = frozenset({ActionKind.REFLECT_PROMPT, ActionKind.LEARN_PROMPT})


class SelectionMethod(str, Enum):
    DETERMINISTIC = "Deterministic"
    PLAYBOOK_LOOKUP = "PlaybookLookup"
    ESCALATED = "Escalated"
    FALLBACK = "Fallback"


class TraceStatus(str, Enum):
    SELECTED = "Selected"
    NO_RECOMMENDATION = "NoRecommendation"
    FAILED = "Failed"


# =============================================================================
# Signals
# =============================================================================

@dataclass
class DomainEvent:
    """A typed event from a CRUD collaborator (task completed, check-in skipped...)."""
    user_id: str
    event_type: str
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class SignalEntry:
    """
    A classified domain event waiting in the per-user queue.

    Immutable once created apart from the queue bookkeeping fields
    (consumed_at, leased_until, lease_holder, attempts).
    """
    user_id: str
    source_event_type: str
    priority: SignalPriority
    window_type: WindowType
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    window_closes_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None
    leased_until: Optional[datetime] = None
    lease_holder: Optional[str] = None
    attempts: int = 0
    id: str = field(default_factory=lambda: str(uuid4()))

    def is_available(self, now: datetime) -> bool:
        if self.consumed_at is not None:
            return False
        if self.expires_at is not None and self.expires_at <= now:
            return False
        return self.leased_until is None or self.leased_until <= now

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "source_event_type": self.source_event_type,
            "priority": self.priority.value,
            "window_type": self.window_type.value,
            "payload": self.payload,
            "occurred_at": _iso(self.occurred_at),
            "created_at": _iso(self.created_at),
            "window_closes_at": _iso(self.window_closes_at),
            "expires_at": _iso(self.expires_at),
            "consumed_at": _iso(self.consumed_at),
            "leased_until": _iso(self.leased_until),
            "lease_holder": self.lease_holder,
            "attempts": self.attempts,
        }

    @classmethod
    def from_row(cls, row: dict) -> "SignalEntry":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            source_event_type=row["source_event_type"],
            priority=SignalPriority(row["priority"]),
            window_type=WindowType(row["window_type"]),
            payload=row.get("payload") or {},
            occurred_at=_parse_ts(row.get("occurred_at")),
            created_at=_parse_ts(row.get("created_at")),
            window_closes_at=_parse_ts(row.get("window_closes_at")),
            expires_at=_parse_ts(row.get("expires_at")),
            consumed_at=_parse_ts(row.get("consumed_at")),
            leased_until=_parse_ts(row.get("leased_until")),
            lease_holder=row.get("lease_holder"),
            attempts=row.get("attempts") or 0,
        )


# =============================================================================
# Rule output
# =============================================================================

@dataclass
class DirectRecommendationCandidate:
    type: RecommendationType
    context: RecommendationContext
    target_kind: TargetKind
    action_kind: ActionKind
    title: str
    rationale: str
    score: float
    target_entity_id: Optional[str] = None
    target_entity_title: Optional[str] = None
    action_payload: Optional[dict] = None
    action_summary: Optional[str] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.context, self.target_kind, self.target_entity_id)


@dataclass
class RuleResult:
    rule_id: str
    rule_name: str
    triggered: bool
    severity: RuleSeverity = RuleSeverity.NONE
    evidence: dict[str, Any] = field(default_factory=dict)
    direct_recommendation: Optional[DirectRecommendationCandidate] = None
    requires_escalation: bool = False
    priority: int = 100
    context: Optional[RecommendationContext] = None


# =============================================================================
# Recommendation
# =============================================================================

@dataclass
class Recommendation:
    """Durable recommendation record. Status changes go through LifecycleManager."""
    user_id: str
    type: RecommendationType
    context: RecommendationContext
    target_kind: TargetKind
    action_kind: ActionKind
    title: str
    rationale: str
    score: float
    status: RecommendationStatus = RecommendationStatus.ACTIVE
    target_entity_id: Optional[str] = None
    target_entity_title: Optional[str] = None
    action_payload: Optional[dict] = None
    action_summary: Optional[str] = None
    context_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    dismiss_reason: Optional[str] = None
    snoozed_until: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("Recommendation requires a user_id")
        if not self.title or not self.title.strip():
            raise ValueError("Recommendation requires a title")
        if not self.rationale or not self.rationale.strip():
            raise ValueError("Recommendation requires a rationale")
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Recommendation score must be within [0, 1], got {self.score}")

    @classmethod
    def from_candidate(
        cls,
        user_id: str,
        candidate: DirectRecommendationCandidate,
        context_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Recommendation":
        now = now or utcnow()
        return cls(
            user_id=user_id,
            type=candidate.type,
            context=candidate.context,
            target_kind=candidate.target_kind,
            target_entity_id=candidate.target_entity_id,
            target_entity_title=candidate.target_entity_title,
            action_kind=candidate.action_kind,
            action_payload=candidate.action_payload,
            action_summary=candidate.action_summary,
            title=candidate.title,
            rationale=candidate.rationale,
            score=candidate.score,
            context_key=context_key,
            created_at=now,
            updated_at=now,
        )

    @property
    def dedup_key(self) -> tuple:
        return (self.user_id, self.context, self.target_kind, self.target_entity_id)

    def to_row(self) -> dict:
        row = asdict(self)
        for name in ("type", "context", "status", "target_kind", "action_kind"):
            row[name] = getattr(self, name).value
        for name in (
            "created_at", "updated_at", "accepted_at", "dismissed_at",
            "snoozed_until", "executed_at", "expired_at",
        ):
            row[name] = _iso(getattr(self, name))
        return row

    @classmethod
    def from_row(cls, row: dict) -> "Recommendation":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            type=RecommendationType(row["type"]),
            context=RecommendationContext(row["context"]),
            status=RecommendationStatus(row["status"]),
            target_kind=TargetKind(row["target_kind"]),
            target_entity_id=row.get("target_entity_id"),
            target_entity_title=row.get("target_entity_title"),
            action_kind=ActionKind(row["action_kind"]),
            action_payload=row.get("action_payload"),
            action_summary=row.get("action_summary"),
            title=row["title"],
            rationale=row["rationale"],
            score=float(row["score"]),
            context_key=row.get("context_key"),
            created_at=_parse_ts(row.get("created_at")),
            updated_at=_parse_ts(row.get("updated_at")),
            accepted_at=_parse_ts(row.get("accepted_at")),
            dismissed_at=_parse_ts(row.get("dismissed_at")),
            dismiss_reason=row.get("dismiss_reason"),
            snoozed_until=_parse_ts(row.get("snoozed_until")),
            executed_at=_parse_ts(row.get("executed_at")),
            expired_at=_parse_ts(row.get("expired_at")),
        )


# =============================================================================
# Traces
# =============================================================================

@dataclass
class AgentRunStat:
    tier: int
    duration_ms: int
    tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None
    trace_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_row(self) -> dict:
        return asdict(self)


@dataclass
class RecommendationTrace:
    """Append-only provenance of one pipeline decision."""
    user_id: str
    context: RecommendationContext
    selection_method: SelectionMethod
    final_tier: int
    processing_window_type: WindowType
    total_duration_ms: int
    status: TraceStatus = TraceStatus.SELECTED
    recommendation_id: Optional[str] = None
    rule_id: Optional[str] = None
    context_key: Optional[str] = None
    error: Optional[str] = None
    agent_runs: list[AgentRunStat] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self):
        for run in self.agent_runs:
            run.trace_id = self.id

    @property
    def total_tokens(self) -> int:
        return sum(run.tokens for run in self.agent_runs)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "recommendation_id": self.recommendation_id,
            "context": self.context.value,
            "selection_method": self.selection_method.value,
            "final_tier": self.final_tier,
            "processing_window_type": self.processing_window_type.value,
            "total_duration_ms": self.total_duration_ms,
            "status": self.status.value,
            "rule_id": self.rule_id,
            "context_key": self.context_key,
            "error": self.error,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: dict, agent_runs: Optional[list[AgentRunStat]] = None) -> "RecommendationTrace":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            recommendation_id=row.get("recommendation_id"),
            context=RecommendationContext(row["context"]),
            selection_method=SelectionMethod(row["selection_method"]),
            final_tier=row["final_tier"],
            processing_window_type=WindowType(row["processing_window_type"]),
            total_duration_ms=row.get("total_duration_ms") or 0,
            status=TraceStatus(row.get("status") or TraceStatus.SELECTED.value),
            rule_id=row.get("rule_id"),
            context_key=row.get("context_key"),
            error=row.get("error"),
            agent_runs=agent_runs or [],
            created_at=_parse_ts(row.get("created_at")),
        )


@dataclass
class TraceRow:
    """Admin listing row: a trace joined with its agent-run aggregates."""
    trace: RecommendationTrace
    agent_run_count: int
    total_tokens: int
    recommendation_status: Optional[RecommendationStatus] = None
    recommendation_title: Optional[str] = None


@dataclass
class TraceQuery:
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    context: Optional[RecommendationContext] = None
    status: Optional[RecommendationStatus] = None
    user_id: Optional[str] = None
    selection_method: Optional[SelectionMethod] = None
    final_tier: Optional[int] = None
    page: int = 1
    page_size: int = 20

    def __post_init__(self):
        self.date_from = as_utc(self.date_from)
        self.date_to = as_utc(self.date_to)


@dataclass
class TracePage:
    items: list[TraceRow]
    total: int
    page: int
    page_size: int


# =============================================================================
# Playbook
# =============================================================================

@dataclass
class PlaybookEntry:
    context_key: str
    intervention_type: RecommendationType
    success_count: int = 0
    attempt_count: int = 0
    last_updated_at: datetime = field(default_factory=utcnow)

    @property
    def success_rate(self) -> float:
        if self.attempt_count <= 0:
            return 0.0
        return self.success_count / self.attempt_count
