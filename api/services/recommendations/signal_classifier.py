"""
Signal Classifier

Tags each incoming domain event with a priority and a processing window.
The mapping lives in DEFAULT_CLASSIFICATION_TABLE so it can be reviewed
(and enumerated by tests) as plain data.

Three outcomes per event type:
- mapped to a SignalClassification -> enters the queue
- mapped to NO_SIGNAL -> excluded on purpose (corrections, bookkeeping)
- absent from the table -> dropped with a warning (fail closed)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from services.recommendations.models import (
    DomainEvent,
    SignalEntry,
    SignalPriority,
    WindowType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalClassification:
    priority: SignalPriority
    window_type: WindowType


class _NoSignal:
    """Sentinel for event types that are deliberately excluded."""

    def __repr__(self) -> str:
        return "NO_SIGNAL"


NO_SIGNAL = _NoSignal()

ClassificationOutcome = Union[SignalClassification, _NoSignal]

_IMMEDIATE_HIGH = SignalClassification(SignalPriority.HIGH, WindowType.IMMEDIATE)
_IMMEDIATE_CRITICAL = SignalClassification(SignalPriority.CRITICAL, WindowType.IMMEDIATE)
_DAILY_HIGH = SignalClassification(SignalPriority.HIGH, WindowType.DAILY)
_DAILY_MEDIUM = SignalClassification(SignalPriority.MEDIUM, WindowType.DAILY)
_DAILY_LOW = SignalClassification(SignalPriority.LOW, WindowType.DAILY)
_WEEKLY_LOW = SignalClassification(SignalPriority.LOW, WindowType.WEEKLY)


DEFAULT_CLASSIFICATION_TABLE: Mapping[str, ClassificationOutcome] = MappingProxyType({
    # Check-ins: the user is at a natural breakpoint, respond now
    "MorningCheckInSubmitted": _IMMEDIATE_HIGH,
    "EveningCheckInSubmitted": _IMMEDIATE_HIGH,
    "CheckInReminderDue": _IMMEDIATE_CRITICAL,
    "MorningWindowStart": _IMMEDIATE_HIGH,
    "EveningWindowStart": _IMMEDIATE_HIGH,
    "CheckInSkipped": _DAILY_HIGH,

    # Behavioural signals, batched into the daily window
    "HabitCompleted": _DAILY_MEDIUM,
    "HabitMissed": _DAILY_MEDIUM,
    "HabitSkipped": _DAILY_MEDIUM,
    "HabitStreakMilestone": _DAILY_MEDIUM,
    "TaskCompleted": _DAILY_MEDIUM,
    "TaskRescheduled": _DAILY_MEDIUM,
    "GoalStatusChanged": _DAILY_MEDIUM,
    "MetricObservationRecorded": _DAILY_MEDIUM,
    "ExperimentStarted": _DAILY_MEDIUM,
    "ExperimentCompleted": _DAILY_MEDIUM,
    "ProjectStatusChanged": _DAILY_MEDIUM,

    # Structural edits
    "HabitCreated": _DAILY_LOW,
    "HabitUpdated": _DAILY_LOW,
    "HabitStatusChanged": _DAILY_LOW,
    "HabitArchived": _DAILY_LOW,
    "TaskCreated": _DAILY_LOW,
    "TaskUpdated": _DAILY_LOW,
    "TaskArchived": _DAILY_LOW,
    "CheckInUpdated": _DAILY_LOW,
    "GoalCreated": _WEEKLY_LOW,
    "GoalUpdated": _WEEKLY_LOW,
    "ProjectCreated": _WEEKLY_LOW,
    "ProjectUpdated": _WEEKLY_LOW,
    "ExperimentCreated": _WEEKLY_LOW,
    "SeasonCreated": _WEEKLY_LOW,
    "UserProfileUpdated": _WEEKLY_LOW,

    # Excluded: undo/corrections, the pipeline's own output, and events
    # already covered by a more specific event above
    "HabitUndone": NO_SIGNAL,
    "HabitModeSuggested": NO_SIGNAL,
    "RecommendationAccepted": NO_SIGNAL,
    "RecommendationDismissed": NO_SIGNAL,
    "RecommendationSnoozed": NO_SIGNAL,
    "RecommendationsGenerated": NO_SIGNAL,
    "DiagnosticSignalDetected": NO_SIGNAL,
    "TaskStatusChanged": NO_SIGNAL,
    "TaskCompletionUndone": NO_SIGNAL,
    "TaskCancelled": NO_SIGNAL,
    "TaskScheduled": NO_SIGNAL,
    "TaskDependencyAdded": NO_SIGNAL,
    "TaskDependencyRemoved": NO_SIGNAL,
    "GoalCompleted": NO_SIGNAL,
    "GoalScoreboardUpdated": NO_SIGNAL,
    "MetricObservationCorrected": NO_SIGNAL,
    "MetricDefinitionCreated": NO_SIGNAL,
    "MetricDefinitionUpdated": NO_SIGNAL,
    "MetricDefinitionArchived": NO_SIGNAL,
    "ExperimentPaused": NO_SIGNAL,
    "ExperimentResumed": NO_SIGNAL,
    "ExperimentAbandoned": NO_SIGNAL,
    "ProjectNextActionSet": NO_SIGNAL,
    "ProjectCompleted": NO_SIGNAL,
    "MilestoneAdded": NO_SIGNAL,
    "MilestoneCompleted": NO_SIGNAL,
    "SeasonActivated": NO_SIGNAL,
    "SeasonEnded": NO_SIGNAL,
    "UserProfileCreated": NO_SIGNAL,
    "PreferencesUpdated": NO_SIGNAL,
    "ConstraintsUpdated": NO_SIGNAL,
})


# Signals stay claimable for this long after their window closes.
DEFAULT_SIGNAL_TTL: Mapping[SignalPriority, timedelta] = MappingProxyType({
    SignalPriority.CRITICAL: timedelta(hours=1),
    SignalPriority.HIGH: timedelta(hours=24),
    SignalPriority.MEDIUM: timedelta(hours=48),
    SignalPriority.LOW: timedelta(hours=72),
})


# =============================================================================
# Urgent pattern detection
# =============================================================================

@dataclass(frozen=True)
class UrgentPattern:
    missed_habits: int = 3
    rescheduled_tasks: int = 3
    skipped_check_ins: int = 2
    missed_habits_with_skips: int = 1


DEFAULT_URGENT_PATTERN = UrgentPattern()


def count_pattern_signals(signals: Iterable[Union[SignalEntry, str]]) -> dict[str, int]:
    counts = {"HabitMissed": 0, "TaskRescheduled": 0, "CheckInSkipped": 0}
    for signal in signals:
        event_type = signal if isinstance(signal, str) else signal.source_event_type
        if event_type in counts:
            counts[event_type] += 1
    return counts


def matches_urgent_pattern(
    signals: Iterable[Union[SignalEntry, str]],
    pattern: UrgentPattern = DEFAULT_URGENT_PATTERN,
) -> bool:
    """True when pending signals show the user sliding (missed habits, slipping tasks, skipped check-ins)."""
    counts = count_pattern_signals(signals)
    missed = counts["HabitMissed"]
    return (
        missed >= pattern.missed_habits
        or counts["TaskRescheduled"] >= pattern.rescheduled_tasks
        or (counts["CheckInSkipped"] >= pattern.skipped_check_ins
            and missed >= pattern.missed_habits_with_skips)
    )


# =============================================================================
# Classifier
# =============================================================================

class SignalClassifier:
    """
    Stateless classifier over an injected table.

    Tests substitute their own table or TTL mapping through the constructor.
    """

    def __init__(
        self,
        table: Optional[Mapping[str, ClassificationOutcome]] = None,
        ttl: Optional[Mapping[SignalPriority, timedelta]] = None,
        urgent_pattern: UrgentPattern = DEFAULT_URGENT_PATTERN,
    ):
        self._table = MappingProxyType(dict(table if table is not None else DEFAULT_CLASSIFICATION_TABLE))
        self._ttl = MappingProxyType(dict(ttl if ttl is not None else DEFAULT_SIGNAL_TTL))
        self._urgent_pattern = urgent_pattern

    @property
    def table(self) -> Mapping[str, ClassificationOutcome]:
        return self._table

    def classify(self, event_type: str) -> Optional[ClassificationOutcome]:
        """
        Look up an event type.

        Returns the SignalClassification, NO_SIGNAL for excluded types, or
        None when the type is unknown. Unknown types are never promoted.
        """
        outcome = self._table.get(event_type)
        if outcome is None:
            logger.warning(f"[SIGNALS] Unmapped event type '{event_type}' dropped")
        return outcome

    def to_signal_entry(
        self,
        event: DomainEvent,
        pending: Iterable[SignalEntry] = (),
        window_closes_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SignalEntry]:
        """
        Classify a domain event into a queue entry.

        `pending` are the user's unconsumed signals; when they (plus this
        event) match the urgent pattern the entry is promoted to
        Immediate/Critical. Returns None when the event does not become a
        signal.
        """
        outcome = self.classify(event.event_type)
        if outcome is None:
            return None
        if outcome is NO_SIGNAL:
            logger.debug(f"[SIGNALS] {event.event_type} is excluded from the queue")
            return None

        priority = outcome.priority
        window_type = outcome.window_type

        if window_type != WindowType.IMMEDIATE:
            event_types = [s.source_event_type for s in pending] + [event.event_type]
            if matches_urgent_pattern(event_types, self._urgent_pattern):
                logger.info(
                    f"[SIGNALS] Urgent pattern for {event.user_id}: "
                    f"promoting {event.event_type} to Immediate"
                )
                priority = SignalPriority.CRITICAL
                window_type = WindowType.IMMEDIATE

        created_at = now or event.occurred_at
        closes_at = created_at if window_type == WindowType.IMMEDIATE else (window_closes_at or created_at)

        return SignalEntry(
            user_id=event.user_id,
            source_event_type=event.event_type,
            priority=priority,
            window_type=window_type,
            payload=dict(event.payload),
            occurred_at=event.occurred_at,
            created_at=created_at,
            window_closes_at=closes_at,
            expires_at=closes_at + self._ttl[priority],
        )
