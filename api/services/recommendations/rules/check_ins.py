"""
Check-in rules.
"""

from __future__ import annotations

from typing import Sequence

from services.recommendations.models import (
    ActionKind,
    DirectRecommendationCandidate,
    RecommendationContext,
    RecommendationType,
    RuleResult,
    RuleSeverity,
    SignalEntry,
    TargetKind,
)
from services.recommendations.rules.base import DeterministicRule, signals_of
from services.recommendations.signal_classifier import (
    DEFAULT_URGENT_PATTERN,
    UrgentPattern,
    count_pattern_signals,
    matches_urgent_pattern,
)
from services.recommendations.snapshot import UserStateSnapshot

REMINDER_EVENTS = ("CheckInReminderDue", "MorningWindowStart", "EveningWindowStart")


class CheckInMissingRule(DeterministicRule):
    """
    Nudges for a missing check-in, but only when a reminder is due.

    Without a reminder signal the rule stays quiet so the user is not
    nagged on every run.
    """

    rule_id = "CHECK_IN_MISSING"
    rule_name = "Missing Check-in"
    description = "Detects a missing morning or evening check-in when a reminder is due."
    priority = 50
    default_context = RecommendationContext.MORNING_CHECK_IN

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        reminders = signals_of(signals, *REMINDER_EVENTS)
        if not reminders:
            return self.not_triggered()

        latest = max(reminders, key=lambda s: s.created_at)
        evening = (
            latest.source_event_type == "EveningWindowStart"
            or latest.payload.get("check_in_type") == "Evening"
        )
        if evening and snapshot.check_in.evening_done:
            return self.not_triggered()
        if not evening and snapshot.check_in.morning_done:
            return self.not_triggered()

        streak = snapshot.check_in.streak_days
        if streak >= 14:
            severity = RuleSeverity.HIGH
        elif streak >= 7:
            severity = RuleSeverity.MEDIUM
        else:
            severity = RuleSeverity.LOW

        label = "evening" if evening else "morning"
        evidence = {
            "check_in_type": label,
            "streak_days": streak,
            "missed_days": snapshot.check_in.missed_days,
            "reminder_event": latest.source_event_type,
        }

        if streak > 0:
            rationale = f"You're on a {streak}-day check-in streak. A quick check-in keeps it going."
        else:
            rationale = "A two-minute check-in helps plan a realistic day."

        direct = DirectRecommendationCandidate(
            type=RecommendationType.CHECK_IN_CONSISTENCY_NUDGE,
            context=(
                RecommendationContext.EVENING_CHECK_IN if evening
                else RecommendationContext.MORNING_CHECK_IN
            ),
            target_kind=TargetKind.USER_PROFILE,
            action_kind=ActionKind.CREATE,
            action_payload={"check_in_type": label.capitalize()},
            title=f"Time for your {label} check-in",
            rationale=rationale,
            score=0.8 if streak >= 7 else 0.6,
            action_summary=f"Start {label} check-in",
        )
        return self.triggered(severity, evidence, direct)


class DisengagementPatternRule(DeterministicRule):
    """
    Missed habits, slipping tasks and skipped check-ins piling up.

    The rule can tell something is off but not what to suggest, so it
    always escalates and never proposes a candidate of its own.
    """

    rule_id = "DISENGAGEMENT_PATTERN"
    rule_name = "Disengagement Pattern"
    description = "Detects a cluster of missed habits, rescheduled tasks, and skipped check-ins."
    priority = 5
    default_context = RecommendationContext.DRIFT_ALERT

    def __init__(self, pattern: UrgentPattern = DEFAULT_URGENT_PATTERN):
        self.pattern = pattern

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        if not matches_urgent_pattern(signals, self.pattern):
            return self.not_triggered()

        counts = count_pattern_signals(signals)
        evidence = {
            "missed_habits": counts["HabitMissed"],
            "rescheduled_tasks": counts["TaskRescheduled"],
            "skipped_check_ins": counts["CheckInSkipped"],
            "capacity_utilization": round(snapshot.capacity_utilization, 2),
            "energy_level": snapshot.energy_level,
        }
        return self.triggered(RuleSeverity.HIGH, evidence, requires_escalation=True)
