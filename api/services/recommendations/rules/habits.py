"""
Habit rules.
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
from services.recommendations.snapshot import UserStateSnapshot

MINIMUM_MODE = "Minimum"


class HabitAdherenceThresholdRule(DeterministicRule):
    """
    Habits whose 7-day adherence fell below half.

    Suggests stepping down to the minimum version. When the habit is
    already at its minimum there is nothing smaller to offer, so the user
    is asked to reflect instead.
    """

    rule_id = "HABIT_ADHERENCE_THRESHOLD"
    rule_name = "Habit Adherence Threshold"
    description = "Detects habits with 7-day adherence below 50%."
    priority = 20

    threshold = 0.5
    severe_threshold = 0.25

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        struggling = sorted(
            (h for h in snapshot.habits if h.adherence_7d < self.threshold),
            key=lambda h: h.adherence_7d,
        )
        if not struggling:
            return self.not_triggered()

        habit = struggling[0]
        severity = RuleSeverity.HIGH if habit.adherence_7d <= self.severe_threshold else RuleSeverity.MEDIUM
        adherence_pct = round(habit.adherence_7d * 100)
        evidence = {
            "habit_id": habit.id,
            "habit_title": habit.title,
            "adherence_7d": habit.adherence_7d,
            "current_mode": habit.mode,
            "struggling_habit_count": len(struggling),
        }

        if habit.mode != MINIMUM_MODE:
            direct = DirectRecommendationCandidate(
                type=RecommendationType.HABIT_MODE_SUGGESTION,
                context=RecommendationContext.DRIFT_ALERT,
                target_kind=TargetKind.HABIT,
                target_entity_id=habit.id,
                target_entity_title=habit.title,
                action_kind=ActionKind.UPDATE,
                action_payload={"current_mode": MINIMUM_MODE},
                title=f'Scale "{habit.title}" down to its minimum version',
                rationale=(
                    f"You completed this habit {adherence_pct}% of the time this week. "
                    f"A smaller version you can do every day keeps the chain alive."
                ),
                score=0.85,
                action_summary="Switch to minimum mode",
            )
        else:
            direct = DirectRecommendationCandidate(
                type=RecommendationType.HABIT_MODE_SUGGESTION,
                context=RecommendationContext.DRIFT_ALERT,
                target_kind=TargetKind.HABIT,
                target_entity_id=habit.id,
                target_entity_title=habit.title,
                action_kind=ActionKind.REFLECT_PROMPT,
                title=f'What is getting in the way of "{habit.title}"?',
                rationale=(
                    f"Even the minimum version landed only {adherence_pct}% of the time "
                    f"this week. Worth checking whether the cue or the timing still fits."
                ),
                score=0.7,
                action_summary="Reflect on the habit",
            )
        return self.triggered(severity, evidence, direct)


class HabitStreakBreakRiskRule(DeterministicRule):
    rule_id = "HABIT_STREAK_BREAK_RISK"
    rule_name = "Habit Streak Break Detection"
    description = "Detects habits with valuable streaks that are at risk of breaking today."
    priority = 25

    min_streak = 3
    high_value_streak = 7
    critical_streak = 21
    evening_hour = 17

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        if snapshot.local_now.hour < self.evening_hour:
            return self.not_triggered()

        completed_ids = {
            s.payload.get("habit_id") for s in signals_of(signals, "HabitCompleted")
        }
        at_risk = [
            h for h in snapshot.habits
            if h.due_today
            and not h.completed_today
            and h.current_streak >= self.min_streak
            and h.id not in completed_ids
        ]
        if not at_risk:
            return self.not_triggered()

        habit = max(at_risk, key=lambda h: h.current_streak)
        if habit.current_streak >= self.critical_streak:
            severity = RuleSeverity.CRITICAL
        elif habit.current_streak >= self.high_value_streak:
            severity = RuleSeverity.HIGH
        else:
            severity = RuleSeverity.MEDIUM

        evidence = {
            "habit_id": habit.id,
            "habit_title": habit.title,
            "current_streak": habit.current_streak,
            "at_risk_count": len(at_risk),
        }
        direct = DirectRecommendationCandidate(
            type=RecommendationType.NEXT_BEST_ACTION,
            context=RecommendationContext.DRIFT_ALERT,
            target_kind=TargetKind.HABIT,
            target_entity_id=habit.id,
            target_entity_title=habit.title,
            action_kind=ActionKind.EXECUTE_TODAY,
            title=f'Don\'t break your {habit.current_streak}-day streak on "{habit.title}"',
            rationale=(
                f"You've kept this habit for {habit.current_streak} days in a row. "
                f"Missing today resets it. The minimum version counts."
            ),
            score=min(0.5 + habit.current_streak * 0.02, 0.95),
            action_summary="Complete today",
        )
        return self.triggered(severity, evidence, direct)
