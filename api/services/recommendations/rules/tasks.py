"""
Task rules: overdue work, over-planned days, and energy mismatches.
"""

from __future__ import annotations

from datetime import timedelta
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
from services.recommendations.rules.base import DeterministicRule
from services.recommendations.snapshot import UserStateSnapshot


class TaskOverdueRule(DeterministicRule):
    """Tasks past their due date. Chronically rescheduled ones get an archive suggestion."""

    rule_id = "TASK_OVERDUE"
    rule_name = "Overdue Task Detection"
    description = "Detects tasks past their due date that need attention or archival."
    priority = 40

    reschedule_warning = 2
    overdue_days_critical = 7

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        today = snapshot.local_date
        overdue = [
            (task, (today - task.due_on).days)
            for task in snapshot.tasks
            if task.is_open and task.due_on is not None and task.due_on < today
        ]
        if not overdue:
            return self.not_triggered()

        overdue.sort(key=lambda item: (item[1], item[0].reschedule_count), reverse=True)
        task, days_overdue = overdue[0]
        rescheduled = task.reschedule_count

        if days_overdue >= self.overdue_days_critical and rescheduled >= self.reschedule_warning:
            severity = RuleSeverity.CRITICAL
        elif days_overdue >= self.overdue_days_critical or rescheduled >= self.reschedule_warning:
            severity = RuleSeverity.HIGH
        elif days_overdue >= 3:
            severity = RuleSeverity.MEDIUM
        else:
            severity = RuleSeverity.LOW

        evidence = {
            "overdue_task_count": len(overdue),
            "most_overdue_id": task.id,
            "most_overdue_title": task.title,
            "days_overdue": days_overdue,
            "reschedule_count": rescheduled,
            "original_due_on": task.due_on.isoformat(),
            "total_overdue_minutes": sum(t.estimated_minutes for t, _ in overdue),
        }

        if rescheduled >= self.reschedule_warning and days_overdue >= self.overdue_days_critical:
            direct = DirectRecommendationCandidate(
                type=RecommendationType.TASK_ARCHIVE,
                context=RecommendationContext.DRIFT_ALERT,
                target_kind=TargetKind.TASK,
                target_entity_id=task.id,
                target_entity_title=task.title,
                action_kind=ActionKind.REMOVE,
                title=f'Consider archiving "{task.title}"',
                rationale=(
                    f"This task is {days_overdue} days overdue and has been rescheduled "
                    f"{rescheduled} times. If it no longer matters, archiving it clears "
                    f"the list. If it does, look at why it keeps slipping."
                ),
                score=0.7,
                action_summary="Archive or recommit to task",
            )
        else:
            direct = DirectRecommendationCandidate(
                type=RecommendationType.SCHEDULE_ADJUSTMENT,
                context=RecommendationContext.DRIFT_ALERT,
                target_kind=TargetKind.TASK,
                target_entity_id=task.id,
                target_entity_title=task.title,
                action_kind=ActionKind.UPDATE,
                action_payload={"due_on": today.isoformat()},
                title=f'"{task.title}" is {days_overdue} days overdue',
                rationale=(
                    f"This task has been rescheduled {rescheduled} time(s). Consider breaking "
                    f"it down or addressing what is blocking it."
                    if rescheduled > 0
                    else "Set a new due date or make time today to finish it."
                ),
                score=0.75,
                action_summary="Reschedule or break down task",
            )

        return self.triggered(severity, evidence, direct)


class TaskCapacityOverloadRule(DeterministicRule):
    rule_id = "TASK_CAPACITY_OVERLOAD"
    rule_name = "Capacity Overload Detection"
    description = "Detects when planned work for today exceeds available capacity by more than 20%."
    priority = 10

    overload_threshold = 1.2

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        capacity = snapshot.daily_capacity_minutes
        if capacity <= 0:
            return self.not_triggered()

        planned = snapshot.planned_minutes
        if planned <= capacity * self.overload_threshold:
            return self.not_triggered()

        overload_pct = (planned - capacity) / capacity * 100
        if overload_pct > 50:
            severity, score = RuleSeverity.CRITICAL, 0.95
        elif overload_pct > 35:
            severity, score = RuleSeverity.HIGH, 0.85
        else:
            severity, score = RuleSeverity.MEDIUM, 0.75

        excess = planned - capacity
        evidence = {
            "planned_minutes": planned,
            "capacity_minutes": capacity,
            "overload_percentage": round(overload_pct, 1),
            "excess_minutes": excess,
            "task_count": len(snapshot.tasks_today),
        }

        direct = DirectRecommendationCandidate(
            type=RecommendationType.PLAN_REALISM_ADJUSTMENT,
            context=RecommendationContext.DRIFT_ALERT,
            target_kind=TargetKind.USER_PROFILE,
            action_kind=ActionKind.REFLECT_PROMPT,
            title=f"Today's plan is {round(overload_pct)}% over capacity",
            rationale=(
                f"You have {planned} minutes of tasks scheduled but only {capacity} minutes "
                f"available. Move at least {excess} minutes of work to another day."
            ),
            score=score,
            action_summary="Trim today's plan",
        )
        return self.triggered(severity, evidence, direct)


class TaskEnergyMismatchRule(DeterministicRule):
    """Low reported energy with demanding tasks scheduled today."""

    rule_id = "TASK_ENERGY_MISMATCH"
    rule_name = "Energy Mismatch Detection"
    description = "Detects demanding tasks scheduled on a low-energy day."
    priority = 30
    default_context = RecommendationContext.MORNING_CHECK_IN

    low_energy_max = 2
    demanding_energy_min = 4

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        energy = snapshot.check_in.energy_level
        if energy is None or energy > self.low_energy_max:
            return self.not_triggered()

        demanding = sorted(
            (t for t in snapshot.tasks_today if t.energy_cost >= self.demanding_energy_min),
            key=lambda t: (-t.energy_cost, -t.estimated_minutes),
        )
        if not demanding:
            return self.not_triggered()

        task = demanding[0]
        tomorrow = snapshot.local_date + timedelta(days=1)
        severity = RuleSeverity.HIGH if len(demanding) >= 3 else RuleSeverity.MEDIUM

        evidence = {
            "energy_level": energy,
            "demanding_task_count": len(demanding),
            "demanding_task_ids": [t.id for t in demanding],
            "highest_energy_cost": task.energy_cost,
        }
        direct = DirectRecommendationCandidate(
            type=RecommendationType.SCHEDULE_ADJUSTMENT,
            context=RecommendationContext.MORNING_CHECK_IN,
            target_kind=TargetKind.TASK,
            target_entity_id=task.id,
            target_entity_title=task.title,
            action_kind=ActionKind.DEFER,
            action_payload={"scheduled_on": tomorrow.isoformat()},
            title=f'Move "{task.title}" to tomorrow',
            rationale=(
                f"You reported energy {energy}/5 this morning and this task needs "
                f"{task.energy_cost}/5. Deferring it protects the rest of your day."
            ),
            score=0.8,
            action_summary="Defer to tomorrow",
        )
        return self.triggered(severity, evidence, direct)
