"""
Goal rules.
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


class DeadlineProximityRule(DeterministicRule):
    rule_id = "DEADLINE_PROXIMITY"
    rule_name = "Deadline Proximity"
    description = "Detects goals due within 48 hours that are less than half done."
    priority = 15

    window = timedelta(hours=48)
    critical_window = timedelta(hours=24)
    progress_threshold = 0.5

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        now = snapshot.as_of
        at_risk = [
            g for g in snapshot.goals
            if g.deadline is not None
            and now <= g.deadline <= now + self.window
            and g.progress < self.progress_threshold
        ]
        if not at_risk:
            return self.not_triggered()

        goal = min(at_risk, key=lambda g: (g.deadline, g.priority))
        remaining = goal.deadline - now
        severity = RuleSeverity.CRITICAL if remaining <= self.critical_window else RuleSeverity.HIGH
        hours_left = int(remaining.total_seconds() // 3600)

        evidence = {
            "goal_id": goal.id,
            "goal_title": goal.title,
            "hours_remaining": hours_left,
            "progress": goal.progress,
            "at_risk_goal_count": len(at_risk),
        }

        if goal.next_task_id:
            direct = DirectRecommendationCandidate(
                type=RecommendationType.NEXT_BEST_ACTION,
                context=RecommendationContext.DRIFT_ALERT,
                target_kind=TargetKind.TASK,
                target_entity_id=goal.next_task_id,
                target_entity_title=goal.next_task_title,
                action_kind=ActionKind.EXECUTE_TODAY,
                title=f'Work on "{goal.next_task_title or goal.title}" today',
                rationale=(
                    f'"{goal.title}" is due in {hours_left} hours and is '
                    f"{round(goal.progress * 100)}% done. This is its next step."
                ),
                score=0.95,
                action_summary="Schedule for today",
            )
        else:
            direct = DirectRecommendationCandidate(
                type=RecommendationType.NEXT_BEST_ACTION,
                context=RecommendationContext.DRIFT_ALERT,
                target_kind=TargetKind.GOAL,
                target_entity_id=goal.id,
                target_entity_title=goal.title,
                action_kind=ActionKind.REFLECT_PROMPT,
                title=f'"{goal.title}" is due in {hours_left} hours',
                rationale=(
                    f"It is {round(goal.progress * 100)}% done and has no next task. "
                    f"Decide what gets done before the deadline, or move it."
                ),
                score=0.95,
                action_summary="Plan the final push",
            )
        return self.triggered(severity, evidence, direct)


class GoalScoreboardIncompleteRule(DeterministicRule):
    """
    Active goals missing lead or lag metrics.

    Several top-priority goals without a scoreboard is a planning problem
    rather than a single fix, so that case escalates and keeps the direct
    candidate only as a fallback.
    """

    rule_id = "GOAL_SCOREBOARD_INCOMPLETE"
    rule_name = "Incomplete Goal Scoreboard"
    description = "Detects active goals missing lead or lag metrics needed for effective tracking."
    priority = 60
    default_context = RecommendationContext.PROACTIVE_CHECK

    escalate_at_p1_count = 2

    def evaluate(self, snapshot: UserStateSnapshot, signals: Sequence[SignalEntry]) -> RuleResult:
        incomplete = [
            g for g in snapshot.goals
            if g.status == "Active" and not (g.has_lead_metric and g.has_lag_metric)
        ]
        if not incomplete:
            return self.not_triggered()

        goal = min(incomplete, key=lambda g: (g.priority, g.deadline is None, g.deadline or snapshot.as_of))
        missing = []
        if not goal.has_lag_metric:
            missing.append("lag (outcome)")
        if not goal.has_lead_metric:
            missing.append("lead (predictor)")

        count = len(incomplete)
        p1_count = sum(1 for g in incomplete if g.priority == 1)

        if goal.priority == 1:
            severity = RuleSeverity.CRITICAL if count >= 3 else RuleSeverity.HIGH
        elif goal.priority == 2:
            severity = RuleSeverity.HIGH if count >= 3 else RuleSeverity.MEDIUM
        else:
            severity = RuleSeverity.MEDIUM if count >= 3 else RuleSeverity.LOW

        priority_bonus = {1: 0.2, 2: 0.1}.get(goal.priority, 0.0)
        volume_bonus = min(count - 1, 3) * 0.05
        score = round(min(0.5 + priority_bonus + volume_bonus, 0.85), 2)

        evidence = {
            "goal_id": goal.id,
            "goal_title": goal.title,
            "goal_priority": goal.priority,
            "missing_metrics": missing,
            "incomplete_goal_count": count,
            "p1_incomplete_count": p1_count,
        }
        direct = DirectRecommendationCandidate(
            type=RecommendationType.GOAL_SCOREBOARD,
            context=RecommendationContext.PROACTIVE_CHECK,
            target_kind=TargetKind.GOAL,
            target_entity_id=goal.id,
            target_entity_title=goal.title,
            action_kind=ActionKind.UPDATE,
            action_payload={"missing_metrics": [m.split(" ")[0] for m in missing]},
            title=f'Complete the scoreboard for "{goal.title}"',
            rationale=(
                f"This goal is missing {' and '.join(missing)} metrics. Lead metrics "
                f"predict success, lag metrics measure it. You need both to catch drift early."
            ),
            score=score,
            action_summary="Add missing metrics",
        )
        return self.triggered(
            severity,
            evidence,
            direct,
            requires_escalation=p1_count >= self.escalate_at_p1_count,
        )
