"""
Deterministic Rule Engine (tier 0)

Evaluates every enabled rule against the snapshot. A rule that raises is
recorded as a non-triggered result carrying the error in its evidence,
and the remaining rules still run.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from services.recommendations.models import RuleResult, RuleSeverity, SignalEntry
from services.recommendations.rules.base import DeterministicRule
from services.recommendations.rules.check_ins import CheckInMissingRule, DisengagementPatternRule
from services.recommendations.rules.goals import DeadlineProximityRule, GoalScoreboardIncompleteRule
from services.recommendations.rules.habits import HabitAdherenceThresholdRule, HabitStreakBreakRiskRule
from services.recommendations.rules.tasks import (
    TaskCapacityOverloadRule,
    TaskEnergyMismatchRule,
    TaskOverdueRule,
)
from services.recommendations.snapshot import UserStateSnapshot

logger = logging.getLogger(__name__)


RULE_REGISTRY: dict[str, type[DeterministicRule]] = {
    cls.rule_id: cls
    for cls in (
        TaskOverdueRule,
        TaskCapacityOverloadRule,
        TaskEnergyMismatchRule,
        HabitAdherenceThresholdRule,
        HabitStreakBreakRiskRule,
        CheckInMissingRule,
        DeadlineProximityRule,
        GoalScoreboardIncompleteRule,
        DisengagementPatternRule,
    )
}


def build_rules(disabled: Iterable[str] = ()) -> list[DeterministicRule]:
    """Instantiate every registered rule, switching off the ids in `disabled`."""
    disabled = set(disabled)
    rules = []
    for rule_id, cls in RULE_REGISTRY.items():
        rule = cls()
        if rule_id in disabled:
            rule.enabled = False
        rules.append(rule)
    return rules


class RuleEngine:

    def __init__(self, rules: Optional[Sequence[DeterministicRule]] = None):
        self._rules = list(rules) if rules is not None else build_rules()

    @property
    def rules(self) -> list[DeterministicRule]:
        return [r for r in self._rules if r.enabled]

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[SignalEntry],
    ) -> list[RuleResult]:
        results = []
        for rule in self.rules:
            try:
                result = rule.evaluate(snapshot, signals)
            except Exception as e:
                logger.warning(
                    f"[RULES] Rule {rule.rule_id} failed for {snapshot.user_id}: {e}"
                )
                result = RuleResult(
                    rule_id=rule.rule_id,
                    rule_name=rule.rule_name,
                    triggered=False,
                    severity=RuleSeverity.NONE,
                    evidence={"error": str(e)},
                    priority=rule.priority,
                )
            results.append(result)

        triggered = [r.rule_id for r in results if r.triggered]
        logger.info(
            f"[RULES] {snapshot.user_id}: {len(triggered)}/{len(results)} rules triggered"
            + (f" ({', '.join(triggered)})" if triggered else "")
        )
        return results
