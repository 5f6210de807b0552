"""
Deterministic rule contract.

A rule inspects one snapshot plus the run's pending signals and returns a
RuleResult. Rules never read each other's results. `priority` only breaks
ties when two rules propose the same target (lower wins).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from services.recommendations.models import (
    DirectRecommendationCandidate,
    RecommendationContext,
    RuleResult,
    RuleSeverity,
    SignalEntry,
)
from services.recommendations.snapshot import UserStateSnapshot


class DeterministicRule(ABC):
    rule_id: str = ""
    rule_name: str = ""
    description: str = ""
    priority: int = 100
    enabled: bool = True
    default_context: RecommendationContext = RecommendationContext.DRIFT_ALERT

    @abstractmethod
    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[SignalEntry],
    ) -> RuleResult: ...

    def not_triggered(self) -> RuleResult:
        return RuleResult(
            rule_id=self.rule_id,
            rule_name=self.rule_name,
            triggered=False,
            priority=self.priority,
        )

    def triggered(
        self,
        severity: RuleSeverity,
        evidence: dict[str, Any],
        direct: Optional[DirectRecommendationCandidate] = None,
        requires_escalation: bool = False,
    ) -> RuleResult:
        if not evidence:
            raise ValueError(f"Rule {self.rule_id} triggered without evidence")
        if severity == RuleSeverity.NONE:
            raise ValueError(f"Rule {self.rule_id} triggered without a severity")
        return RuleResult(
            rule_id=self.rule_id,
            rule_name=self.rule_name,
            triggered=True,
            severity=severity,
            evidence=evidence,
            direct_recommendation=direct,
            requires_escalation=requires_escalation,
            priority=self.priority,
            context=direct.context if direct else self.default_context,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.rule_id}>"


def signals_of(signals: Sequence[SignalEntry], *event_types: str) -> list[SignalEntry]:
    wanted = set(event_types)
    return [s for s in signals if s.source_event_type in wanted]
