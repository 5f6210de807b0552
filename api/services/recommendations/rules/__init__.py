"""
Deterministic rules (tier 0).

Each rule is an independent DeterministicRule; RULE_REGISTRY lists the
defaults the engine runs.
"""

from .base import DeterministicRule
from .engine import RULE_REGISTRY, RuleEngine, build_rules

__all__ = [
    "DeterministicRule",
    "RULE_REGISTRY",
    "RuleEngine",
    "build_rules",
]
