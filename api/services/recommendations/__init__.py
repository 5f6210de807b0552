"""
Recommendation Decision Pipeline

Turns domain events into ranked, deduplicated recommendations:

- SignalClassifier / WindowAggregator: classify events, buffer them per user
- RuleEngine: deterministic tier-0 rules over a UserStateSnapshot
- EscalationController: playbook lookup (tier 1) and model selection (tier N)
- LifecycleManager: Active/Accepted/Dismissed/Snoozed/Expired/Executed
- Executor: server-side effects or client form pre-fill
- PipelineRunner: per-user serialized, timeout-bounded, all-or-nothing runs

RecommendationService is the entry point for routes and workers.
"""

from .errors import (
    AlreadyExecutedError,
    ConcurrentModificationError,
    LifecycleError,
    PipelineTimeoutError,
    RecommendationError,
    RecommendationNotFound,
)
from .service import RecommendationService, build_recommendation_service, get_recommendation_service

__all__ = [
    "AlreadyExecutedError",
    "ConcurrentModificationError",
    "LifecycleError",
    "PipelineTimeoutError",
    "RecommendationError",
    "RecommendationNotFound",
    "RecommendationService",
    "build_recommendation_service",
    "get_recommendation_service",
]
