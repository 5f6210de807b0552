"""
Domain errors surfaced to callers of the recommendation service.

Only lifecycle violations and lookups reach routes. Classification gaps,
rule failures and selector failures are absorbed inside the pipeline.
"""

from __future__ import annotations

from typing import Optional


class RecommendationError(Exception):
    """Base class for recommendation domain errors."""


class RecommendationNotFound(RecommendationError):
    def __init__(self, recommendation_id: str):
        super().__init__(f"Recommendation {recommendation_id} not found")
        self.recommendation_id = recommendation_id


class LifecycleError(RecommendationError):
    """An invalid status transition was requested."""

    def __init__(self, recommendation_id: str, current: str, attempted: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot {attempted} recommendation {recommendation_id} in status {current}"
        )
        self.recommendation_id = recommendation_id
        self.current = current
        self.attempted = attempted


class AlreadyExecutedError(LifecycleError):
    def __init__(self, recommendation_id: str):
        super().__init__(
            recommendation_id,
            current="Executed",
            attempted="execute",
            message=f"Recommendation {recommendation_id} was already executed",
        )


class ConcurrentModificationError(RecommendationError):
    """A compare-and-set write found the record in a different state than expected."""


class PipelineTimeoutError(RecommendationError):
    """A pipeline run exceeded its overall budget and was cancelled without writing."""

    def __init__(self, user_id: str, timeout_seconds: float):
        super().__init__(f"Pipeline run for {user_id} exceeded {timeout_seconds}s")
        self.user_id = user_id
        self.timeout_seconds = timeout_seconds
