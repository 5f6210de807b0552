"""
Pipeline settings, read from the environment once at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from services.anthropic import DEFAULT_MODEL


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


@dataclass(frozen=True)
class PipelineSettings:
    run_timeout_seconds: float = 20.0
    selector_timeout_seconds: float = 5.0
    selector_model: str = DEFAULT_MODEL
    max_active_per_context: int = 5
    playbook_min_attempts: int = 5
    playbook_min_success_rate: float = 0.6
    stale_recommendation_hours: int = 24
    signal_lease_seconds: int = 120
    disabled_rules: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        disabled = os.environ.get("RECOMMENDATION_DISABLED_RULES", "")
        return cls(
            run_timeout_seconds=_env_float("PIPELINE_RUN_TIMEOUT_SECONDS", 20.0),
            selector_timeout_seconds=_env_float("SELECTOR_TIMEOUT_SECONDS", 5.0),
            selector_model=os.environ.get("RECOMMENDATION_SELECTOR_MODEL", DEFAULT_MODEL),
            max_active_per_context=_env_int("MAX_ACTIVE_PER_CONTEXT", 5),
            playbook_min_attempts=_env_int("PLAYBOOK_MIN_ATTEMPTS", 5),
            playbook_min_success_rate=_env_float("PLAYBOOK_MIN_SUCCESS_RATE", 0.6),
            stale_recommendation_hours=_env_int("STALE_RECOMMENDATION_HOURS", 24),
            signal_lease_seconds=_env_int("SIGNAL_LEASE_SECONDS", 120),
            disabled_rules=frozenset(r.strip() for r in disabled.split(",") if r.strip()),
        )
