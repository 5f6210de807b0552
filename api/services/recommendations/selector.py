"""
Tier-N selection.

The escalation controller hands a selector the triggering rule's evidence,
the snapshot, and a pool of candidates it already has (direct and
playbook-derived). The selector returns the candidates it chose plus the
tier it ran at, how long it took, and token usage when it has any.

Implementations are interchangeable. AnthropicTierSelector is the
model-backed one wired in production.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from services.anthropic import DEFAULT_MODEL, chat_completion
from services.recommendations.models import (
    ActionKind,
    DirectRecommendationCandidate,
    RecommendationContext,
    RecommendationType,
    TargetKind,
)
from services.recommendations.snapshot import UserStateSnapshot

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class SelectionResult:
    candidates: list[DirectRecommendationCandidate]
    tier: int
    duration_ms: int
    token_usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    notes: dict[str, Any] = field(default_factory=dict)


class TierSelector(ABC):

    @abstractmethod
    async def select(
        self,
        evidence: dict[str, Any],
        snapshot: UserStateSnapshot,
        candidate_pool: Sequence[DirectRecommendationCandidate],
    ) -> SelectionResult: ...


# =============================================================================
# Model-backed selector
# =============================================================================

SELECTOR_SYSTEM_PROMPT = """You choose which recommendations to show a person managing their goals, habits and tasks.

You receive:
- EVIDENCE: why a deterministic check flagged their situation
- STATE: a summary of their day
- POOL: candidate recommendations already available (may be empty)

Pick at most {max_candidates} recommendations. Prefer POOL entries when they fit; write a new one only when none do.

Respond with JSON only:
{{
  "recommendations": [
    {{
      "pool_index": 0,
      "type": "<one of {types}>",
      "context": "<one of {contexts}>",
      "target_kind": "<one of {target_kinds}>",
      "target_entity_id": "<id from STATE or null>",
      "target_entity_title": "<title or null>",
      "action_kind": "<one of {action_kinds}>",
      "title": "<short imperative, under 80 chars>",
      "rationale": "<one or two sentences grounded in EVIDENCE>",
      "score": 0.0
    }}
  ]
}}

Set "pool_index" to the POOL position when reusing an entry (other fields may then be omitted), otherwise null."""


def _summarize_snapshot(snapshot: UserStateSnapshot) -> dict:
    return {
        "local_time": snapshot.local_now.strftime("%A %H:%M"),
        "energy_level": snapshot.energy_level,
        "capacity_utilization": round(snapshot.capacity_utilization, 2),
        "season_intensity": snapshot.season_intensity,
        "tasks_today": [
            {"id": t.id, "title": t.title, "minutes": t.estimated_minutes, "energy": t.energy_cost}
            for t in snapshot.tasks_today[:15]
        ],
        "habits": [
            {"id": h.id, "title": h.title, "streak": h.current_streak,
             "adherence_7d": h.adherence_7d, "current_mode": h.mode}
            for h in snapshot.habits[:15]
        ],
        "goals": [
            {"id": g.id, "title": g.title, "priority": g.priority, "progress": g.progress}
            for g in snapshot.goals[:10]
        ],
        "check_in_streak": snapshot.check_in.streak_days,
    }


def _candidate_to_prompt(candidate: DirectRecommendationCandidate) -> dict:
    return {
        "type": candidate.type.value,
        "context": candidate.context.value,
        "target_kind": candidate.target_kind.value,
        "target_entity_id": candidate.target_entity_id,
        "action_kind": candidate.action_kind.value,
        "title": candidate.title,
        "score": candidate.score,
    }


def parse_selector_response(
    raw_response: str,
    candidate_pool: Sequence[DirectRecommendationCandidate],
    max_candidates: int,
) -> list[DirectRecommendationCandidate]:
    """Parse the model's JSON. Malformed items are skipped; a malformed document yields []."""
    text = raw_response.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1] == "```" else lines[1:])

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"[SELECTOR] Failed to parse selector response: {e}")
        return []

    chosen = []
    for item in data.get("recommendations", []) if isinstance(data, dict) else []:
        if not isinstance(item, dict):
            continue
        pool_index = item.get("pool_index")
        if isinstance(pool_index, int) and 0 <= pool_index < len(candidate_pool):
            chosen.append(candidate_pool[pool_index])
        else:
            try:
                chosen.append(DirectRecommendationCandidate(
                    type=RecommendationType(item["type"]),
                    context=RecommendationContext(item["context"]),
                    target_kind=TargetKind(item["target_kind"]),
                    target_entity_id=item.get("target_entity_id"),
                    target_entity_title=item.get("target_entity_title"),
                    action_kind=ActionKind(item["action_kind"]),
                    title=str(item["title"])[:200],
                    rationale=str(item["rationale"]),
                    score=min(max(float(item.get("score", 0.5)), 0.0), 1.0),
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[SELECTOR] Skipping invalid candidate: {e}")
                continue
        if len(chosen) >= max_candidates:
            break

    return [c for c in chosen if c.title.strip() and c.rationale.strip()]


class AnthropicTierSelector(TierSelector):
    """Tier 2: asks Claude to pick or write the recommendation."""

    provider = "anthropic"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        max_candidates: int = 3,
        max_tokens: int = 1024,
        tier: int = 2,
        client=None,
    ):
        self.model = model
        self.max_candidates = max_candidates
        self.max_tokens = max_tokens
        self.tier = tier
        self.client = client

    async def select(
        self,
        evidence: dict[str, Any],
        snapshot: UserStateSnapshot,
        candidate_pool: Sequence[DirectRecommendationCandidate],
    ) -> SelectionResult:
        started = time.monotonic()

        system = SELECTOR_SYSTEM_PROMPT.format(
            max_candidates=self.max_candidates,
            types=", ".join(t.value for t in RecommendationType),
            contexts=", ".join(c.value for c in RecommendationContext),
            target_kinds=", ".join(k.value for k in TargetKind),
            action_kinds=", ".join(a.value for a in ActionKind),
        )
        user_message = (
            f"EVIDENCE:\n{json.dumps(evidence, default=str)}\n\n"
            f"STATE:\n{json.dumps(_summarize_snapshot(snapshot), default=str)}\n\n"
            f"POOL:\n{json.dumps([_candidate_to_prompt(c) for c in candidate_pool])}"
        )

        completion = await chat_completion(
            messages=[{"role": "user", "content": user_message}],
            system=system,
            model=self.model,
            max_tokens=self.max_tokens,
            client=self.client,
        )
        candidates = parse_selector_response(completion.text, candidate_pool, self.max_candidates)
        duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            f"[SELECTOR] {snapshot.user_id}: {len(candidates)} candidate(s) in {duration_ms}ms, "
            f"{completion.total_tokens} tokens"
        )

        return SelectionResult(
            candidates=candidates,
            tier=self.tier,
            duration_ms=duration_ms,
            token_usage=TokenUsage(
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
            ),
            model=completion.model,
            provider=self.provider,
        )
