"""
Anthropic client for Claude API calls

Used by the model-backed recommendation selector. Returns usage
accounting alongside the text so traces can record token spend.
"""

import os
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"


@dataclass
class CompletionResult:
    """Text plus usage for a single non-streaming completion."""
    text: str
    model: str
    stop_reason: Optional[str]
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@lru_cache()
def get_anthropic_client() -> AsyncAnthropic:
    """Get Anthropic client with API key from environment."""
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise ValueError("ANTHROPIC_API_KEY must be set")
    return AsyncAnthropic(api_key=api_key)


async def chat_completion(
    messages: list[dict],
    system: str,
    model: str = DEFAULT_MODEL,
    max_tokens: int = 1024,
    client: Optional[AsyncAnthropic] = None,
) -> CompletionResult:
    """
    Non-streaming chat completion.

    Args:
        messages: List of {"role": "user"|"assistant", "content": str}
        system: System prompt
        model: Model ID
        max_tokens: Maximum response tokens
        client: Optional client override (tests pass a mock)

    Returns:
        CompletionResult with concatenated text and token usage
    """
    client = client or get_anthropic_client()

    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=messages,
    )

    text = "".join(
        block.text for block in response.content if getattr(block, "type", None) == "text"
    )
    usage = getattr(response, "usage", None)

    return CompletionResult(
        text=text,
        model=getattr(response, "model", None) or model,
        stop_reason=getattr(response, "stop_reason", None),
        input_tokens=getattr(usage, "input_tokens", 0) or 0,
        output_tokens=getattr(usage, "output_tokens", 0) or 0,
    )
