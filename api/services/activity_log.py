"""
Activity Log

Append-only record of what happened to a user's recommendations.

Table: activity_log

Write points (all non-fatal, callers continue regardless of log failure):
  - lifecycle.py (via recommendation_listener): 'recommendation_accepted',
    'recommendation_dismissed', 'recommendation_snoozed',
    'recommendation_executed'
  - jobs/signal_window_scheduler.py: 'scheduler_heartbeat' on each cycle
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

VALID_EVENT_TYPES = frozenset({
    "recommendation_accepted",
    "recommendation_dismissed",
    "recommendation_snoozed",
    "recommendation_executed",
    "scheduler_heartbeat",
})


async def write_activity(
    client,
    user_id: str,
    event_type: str,
    summary: str,
    event_ref: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Optional[str]:
    """
    Append an event to activity_log.

    Args:
        client: Supabase service-role client
        user_id: The user this event belongs to
        event_type: One of VALID_EVENT_TYPES
        summary: Human-readable one-liner
        event_ref: id of the related recommendation, optional
        metadata: Structured detail dict, optional

    Returns:
        activity_log row id, or None on error
    """
    if event_type not in VALID_EVENT_TYPES:
        logger.warning(f"[activity_log] Unknown event_type ignored: {event_type!r}")
        return None

    row: dict = {
        "user_id": user_id,
        "event_type": event_type,
        "summary": summary,
    }
    if event_ref is not None:
        row["event_ref"] = str(event_ref)
    if metadata is not None:
        row["metadata"] = metadata

    try:
        result = client.table("activity_log").insert(row).execute()
        inserted = result.data[0] if result.data else {}
        return inserted.get("id")
    except Exception as e:
        logger.error(f"[activity_log] write failed (event_type={event_type}): {e}")
        return None


def recommendation_listener(client):
    """
    Lifecycle listener that mirrors transitions into activity_log.

    Usage:
        LifecycleManager(store, listener=recommendation_listener(client))
    """
    async def _listener(event_type: str, rec, metadata: dict) -> None:
        verb = event_type.replace("recommendation_", "")
        await write_activity(
            client,
            user_id=rec.user_id,
            event_type=event_type,
            summary=f"{verb.capitalize()}: {rec.title}"[:200],
            event_ref=rec.id,
            metadata={
                "type": rec.type.value,
                "context": rec.context.value,
                **{k: v for k, v in metadata.items() if v is not None},
            },
        )

    return _listener
