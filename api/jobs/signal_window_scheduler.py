"""
Signal Window Scheduler

Run every 5 minutes via cron:
  schedule: "*/5 * * * *"
  command: cd api && python -m jobs.signal_window_scheduler

Flow:
1. Find users holding signals whose processing window has closed
2. Queue a pipeline run per user (inline when the queue is unavailable)
3. Return due snoozed recommendations to Active
4. Write a scheduler_heartbeat activity event per processed user
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone

from services.recommendations.service import RecommendationService, build_supabase_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def dispatch_due_windows(service: RecommendationService, users: list[str], use_queue: bool) -> dict:
    """
    Queue or run the pipeline for each user with a closed window.

    Returns counts: users, runs queued, runs completed inline, failures.
    """
    counts = {"users": len(users), "queued": 0, "inline": 0, "failed": 0}
    if not users:
        return counts

    if use_queue and service.enqueue_run is not None:
        for user_id in users:
            job_id = await service.enqueue_run(user_id)
            if job_id:
                counts["queued"] += 1
            else:
                counts["failed"] += 1
        return counts

    outcomes = await asyncio.gather(
        *(service.run_due_window(user_id) for user_id in users),
        return_exceptions=True,
    )
    for user_id, outcome in zip(users, outcomes):
        if isinstance(outcome, BaseException):
            counts["failed"] += 1
            logger.error(f"[SCHEDULER] Run failed for {user_id}: {outcome}")
        else:
            counts["inline"] += 1
    return counts


async def run_signal_window_scheduler():
    """Scheduler entry point."""
    from supabase import create_client
    from services.activity_log import write_activity
    from services.job_queue import enqueue_pipeline_run, is_queue_available

    supabase_url = os.environ.get("SUPABASE_URL")
    supabase_key = os.environ.get("SUPABASE_SERVICE_KEY")

    if not supabase_url or not supabase_key:
        logger.error("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        return

    supabase = create_client(supabase_url, supabase_key)
    use_queue = is_queue_available()
    service = build_supabase_service(supabase, enqueue_run=enqueue_pipeline_run if use_queue else None)

    now = datetime.now(timezone.utc)
    logger.info(f"[SCHEDULER] [{now.isoformat()}] Starting signal window scheduler...")

    try:
        users = await service.aggregator.due_users(now)
        counts = await dispatch_due_windows(service, users, use_queue)
    except Exception as e:
        logger.error(f"[SCHEDULER] Window dispatch failed: {e}")
        users = []
        counts = {"users": 0, "queued": 0, "inline": 0, "failed": 0}

    try:
        woken = await service.wake_snoozed(now)
    except Exception as e:
        logger.error(f"[SCHEDULER] Snooze wake-up failed: {e}")
        woken = 0

    heartbeat_summary = (
        f"Scheduler cycle: {counts['queued'] + counts['inline']}/{counts['users']} runs, "
        f"{woken} snoozed woken"
    )
    heartbeat_metadata = {
        **counts,
        "snoozed_woken": woken,
        "cycle_started_at": now.isoformat(),
        "cycle_completed_at": datetime.now(timezone.utc).isoformat(),
    }
    for user_id in users:
        await write_activity(
            client=supabase,
            user_id=user_id,
            event_type="scheduler_heartbeat",
            summary=heartbeat_summary,
            metadata=heartbeat_metadata,
        )

    logger.info(
        f"[SCHEDULER] Completed: users={counts['users']}, queued={counts['queued']}, "
        f"inline={counts['inline']}, failed={counts['failed']}, snoozed_woken={woken}"
    )


if __name__ == "__main__":
    asyncio.run(run_signal_window_scheduler())
