"""
Recommendation Pipeline Worker

Worker entry point for background pipeline runs.
Called by RQ when jobs are dequeued.

This module runs in a separate worker process, not the API server.
It uses the service role key for database access.

Usage:
    rq worker recommendations --url $REDIS_URL

    # The worker picks up jobs enqueued by job_queue.enqueue_pipeline_run
"""

import asyncio
import logging
import os
from typing import Optional

from supabase import create_client

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def run_pipeline(
    user_id: str,
    context: Optional[str] = None,
    force: bool = False,
    supabase_url: Optional[str] = None,
    supabase_key: Optional[str] = None,
) -> dict:
    """
    RQ entry point: run the pipeline for one user.

    Args:
        user_id: User whose signals should be processed
        context: Optional RecommendationContext value for a forced run
        force: Flush all pending signals instead of only closed windows
        supabase_url: Supabase URL (uses env var if not provided)
        supabase_key: Service role key (uses env var if not provided)

    Returns:
        Run summary dict
    """
    logger.info(f"[RECOMMENDATION_WORKER] Starting run: user={user_id}, force={force}")

    result = asyncio.run(_run_pipeline_async(
        user_id=user_id,
        context=context,
        force=force,
        supabase_url=supabase_url or os.environ.get("SUPABASE_URL"),
        supabase_key=supabase_key or os.environ.get("SUPABASE_SERVICE_KEY"),
    ))

    logger.info(f"[RECOMMENDATION_WORKER] Completed: user={user_id}, success={result.get('success')}")
    return result


async def _run_pipeline_async(
    user_id: str,
    context: Optional[str],
    force: bool,
    supabase_url: str,
    supabase_key: str,
) -> dict:
    from services.recommendations.errors import PipelineTimeoutError
    from services.recommendations.models import RecommendationContext
    from services.recommendations.service import build_supabase_service

    if not supabase_url or not supabase_key:
        return {"success": False, "user_id": user_id, "error": "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"}

    try:
        run_context = RecommendationContext(context) if context else None
    except ValueError:
        logger.warning(f"[RECOMMENDATION_WORKER] Unknown context '{context}', ignoring")
        run_context = None

    service = build_supabase_service(create_client(supabase_url, supabase_key))

    try:
        if force:
            run = await service.generate(user_id, run_context)
        else:
            run = await service.run_due_window(user_id)
    except PipelineTimeoutError as e:
        # Raised again so RQ retries; the signals were released.
        logger.error(f"[RECOMMENDATION_WORKER] {e}")
        raise

    return {"success": True, **run.to_dict()}
