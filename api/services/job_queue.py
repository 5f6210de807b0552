"""
Job Queue Service

Redis-backed queue for recommendation pipeline runs, using RQ.

Architecture:
- An Immediate signal (or a closed window found by the scheduler) enqueues
  a run for one user
- Worker processes pick the job up and run the pipeline with the service key
- The store is the source of truth; a failed job leaves its signals leased
  only until the lease lapses
- RQ handles retries

Usage:
    from services.job_queue import enqueue_pipeline_run, get_queue_status

    job_id = await enqueue_pipeline_run(user_id, context="DriftAlert")
    status = get_queue_status()
"""

import logging
import os
from typing import Optional

import redis
from rq import Queue, Retry
from rq.registry import FailedJobRegistry, StartedJobRegistry

logger = logging.getLogger(__name__)

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

PIPELINE_QUEUE_NAME = "recommendations"
JOB_TIMEOUT_SECONDS = 120
JOB_RESULT_TTL_SECONDS = 86400  # Keep results for 24 hours

# Set to true to run without Redis (callers fall back to inline runs)
REDIS_OPTIONAL = os.environ.get("REDIS_OPTIONAL", "false").lower() == "true"

_redis_conn = None
_pipeline_queue = None


def _get_redis_connection():
    """Get or create Redis connection (lazy initialization)."""
    global _redis_conn

    if _redis_conn is not None:
        return _redis_conn

    try:
        conn = redis.from_url(REDIS_URL)
        conn.ping()
        logger.info(f"Connected to Redis at {REDIS_URL[:30]}...")
        _redis_conn = conn
        return _redis_conn
    except Exception as e:
        if REDIS_OPTIONAL:
            logger.warning(f"Redis not available (optional): {e}")
            return None
        raise


def _get_pipeline_queue() -> Optional[Queue]:
    """Get or create the pipeline queue (lazy initialization)."""
    global _pipeline_queue

    if _pipeline_queue is not None:
        return _pipeline_queue

    conn = _get_redis_connection()
    if conn is None:
        return None

    _pipeline_queue = Queue(PIPELINE_QUEUE_NAME, connection=conn)
    return _pipeline_queue


def is_queue_available() -> bool:
    try:
        return _get_pipeline_queue() is not None
    except Exception:
        return False


async def enqueue_pipeline_run(
    user_id: str,
    context: Optional[str] = None,
    force: bool = False,
    supabase_url: Optional[str] = None,
    supabase_key: Optional[str] = None,
) -> Optional[str]:
    """
    Queue a pipeline run for one user.

    Args:
        user_id: User whose signals should be processed
        context: Optional RecommendationContext value for a forced run
        force: Flush all pending signals instead of only closed windows
        supabase_url: Optional Supabase URL (uses env var if not provided)
        supabase_key: Optional service key (uses env var if not provided)

    Returns:
        Job ID if enqueued, None if the queue is not available
    """
    queue = _get_pipeline_queue()
    if queue is None:
        logger.warning("Job queue not available - cannot enqueue pipeline run")
        return None

    try:
        job = queue.enqueue(
            "workers.recommendation_worker.run_pipeline",
            args=(user_id,),
            kwargs={
                "context": context,
                "force": force,
                "supabase_url": supabase_url or os.environ.get("SUPABASE_URL"),
                "supabase_key": supabase_key or os.environ.get("SUPABASE_SERVICE_KEY"),
            },
            job_timeout=JOB_TIMEOUT_SECONDS,
            result_ttl=JOB_RESULT_TTL_SECONDS,
            retry=Retry(max=2, interval=[30, 60]),
            description=f"recommendations:{user_id[:8]}",
        )
        logger.info(f"Enqueued pipeline run for {user_id} as job {job.id}")
        return job.id

    except Exception as e:
        logger.error(f"Failed to enqueue pipeline run for {user_id}: {e}")
        return None


def get_job_status(job_id: str) -> dict:
    """Status of a queued pipeline job."""
    queue = _get_pipeline_queue()
    if queue is None:
        return {"status": "queue_unavailable"}

    try:
        job = queue.fetch_job(job_id)
        if job is None:
            return {"status": "not_found"}

        status = job.get_status()
        result = {
            "status": status,
            "job_id": job_id,
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "ended_at": job.ended_at.isoformat() if job.ended_at else None,
        }
        if status == "finished":
            result["result"] = job.result
        elif status == "failed":
            result["error"] = str(job.exc_info) if job.exc_info else "Unknown error"
        return result

    except Exception as e:
        logger.error(f"Failed to get job status {job_id}: {e}")
        return {"status": "error", "error": str(e)}


def get_queue_status() -> dict:
    """Queue health for the admin surface."""
    queue = _get_pipeline_queue()
    if queue is None:
        return {
            "available": False,
            "reason": "Queue not configured or Redis unavailable",
        }

    try:
        conn = _get_redis_connection()
        return {
            "available": True,
            "queue_name": PIPELINE_QUEUE_NAME,
            "pending_jobs": len(queue),
            "running_jobs": len(StartedJobRegistry(queue=queue, connection=conn)),
            "failed_jobs": len(FailedJobRegistry(queue=queue, connection=conn)),
            "job_timeout_seconds": JOB_TIMEOUT_SECONDS,
        }
    except Exception as e:
        logger.error(f"Failed to get queue status: {e}")
        return {"available": False, "error": str(e)}
