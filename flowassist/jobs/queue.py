"""
Job Queue Management
====================

Notifications (budget alerts, new documents) go on their own queue so a
backlog of daily reminders never delays them. Without a reachable Redis
every job runs inline in the calling process, and the caller gets the
same result shape either way.
"""

import time
import logging
from typing import Optional, Dict, Any, Callable
from datetime import datetime

from redis import Redis
from rq import Queue, Retry

from ..config import get_settings

logger = logging.getLogger(__name__)

QUEUE_NOTIFICATIONS = "notifications"
QUEUE_SCHEDULED = "scheduled"
ALL_QUEUES = [QUEUE_NOTIFICATIONS, QUEUE_SCHEDULED]

RECONNECT_BACKOFF_SECONDS = 30
RETRY_INTERVALS = [10, 60, 300]

_retry_after: float = 0.0


def get_redis_connection() -> Optional[Redis]:
    """Redis connection for RQ, or None while Redis is unreachable."""
    global _retry_after

    if time.monotonic() < _retry_after:
        return None
    try:
        conn = Redis.from_url(get_settings().redis_url, socket_connect_timeout=1)
        conn.ping()
        return conn
    except Exception as e:
        logger.warning(f"Redis unavailable for jobs, next attempt in {RECONNECT_BACKOFF_SECONDS}s: {e}")
        _retry_after = time.monotonic() + RECONNECT_BACKOFF_SECONDS
        return None


def _run_inline(func: Callable, args, kwargs, job_id: Optional[str]) -> Dict[str, Any]:
    job_id = job_id or "sync"
    try:
        return {"job_id": job_id, "status": "done", "result": func(*args, **kwargs)}
    except Exception as e:
        logger.exception(f"Inline job {func.__name__} failed")
        return {"job_id": job_id, "status": "failed", "error": str(e)}


def enqueue_job(
    func: Callable,
    *args,
    queue_name: str = QUEUE_NOTIFICATIONS,
    job_id: str = None,
    timeout: int = 120,
    retry: int = 1,
    **kwargs
) -> Dict[str, Any]:
    """
    Queue ``func(*args, **kwargs)`` on ``queue_name``.

    Returns the job id and status. An inline run reports ``done`` with the
    task result, or ``failed`` with the error message.
    """
    conn = get_redis_connection()
    if conn is None:
        logger.info(f"Running {func.__name__} inline")
        return _run_inline(func, args, kwargs, job_id)

    try:
        job = Queue(queue_name, connection=conn).enqueue(
            func,
            *args,
            job_id=job_id,
            job_timeout=timeout,
            retry=Retry(max=retry, interval=RETRY_INTERVALS[:retry]) if retry > 0 else None,
            **kwargs
        )
    except Exception as e:
        logger.warning(f"Could not queue {func.__name__} on {queue_name}, running inline: {e}")
        return _run_inline(func, args, kwargs, job_id)

    logger.info(f"Queued {func.__name__} as {job.id} on {queue_name}")
    return {
        "job_id": job.id,
        "status": job.get_status(),
        "queue": queue_name,
        "enqueued_at": datetime.utcnow().isoformat(),
    }

