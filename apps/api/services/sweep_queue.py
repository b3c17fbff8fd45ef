"""Durable expiration sweep queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


SWEEP_QUEUE_NAME = "module_expiry_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_sweep_queue() -> Queue:
    """Return the configured expiration sweep queue."""
    return Queue(
        name=SWEEP_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_expiration_sweep(now: Optional[datetime] = None) -> Job:
    """Enqueue one sweep; a pending sweep for the same instant is not duplicated."""
    queue = get_sweep_queue()
    now_iso = now.isoformat() if now else None
    job_id = f"sweep:{now_iso}" if now_iso else None
    return queue.enqueue(
        "services.module_activation.run_expiration_sweep_job",
        now_iso,
        job_id=job_id,
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )
