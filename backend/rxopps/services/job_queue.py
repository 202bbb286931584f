"""
Redis-backed job queue for scan runs.

Jobs are pushed onto a single list and popped by the worker; each job's
status lives in a hash that expires after a day.
"""

import json
import logging
from datetime import datetime
from uuid import uuid4

import redis.asyncio as aioredis

from rxopps.config import settings

logger = logging.getLogger(__name__)

QUEUE_KEY = "rxopps:scan:queue"
JOB_KEY_PREFIX = "rxopps:job:"
JOB_TTL_SECONDS = 86400

JOB_TYPES = ("opportunity_scan", "discovery_scan", "coverage_scan", "profile_update")


async def get_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, decode_responses=True)


async def enqueue_job(job_type: str, payload: dict | None = None) -> str:
    """Enqueue a scan job and return its job_id."""
    if job_type not in JOB_TYPES:
        raise ValueError(f"Unknown job type {job_type!r}; expected one of {', '.join(JOB_TYPES)}")

    job_id = f"SJOB-{uuid4().hex[:12].upper()}"
    payload = payload or {}
    r = await get_redis()
    try:
        await r.hset(f"{JOB_KEY_PREFIX}{job_id}", mapping={
            "job_id": job_id,
            "job_type": job_type,
            "status": "queued",
            "batch_id": "",
            "errors": 0,
            "queued_at": datetime.utcnow().isoformat(),
            "started_at": "",
            "completed_at": "",
            "payload": json.dumps(payload),
        })
        await r.expire(f"{JOB_KEY_PREFIX}{job_id}", JOB_TTL_SECONDS)
        await r.lpush(QUEUE_KEY, json.dumps({"job_id": job_id, "job_type": job_type, "payload": payload}))
    finally:
        await r.aclose()

    logger.info("Enqueued %s job %s", job_type, job_id)
    return job_id


async def get_job_status(job_id: str) -> dict | None:
    r = await get_redis()
    try:
        data = await r.hgetall(f"{JOB_KEY_PREFIX}{job_id}")
    finally:
        await r.aclose()
    return data or None


async def update_job_status(
    job_id: str,
    *,
    status: str | None = None,
    batch_id: str | None = None,
    errors: int | None = None,
    result: dict | None = None,
):
    """Update fields on a job; running/completed/failed also stamp their times."""
    updates: dict = {}
    if status is not None:
        updates["status"] = status
    if batch_id is not None:
        updates["batch_id"] = batch_id
    if errors is not None:
        updates["errors"] = errors
    if status == "running":
        updates["started_at"] = datetime.utcnow().isoformat()
    if status in ("completed", "failed"):
        updates["completed_at"] = datetime.utcnow().isoformat()
    if result:
        updates["result"] = json.dumps(result, default=str)

    if not updates:
        return
    r = await get_redis()
    try:
        await r.hset(f"{JOB_KEY_PREFIX}{job_id}", mapping=updates)
    finally:
        await r.aclose()
