"""
Queue worker: processes scan jobs from the Redis queue.

Run with: python -m rxopps.worker
"""

import asyncio
import json
import logging

import redis.asyncio as aioredis
from prometheus_client import start_http_server

from rxopps.config import settings
from rxopps.database import async_session
from rxopps.jobs import JOB_HANDLERS
from rxopps.services.job_queue import QUEUE_KEY, update_job_status
from rxopps.telemetry.logging_config import configure_logging

logger = logging.getLogger("rxopps.worker")


async def process_job(job_data: dict, session_factory=async_session) -> bool:
    """Run one queued job. Returns True when it completed."""
    job_id = job_data["job_id"]
    job_type = job_data.get("job_type")
    handler = JOB_HANDLERS.get(job_type)
    if handler is None:
        logger.error("Job %s has unknown type %r", job_id, job_type)
        await update_job_status(job_id, status="failed", errors=1, result={"error": f"unknown job type {job_type}"})
        return False

    await update_job_status(job_id, status="running")
    try:
        result = await handler(session_factory, **(job_data.get("payload") or {}))
    except Exception as exc:
        logger.error("Job %s (%s) failed: %s", job_id, job_type, exc, exc_info=True)
        await update_job_status(job_id, status="failed", errors=1, result={"error": str(exc)[:500]})
        return False

    await update_job_status(
        job_id,
        status="completed",
        batch_id=result.get("batch_id", ""),
        errors=result.get("errored", result.get("errors", 0)),
        result=result,
    )
    logger.info("Job %s (%s) completed", job_id, job_type)
    return True


async def main(metrics_port: int | None = 9108):
    """Main worker loop: block-pops jobs off the queue until cancelled."""
    configure_logging(settings.log_level, settings.log_format)
    if metrics_port:
        start_http_server(metrics_port)

    r = aioredis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, listening on %s", QUEUE_KEY)

    while True:
        try:
            result = await r.brpop(QUEUE_KEY, timeout=5)
            if result is None:
                continue
            _, raw = result
            job_data = json.loads(raw)
            logger.info("Processing job: %s", job_data.get("job_id"))
            await process_job(job_data)
        except asyncio.CancelledError:
            await r.aclose()
            raise
        except Exception as exc:
            logger.error("Worker loop error: %s", exc, exc_info=True)
            await asyncio.sleep(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
