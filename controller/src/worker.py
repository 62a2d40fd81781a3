"""
Queue worker - pulls jobs from Redis and executes them.
"""

import asyncio
import logging
import redis.asyncio as redis
import json
from typing import Optional, Dict, Any

from controller.src.config import get_settings
from controller.src.services.executor import create_scheduler, execute_pipeline
from controller.src.services.scheduler import RefScheduler

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "shipyard:jobs"

async def get_next_job(client: redis.Redis) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    result = await client.brpop(PIPELINE_QUEUE, timeout=5)
    if result:
        _, job_data = result
        return json.loads(job_data)
    return None

async def worker_loop(scheduler: Optional[RefScheduler] = None):
    """Main worker loop."""
    scheduler = scheduler or create_scheduler()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, waiting for jobs...")

    try:
        while True:
            try:
                job = await get_next_job(client)

                if job:
                    run_id = job.get("run_id", "unknown")
                    logger.info(f"Received job for run {run_id}")
                    await execute_pipeline(job, scheduler)

            except asyncio.CancelledError:
                logger.info("Worker shutting down...")
                break
            except json.JSONDecodeError as e:
                logger.error(f"Dropping undecodable job: {e}")
            except Exception as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
    finally:
        await scheduler.drain()
        await client.close()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
