"""
Redis queue service for pipeline jobs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from api.src.config import get_settings

settings = get_settings()

PIPELINE_QUEUE = "shipyard:jobs"
PIPELINE_STATUS = "shipyard:status"
CANCELLED_RUNS = "shipyard:cancelled"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_pipeline_run(
    run_id: str,
    config: Dict[str, Any],
    repo_info: Dict[str, Any],
    params: Optional[Dict[str, Any]] = None,
):
    """Add pipeline run to processing queue."""
    client = await get_redis_client()
    params = params or {}

    job = {
        "run_id": run_id,
        "config": config,
        "repo_info": repo_info,
        "event_type": params.get("event_type", "push"),
        "actor": params.get("actor", repo_info.get("pusher", "")),
        "queued_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(job))
        await client.hset(PIPELINE_STATUS, run_id, "pending")
    finally:
        await client.close()

async def request_cancellation(run_id: str):
    """Ask the controller to stop a run at its next stage boundary."""
    client = await get_redis_client()

    try:
        await client.sadd(CANCELLED_RUNS, run_id)
    finally:
        await client.close()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(PIPELINE_STATUS, run_id)
    finally:
        await client.close()

async def get_queue_length() -> int:
    """Get number of jobs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.close()
