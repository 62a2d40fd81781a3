"""
Cooperative cancellation requests.
"""

import logging
from typing import Callable, Optional, Set

import redis

logger = logging.getLogger(__name__)

CANCELLED_RUNS = "shipyard:cancelled"

class CancellationRegistry:
    """
    Tracks runs that should stop at the next stage boundary.

    Requests come from the scheduler (cancel_in_progress) or from the api,
    which adds run ids to the shipyard:cancelled set in Redis. Lookups block
    on Redis, so async callers run them in a worker thread.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client
        self._requested: Set[str] = set()

    def request(self, run_id: str):
        logger.info(f"Cancellation requested for run {run_id}")
        self._requested.add(run_id)

    def is_cancelled(self, run_id: str) -> bool:
        if run_id in self._requested:
            return True
        if self.client is None:
            return False
        try:
            return bool(self.client.sismember(CANCELLED_RUNS, run_id))
        except redis.RedisError as e:
            logger.warning(f"Could not check cancellation of run {run_id}, continuing: {e}")
            return False

    def checker(self, run_id: str) -> Callable[[], bool]:
        return lambda: self.is_cancelled(run_id)

    def forget(self, run_id: str):
        self._requested.discard(run_id)
        if self.client is None:
            return
        try:
            self.client.srem(CANCELLED_RUNS, run_id)
        except redis.RedisError as e:
            logger.warning(f"Could not clear cancellation request for run {run_id}: {e}")
