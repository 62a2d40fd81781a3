"""
Per-ref run scheduling.

Without a limit every run starts immediately. With max_concurrent_per_ref
set, runs for the same repository ref wait in arrival order until a slot
frees up. With cancel_in_progress, a new run cancels the queued runs it
supersedes and asks the running ones to stop at their next stage boundary.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Set

from controller.src.models.run import PipelineRun
from controller.src.models.step import PipelineJob
from controller.src.services.cancellation import CancellationRegistry
from controller.src.services.runner import PipelineRunner

logger = logging.getLogger(__name__)

FINISHED_HISTORY = 100

class RefScheduler:
    def __init__(
        self,
        runner: PipelineRunner,
        cancellations: CancellationRegistry,
        history: int = FINISHED_HISTORY,
    ):
        self.runner = runner
        self.cancellations = cancellations
        self._running: Dict[str, Set[str]] = {}
        self._queued: Dict[str, Deque[PipelineJob]] = {}
        self._tasks: Set[asyncio.Task] = set()
        # Most recent terminal runs, oldest first.
        self.finished: Deque[PipelineRun] = deque(maxlen=history)

    def running(self, ref_key: str) -> Set[str]:
        return set(self._running.get(ref_key, ()))

    def queued(self, ref_key: str) -> List[str]:
        return [job.run_id for job in self._queued.get(ref_key, ())]

    def active_refs(self) -> Set[str]:
        return set(self._running) | set(self._queued)

    async def submit(self, job: PipelineJob):
        key = job.ref_key
        policy = job.trigger

        if policy.cancel_in_progress:
            superseded = self._queued.pop(key, deque())
            for old in superseded:
                logger.info(f"Run {old.run_id} superseded by {job.run_id} on {key}")
                self.finished.append(await self.runner.cancel_queued(old))
            for run_id in self._running.get(key, ()):
                self.cancellations.request(run_id)

        limit = policy.max_concurrent_per_ref
        if limit is None or len(self._running.get(key, ())) < limit:
            self._start(job)
        else:
            queue = self._queued.setdefault(key, deque())
            queue.append(job)
            logger.info(f"Run {job.run_id} queued on {key} ({len(queue)} waiting)")

    def _start(self, job: PipelineJob):
        self._running.setdefault(job.ref_key, set()).add(job.run_id)
        task = asyncio.create_task(self._execute(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: PipelineJob):
        key = job.ref_key
        try:
            run = await self.runner.run(job, is_cancelled=self.cancellations.checker(job.run_id))
            self.finished.append(run)
        except Exception:
            logger.exception(f"Pipeline run {job.run_id} crashed")
        finally:
            running = self._running.get(key)
            if running is not None:
                running.discard(job.run_id)
                if not running:
                    del self._running[key]
            self._release(key)
            await asyncio.to_thread(self.cancellations.forget, job.run_id)

    def _release(self, key: str):
        queue = self._queued.get(key)
        while queue:
            limit = queue[0].trigger.max_concurrent_per_ref
            if limit is not None and len(self._running.get(key, ())) >= limit:
                break
            self._start(queue.popleft())
        if key in self._queued and not self._queued[key]:
            del self._queued[key]

    async def drain(self):
        """Wait until every started and queued run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
