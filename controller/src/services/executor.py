"""
Pipeline executor - wires the stage services together and hands jobs to the scheduler.
"""

import logging
from typing import Any, Dict, Optional

import redis
from pydantic import ValidationError

from controller.src.config import get_settings
from controller.src.models.step import PipelineJob
from controller.src.services.builder import BuildStageExecutor
from controller.src.services.cancellation import CancellationRegistry
from controller.src.services.credentials import CredentialProvider, SecretStore
from controller.src.services.publisher import RegistryPublisher
from controller.src.services.runner import PipelineRunner
from controller.src.services.scheduler import RefScheduler
from controller.src.services.status_reporter import StatusReporter, default_reporter

logger = logging.getLogger(__name__)
settings = get_settings()

def create_runner(reporter: Optional[StatusReporter] = None) -> PipelineRunner:
    """Build a runner backed by the local Docker Engine and the configured secret store."""
    return PipelineRunner(
        builder=BuildStageExecutor(),
        credentials=CredentialProvider(store=SecretStore()),
        publisher=RegistryPublisher(),
        reporter=reporter or default_reporter(),
        log_dir=settings.log_dir,
    )

def create_scheduler(runner: Optional[PipelineRunner] = None) -> RefScheduler:
    cancellations = CancellationRegistry(redis.from_url(settings.redis_url, decode_responses=True))
    return RefScheduler(runner or create_runner(), cancellations)

async def execute_pipeline(job_data: Dict[str, Any], scheduler: RefScheduler) -> bool:
    """
    Validate a queued job and submit it for execution.
    Returns False if the payload could not be turned into a job.
    """
    run_id = job_data.get("run_id", "unknown")

    try:
        job = PipelineJob.from_queue(job_data)
    except (KeyError, ValidationError) as e:
        logger.error(f"Rejecting malformed job for run {run_id}: {e}")
        return False

    logger.info(
        f"Submitting run {job.run_id} for {job.ref_key} "
        f"({job.event_type} by {job.actor or 'unknown'})"
    )
    await scheduler.submit(job)
    return True
