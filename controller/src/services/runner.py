"""
Pipeline runner - drives one run through build and publish.

    pending -> building -> publishing -> succeeded
       |          |            |
       +----------+------------+-------> failed

Build and publish are blocking, so each runs in a worker thread. The stage
timeout is enforced inside the builder and publisher so that a timed out
stage has stopped before it is reported; the runner only waits a grace
period longer as a backstop. Cancellation is cooperative and only checked
between stages.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from controller.src.config import get_settings
from controller.src.errors import (
    AuthError,
    BuildError,
    FailureKind,
    PipelineError,
    PublishError,
    PublishErrorKind,
    RunCancelled,
    exit_code_for,
)
from controller.src.models.artifact import Artifact, PublishReceipt
from controller.src.models.run import PipelineRun, RunState, StatusEvent, utcnow
from controller.src.models.step import PipelineJob, StageName, StageResult, StageStatus
from controller.src.services.builder import BuildStageExecutor
from controller.src.services.credentials import CredentialProvider, CredentialSession, ScopeRequest
from controller.src.services.log_collector import StageLog
from controller.src.services.publisher import RegistryPublisher
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)
settings = get_settings()

def _never_cancelled() -> bool:
    return False

class PipelineRunner:
    def __init__(
        self,
        builder: BuildStageExecutor,
        credentials: CredentialProvider,
        publisher: RegistryPublisher,
        reporter: StatusReporter,
        log_dir: Optional[str] = None,
        build_timeout: Optional[float] = None,
        publish_timeout: Optional[float] = None,
        stage_grace: Optional[float] = None,
    ):
        self.builder = builder
        self.credentials = credentials
        self.publisher = publisher
        self.reporter = reporter
        self.log_dir = log_dir
        self.build_timeout = build_timeout or settings.build_timeout
        self.publish_timeout = publish_timeout or settings.publish_timeout
        self.stage_grace = stage_grace if stage_grace is not None else settings.stage_grace

    def new_run(self, job: PipelineJob) -> PipelineRun:
        event_ref = f"{job.event_type}:{job.source.branch}@{job.source.commit_sha or 'HEAD'}"
        return PipelineRun(job.run_id, event_ref)

    async def run(
        self,
        job: PipelineJob,
        run: Optional[PipelineRun] = None,
        is_cancelled: Callable[[], bool] = _never_cancelled,
    ) -> PipelineRun:
        """
        Execute a pipeline run to a terminal state.
        Returns the run; its state, stages and exit code describe the outcome.
        """
        run = run or self.new_run(job)
        logger.info(f"Starting pipeline run {run.id} ({run.event_ref})")

        try:
            return await self._drive(run, job, is_cancelled)
        except Exception as e:
            if run.terminal:
                raise
            logger.exception(f"Pipeline run {run.id} crashed in state {run.state.value}")
            message = f"Run crashed: {e.__class__.__name__}: {e}"
            if run.state == RunState.PUBLISHING:
                return await self._fail(run, job, PublishError(PublishErrorKind.FATAL, message))
            return await self._fail(run, job, BuildError("build", -1, message=message))

    async def _drive(self, run: PipelineRun, job: PipelineJob, is_cancelled: Callable[[], bool]) -> PipelineRun:
        if await self._cancelled(is_cancelled):
            return await self._fail(run, job, RunCancelled("Run cancelled before start"))

        try:
            session = await asyncio.to_thread(self.credentials.session, run.id)
        except AuthError as e:
            return await self._fail(run, job, e)

        with session:
            await self._emit(run.transition(RunState.BUILDING), job)

            try:
                artifact = await self._build_stage(run, job)
            except PipelineError as e:
                await self._skip_publish(run, job, "build failed")
                return await self._fail(run, job, e)
            run.artifact = artifact

            if await self._cancelled(is_cancelled):
                await self._skip_publish(run, job, "run cancelled")
                return await self._fail(run, job, RunCancelled("Run cancelled before publish"))

            await self._emit(run.transition(RunState.PUBLISHING), job)

            try:
                receipt = await self._publish_stage(run, job, artifact, session)
            except PipelineError as e:
                return await self._fail(run, job, e)
            run.receipt = receipt

        await self._emit(
            run.transition(RunState.SUCCEEDED, detail={"receipt": receipt.reference()}),
            job,
        )
        logger.info(f"Pipeline run {run.id} succeeded: {receipt.reference()}")
        return run

    async def cancel_queued(self, job: PipelineJob, reason: str = "Superseded by a newer run") -> PipelineRun:
        """Terminate a run that never left the queue."""
        run = self.new_run(job)
        return await self._fail(run, job, RunCancelled(reason))

    async def _cancelled(self, is_cancelled: Callable[[], bool]) -> bool:
        # Checks may hit Redis, so keep them off the event loop.
        return await asyncio.to_thread(is_cancelled)

    async def _build_stage(self, run: PipelineRun, job: PipelineJob) -> Artifact:
        timeout = job.build.timeout or self.build_timeout
        tag = job.publish.render_tag(job.source)
        started = time.monotonic()

        with StageLog(run.id, StageName.BUILD.value, self.log_dir) as log:
            try:
                artifact = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.builder.build,
                        job.source,
                        job.build,
                        run.id,
                        job.publish.repository,
                        tag,
                        log,
                        timeout=timeout,
                    ),
                    timeout=timeout + self.stage_grace,
                )
            except asyncio.TimeoutError:
                logger.error(f"Build stage of run {run.id} did not stop within {self.stage_grace}s of its {timeout}s limit")
                error = BuildError("build", -1, log.excerpt(), timed_out=True, message=f"Build stage exceeded {timeout}s")
                await self._record(run, job, StageName.BUILD, StageStatus.FAILED, started, log, error.exit_code, error.detail())
                raise error
            except BuildError as e:
                await self._record(run, job, StageName.BUILD, StageStatus.FAILED, started, log, e.exit_code, e.detail())
                raise
            except Exception as e:
                logger.exception(f"Build stage of run {run.id} crashed")
                log.write(f"Build stage crashed: {e.__class__.__name__}: {e}")
                error = BuildError("build", -1, log.excerpt(), message=f"Build stage crashed: {e.__class__.__name__}: {e}")
                await self._record(run, job, StageName.BUILD, StageStatus.FAILED, started, log, error.exit_code, error.detail())
                raise error from e

            await self._record(
                run, job, StageName.BUILD, StageStatus.SUCCEEDED, started, log, 0,
                {"digest": artifact.digest, "image": f"{artifact.image_name}:{tag}"},
            )
        return artifact

    async def _publish_stage(
        self,
        run: PipelineRun,
        job: PipelineJob,
        artifact: Artifact,
        session: CredentialSession,
    ) -> PublishReceipt:
        timeout = job.publish.timeout or self.publish_timeout
        tag = job.publish.render_tag(job.source)
        started = time.monotonic()
        deadline = started + timeout

        def resolve_and_publish() -> PublishReceipt:
            credential = session.resolve(ScopeRequest(repository=job.publish.repository))
            log.write(f"Credential for {credential.principal} valid until {credential.expires_at.isoformat()}")
            log.write(f"Publishing {artifact.digest} to {credential.registry_host}/{job.publish.repository}:{tag}")
            return self.publisher.publish(
                artifact,
                credential,
                tag,
                repository=job.publish.repository,
                retries=job.publish.retries,
                deadline=deadline,
            )

        with StageLog(run.id, StageName.PUBLISH.value, self.log_dir) as log:
            try:
                receipt = await asyncio.wait_for(
                    asyncio.to_thread(resolve_and_publish),
                    timeout=timeout + self.stage_grace,
                )
            except asyncio.TimeoutError:
                logger.error(f"Publish stage of run {run.id} did not stop within {self.stage_grace}s of its {timeout}s limit")
                error = PublishError(PublishErrorKind.TIMEOUT, f"Publish stage exceeded {timeout}s")
                log.write(error.message)
                await self._record(run, job, StageName.PUBLISH, StageStatus.FAILED, started, log, exit_code_for(error.kind), error.detail())
                raise error
            except PipelineError as e:
                log.write(e.message)
                await self._record(run, job, StageName.PUBLISH, StageStatus.FAILED, started, log, exit_code_for(e.kind), e.detail())
                raise
            except Exception as e:
                logger.exception(f"Publish stage of run {run.id} crashed")
                error = PublishError(PublishErrorKind.FATAL, f"Publish stage crashed: {e.__class__.__name__}: {e}")
                log.write(error.message)
                await self._record(run, job, StageName.PUBLISH, StageStatus.FAILED, started, log, exit_code_for(error.kind), error.detail())
                raise error from e

            log.write(f"Published {receipt.digest} as {receipt.tag}{' (already present)' if receipt.already_present else ''}")
            await self._record(
                run, job, StageName.PUBLISH, StageStatus.SUCCEEDED, started, log, 0,
                {**receipt.reference(), "already_present": receipt.already_present},
            )
        return receipt

    async def _record(
        self,
        run: PipelineRun,
        job: PipelineJob,
        name: StageName,
        status: StageStatus,
        started: float,
        log: Optional[StageLog],
        exit_code: int,
        detail: Optional[dict] = None,
    ):
        stage = StageResult(
            name=name,
            status=status,
            exit_code=exit_code,
            duration_seconds=time.monotonic() - started,
            log_ref=log.path if log else None,
            detail=detail,
            finished_at=utcnow(),
        )
        await self._emit(run.append_stage(stage), job)

    async def _skip_publish(self, run: PipelineRun, job: PipelineJob, reason: str):
        await self._record(run, job, StageName.PUBLISH, StageStatus.SKIPPED, time.monotonic(), None, 0, {"reason": reason})

    async def _fail(self, run: PipelineRun, job: PipelineJob, error: PipelineError) -> PipelineRun:
        await self._emit(run.transition(RunState.FAILED, failure_kind=error.kind, detail=error.detail()), job)
        if error.kind == FailureKind.CANCELLED:
            logger.info(f"Pipeline run {run.id} cancelled: {error.message}")
        else:
            logger.error(f"Pipeline run {run.id} failed ({error.kind.value}, exit {run.exit_code}): {error.message}")
        return run

    async def _emit(self, event: StatusEvent, job: PipelineJob):
        await asyncio.to_thread(self.reporter.report, event, job.source)
