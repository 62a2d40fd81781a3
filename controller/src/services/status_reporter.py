"""
Report pipeline and stage status to the database, Redis and commit statuses.
"""

import logging
from functools import lru_cache
from typing import Iterable, List, Optional

import httpx
import redis
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models.run import RunState, StatusEvent
from controller.src.models.step import SourceRef

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_STATUS = "shipyard:status"

@lru_cache()
def get_session_factory() -> sessionmaker:
    # Sync database connection for controller
    engine = create_engine(settings.database_url)
    return sessionmaker(bind=engine)

class StatusSink:
    """Receives every status event of every run."""

    def emit(self, event: StatusEvent, source: SourceRef):
        raise NotImplementedError

class DatabaseStatusSink(StatusSink):
    """Mirror run state into pipeline_runs and append stage rows to pipeline_stages."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def emit(self, event: StatusEvent, source: SourceRef):
        from controller.src.models.db import PipelineRun, PipelineStage

        with self.session_factory() as session:
            if event.stage is not None:
                order = session.query(PipelineStage).filter(PipelineStage.run_id == event.run_id).count()
                session.add(PipelineStage(
                    run_id=event.run_id,
                    name=event.stage.name.value,
                    stage_order=order,
                    status=event.stage.status.value,
                    exit_code=event.stage.exit_code,
                    duration_seconds=event.stage.duration_seconds,
                    log_ref=event.stage.log_ref,
                    logs=_read_log(event.stage.log_ref),
                    detail=event.stage.detail,
                    finished_at=event.stage.finished_at,
                ))
            else:
                values = {"status": event.state.value}
                if event.state == RunState.BUILDING:
                    values["started_at"] = event.timestamp
                if event.state in (RunState.SUCCEEDED, RunState.FAILED):
                    values["finished_at"] = event.timestamp
                    values["exit_code"] = event.exit_code
                    values["detail"] = event.detail
                    if event.detail:
                        values["failure_kind"] = event.detail.get("kind")
                        receipt = event.detail.get("receipt")
                        if receipt:
                            values["artifact_digest"] = receipt["digest"]
                            values["image_tag"] = receipt["tag"]
                            values["registry_url"] = receipt["registry_url"]
                            values["published_at"] = event.timestamp

                session.execute(
                    update(PipelineRun)
                    .where(PipelineRun.id == event.run_id)
                    .values(**values)
                )
            session.commit()
        logger.debug(f"Recorded {event.state.value} for run {event.run_id} in database")

def _read_log(log_ref: Optional[str]) -> Optional[str]:
    if not log_ref:
        return None
    try:
        with open(log_ref, "r", encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError as e:
        logger.warning(f"Could not read captured log {log_ref}: {e}")
        return None

class RedisStatusSink(StatusSink):
    """Live run state in the shipyard:status hash read by the api."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.from_url(settings.redis_url, decode_responses=True)

    def emit(self, event: StatusEvent, source: SourceRef):
        if event.stage is None:
            self.client.hset(PIPELINE_STATUS, event.run_id, event.state.value)

COMMIT_STATES = {
    RunState.PENDING: "pending",
    RunState.BUILDING: "pending",
    RunState.PUBLISHING: "pending",
    RunState.SUCCEEDED: "success",
    RunState.FAILED: "failure",
}

class CommitStatusSink(StatusSink):
    """GitHub commit status for the run's commit."""

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        context: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.token = token if token is not None else settings.github_token
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self.context = context or settings.status_context
        self.http = http_client or httpx.Client(timeout=10.0)

    def describe(self, event: StatusEvent) -> str:
        if event.state == RunState.FAILED and event.detail:
            return f"{event.detail.get('kind')}: {event.detail.get('message', '')}"[:140]
        if event.state == RunState.SUCCEEDED and event.detail and event.detail.get("receipt"):
            receipt = event.detail["receipt"]
            return f"Published {receipt['tag']} ({receipt['digest'][:19]})"
        return f"Pipeline {event.state.value}"

    def emit(self, event: StatusEvent, source: SourceRef):
        if event.stage is not None or not self.token:
            return
        if not source.repo_full_name or not source.commit_sha:
            return

        response = self.http.post(
            f"{self.api_url}/repos/{source.repo_full_name}/statuses/{source.commit_sha}",
            headers={
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/vnd.github+json",
            },
            json={
                "state": COMMIT_STATES[event.state],
                "context": self.context,
                "description": self.describe(event),
            },
        )
        response.raise_for_status()

class StatusReporter:
    """Fans status events out to every sink."""

    def __init__(self, sinks: Optional[Iterable[StatusSink]] = None):
        self.sinks: List[StatusSink] = list(sinks) if sinks is not None else []

    def report(self, event: StatusEvent, source: SourceRef):
        if event.stage is not None:
            logger.info(
                f"Run {event.run_id} stage {event.stage.name.value}: {event.stage.status.value} "
                f"(exit {event.stage.exit_code}, {event.stage.duration_seconds:.1f}s)"
            )
        else:
            logger.info(f"Run {event.run_id} -> {event.state.value}")

        for sink in self.sinks:
            try:
                sink.emit(event, source)
            except Exception:
                # A broken sink must not change the outcome of the run.
                logger.exception(f"Status sink {sink.__class__.__name__} failed for run {event.run_id}")

def default_reporter() -> StatusReporter:
    sinks: List[StatusSink] = [DatabaseStatusSink(), RedisStatusSink()]
    if settings.github_token:
        sinks.append(CommitStatusSink())
    return StatusReporter(sinks)
