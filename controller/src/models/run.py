"""
Pipeline run state machine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from controller.src.errors import FailureKind, InvalidTransition, exit_code_for
from controller.src.models.artifact import Artifact, PublishReceipt
from controller.src.models.step import StageResult

class RunState(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

TERMINAL_STATES = {RunState.SUCCEEDED, RunState.FAILED}

# Pending -> Failed only happens when a queued run is cancelled.
TRANSITIONS = {
    RunState.PENDING: {RunState.BUILDING, RunState.FAILED},
    RunState.BUILDING: {RunState.PUBLISHING, RunState.FAILED},
    RunState.PUBLISHING: {RunState.SUCCEEDED, RunState.FAILED},
    RunState.SUCCEEDED: set(),
    RunState.FAILED: set(),
}

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class StatusEvent(BaseModel):
    run_id: str
    state: RunState
    timestamp: datetime
    detail: Optional[Dict[str, Any]] = None
    exit_code: Optional[int] = None
    stage: Optional[StageResult] = None

    class Config:
        frozen = True

class PipelineRun:
    """
    A single pipeline run.

    Only the PipelineRunner mutates a run, and only through transition()
    and append_stage(). Once terminal the run rejects further changes.
    """

    def __init__(self, run_id: str, event_ref: str):
        self.id = run_id
        self.event_ref = event_ref
        self.state = RunState.PENDING
        self.stages: List[StageResult] = []
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.failure_kind: Optional[FailureKind] = None
        self.detail: Optional[Dict[str, Any]] = None
        self.artifact: Optional[Artifact] = None
        self.receipt: Optional[PublishReceipt] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.failure_kind)

    def transition(
        self,
        state: RunState,
        failure_kind: Optional[FailureKind] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> StatusEvent:
        if state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Run {self.id}: {self.state.value} -> {state.value}")
        if state == RunState.FAILED and failure_kind is None:
            raise InvalidTransition(f"Run {self.id}: failed state requires a failure kind")

        now = utcnow()
        if state == RunState.BUILDING:
            self.started_at = now
        if state in TERMINAL_STATES:
            self.finished_at = now
            self.failure_kind = failure_kind
            self.detail = detail
        self.state = state

        return StatusEvent(
            run_id=self.id,
            state=state,
            timestamp=now,
            detail=detail,
            exit_code=self.exit_code if self.terminal else None,
        )

    def append_stage(self, stage: StageResult) -> StatusEvent:
        if self.terminal:
            raise InvalidTransition(f"Run {self.id} is terminal; cannot record stage {stage.name.value}")
        self.stages.append(stage)
        return StatusEvent(
            run_id=self.id,
            state=self.state,
            timestamp=stage.finished_at,
            stage=stage,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.id,
            "event": self.event_ref,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "stages": [s.name.value + ":" + s.status.value for s in self.stages],
            "receipt": self.receipt.reference() if self.receipt else None,
        }
