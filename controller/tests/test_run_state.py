"""Tests for the run state machine and failure taxonomy."""

import pytest

from controller.src.errors import (
    AuthError,
    BuildError,
    FailureKind,
    InvalidTransition,
    PublishError,
    PublishErrorKind,
    RunCancelled,
    exit_code_for,
)
from controller.src.models.run import PipelineRun, RunState, utcnow
from controller.src.models.step import StageName, StageResult, StageStatus

def stage(name=StageName.BUILD, status=StageStatus.SUCCEEDED):
    return StageResult(name=name, status=status, finished_at=utcnow())

def test_happy_path_transitions():
    run = PipelineRun("run-1", "push:main@abc")

    events = [
        run.transition(RunState.BUILDING),
        run.transition(RunState.PUBLISHING),
        run.transition(RunState.SUCCEEDED),
    ]

    assert [event.state for event in events] == [RunState.BUILDING, RunState.PUBLISHING, RunState.SUCCEEDED]
    assert events[0].exit_code is None
    assert events[-1].exit_code == 0
    assert run.terminal is True
    assert run.started_at <= run.finished_at

@pytest.mark.parametrize("path", [
    [RunState.SUCCEEDED],
    [RunState.PUBLISHING],
    [RunState.BUILDING, RunState.SUCCEEDED],
    [RunState.BUILDING, RunState.BUILDING],
])
def test_illegal_transitions(path):
    run = PipelineRun("run-1", "push:main@abc")
    with pytest.raises(InvalidTransition):
        for state in path:
            run.transition(state)

def test_failed_requires_kind():
    run = PipelineRun("run-1", "push:main@abc")
    run.transition(RunState.BUILDING)

    with pytest.raises(InvalidTransition):
        run.transition(RunState.FAILED)

def test_terminal_states_are_final():
    run = PipelineRun("run-1", "push:main@abc")
    run.transition(RunState.BUILDING)
    event = run.transition(RunState.FAILED, failure_kind=FailureKind.BUILD, detail={"kind": "build"})

    assert event.exit_code == 10
    for state in RunState:
        with pytest.raises(InvalidTransition):
            run.transition(state, failure_kind=FailureKind.BUILD)
    with pytest.raises(InvalidTransition):
        run.append_stage(stage())

def test_queued_run_can_be_cancelled():
    run = PipelineRun("run-1", "push:main@abc")
    run.transition(RunState.FAILED, failure_kind=FailureKind.CANCELLED)

    assert run.exit_code == 50
    assert run.started_at is None

def test_append_stage_emits_stage_event():
    run = PipelineRun("run-1", "push:main@abc")
    run.transition(RunState.BUILDING)
    event = run.append_stage(stage())

    assert event.stage.name == StageName.BUILD
    assert event.state == RunState.BUILDING
    assert run.summary()["stages"] == ["build:succeeded"]

def test_exit_codes_are_distinct():
    codes = [exit_code_for(kind) for kind in FailureKind]
    assert len(set(codes)) == len(codes)
    assert 0 not in codes
    assert exit_code_for(None) == 0

def test_errors_map_to_failure_kinds():
    assert BuildError("package", 2).kind == FailureKind.BUILD
    assert BuildError("package", -1, timed_out=True).kind == FailureKind.TIMEOUT
    assert AuthError("expired").kind == FailureKind.AUTH
    assert PublishError(PublishErrorKind.TRANSIENT, "503").kind == FailureKind.PUBLISH_EXHAUSTED
    assert PublishError(PublishErrorKind.FATAL, "quota").kind == FailureKind.PUBLISH_FATAL
    assert PublishError(PublishErrorKind.AUTH_REJECTED, "denied").kind == FailureKind.AUTH
    assert PublishError(PublishErrorKind.TIMEOUT, "slow").kind == FailureKind.TIMEOUT
    assert RunCancelled("stop").kind == FailureKind.CANCELLED

def test_build_error_detail():
    detail = BuildError("package", 2, "last lines").detail()
    assert detail == {
        "kind": "build",
        "message": "Build phase 'package' exited with code 2",
        "phase": "package",
        "exit_code": 2,
        "log_excerpt": "last lines",
    }
