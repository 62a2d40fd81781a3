from controller.src.models.step import (
    StageName,
    StageStatus,
    StageResult,
    SourceRef,
    BuildSpec,
    PublishSpec,
    TriggerPolicy,
    PipelineJob,
)
from controller.src.models.artifact import Artifact, PublishReceipt
from controller.src.models.run import RunState, PipelineRun, StatusEvent

__all__ = [
    "StageName",
    "StageStatus",
    "StageResult",
    "SourceRef",
    "BuildSpec",
    "PublishSpec",
    "TriggerPolicy",
    "PipelineJob",
    "Artifact",
    "PublishReceipt",
    "RunState",
    "PipelineRun",
    "StatusEvent",
]
