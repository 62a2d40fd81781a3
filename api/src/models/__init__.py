from api.src.models.pipeline import Repository, PipelineRun, PipelineStage
from api.src.models.run import (
    ManualTriggerRequest,
    PipelineRunResponse,
    StageResponse,
    ArtifactReference,
    RepositoryResponse
)

__all__ = [
    "Repository",
    "PipelineRun",
    "PipelineStage",
    "ManualTriggerRequest",
    "PipelineRunResponse",
    "StageResponse",
    "ArtifactReference",
    "RepositoryResponse"
]
