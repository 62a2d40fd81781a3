from pydantic import BaseModel
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID

class StageResponse(BaseModel):
    id: UUID
    name: str
    status: str
    stage_order: int
    exit_code: Optional[int] = None
    duration_seconds: Optional[float] = None
    log_ref: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    commit_sha: str
    branch: str

class ManualTriggerRequest(BaseModel):
    repository_url: str
    branch: str = "main"
    commit_sha: Optional[str] = None
    actor: str = "manual"

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    status: str
    event_type: Optional[str] = None
    triggered_by: Optional[str] = None
    failure_kind: Optional[str] = None
    exit_code: Optional[int] = None
    detail: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    stages: List[StageResponse] = []

    class Config:
        from_attributes = True

class ArtifactReference(BaseModel):
    run_id: UUID
    digest: str
    tag: str
    registry_url: str
    published_at: Optional[datetime] = None

class RepositoryResponse(BaseModel):
    id: UUID
    name: str
    full_name: str
    clone_url: str
    created_at: datetime

    class Config:
        from_attributes = True
