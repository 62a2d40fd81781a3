"""
Stage and job models.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

class StageName(str, Enum):
    BUILD = "build"
    PUBLISH = "publish"

class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

class StageResult(BaseModel):
    name: StageName
    status: StageStatus
    exit_code: int = 0
    duration_seconds: float = 0.0
    log_ref: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    finished_at: datetime

    class Config:
        frozen = True

class SourceRef(BaseModel):
    clone_url: str
    commit_sha: str = ""
    branch: str = ""
    repo_full_name: str = ""

    class Config:
        frozen = True

class BuildSpec(BaseModel):
    source_path: str = "."
    builder_image: str
    package_command: str
    artifact_path: str
    runtime_image: str
    entrypoint: List[str] = []
    env: Dict[str, str] = {}
    timeout: Optional[int] = None

    @property
    def artifact_name(self) -> str:
        return self.artifact_path.rstrip("/").split("/")[-1]

class PublishSpec(BaseModel):
    repository: str
    tag: str = "latest"
    retries: Optional[int] = None
    timeout: Optional[int] = None

    def render_tag(self, source: SourceRef) -> str:
        """Expand {branch}, {sha} and {short_sha} placeholders."""
        branch = source.branch.replace("/", "-")
        return self.tag.format(
            branch=branch,
            sha=source.commit_sha,
            short_sha=source.commit_sha[:7],
        )

class TriggerPolicy(BaseModel):
    branches: List[str] = ["main"]
    max_concurrent_per_ref: Optional[int] = Field(default=None, ge=1)
    cancel_in_progress: bool = False

class PipelineJob(BaseModel):
    run_id: str
    name: str = "Unnamed Pipeline"
    source: SourceRef
    build: BuildSpec
    publish: PublishSpec
    trigger: TriggerPolicy = TriggerPolicy()
    event_type: str = "push"
    actor: str = ""
    queued_at: Optional[str] = None

    @property
    def ref_key(self) -> str:
        return f"{self.source.repo_full_name}@{self.source.branch}"

    @classmethod
    def from_queue(cls, job_data: Dict[str, Any]) -> "PipelineJob":
        """Build a job from the payload the api pushes on the queue."""
        config = job_data["config"]
        repo_info = job_data.get("repo_info", {})
        return cls(
            run_id=job_data["run_id"],
            name=config.get("name", "Unnamed Pipeline"),
            source=SourceRef(
                clone_url=repo_info.get("clone_url", ""),
                commit_sha=repo_info.get("commit_sha", ""),
                branch=repo_info.get("branch", ""),
                repo_full_name=repo_info.get("repo_full_name", ""),
            ),
            build=BuildSpec(**config["build"]),
            publish=PublishSpec(**config["publish"]),
            trigger=TriggerPolicy(**config.get("trigger", {})),
            event_type=job_data.get("event_type", "push"),
            actor=job_data.get("actor", repo_info.get("pusher", "")),
            queued_at=job_data.get("queued_at"),
        )
