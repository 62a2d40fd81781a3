"""
Trigger evaluation - decides whether an incoming event starts a run.
"""

from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

class EventType(str, Enum):
    PUSH = "push"
    MANUAL = "manual"

class TriggerEvent(BaseModel):
    type: EventType
    ref: str
    actor: str = ""
    repo_full_name: str = ""
    commit_sha: str = ""

    class Config:
        frozen = True

    @property
    def branch(self) -> str:
        return normalize_ref(self.ref)

class TriggerConfig(BaseModel):
    branches: List[str] = ["main"]
    max_concurrent_per_ref: Optional[int] = None
    cancel_in_progress: bool = False

class RunDecision(BaseModel):
    admit: bool
    params: Dict[str, Any] = {}
    reason: str = ""

def normalize_ref(ref: str) -> str:
    """refs/heads/main -> main"""
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return ref

def ref_matches(ref: str, patterns: List[str]) -> bool:
    branch = normalize_ref(ref)
    return any(fnmatchcase(branch, normalize_ref(pattern)) for pattern in patterns)

def evaluate(event: TriggerEvent, config: TriggerConfig) -> RunDecision:
    """
    Admit manual dispatches and pushes to a configured branch pattern.
    Anything else is rejected without error.
    """
    if event.type == EventType.MANUAL:
        reason = "manual dispatch"
    elif ref_matches(event.ref, config.branches):
        reason = f"ref '{event.branch}' matches {config.branches}"
    else:
        return RunDecision(
            admit=False,
            reason=f"ref '{event.branch}' does not match {config.branches}",
        )

    return RunDecision(
        admit=True,
        reason=reason,
        params={
            "event_type": event.type.value,
            "ref": event.branch,
            "commit_sha": event.commit_sha,
            "actor": event.actor,
            "max_concurrent_per_ref": config.max_concurrent_per_ref,
            "cancel_in_progress": config.cancel_in_progress,
        },
    )
