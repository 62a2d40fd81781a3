"""
Failure taxonomy for pipeline runs.

Every error maps onto a FailureKind, and every FailureKind onto the
exit code reported for the run.
"""

from enum import Enum
from typing import Optional

class FailureKind(str, Enum):
    BUILD = "build"
    AUTH = "auth"
    PUBLISH_EXHAUSTED = "publish_exhausted"
    PUBLISH_FATAL = "publish_fatal"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

EXIT_CODES = {
    None: 0,
    FailureKind.BUILD: 10,
    FailureKind.AUTH: 20,
    FailureKind.PUBLISH_EXHAUSTED: 30,
    FailureKind.PUBLISH_FATAL: 31,
    FailureKind.TIMEOUT: 40,
    FailureKind.CANCELLED: 50,
}

def exit_code_for(kind: Optional[FailureKind]) -> int:
    return EXIT_CODES[kind]

class PipelineError(Exception):
    """Base class for errors that terminate a run."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> FailureKind:
        raise NotImplementedError

    def detail(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}

class BuildError(PipelineError):
    """Raised when a build phase exits non-zero or times out."""

    def __init__(
        self,
        phase: str,
        exit_code: int,
        log_excerpt: str = "",
        timed_out: bool = False,
        message: Optional[str] = None,
    ):
        self.phase = phase
        self.exit_code = exit_code
        self.log_excerpt = log_excerpt
        self.timed_out = timed_out
        if message is None:
            if timed_out:
                message = f"Build phase '{phase}' timed out"
            else:
                message = f"Build phase '{phase}' exited with code {exit_code}"
        super().__init__(message)

    @property
    def kind(self) -> FailureKind:
        return FailureKind.TIMEOUT if self.timed_out else FailureKind.BUILD

    def detail(self) -> dict:
        return {
            **super().detail(),
            "phase": self.phase,
            "exit_code": self.exit_code,
            "log_excerpt": self.log_excerpt,
        }

class AuthError(PipelineError):
    """Raised when registry credentials cannot be resolved."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Credential resolution failed: {reason}")

    @property
    def kind(self) -> FailureKind:
        return FailureKind.AUTH

    def detail(self) -> dict:
        return {**super().detail(), "reason": self.reason}

class PublishErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    AUTH_REJECTED = "auth_rejected"
    TIMEOUT = "timeout"

class PublishError(PipelineError):
    """Raised when an artifact could not be pushed to the registry."""

    def __init__(
        self,
        kind: PublishErrorKind,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 1,
        exhausted: bool = False,
    ):
        self.error_kind = kind
        self.status_code = status_code
        self.attempts = attempts
        self.exhausted = exhausted
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.error_kind == PublishErrorKind.TRANSIENT

    @property
    def kind(self) -> FailureKind:
        if self.error_kind == PublishErrorKind.TIMEOUT:
            return FailureKind.TIMEOUT
        if self.error_kind == PublishErrorKind.AUTH_REJECTED:
            return FailureKind.AUTH
        if self.error_kind == PublishErrorKind.TRANSIENT:
            return FailureKind.PUBLISH_EXHAUSTED
        return FailureKind.PUBLISH_FATAL

    def detail(self) -> dict:
        return {
            **super().detail(),
            "publish_error": self.error_kind.value,
            "status_code": self.status_code,
            "attempts": self.attempts,
        }

class RunCancelled(PipelineError):
    """Raised when a run is cancelled between stages."""

    @property
    def kind(self) -> FailureKind:
        return FailureKind.CANCELLED

class InvalidTransition(Exception):
    """Raised on an illegal pipeline state transition."""
    pass
