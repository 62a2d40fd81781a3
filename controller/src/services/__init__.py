from controller.src.services.builder import BuildStageExecutor
from controller.src.services.cancellation import CancellationRegistry
from controller.src.services.credentials import (
    CredentialProvider,
    Credential,
    ScopeRequest,
    SecretStore,
)
from controller.src.services.executor import create_runner, create_scheduler, execute_pipeline
from controller.src.services.log_collector import StageLog, create_log_excerpt
from controller.src.services.publisher import RegistryPublisher
from controller.src.services.runner import PipelineRunner
from controller.src.services.scheduler import RefScheduler
from controller.src.services.status_reporter import (
    StatusReporter,
    DatabaseStatusSink,
    RedisStatusSink,
    CommitStatusSink,
)

__all__ = [
    "BuildStageExecutor",
    "CancellationRegistry",
    "CredentialProvider",
    "Credential",
    "ScopeRequest",
    "SecretStore",
    "create_runner",
    "create_scheduler",
    "execute_pipeline",
    "StageLog",
    "create_log_excerpt",
    "RegistryPublisher",
    "PipelineRunner",
    "RefScheduler",
    "StatusReporter",
    "DatabaseStatusSink",
    "RedisStatusSink",
    "CommitStatusSink",
]
