from api.src.services.github import (
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    parse_webhook_payload,
    push_event,
    cleanup_repo,
    RepositoryError,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    PipelineConfigError,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    request_cancellation,
    get_run_status,
    get_queue_length,
)
from api.src.services.trigger import (
    EventType,
    TriggerEvent,
    TriggerConfig,
    RunDecision,
    evaluate,
)

__all__ = [
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "push_event",
    "cleanup_repo",
    "RepositoryError",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "PipelineConfigError",
    "enqueue_pipeline_run",
    "request_cancellation",
    "get_run_status",
    "get_queue_length",
    "EventType",
    "TriggerEvent",
    "TriggerConfig",
    "RunDecision",
    "evaluate",
]
