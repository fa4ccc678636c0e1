from importlib.metadata import version

from .consumer import QueueConsumer
from .coordinator import DispatchOutcome, PipelineCoordinator
from .dispatch import DispatchQueue, InMemoryFifoQueue, QueueMessage, build_dispatch_message, dispatch_dedup_key
from .entry import PipelineEntryPoint
from .errors import (
    ConditionFailedError,
    InvalidStateError,
    NotFoundError,
    PipelineError,
    RecordExistsError,
    TransportFailure,
    WorkerFailure,
    WorkerTimeoutError,
)
from .invoker import InvocationContext, LocalWorkerInvoker, SubprocessWorkerInvoker
from .models import (
    Artifact,
    ArtifactDraft,
    ArtifactType,
    DispatchMessage,
    NotificationEnvelope,
    NotificationEventType,
    PipelineStarted,
    Project,
    ProjectStatus,
    ProjectStatusView,
    Task,
    TaskStatus,
    TaskSummary,
    WorkerPayload,
    WorkerResult,
)
from .notifications import InMemoryNotificationTransport, NotificationPublisher
from .pipeline import PipelineDefinition, StageDefinition, load_pipeline_definition
from .queries import ProjectQueries
from .repository import PipelineRepository
from .runtime import PipelineRuntime, build_runtime
from .settings import RuntimeSettings
from .state_store import FileStateStore, InMemoryStateStore
from .status import StatusAggregator


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "Artifact",
    "ArtifactDraft",
    "ArtifactType",
    "ConditionFailedError",
    "DispatchMessage",
    "DispatchOutcome",
    "DispatchQueue",
    "FileStateStore",
    "InMemoryFifoQueue",
    "InMemoryNotificationTransport",
    "InMemoryStateStore",
    "InvalidStateError",
    "InvocationContext",
    "LocalWorkerInvoker",
    "NotFoundError",
    "NotificationEnvelope",
    "NotificationEventType",
    "NotificationPublisher",
    "PipelineCoordinator",
    "PipelineDefinition",
    "PipelineEntryPoint",
    "PipelineError",
    "PipelineRepository",
    "PipelineRuntime",
    "PipelineStarted",
    "Project",
    "ProjectQueries",
    "ProjectStatus",
    "ProjectStatusView",
    "QueueConsumer",
    "QueueMessage",
    "RecordExistsError",
    "RuntimeSettings",
    "StageDefinition",
    "StatusAggregator",
    "SubprocessWorkerInvoker",
    "Task",
    "TaskStatus",
    "TaskSummary",
    "TransportFailure",
    "WorkerFailure",
    "WorkerPayload",
    "WorkerResult",
    "WorkerTimeoutError",
    "build_dispatch_message",
    "build_runtime",
    "dispatch_dedup_key",
    "get_version",
    "load_pipeline_definition",
]
