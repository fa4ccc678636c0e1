from __future__ import annotations

from dataclasses import dataclass

from .consumer import QueueConsumer
from .coordinator import PipelineCoordinator
from .dispatch import DispatchQueue, InMemoryFifoQueue, QueueTransport
from .entry import PipelineEntryPoint
from .invoker import WorkerInvoker
from .notifications import InMemoryNotificationTransport, NotificationPublisher, NotificationTransport
from .pipeline import PipelineDefinition, load_pipeline_definition
from .queries import ProjectQueries
from .repository import PipelineRepository
from .settings import RuntimeSettings
from .state_store import InMemoryStateStore, StateStoreClient
from .status import StatusAggregator
from .workers import build_reference_invoker


@dataclass
class PipelineRuntime:
    """Every component of one deployment, wired against shared collaborators."""

    settings: RuntimeSettings
    pipeline: PipelineDefinition
    store: StateStoreClient
    queue_transport: QueueTransport
    notification_transport: NotificationTransport
    invoker: WorkerInvoker
    repository: PipelineRepository
    dispatch_queue: DispatchQueue
    notifications: NotificationPublisher
    entry_point: PipelineEntryPoint
    coordinator: PipelineCoordinator
    status: StatusAggregator
    queries: ProjectQueries
    consumer: QueueConsumer


def build_runtime(
    *,
    settings: RuntimeSettings | None = None,
    pipeline: PipelineDefinition | None = None,
    store: StateStoreClient | None = None,
    queue_transport: QueueTransport | None = None,
    notification_transport: NotificationTransport | None = None,
    invoker: WorkerInvoker | None = None,
) -> PipelineRuntime:
    """Wire a runtime; any collaborator left out gets its in-memory default."""
    settings = settings if settings is not None else RuntimeSettings.from_env()
    pipeline = pipeline if pipeline is not None else load_pipeline_definition(settings.pipeline_config_path())
    store = store if store is not None else InMemoryStateStore()
    if queue_transport is None:
        queue_transport = InMemoryFifoQueue(
            dedup_window_seconds=settings.dedup_window_seconds,
            max_receive_count=settings.max_receive_count,
        )
    notification_transport = notification_transport if notification_transport is not None else InMemoryNotificationTransport()
    invoker = invoker if invoker is not None else build_reference_invoker(max_workers=settings.consumer_concurrency)

    repository = PipelineRepository(store)
    dispatch_queue = DispatchQueue(queue_transport)
    notifications = NotificationPublisher(notification_transport, topic=settings.notification_topic)
    entry_point = PipelineEntryPoint(repository=repository, dispatch_queue=dispatch_queue, pipeline=pipeline)
    coordinator = PipelineCoordinator(
        repository=repository,
        dispatch_queue=dispatch_queue,
        invoker=invoker,
        notifications=notifications,
        pipeline=pipeline,
        settings=settings,
    )
    status = StatusAggregator(repository=repository, pipeline=pipeline, settings=settings)
    queries = ProjectQueries(repository=repository, pipeline=pipeline, status=status)
    consumer = QueueConsumer(
        queue_transport,
        coordinator,
        batch_size=settings.receive_batch_size,
        concurrency=settings.consumer_concurrency,
    )
    return PipelineRuntime(
        settings=settings,
        pipeline=pipeline,
        store=store,
        queue_transport=queue_transport,
        notification_transport=notification_transport,
        invoker=invoker,
        repository=repository,
        dispatch_queue=dispatch_queue,
        notifications=notifications,
        entry_point=entry_point,
        coordinator=coordinator,
        status=status,
        queries=queries,
        consumer=consumer,
    )
