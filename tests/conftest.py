from __future__ import annotations

from typing import Callable, Iterator, Mapping

import pytest

from agent_builder.dispatch import QueueTransport
from agent_builder.invoker import LocalWorkerInvoker, WorkerFunction
from agent_builder.pipeline import PipelineDefinition
from agent_builder.runtime import PipelineRuntime, build_runtime
from agent_builder.settings import RuntimeSettings
from agent_builder.state_store import StateStoreClient
from agent_builder.workers import REFERENCE_WORKERS

RuntimeFactory = Callable[..., PipelineRuntime]


@pytest.fixture
def make_runtime() -> Iterator[RuntimeFactory]:
    invokers: list[LocalWorkerInvoker] = []

    def _make(
        workers: Mapping[str, WorkerFunction] | None = None,
        *,
        settings: RuntimeSettings | None = None,
        pipeline: PipelineDefinition | None = None,
        queue_transport: QueueTransport | None = None,
        store: StateStoreClient | None = None,
    ) -> PipelineRuntime:
        invoker = LocalWorkerInvoker(workers if workers is not None else REFERENCE_WORKERS)
        invokers.append(invoker)
        return build_runtime(
            settings=settings if settings is not None else RuntimeSettings(status_reconcile_interval_seconds=0),
            pipeline=pipeline,
            queue_transport=queue_transport,
            store=store,
            invoker=invoker,
        )

    yield _make
    for invoker in invokers:
        invoker.close()


@pytest.fixture
def start_project() -> Callable[[PipelineRuntime], str]:
    def _start(runtime: PipelineRuntime, request: str = "Build a todo app with user accounts") -> str:
        project = runtime.queries.create_project(owner_id="owner-1", name="Todo", request=request)
        runtime.entry_point.start_pipeline(project.project_id)
        return project.project_id

    return _start
