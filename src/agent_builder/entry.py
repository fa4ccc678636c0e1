from __future__ import annotations

import logging

from .dispatch import DispatchQueue
from .errors import ConditionFailedError, InvalidStateError, RecordExistsError, TransportFailure
from .models import PipelineStarted, ProjectStatus, Task
from .pipeline import PipelineDefinition
from .repository import PipelineRepository

logger = logging.getLogger(__name__)


class PipelineEntryPoint:
    """Starts a pipeline run: seeds the task batch and enqueues the first stage."""

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        dispatch_queue: DispatchQueue,
        pipeline: PipelineDefinition,
    ) -> None:
        self.repository = repository
        self.dispatch_queue = dispatch_queue
        self.pipeline = pipeline

    def _build_tasks(self, project_id: str) -> list[Task]:
        return [
            Task(project_id=project_id, worker_name=stage.worker, description=stage.description)
            for stage in self.pipeline.stages
        ]

    def start_pipeline(self, project_id: str) -> PipelineStarted:
        """Start the pipeline for a PENDING project.

        Writes one TODO task per stage as a single batch, moves the project to
        IN_PROGRESS and enqueues the first stage. If the enqueue fails the
        task batch is deleted and the project is put back to PENDING before
        the failure is re-raised, so no partial start is left behind.

        Raises:
            NotFoundError: If the project does not exist.
            InvalidStateError: If the project is not PENDING or already has tasks.
            TransportFailure: If the first dispatch could not be enqueued.
        """
        project = self.repository.require_project(project_id)
        if project.status != ProjectStatus.PENDING:
            raise InvalidStateError(f"Project {project_id} is {project.status.value}; expected PENDING")
        if self.repository.list_tasks(project_id):
            raise InvalidStateError(f"Project {project_id} already has pipeline tasks")

        tasks = self._build_tasks(project_id)
        try:
            self.repository.create_tasks(tasks)
        except RecordExistsError as exc:
            raise InvalidStateError(f"Project {project_id} task batch collided with existing tasks") from exc

        try:
            self.repository.set_project_status(project_id, ProjectStatus.IN_PROGRESS, expected=ProjectStatus.PENDING)
        except ConditionFailedError as exc:
            self.repository.delete_tasks(tasks)
            raise InvalidStateError(f"Project {project_id} was started concurrently") from exc
        except Exception:
            logger.error("Could not move project %s to IN_PROGRESS; removing its task batch", project_id)
            self.repository.delete_tasks(tasks)
            raise

        first_worker = self.pipeline.first_worker
        try:
            self.dispatch_queue.enqueue(project_id, first_worker)
        except TransportFailure:
            logger.error("Could not enqueue %s for project %s; rolling back pipeline start", first_worker, project_id)
            self._rollback(project_id, tasks)
            raise

        logger.info("Started pipeline %s for project %s", self.pipeline.name, project_id)
        return PipelineStarted(
            project_id=project_id,
            status=ProjectStatus.IN_PROGRESS,
            first_worker=first_worker,
            task_ids=[task.task_id for task in tasks],
        )

    def _rollback(self, project_id: str, tasks: list[Task]) -> None:
        try:
            self.repository.delete_tasks(tasks)
            self.repository.set_project_status(project_id, ProjectStatus.PENDING, expected=ProjectStatus.IN_PROGRESS)
        except Exception:  # noqa: BLE001
            # The enqueue failure is re-raised by the caller either way.
            logger.exception("Rollback of pipeline start for project %s failed", project_id)
