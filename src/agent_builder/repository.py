from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import InvalidStateError, NotFoundError
from .models import Artifact, Project, ProjectStatus, Task, TaskStatus, utc_now
from .state_store import ARTIFACTS_TABLE, PROJECTS_TABLE, TASKS_TABLE, StateStoreClient

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _load(model: type[ModelT], record: dict[str, Any], label: str) -> ModelT:
    try:
        return model.model_validate(record)
    except ValidationError as exc:
        raise ValueError(f"{label} record failed validation: {exc}") from exc


class PipelineRepository:
    """Typed access to project, task and artifact records.

    Task transitions are status-guarded: the write only lands if the stored
    task still holds the status the caller read, so a duplicate or reordered
    delivery loses the race with ``ConditionFailedError`` instead of
    overwriting newer state.
    """

    def __init__(self, store: StateStoreClient) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(self, *, owner_id: str, name: str, request: str) -> Project:
        """Persist a new PENDING project (the CRUD write path)."""
        project = Project(owner_id=owner_id, name=name, request=request)
        self.store.put(PROJECTS_TABLE, project.model_dump(mode="json"), if_absent=True)
        logger.info("Created project %s for owner %s", project.project_id, owner_id)
        return project

    def get_project(self, project_id: str) -> Project | None:
        record = self.store.get(PROJECTS_TABLE, {"project_id": project_id})
        if record is None:
            return None
        return _load(Project, record, f"project {project_id}")

    def require_project(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def list_owner_projects(self, owner_id: str) -> list[Project]:
        records = self.store.query_by_index(PROJECTS_TABLE, "owner_id", owner_id)
        projects = [_load(Project, record, "project") for record in records]
        return sorted(projects, key=lambda project: project.created_at, reverse=True)

    def set_project_status(
        self,
        project_id: str,
        status: ProjectStatus,
        *,
        expected: ProjectStatus | None = None,
    ) -> Project:
        fields = {"status": status.value, "updated_at": utc_now().isoformat()}
        condition = {"status": expected.value} if expected is not None else None
        record = self.store.update_fields(PROJECTS_TABLE, {"project_id": project_id}, fields, expected=condition)
        logger.info("Project %s status -> %s", project_id, status.value)
        return _load(Project, record, f"project {project_id}")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_tasks(self, tasks: list[Task]) -> None:
        """Write all tasks of a project as one all-or-nothing batch."""
        self.store.put_batch(TASKS_TABLE, [task.model_dump(mode="json") for task in tasks])

    def delete_tasks(self, tasks: list[Task]) -> None:
        for task in tasks:
            self.store.delete(TASKS_TABLE, {"project_id": task.project_id, "task_id": task.task_id})

    def list_tasks(self, project_id: str) -> list[Task]:
        records = self.store.query_by_index(TASKS_TABLE, "project_id", project_id)
        return [_load(Task, record, f"task of project {project_id}") for record in records]

    def transition_task(self, task: Task, status: TaskStatus, **changes: Any) -> Task:
        """Move ``task`` to ``status``, applying ``changes`` in the same write.

        Raises:
            InvalidStateError: If the transition is not allowed from ``task.status``.
            ConditionFailedError: If the stored task no longer has ``task.status``.
        """
        if not task.can_transition_to(status):
            raise InvalidStateError(
                f"Illegal task status transition for {task.task_id}: {task.status.value} -> {status.value}"
            )
        updated = task.model_copy(update={"status": status, **changes})
        fields = updated.model_dump(mode="json", include={"status", *changes})
        record = self.store.update_fields(
            TASKS_TABLE,
            {"project_id": task.project_id, "task_id": task.task_id},
            fields,
            expected={"status": task.status.value},
        )
        logger.info(
            "Task %s (%s) of project %s: %s -> %s",
            task.task_id,
            task.worker_name,
            task.project_id,
            task.status.value,
            status.value,
        )
        return _load(Task, record, f"task {task.task_id}")

    def report_progress(self, project_id: str, task_id: str, progress: int) -> Task | None:
        """Record sub-progress for an IN_PROGRESS task; never lowers stored progress.

        Returns the stored task, or ``None`` when the report was ignored.
        """
        if not 0 <= progress <= 100:
            raise ValueError(f"progress must be within 0..100, got: {progress}")
        record = self.store.get(TASKS_TABLE, {"project_id": project_id, "task_id": task_id})
        if record is None:
            raise NotFoundError("task", f"{project_id}/{task_id}")
        task = _load(Task, record, f"task {task_id}")
        if task.status != TaskStatus.IN_PROGRESS or (task.progress or 0) >= progress:
            return None
        record = self.store.update_fields(
            TASKS_TABLE,
            {"project_id": project_id, "task_id": task_id},
            {"progress": progress},
            expected={"status": TaskStatus.IN_PROGRESS.value, "progress": task.progress},
        )
        return _load(Task, record, f"task {task_id}")

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def add_artifact(self, artifact: Artifact) -> None:
        """Create an artifact; artifacts are never overwritten."""
        self.store.put(ARTIFACTS_TABLE, artifact.model_dump(mode="json"), if_absent=True)

    def list_artifacts(self, project_id: str) -> list[Artifact]:
        records = self.store.query_by_index(ARTIFACTS_TABLE, "project_id", project_id)
        return [_load(Artifact, record, f"artifact of project {project_id}") for record in records]
