from __future__ import annotations

import logging
import math
import threading
import time
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Callable

from .errors import ConditionFailedError
from .models import (
    FailedTaskInfo,
    Project,
    ProjectStatus,
    ProjectStatusView,
    Task,
    TaskStatus,
    TaskSummary,
    utc_now,
)
from .pipeline import PipelineDefinition
from .repository import PipelineRepository
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


def order_tasks(tasks: list[Task], pipeline: PipelineDefinition) -> list[Task]:
    """Sort tasks by chain position; workers outside the chain sort last."""
    last = len(pipeline.stages)
    return sorted(tasks, key=lambda task: pipeline.position(task.worker_name) if pipeline.contains(task.worker_name) else last)


def summarize_tasks(
    project: Project,
    tasks: list[Task],
    *,
    per_task_minutes: int,
    now: datetime | None = None,
) -> ProjectStatusView:
    """Derive the client status view from a project's task records.

    Progress is the share of DONE tasks plus the sub-progress of the single
    IN_PROGRESS task, floored to an integer. A task that has FAILED, or a
    single task parked in PENDING_APPROVAL, keeps its last reported
    sub-progress counted so progress does not drop when a stage stops.
    The estimated completion is anchored on the start of the running stage,
    so repeated reads of unchanged records return the same view.
    """
    summary = TaskSummary(
        total=len(tasks),
        completed=sum(1 for task in tasks if task.status == TaskStatus.DONE),
        in_progress=sum(1 for task in tasks if task.status == TaskStatus.IN_PROGRESS),
        failed=sum(1 for task in tasks if task.status == TaskStatus.FAILED),
        pending=sum(1 for task in tasks if task.status == TaskStatus.TODO),
        pending_approval=sum(1 for task in tasks if task.status == TaskStatus.PENDING_APPROVAL),
    )
    running = [task for task in tasks if task.status == TaskStatus.IN_PROGRESS]
    failed = [task for task in tasks if task.status == TaskStatus.FAILED]
    awaiting = [task for task in tasks if task.status == TaskStatus.PENDING_APPROVAL]

    progress = Fraction(0)
    if summary.total:
        progress = Fraction(summary.completed * 100, summary.total)
        if len(running) == 1:
            partial = running
        elif failed:
            partial = failed[:1]
        else:
            partial = awaiting if not running else []
        if len(partial) == 1 and partial[0].progress is not None:
            progress += Fraction(partial[0].progress, summary.total)

    current_task: str | None = None
    estimated_completion: datetime | None = None
    if running:
        current = running[0]
        current_task = current.description or f"{current.worker_name} working..."
        anchor = current.started_at or now or utc_now()
        remaining = summary.total - summary.completed
        estimated_completion = anchor + timedelta(minutes=remaining * per_task_minutes)
    elif awaiting:
        current_task = f"{awaiting[0].worker_name} awaiting approval"

    failure: FailedTaskInfo | None = None
    if failed:
        status = ProjectStatus.FAILED
        first = failed[0]
        failure = FailedTaskInfo(task_id=first.task_id, worker_name=first.worker_name, error_message=first.error_message)
        current_task = f"{first.worker_name} failed: {first.error_message or 'unknown error'}"
    elif summary.total and summary.completed == summary.total:
        status = ProjectStatus.COMPLETED
        progress = Fraction(100)
    elif running or summary.completed > 0:
        status = ProjectStatus.IN_PROGRESS
    else:
        status = project.status

    return ProjectStatusView(
        project_id=project.project_id,
        status=status,
        progress=min(100, max(0, math.floor(progress))),
        current_task=current_task,
        estimated_completion=estimated_completion,
        task_summary=summary,
        failure=failure,
    )


class StatusAggregator:
    """Answers status queries by recomputing from task records.

    When the derived status differs from the stored one, the stored project
    status is corrected. That write happens at most once per read and at
    most once per project per ``status_reconcile_interval_seconds``.
    """

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        pipeline: PipelineDefinition,
        settings: RuntimeSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.settings = settings if settings is not None else RuntimeSettings()
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._last_reconciled: dict[str, float] = {}

    def compute_status(self, project_id: str) -> ProjectStatusView:
        """Return the derived status view for ``project_id``.

        Raises:
            NotFoundError: If the project does not exist.
        """
        project = self.repository.require_project(project_id)
        tasks = order_tasks(self.repository.list_tasks(project_id), self.pipeline)
        view = summarize_tasks(project, tasks, per_task_minutes=self.settings.per_task_minutes, now=self._clock())
        if view.status != project.status:
            self._reconcile(project, view.status)
        return view

    def _reconcile(self, project: Project, derived: ProjectStatus) -> None:
        now = self._monotonic()
        interval = self.settings.status_reconcile_interval_seconds
        with self._lock:
            last = self._last_reconciled.get(project.project_id)
            if last is not None and now - last < interval:
                logger.debug("Skipping status reconciliation of project %s; last write %.1fs ago", project.project_id, now - last)
                return
            self._last_reconciled = {
                project_id: stamp for project_id, stamp in self._last_reconciled.items() if now - stamp < interval
            }
            self._last_reconciled[project.project_id] = now

        try:
            self.repository.set_project_status(project.project_id, derived, expected=project.status)
        except ConditionFailedError:
            logger.info("Project %s status changed during read; leaving it to the next reconciliation", project.project_id)
            return
        logger.info(
            "Reconciled project %s status %s -> %s from task records",
            project.project_id,
            project.status.value,
            derived.value,
        )
