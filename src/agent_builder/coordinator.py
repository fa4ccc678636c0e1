from __future__ import annotations

import functools
import logging
from enum import Enum
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .dispatch import DispatchQueue, build_dispatch_message
from .errors import ConditionFailedError, InvalidStateError
from .invoker import InvocationContext, WorkerInvoker
from .models import (
    TERMINAL_PROJECT_STATUSES,
    Artifact,
    DispatchMessage,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
    WorkerPayload,
    WorkerResult,
    utc_now,
)
from .notifications import NotificationPublisher
from .pipeline import PipelineDefinition
from .repository import PipelineRepository
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    DROPPED = "dropped"
    RESUMED = "resumed"
    STAGE_COMPLETED = "stage_completed"
    AWAITING_APPROVAL = "awaiting_approval"
    PROJECT_COMPLETED = "project_completed"
    FAILED = "failed"


class DispatchGraphState(TypedDict, total=False):
    message: DispatchMessage
    project: Project
    task: Task
    tasks: list[Task]
    previous_artifacts: list[Artifact]
    result: WorkerResult | None
    error_message: str | None
    outcome: DispatchOutcome


class PipelineCoordinator:
    """Runs one pipeline stage per Dispatch Message as a LangGraph StateGraph.

    ``load`` guards against stale, duplicate and misrouted deliveries,
    ``start_task`` claims the task with a status-conditioned write,
    ``invoke_worker`` calls the worker under its stage deadline, and the
    result is recorded before ``advance`` enqueues the next stage or
    completes the project. A redelivery that finds its task already DONE
    goes straight to ``advance`` so a follow-up lost to a crash is re-issued.
    """

    def __init__(
        self,
        *,
        repository: PipelineRepository,
        dispatch_queue: DispatchQueue,
        invoker: WorkerInvoker,
        notifications: NotificationPublisher,
        pipeline: PipelineDefinition,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.repository = repository
        self.dispatch_queue = dispatch_queue
        self.invoker = invoker
        self.notifications = notifications
        self.pipeline = pipeline
        self.settings = settings if settings is not None else RuntimeSettings()
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DispatchGraphState)
        graph.add_node("load", self._load_node)
        graph.add_node("start_task", self._start_task_node)
        graph.add_node("invoke_worker", self._invoke_worker_node)
        graph.add_node("record_success", self._record_success_node)
        graph.add_node("record_failure", self._record_failure_node)
        graph.add_node("advance", self._advance_node)

        graph.add_edge(START, "load")
        graph.add_conditional_edges(
            "load",
            self._load_route,
            {
                "start_task": "start_task",
                "advance": "advance",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "start_task",
            self._start_route,
            {
                "invoke_worker": "invoke_worker",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "invoke_worker",
            self._invoke_route,
            {
                "record_success": "record_success",
                "record_failure": "record_failure",
            },
        )
        graph.add_conditional_edges(
            "record_success",
            self._success_route,
            {
                "advance": "advance",
                "end": END,
            },
        )
        graph.add_edge("record_failure", END)
        graph.add_edge("advance", END)
        return graph

    def _chain_order(self, worker_name: str) -> int:
        return self.pipeline.position(worker_name) if self.pipeline.contains(worker_name) else len(self.pipeline.stages)

    def _drop(self, reason: str, *args: Any) -> dict[str, Any]:
        logger.warning(reason, *args)
        return {"outcome": DispatchOutcome.DROPPED}

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _load_node(self, state: DispatchGraphState) -> dict[str, Any]:
        message = state["message"]
        project_id, worker_name = message.project_id, message.worker_name
        logger.info("Processing dispatch of %s for project %s", worker_name, project_id)

        project = self.repository.get_project(project_id)
        if project is None:
            return self._drop("Project %s not found; dropping dispatch of %s", project_id, worker_name)
        if project.status in TERMINAL_PROJECT_STATUSES:
            return self._drop("Project %s is %s; dropping dispatch of %s", project_id, project.status.value, worker_name)

        tasks = self.repository.list_tasks(project_id)
        task = next((candidate for candidate in tasks if candidate.worker_name == worker_name), None)
        if task is None:
            return self._drop("No task for worker %s in project %s; dropping dispatch", worker_name, project_id)
        if not self.pipeline.contains(worker_name):
            return self._drop("Worker %s is not part of pipeline %s; dropping dispatch", worker_name, self.pipeline.name)

        if task.status == TaskStatus.DONE:
            logger.info("Task %s (%s) already DONE; re-issuing its follow-up", task.task_id, worker_name)
            return {"project": project, "task": task, "tasks": tasks, "outcome": DispatchOutcome.RESUMED}
        if task.status != TaskStatus.TODO:
            return self._drop(
                "Task %s (%s) of project %s is %s; dropping duplicate dispatch",
                task.task_id,
                worker_name,
                project_id,
                task.status.value,
            )

        previous = set(self.pipeline.previous_workers(worker_name))
        unfinished = [t.worker_name for t in tasks if t.worker_name in previous and t.status != TaskStatus.DONE]
        if unfinished:
            return self._drop(
                "Dispatch of %s for project %s arrived before %s finished; dropping",
                worker_name,
                project_id,
                ", ".join(sorted(unfinished, key=self._chain_order)),
            )
        return {"project": project, "task": task, "tasks": tasks}

    def _load_route(self, state: DispatchGraphState) -> str:
        outcome = state.get("outcome")
        if outcome == DispatchOutcome.RESUMED:
            return "advance"
        if outcome == DispatchOutcome.DROPPED:
            return "end"
        return "start_task"

    def _start_task_node(self, state: DispatchGraphState) -> dict[str, Any]:
        task = state["task"]
        try:
            started = self.repository.transition_task(
                task,
                TaskStatus.IN_PROGRESS,
                started_at=utc_now(),
                progress=0,
                error_message=None,
            )
        except ConditionFailedError:
            return self._drop("Task %s (%s) was claimed concurrently; dropping duplicate dispatch", task.task_id, task.worker_name)
        return {"task": started, "previous_artifacts": self._previous_artifacts(started)}

    def _start_route(self, state: DispatchGraphState) -> str:
        if state.get("outcome") == DispatchOutcome.DROPPED:
            return "end"
        return "invoke_worker"

    def _previous_artifacts(self, task: Task) -> list[Artifact]:
        previous = set(self.pipeline.previous_workers(task.worker_name))
        artifacts = [artifact for artifact in self.repository.list_artifacts(task.project_id) if artifact.worker_name in previous]
        return sorted(artifacts, key=lambda artifact: (self._chain_order(artifact.worker_name), artifact.created_at))

    def _invoke_worker_node(self, state: DispatchGraphState) -> dict[str, Any]:
        task = state["task"]
        payload = WorkerPayload(
            project_id=task.project_id,
            project=state["project"],
            task_id=task.task_id,
            previous_artifacts=state.get("previous_artifacts", []),
        )
        timeout = self.pipeline.timeout_for(task.worker_name, self.settings.worker_timeout_seconds)
        context = InvocationContext.with_timeout(
            task.worker_name,
            timeout,
            progress_callback=functools.partial(self.repository.report_progress, task.project_id, task.task_id),
        )
        logger.info("Invoking %s for project %s (timeout %ss)", task.worker_name, task.project_id, timeout)
        try:
            result = self.invoker.invoke(task.worker_name, payload, context)
        except Exception as exc:  # noqa: BLE001
            # Any invocation error fails the stage; it is recorded, not retried.
            logger.error("Error invoking %s for project %s: %s", task.worker_name, task.project_id, exc)
            return {"result": None, "error_message": str(exc) or type(exc).__name__}

        if not result.success:
            return {"result": result, "error_message": result.error_message or "Worker execution failed"}
        return {"result": result, "error_message": None}

    def _invoke_route(self, state: DispatchGraphState) -> str:
        if state.get("error_message") is None:
            return "record_success"
        return "record_failure"

    def _record_success_node(self, state: DispatchGraphState) -> dict[str, Any]:
        task = state["task"]
        result = state["result"]
        if result is None:
            raise InvalidStateError(f"Task {task.task_id} has no worker result to record")

        artifacts = [Artifact.from_draft(draft, task=task) for draft in result.artifacts]
        for artifact in artifacts:
            self.repository.add_artifact(artifact)
        changes: dict[str, Any] = {
            "output_artifact_id": artifacts[0].artifact_id if artifacts else None,
            "metadata": {**task.metadata, **result.metadata},
        }

        if result.requires_approval:
            waiting = self.repository.transition_task(task, TaskStatus.PENDING_APPROVAL, **changes)
            self.notifications.task_update(waiting, approvalRequired=True)
            logger.info("Task %s (%s) is awaiting approval", waiting.task_id, waiting.worker_name)
            return {"task": waiting, "outcome": DispatchOutcome.AWAITING_APPROVAL}

        done = self.repository.transition_task(task, TaskStatus.DONE, progress=100, completed_at=utc_now(), **changes)
        self.notifications.task_update(done, artifactIds=[artifact.artifact_id for artifact in artifacts])
        return {"task": done}

    def _success_route(self, state: DispatchGraphState) -> str:
        if state.get("outcome") == DispatchOutcome.AWAITING_APPROVAL:
            return "end"
        return "advance"

    def _record_failure_node(self, state: DispatchGraphState) -> dict[str, Any]:
        task = state["task"]
        error_message = state["error_message"] or "Worker execution failed"

        failed = self.repository.transition_task(
            task,
            TaskStatus.FAILED,
            completed_at=utc_now(),
            error_message=error_message,
        )
        self.repository.set_project_status(task.project_id, ProjectStatus.FAILED)
        self.notifications.task_update(failed)
        self.notifications.project_update(
            task.project_id,
            ProjectStatus.FAILED,
            f"Agent {task.worker_name} failed",
            agentName=task.worker_name,
            error=error_message,
        )
        return {"task": failed, "outcome": DispatchOutcome.FAILED}

    def _advance_node(self, state: DispatchGraphState) -> dict[str, Any]:
        task = state["task"]
        resumed = state.get("outcome") == DispatchOutcome.RESUMED
        project_id = task.project_id

        next_worker = self.pipeline.next_worker(task.worker_name)
        if next_worker is not None:
            tasks = self.repository.list_tasks(project_id)
            next_task = next((candidate for candidate in tasks if candidate.worker_name == next_worker), None)
            if next_task is None:
                raise InvalidStateError(f"Project {project_id} has no task for next worker {next_worker}")
            if next_task.status == TaskStatus.TODO:
                self.dispatch_queue.enqueue(project_id, next_worker)
            else:
                logger.info("Next task %s (%s) already %s; not re-queuing", next_task.task_id, next_worker, next_task.status.value)
            return {"outcome": DispatchOutcome.RESUMED if resumed else DispatchOutcome.STAGE_COMPLETED}

        project = self.repository.require_project(project_id)
        if project.status == ProjectStatus.FAILED:
            logger.warning("Project %s already FAILED; not marking it COMPLETED", project_id)
        elif project.status != ProjectStatus.COMPLETED:
            self.repository.set_project_status(project_id, ProjectStatus.COMPLETED)
            self.notifications.project_update(project_id, ProjectStatus.COMPLETED, "All agents completed successfully")
            logger.info("Project %s completed", project_id)
        return {"outcome": DispatchOutcome.RESUMED if resumed else DispatchOutcome.PROJECT_COMPLETED}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def handle_dispatch(self, message: DispatchMessage) -> DispatchOutcome:
        """Run one dispatch through the graph and return what it did.

        Worker failures are recorded and returned as ``FAILED``. Store and
        queue errors propagate so the message is redelivered.
        """
        initial_state: DispatchGraphState = {"message": message}
        result = self.graph.invoke(initial_state, config={"recursion_limit": self.settings.recursion_limit})
        outcome = result.get("outcome", DispatchOutcome.DROPPED)
        logger.info("Dispatch of %s for project %s: %s", message.worker_name, message.project_id, outcome.value)
        return outcome

    def _stalled_approval(self, tasks: list[Task], task_id: str | None) -> Task | None:
        """Return the approved DONE task whose follow-up never went out, if any."""
        by_worker = {task.worker_name: task for task in tasks}
        approved = [
            task
            for task in tasks
            if task.status == TaskStatus.DONE
            and task.metadata.get("approved")
            and (task_id is None or task.task_id == task_id)
            and self.pipeline.contains(task.worker_name)
        ]
        for task in sorted(approved, key=lambda candidate: self._chain_order(candidate.worker_name), reverse=True):
            next_worker = self.pipeline.next_worker(task.worker_name)
            if next_worker is None:
                return task
            next_task = by_worker.get(next_worker)
            if next_task is not None and next_task.status == TaskStatus.TODO:
                return task
        return None

    def approve_task(self, project_id: str, task_id: str | None = None, feedback: str | None = None) -> DispatchOutcome:
        """Approve a PENDING_APPROVAL task and continue the chain.

        If an earlier approval marked its task DONE but the follow-up could
        not be enqueued, calling this again re-issues that follow-up.

        Raises:
            NotFoundError: If the project does not exist.
            InvalidStateError: If no matching task is awaiting approval.
        """
        project = self.repository.require_project(project_id)
        if project.status in TERMINAL_PROJECT_STATUSES:
            raise InvalidStateError(f"Project {project_id} is {project.status.value}; nothing to approve")

        tasks = self.repository.list_tasks(project_id)
        waiting = [
            task
            for task in tasks
            if task.status == TaskStatus.PENDING_APPROVAL and (task_id is None or task.task_id == task_id)
        ]
        if waiting:
            task = min(waiting, key=lambda candidate: self._chain_order(candidate.worker_name))
            metadata = {**task.metadata, "approved": True}
            if feedback:
                metadata["userFeedback"] = feedback
            done = self.repository.transition_task(task, TaskStatus.DONE, progress=100, completed_at=utc_now(), metadata=metadata)
            self.notifications.task_update(done, approved=True)
        else:
            done = self._stalled_approval(tasks, task_id)
            if done is None:
                raise InvalidStateError(f"No task awaiting approval in project {project_id}")
            logger.info("Re-issuing follow-up of approved task %s (%s)", done.task_id, done.worker_name)

        state: DispatchGraphState = {
            "message": build_dispatch_message(project_id, done.worker_name),
            "project": project,
            "task": done,
        }
        return self._advance_node(state)["outcome"]
