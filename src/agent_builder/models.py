from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class ProjectStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


TASK_STATUS_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.TODO: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.PENDING_APPROVAL},
    TaskStatus.PENDING_APPROVAL: {TaskStatus.DONE, TaskStatus.FAILED},
    TaskStatus.DONE: set(),
    TaskStatus.FAILED: set(),
}

TERMINAL_PROJECT_STATUSES = frozenset({ProjectStatus.COMPLETED, ProjectStatus.FAILED})


class ArtifactType(str, Enum):
    SRS_DOCUMENT = "SRS_DOCUMENT"
    SOURCE_CODE = "SOURCE_CODE"
    DEPLOYMENT_URL = "DEPLOYMENT_URL"
    TEST_REPORT = "TEST_REPORT"


class Project(BaseModel):
    """A submitted build request; its status is derived from its tasks after start."""

    project_id: str = Field(default_factory=new_id, min_length=1)
    owner_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    request: str = ""
    status: ProjectStatus = ProjectStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Task(BaseModel):
    """One stage of one project's pipeline, owned by exactly one worker."""

    project_id: str = Field(min_length=1)
    task_id: str = Field(default_factory=new_id, min_length=1)
    worker_name: str = Field(min_length=1)
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    dependencies: list[str] = Field(default_factory=list)
    output_artifact_id: str | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def can_transition_to(self, status: TaskStatus) -> bool:
        return status in TASK_STATUS_TRANSITIONS[self.status]


class ArtifactDraft(BaseModel):
    """Deliverable as returned by a worker, before the coordinator assigns identity."""

    artifact_type: ArtifactType
    location: str = Field(min_length=1)
    version: str = "1.0"
    title: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Artifact(BaseModel):
    """Immutable deliverable record produced by one task."""

    model_config = ConfigDict(frozen=True)

    project_id: str = Field(min_length=1)
    artifact_id: str = Field(default_factory=new_id, min_length=1)
    task_id: str
    worker_name: str
    artifact_type: ArtifactType
    location: str
    version: str = "1.0"
    title: str | None = None
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_draft(cls, draft: ArtifactDraft, *, task: Task) -> "Artifact":
        return cls(
            project_id=task.project_id,
            task_id=task.task_id,
            worker_name=task.worker_name,
            artifact_type=draft.artifact_type,
            location=draft.location,
            version=draft.version,
            title=draft.title,
            description=draft.description,
            metadata=dict(draft.metadata),
        )


class DispatchMessage(BaseModel):
    """Queue payload that triggers one coordinator run for one stage.

    The body on the wire is ``{"projectId", "workerName"}``; the partition and
    deduplication keys travel as transport attributes.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    project_id: str = Field(alias="projectId", min_length=1)
    worker_name: str = Field(alias="workerName", min_length=1)
    partition_key: str = ""
    dedup_key: str = ""

    def body(self) -> dict[str, str]:
        return {"projectId": self.project_id, "workerName": self.worker_name}


class WorkerPayload(BaseModel):
    project_id: str
    project: Project
    task_id: str
    previous_artifacts: list[Artifact] = Field(default_factory=list)


class WorkerResult(BaseModel):
    success: bool
    artifacts: list[ArtifactDraft] = Field(default_factory=list)
    error_message: str | None = None
    requires_approval: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _failed_results_carry_no_artifacts(self) -> "WorkerResult":
        if not self.success:
            self.artifacts = []
            self.requires_approval = False
        return self


class PipelineStarted(BaseModel):
    project_id: str
    status: ProjectStatus
    first_worker: str
    task_ids: list[str]


class TaskSummary(BaseModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    failed: int = 0
    pending: int = 0
    pending_approval: int = 0


class FailedTaskInfo(BaseModel):
    task_id: str
    worker_name: str
    error_message: str | None = None


class ProjectStatusView(BaseModel):
    """Client-facing status computed from the current task records."""

    project_id: str
    status: ProjectStatus
    progress: int = Field(ge=0, le=100)
    current_task: str | None = None
    estimated_completion: datetime | None = None
    task_summary: TaskSummary
    failure: FailedTaskInfo | None = None


class NotificationEventType(str, Enum):
    TASK_UPDATE = "task_update"
    PROJECT_UPDATE = "project_update"


class NotificationEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")
    type: NotificationEventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
