from __future__ import annotations

from .models import Artifact, Project, ProjectStatusView, Task
from .pipeline import PipelineDefinition
from .repository import PipelineRepository
from .status import StatusAggregator, order_tasks


class ProjectQueries:
    """Read path over one project: records in chain order plus the derived status."""

    def __init__(self, *, repository: PipelineRepository, pipeline: PipelineDefinition, status: StatusAggregator) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.status = status

    def create_project(self, *, owner_id: str, name: str, request: str) -> Project:
        return self.repository.create_project(owner_id=owner_id, name=name, request=request)

    def get_project(self, project_id: str) -> Project:
        return self.repository.require_project(project_id)

    def list_projects(self, owner_id: str) -> list[Project]:
        return self.repository.list_owner_projects(owner_id)

    def list_tasks(self, project_id: str) -> list[Task]:
        self.repository.require_project(project_id)
        return order_tasks(self.repository.list_tasks(project_id), self.pipeline)

    def list_artifacts(self, project_id: str) -> list[Artifact]:
        self.repository.require_project(project_id)
        last = len(self.pipeline.stages)

        def _key(artifact: Artifact) -> tuple[int, object]:
            position = self.pipeline.position(artifact.worker_name) if self.pipeline.contains(artifact.worker_name) else last
            return position, artifact.created_at

        return sorted(self.repository.list_artifacts(project_id), key=_key)

    def get_status(self, project_id: str) -> ProjectStatusView:
        return self.status.compute_status(project_id)
