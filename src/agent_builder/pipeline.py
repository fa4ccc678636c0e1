from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import InvalidStateError


class StageDefinition(BaseModel):
    """One position in the worker chain."""

    worker: str = Field(min_length=1)
    description: str = ""
    timeout_seconds: int | None = Field(default=None, ge=1)


class PipelineDefinition(BaseModel):
    """Fixed, linear chain of workers a project passes through.

    The chain is pure data: deciding which worker runs next is a lookup in
    ``stages`` rather than branching on worker names.
    """

    name: str = Field(min_length=1)
    stages: list[StageDefinition] = Field(min_length=1)

    @field_validator("stages")
    @classmethod
    def _workers_are_unique(cls, stages: list[StageDefinition]) -> list[StageDefinition]:
        seen: set[str] = set()
        for stage in stages:
            if stage.worker in seen:
                raise ValueError(f"worker appears more than once in pipeline: {stage.worker}")
            seen.add(stage.worker)
        return stages

    @property
    def workers(self) -> list[str]:
        return [stage.worker for stage in self.stages]

    @property
    def first_worker(self) -> str:
        return self.stages[0].worker

    def position(self, worker: str) -> int:
        """Return the zero-based chain position of ``worker``.

        Raises:
            InvalidStateError: If the worker is not part of this pipeline.
        """
        for index, stage in enumerate(self.stages):
            if stage.worker == worker:
                return index
        raise InvalidStateError(f"worker {worker!r} is not part of pipeline {self.name!r}")

    def contains(self, worker: str) -> bool:
        return any(stage.worker == worker for stage in self.stages)

    def stage(self, worker: str) -> StageDefinition:
        return self.stages[self.position(worker)]

    def next_worker(self, current: str) -> str | None:
        """Return the worker after ``current``, or ``None`` when ``current`` is last."""
        index = self.position(current)
        if index + 1 < len(self.stages):
            return self.stages[index + 1].worker
        return None

    def previous_workers(self, current: str) -> list[str]:
        return self.workers[: self.position(current)]

    def timeout_for(self, worker: str, default_seconds: int) -> int:
        configured = self.stage(worker).timeout_seconds
        return configured if configured is not None else default_seconds


def get_pipeline_config_dir() -> Path:
    """Return package-relative path to the bundled pipeline definitions."""
    return Path(__file__).resolve().parent / "pipeline_configs"


def load_pipeline_definition(path: Path | None = None) -> PipelineDefinition:
    """Load and validate a pipeline definition JSON file.

    Args:
        path: Definition to load; the bundled ``default.json`` when omitted.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file fails validation.
    """
    config_path = path if path is not None else get_pipeline_config_dir() / "default.json"
    if not config_path.is_file():
        raise FileNotFoundError(f"pipeline definition not found: {config_path}")
    try:
        return PipelineDefinition.model_validate_json(config_path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"pipeline definition at {config_path} failed validation: {exc}") from exc
