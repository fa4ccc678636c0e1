from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    pipeline_config: str = ""
    notification_topic: str = "project-notifications"
    worker_timeout_seconds: int = 900
    per_task_minutes: int = 7
    dedup_window_seconds: int = 300
    max_receive_count: int = 5
    receive_batch_size: int = 10
    consumer_concurrency: int = 4
    status_reconcile_interval_seconds: int = 5
    recursion_limit: int = 50

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "RuntimeSettings":
        dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path, override=False)
        return cls(
            state_store_root=os.getenv("AGENT_BUILDER_STATE_STORE_ROOT", "state_store"),
            pipeline_config=os.getenv("AGENT_BUILDER_PIPELINE_CONFIG", ""),
            notification_topic=os.getenv("AGENT_BUILDER_NOTIFICATION_TOPIC", "project-notifications"),
            worker_timeout_seconds=_get_env_int("AGENT_BUILDER_WORKER_TIMEOUT_SECONDS", default=900, minimum=1, maximum=86_400),
            per_task_minutes=_get_env_int("AGENT_BUILDER_PER_TASK_MINUTES", default=7, minimum=1, maximum=1_440),
            dedup_window_seconds=_get_env_int("AGENT_BUILDER_DEDUP_WINDOW_SECONDS", default=300, minimum=0, maximum=86_400),
            max_receive_count=_get_env_int("AGENT_BUILDER_MAX_RECEIVE_COUNT", default=5, minimum=1, maximum=1_000),
            receive_batch_size=_get_env_int("AGENT_BUILDER_RECEIVE_BATCH_SIZE", default=10, minimum=1, maximum=10),
            consumer_concurrency=_get_env_int("AGENT_BUILDER_CONSUMER_CONCURRENCY", default=4, minimum=1, maximum=256),
            status_reconcile_interval_seconds=_get_env_int(
                "AGENT_BUILDER_STATUS_RECONCILE_INTERVAL_SECONDS", default=5, minimum=0, maximum=3_600
            ),
            recursion_limit=_get_env_int("AGENT_BUILDER_RECURSION_LIMIT", default=50, minimum=10, maximum=10_000),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        state_store_root = self.state_store_root.strip()
        if not state_store_root:
            raise ValueError("AGENT_BUILDER_STATE_STORE_ROOT must be non-empty")
        notification_topic = self.notification_topic.strip()
        if not notification_topic:
            raise ValueError("AGENT_BUILDER_NOTIFICATION_TOPIC must be non-empty")
        pipeline_config = self.pipeline_config.strip()
        if pipeline_config and not pipeline_config.endswith(".json"):
            raise ValueError(f"AGENT_BUILDER_PIPELINE_CONFIG must point to a .json file, got: {pipeline_config!r}")
        if self.worker_timeout_seconds < 1:
            raise ValueError(f"worker_timeout_seconds must be >= 1, got: {self.worker_timeout_seconds}")
        if self.receive_batch_size < 1:
            raise ValueError(f"receive_batch_size must be >= 1, got: {self.receive_batch_size}")
        if self.consumer_concurrency < 1:
            raise ValueError(f"consumer_concurrency must be >= 1, got: {self.consumer_concurrency}")
        return replace(
            self,
            state_store_root=state_store_root,
            notification_topic=notification_topic,
            pipeline_config=pipeline_config,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def pipeline_config_path(self) -> Path | None:
        return Path(self.pipeline_config) if self.pipeline_config else None


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
