"""Entry point for `python -m agent_builder` and the `agent-builder` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from agent_builder.models import ProjectStatus
from agent_builder.runtime import build_runtime
from agent_builder.settings import RuntimeSettings
from agent_builder.state_store import FileStateStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a project through the agent-builder pipeline")
    parser.add_argument("--request-file", type=Path, default=None, help="Path to a file holding the project request")
    parser.add_argument("--request-text", default=None, help="Inline project request (mutually exclusive with request file)")
    parser.add_argument("--project-name", default="Untitled project", help="Display name of the created project")
    parser.add_argument("--owner-id", default="local-user", help="Owner recorded on the created project")
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory of the file-backed state store (default: AGENT_BUILDER_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args()


def load_raw_request(*, request_file: Path | None, request_text: str | None) -> str:
    if request_text is not None and request_file is not None:
        raise ValueError("request_text cannot be combined with request_file input")
    if request_text is not None:
        trimmed = request_text.strip()
        if not trimmed:
            raise ValueError("request_text must be non-empty")
        return trimmed
    if request_file is not None:
        if not request_file.is_file():
            raise FileNotFoundError(f"Requested input file does not exist: {request_file}")
        return request_file.read_text(encoding="utf-8")
    raise ValueError("one of --request-text or --request-file is required")


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        raw_request = load_raw_request(request_file=args.request_file, request_text=args.request_text)
        settings = RuntimeSettings.from_env()
    except (OSError, ValueError) as exc:
        logging.error("Unable to load request input: %s", exc)
        return 1

    store_root = args.state_store_root if args.state_store_root is not None else settings.state_store_path(Path.cwd())
    try:
        runtime = build_runtime(settings=settings, store=FileStateStore(store_root))
    except (OSError, ValueError) as exc:
        logging.error("Unable to initialize runtime: %s", exc)
        return 1

    try:
        project = runtime.queries.create_project(owner_id=args.owner_id, name=args.project_name, request=raw_request)
        runtime.entry_point.start_pipeline(project.project_id)
        handled = runtime.consumer.drain()
        logging.info("Handled %d dispatch messages for project %s", handled, project.project_id)
        view = runtime.queries.get_status(project.project_id)
    except Exception as exc:  # noqa: BLE001
        logging.exception("Pipeline execution failed: %s", exc)
        return 1
    finally:
        close = getattr(runtime.invoker, "close", None)
        if close is not None:
            close()

    print(f"project_id={project.project_id}")
    print(f"project_status={view.status.value}")
    print(view.model_dump_json(indent=2))
    return 0 if view.status == ProjectStatus.COMPLETED else 1


if __name__ == "__main__":
    raise SystemExit(main())
