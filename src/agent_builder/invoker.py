from __future__ import annotations

import logging
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, Sequence

from pydantic import ValidationError

from .errors import WorkerFailure, WorkerTimeoutError
from .models import WorkerPayload, WorkerResult

logger = logging.getLogger(__name__)


@dataclass
class InvocationContext:
    """Deadline, cancellation signal and progress sink for one worker call.

    Workers should poll ``cancelled`` between units of work and stop early
    once it is set; the invoker sets it when the deadline passes.
    """

    worker_name: str
    deadline: float
    cancel_event: threading.Event = field(default_factory=threading.Event)
    progress_callback: Callable[[int], Any] | None = None

    @classmethod
    def with_timeout(
        cls,
        worker_name: str,
        timeout_seconds: float,
        *,
        progress_callback: Callable[[int], Any] | None = None,
    ) -> "InvocationContext":
        return cls(
            worker_name=worker_name,
            deadline=time.monotonic() + timeout_seconds,
            progress_callback=progress_callback,
        )

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def report_progress(self, progress: int) -> None:
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(progress)
        except Exception:  # noqa: BLE001
            logger.warning("Dropping progress report %s from %s", progress, self.worker_name, exc_info=True)


class WorkerInvoker(Protocol):
    """Synchronous call into a named worker."""

    def invoke(self, worker_name: str, payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
        """Run the worker and return its result.

        Raises:
            WorkerFailure: If the worker cannot be invoked or errors.
            WorkerTimeoutError: If the deadline in ``context`` passes first.
        """
        ...


WorkerFunction = Callable[[WorkerPayload, InvocationContext], WorkerResult]


def _coerce_result(worker_name: str, raw: Any) -> WorkerResult:
    if isinstance(raw, WorkerResult):
        return raw
    try:
        return WorkerResult.model_validate(raw)
    except ValidationError as exc:
        raise WorkerFailure(worker_name, f"Worker {worker_name} returned an invalid result: {exc}") from exc


class LocalWorkerInvoker:
    """Runs in-process worker functions on a thread pool under a deadline."""

    def __init__(self, workers: Mapping[str, WorkerFunction] | None = None, *, max_workers: int = 4) -> None:
        self._workers: dict[str, WorkerFunction] = dict(workers or {})
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipeline-worker")

    def register(self, worker_name: str, function: WorkerFunction) -> None:
        self._workers[worker_name] = function

    def invoke(self, worker_name: str, payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
        function = self._workers.get(worker_name)
        if function is None:
            raise WorkerFailure(worker_name, f"Unknown worker: {worker_name}")
        if context.expired:
            raise WorkerTimeoutError(worker_name, f"Worker {worker_name} deadline passed before invocation")

        future = self._executor.submit(function, payload, context)
        try:
            raw = future.result(timeout=context.remaining())
        except FutureTimeoutError as exc:
            context.cancel()
            future.cancel()
            raise WorkerTimeoutError(worker_name, f"Worker {worker_name} did not finish before its deadline") from exc
        except WorkerFailure:
            raise
        except Exception as exc:
            raise WorkerFailure(worker_name, str(exc) or type(exc).__name__) from exc
        return _coerce_result(worker_name, raw)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "LocalWorkerInvoker":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()


class SubprocessWorkerInvoker:
    """Runs each worker as a separate process.

    The payload is written to the process's stdin as JSON and the process
    must print a ``WorkerResult`` JSON object on stdout. A non-zero exit
    status is a worker failure.
    """

    def __init__(
        self,
        commands: Mapping[str, Sequence[str]],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.commands = {name: list(command) for name, command in commands.items()}
        self.cwd = cwd
        self.env = dict(env) if env is not None else None

    def invoke(self, worker_name: str, payload: WorkerPayload, context: InvocationContext) -> WorkerResult:
        command = self.commands.get(worker_name)
        if not command:
            raise WorkerFailure(worker_name, f"Unknown worker: {worker_name}")
        if context.expired:
            raise WorkerTimeoutError(worker_name, f"Worker {worker_name} deadline passed before invocation")

        try:
            completed = subprocess.run(
                command,
                input=payload.model_dump_json(),
                capture_output=True,
                text=True,
                timeout=context.remaining(),
                cwd=self.cwd,
                env=self.env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            context.cancel()
            raise WorkerTimeoutError(worker_name, f"Worker {worker_name} did not finish before its deadline") from exc
        except OSError as exc:
            raise WorkerFailure(worker_name, f"Worker {worker_name} could not be started: {exc}") from exc

        if completed.returncode != 0:
            tail = completed.stderr.strip()[-500:] or f"exit status {completed.returncode}"
            raise WorkerFailure(worker_name, f"Worker {worker_name} exited with status {completed.returncode}: {tail}")
        output = completed.stdout.strip()
        if not output:
            raise WorkerFailure(worker_name, f"Worker {worker_name} produced no result")
        try:
            return WorkerResult.model_validate_json(output)
        except ValidationError as exc:
            raise WorkerFailure(worker_name, f"Worker {worker_name} returned an invalid result: {exc}") from exc
