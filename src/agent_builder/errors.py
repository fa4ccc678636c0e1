"""Error taxonomy for the orchestration core.

Each class also derives from the builtin that callers would naturally catch
(``LookupError`` for missing records, ``ValueError`` for rejected state
changes, ``RuntimeError`` for worker and transport failures).
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the orchestration core."""


class NotFoundError(PipelineError, LookupError):
    """A project, task or artifact does not exist."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class InvalidStateError(PipelineError, ValueError):
    """An operation was attempted against a record not in the expected state."""


class RecordExistsError(InvalidStateError):
    """A create-only write targeted a key that already holds a record."""


class ConditionFailedError(InvalidStateError):
    """A conditional update found field values other than the expected ones."""


class WorkerFailure(PipelineError, RuntimeError):
    """The invoked worker reported failure or could not be invoked."""

    def __init__(self, worker_name: str, message: str) -> None:
        super().__init__(message)
        self.worker_name = worker_name


class WorkerTimeoutError(WorkerFailure):
    """The worker did not return before the invocation deadline."""


class TransportFailure(PipelineError, RuntimeError):
    """The queue or notification transport rejected a send."""

    def __init__(self, transport: str, message: str) -> None:
        super().__init__(f"{transport}: {message}")
        self.transport = transport
