from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Protocol

from pydantic import ValidationError

from .canonical import canonical_digest, to_canonical_json
from .errors import TransportFailure
from .models import DispatchMessage, new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueMessage:
    """One delivery of a queued message."""

    message_id: str
    receipt_handle: str
    partition_key: str
    dedup_key: str
    body: str
    receive_count: int


class QueueTransport(Protocol):
    """At-least-once queue with per-partition ordering and send-side deduplication."""

    def send(self, partition_key: str, dedup_key: str, body: str) -> str | None:
        """Enqueue ``body``; return its message id, or ``None`` if deduplicated."""
        ...

    def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        ...

    def ack(self, receipt_handle: str) -> None:
        ...

    def release(self, receipt_handle: str) -> None:
        """Return an unacknowledged message to the queue for redelivery."""
        ...


# ---------------------------------------------------------------------------
# Dispatch protocol
# ---------------------------------------------------------------------------


def dispatch_dedup_key(project_id: str, worker_name: str) -> str:
    """Deduplication key for the dispatch of ``worker_name`` within ``project_id``.

    Derived from the logical dispatch only, so a retried send of the same
    stage collapses onto the first one inside the transport's dedup window.
    """
    return canonical_digest({"projectId": project_id, "workerName": worker_name})


def build_dispatch_message(project_id: str, worker_name: str) -> DispatchMessage:
    return DispatchMessage(
        project_id=project_id,
        worker_name=worker_name,
        partition_key=project_id,
        dedup_key=dispatch_dedup_key(project_id, worker_name),
    )


def decode_dispatch_message(message: QueueMessage) -> DispatchMessage:
    """Parse a delivered queue message into a DispatchMessage.

    Raises:
        ValueError: If the body is not a JSON object with ``projectId`` and ``workerName``.
    """
    try:
        body = json.loads(message.body)
    except json.JSONDecodeError as exc:
        raise ValueError(f"dispatch body is not JSON: {message.body[:120]!r}") from exc
    if not isinstance(body, dict):
        raise ValueError("dispatch body must be a JSON object")
    try:
        return DispatchMessage.model_validate(
            {
                "projectId": body.get("projectId"),
                "workerName": body.get("workerName"),
                "partition_key": message.partition_key,
                "dedup_key": message.dedup_key,
            }
        )
    except ValidationError as exc:
        raise ValueError(f"dispatch body failed validation: {exc}") from exc


class DispatchQueue:
    """Sends Dispatch Messages over a QueueTransport."""

    def __init__(self, transport: QueueTransport) -> None:
        self.transport = transport

    def enqueue(self, project_id: str, worker_name: str) -> DispatchMessage:
        """Send the dispatch for ``worker_name``.

        Raises:
            TransportFailure: If the transport rejects the send.
        """
        message = build_dispatch_message(project_id, worker_name)
        try:
            message_id = self.transport.send(message.partition_key, message.dedup_key, to_canonical_json(message.body()))
        except TransportFailure:
            raise
        except Exception as exc:
            raise TransportFailure("queue", f"failed to enqueue {worker_name} for project {project_id}: {exc}") from exc
        if message_id is None:
            logger.info("Dispatch of %s for project %s deduplicated by the queue", worker_name, project_id)
        else:
            logger.info("Queued %s for project %s (message %s)", worker_name, project_id, message_id)
        return message


# ---------------------------------------------------------------------------
# In-memory FIFO transport
# ---------------------------------------------------------------------------


@dataclass
class _QueuedEntry:
    message_id: str
    partition_key: str
    dedup_key: str
    body: str
    receive_count: int = 0
    receipt_handle: str = field(default="")


class InMemoryFifoQueue:
    """FIFO queue with message groups, a dedup window and dead-lettering.

    Messages sharing a partition key are delivered in send order and at most
    one of them is in flight at a time; different partitions are delivered
    independently. A message released ``max_receive_count`` times moves to
    ``dead_letters`` instead of being redelivered.
    """

    def __init__(
        self,
        *,
        dedup_window_seconds: float = 300.0,
        max_receive_count: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dedup_window_seconds = dedup_window_seconds
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._lock = threading.Lock()
        self._partitions: OrderedDict[str, deque[_QueuedEntry]] = OrderedDict()
        self._in_flight: dict[str, _QueuedEntry] = {}
        self._busy: set[str] = set()
        self._dedup_expiry: dict[str, float] = {}
        self.dead_letters: list[QueueMessage] = []

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._partitions.values()) + len(self._in_flight)

    def send(self, partition_key: str, dedup_key: str, body: str) -> str | None:
        now = self._clock()
        with self._lock:
            self._dedup_expiry = {key: expiry for key, expiry in self._dedup_expiry.items() if expiry > now}
            if dedup_key in self._dedup_expiry:
                logger.debug("Dropping duplicate send for dedup key %s", dedup_key)
                return None
            self._dedup_expiry[dedup_key] = now + self.dedup_window_seconds
            entry = _QueuedEntry(message_id=new_id(), partition_key=partition_key, dedup_key=dedup_key, body=body)
            self._partitions.setdefault(partition_key, deque()).append(entry)
            return entry.message_id

    def receive(self, max_messages: int = 10) -> list[QueueMessage]:
        delivered: list[QueueMessage] = []
        with self._lock:
            for partition_key, entries in self._partitions.items():
                if len(delivered) >= max_messages:
                    break
                if partition_key in self._busy or not entries:
                    continue
                entry = entries.popleft()
                entry.receive_count += 1
                entry.receipt_handle = new_id()
                self._busy.add(partition_key)
                self._in_flight[entry.receipt_handle] = entry
                delivered.append(self._as_message(entry))
            for partition_key in [key for key, entries in self._partitions.items() if not entries and key not in self._busy]:
                del self._partitions[partition_key]
        return delivered

    def ack(self, receipt_handle: str) -> None:
        with self._lock:
            entry = self._in_flight.pop(receipt_handle, None)
            if entry is None:
                raise KeyError(f"unknown receipt handle: {receipt_handle}")
            self._busy.discard(entry.partition_key)

    def release(self, receipt_handle: str) -> None:
        with self._lock:
            entry = self._in_flight.pop(receipt_handle, None)
            if entry is None:
                raise KeyError(f"unknown receipt handle: {receipt_handle}")
            self._busy.discard(entry.partition_key)
            if entry.receive_count >= self.max_receive_count:
                logger.error(
                    "Message %s for partition %s exceeded %d receives; dead-lettered",
                    entry.message_id,
                    entry.partition_key,
                    self.max_receive_count,
                )
                self.dead_letters.append(self._as_message(entry))
                return
            self._partitions.setdefault(entry.partition_key, deque()).appendleft(entry)

    @staticmethod
    def _as_message(entry: _QueuedEntry) -> QueueMessage:
        return QueueMessage(
            message_id=entry.message_id,
            receipt_handle=entry.receipt_handle,
            partition_key=entry.partition_key,
            dedup_key=entry.dedup_key,
            body=entry.body,
            receive_count=entry.receive_count,
        )
