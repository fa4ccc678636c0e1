from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from .canonical import to_canonical_json
from .models import NotificationEnvelope, NotificationEventType, ProjectStatus, Task

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "Agent Builder"


class NotificationTransport(Protocol):
    """Best-effort pub/sub fan-out."""

    def publish(self, topic: str, subject: str, body: str) -> None:
        ...


@dataclass(frozen=True)
class PublishedNotification:
    topic: str
    subject: str
    body: str

    def envelope(self) -> NotificationEnvelope:
        return NotificationEnvelope.model_validate_json(self.body)


class InMemoryNotificationTransport:
    """Records every publication and fans it out to in-process subscribers.

    A subscriber that raises is logged and skipped; the remaining subscribers
    still receive the notification.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[PublishedNotification], None]] = []
        self.published: list[PublishedNotification] = []

    def subscribe(self, callback: Callable[[PublishedNotification], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, topic: str, subject: str, body: str) -> None:
        notification = PublishedNotification(topic=topic, subject=subject, body=body)
        with self._lock:
            self.published.append(notification)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(notification)
            except Exception:  # noqa: BLE001
                logger.exception("Notification subscriber %r failed for %s", callback, subject)

    def envelopes(self, project_id: str | None = None) -> list[NotificationEnvelope]:
        with self._lock:
            published = list(self.published)
        envelopes = [notification.envelope() for notification in published]
        if project_id is None:
            return envelopes
        return [envelope for envelope in envelopes if envelope.project_id == project_id]


class NotificationPublisher:
    """Publishes task and project state changes without ever failing the caller."""

    def __init__(self, transport: NotificationTransport, *, topic: str) -> None:
        self.transport = transport
        self.topic = topic

    def publish(self, project_id: str, event_type: NotificationEventType, payload: dict[str, Any]) -> bool:
        """Publish one event; return ``False`` if the transport failed.

        Failures are logged and swallowed: notifications are observational and
        must not undo or block the state transition that triggered them.
        """
        envelope = NotificationEnvelope(project_id=project_id, type=event_type, data=payload)
        subject = f"{SUBJECT_PREFIX} - {event_type.value} for project {project_id}"
        try:
            self.transport.publish(self.topic, subject, to_canonical_json(envelope))
        except Exception:  # noqa: BLE001
            logger.exception("Failed to publish %s for project %s", event_type.value, project_id)
            return False
        logger.debug("Notification sent for project %s, type: %s", project_id, event_type.value)
        return True

    def task_update(self, task: Task, **extra: Any) -> bool:
        payload: dict[str, Any] = {
            "taskId": task.task_id,
            "agentName": task.worker_name,
            "status": task.status.value,
        }
        if task.progress is not None:
            payload["progress"] = task.progress
        if task.error_message:
            payload["error"] = task.error_message
        payload.update(extra)
        return self.publish(task.project_id, NotificationEventType.TASK_UPDATE, payload)

    def project_update(self, project_id: str, status: ProjectStatus, message: str, **extra: Any) -> bool:
        payload: dict[str, Any] = {"status": status.value, "message": message}
        payload.update(extra)
        return self.publish(project_id, NotificationEventType.PROJECT_UPDATE, payload)
