import json

from agent_builder.models import NotificationEventType, ProjectStatus, Task, TaskStatus
from agent_builder.notifications import InMemoryNotificationTransport, NotificationPublisher, PublishedNotification


class ExplodingTransport:
    def publish(self, topic: str, subject: str, body: str) -> None:
        raise ConnectionError("topic unavailable")


def test_publish_builds_envelope_and_subject() -> None:
    transport = InMemoryNotificationTransport()
    publisher = NotificationPublisher(transport, topic="project-notifications")

    assert publisher.project_update("p1", ProjectStatus.COMPLETED, "All agents completed successfully") is True

    published = transport.published[0]
    assert published.topic == "project-notifications"
    assert published.subject == "Agent Builder - project_update for project p1"
    body = json.loads(published.body)
    assert set(body) == {"projectId", "type", "data", "timestamp"}
    assert body["type"] == "project_update"
    assert body["data"] == {"status": "COMPLETED", "message": "All agents completed successfully"}


def test_task_update_payload_carries_error() -> None:
    transport = InMemoryNotificationTransport()
    publisher = NotificationPublisher(transport, topic="t")
    task = Task(project_id="p1", worker_name="backend_engineer", status=TaskStatus.FAILED, error_message="boom")

    publisher.task_update(task)

    envelope = transport.envelopes("p1")[0]
    assert envelope.type == NotificationEventType.TASK_UPDATE
    assert envelope.data == {"taskId": task.task_id, "agentName": "backend_engineer", "status": "FAILED", "error": "boom"}


def test_publish_failure_is_swallowed() -> None:
    publisher = NotificationPublisher(ExplodingTransport(), topic="t")
    assert publisher.project_update("p1", ProjectStatus.FAILED, "Agent x failed") is False


def test_failing_subscriber_does_not_block_others() -> None:
    transport = InMemoryNotificationTransport()
    received: list[PublishedNotification] = []

    def broken(_notification: PublishedNotification) -> None:
        raise RuntimeError("subscriber down")

    transport.subscribe(broken)
    transport.subscribe(received.append)
    NotificationPublisher(transport, topic="t").project_update("p1", ProjectStatus.IN_PROGRESS, "started")

    assert len(received) == 1
    assert received[0].envelope().project_id == "p1"


def test_envelopes_filter_by_project() -> None:
    transport = InMemoryNotificationTransport()
    publisher = NotificationPublisher(transport, topic="t")
    publisher.project_update("p1", ProjectStatus.COMPLETED, "done")
    publisher.project_update("p2", ProjectStatus.FAILED, "failed")
    assert [envelope.project_id for envelope in transport.envelopes("p2")] == ["p2"]
    assert len(transport.envelopes()) == 2
