import json

import pytest

from agent_builder.dispatch import (
    DispatchQueue,
    InMemoryFifoQueue,
    QueueMessage,
    build_dispatch_message,
    decode_dispatch_message,
    dispatch_dedup_key,
)
from agent_builder.errors import TransportFailure


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_dedup_key_depends_only_on_project_and_worker() -> None:
    first = dispatch_dedup_key("p1", "backend_engineer")
    assert first == dispatch_dedup_key("p1", "backend_engineer")
    assert first != dispatch_dedup_key("p1", "frontend_engineer")
    assert first != dispatch_dedup_key("p2", "backend_engineer")


def test_build_dispatch_message_body_and_attributes() -> None:
    message = build_dispatch_message("p1", "product_manager")
    assert message.body() == {"projectId": "p1", "workerName": "product_manager"}
    assert message.partition_key == "p1"
    assert message.dedup_key == dispatch_dedup_key("p1", "product_manager")


def test_enqueue_twice_within_window_is_deduplicated() -> None:
    clock = FakeClock()
    transport = InMemoryFifoQueue(dedup_window_seconds=300, clock=clock)
    queue = DispatchQueue(transport)
    queue.enqueue("p1", "backend_engineer")
    queue.enqueue("p1", "backend_engineer")
    assert len(transport) == 1

    clock.now += 301
    queue.enqueue("p1", "backend_engineer")
    assert len(transport) == 2


def test_partition_delivers_in_order_with_one_message_in_flight() -> None:
    transport = InMemoryFifoQueue()
    transport.send("p1", "k1", "first")
    transport.send("p1", "k2", "second")
    transport.send("p2", "k3", "other")

    batch = transport.receive(10)
    assert [message.body for message in batch] == ["first", "other"]
    assert transport.receive(10) == []

    transport.ack(batch[0].receipt_handle)
    assert [message.body for message in transport.receive(10)] == ["second"]


def test_release_redelivers_then_dead_letters() -> None:
    transport = InMemoryFifoQueue(max_receive_count=2)
    transport.send("p1", "k1", "body")

    first = transport.receive(1)[0]
    transport.release(first.receipt_handle)
    second = transport.receive(1)[0]
    assert second.message_id == first.message_id
    assert second.receive_count == 2

    transport.release(second.receipt_handle)
    assert transport.receive(1) == []
    assert [message.message_id for message in transport.dead_letters] == [first.message_id]
    assert len(transport) == 0


def test_ack_unknown_receipt_raises() -> None:
    with pytest.raises(KeyError):
        InMemoryFifoQueue().ack("nope")


def test_enqueue_wraps_transport_errors() -> None:
    class BrokenTransport(InMemoryFifoQueue):
        def send(self, partition_key: str, dedup_key: str, body: str) -> str | None:
            raise ConnectionError("queue endpoint unreachable")

    with pytest.raises(TransportFailure) as excinfo:
        DispatchQueue(BrokenTransport()).enqueue("p1", "product_manager")
    assert excinfo.value.transport == "queue"


def test_enqueued_body_decodes_back_to_dispatch_message() -> None:
    transport = InMemoryFifoQueue()
    DispatchQueue(transport).enqueue("p1", "frontend_engineer")
    delivered = transport.receive(1)[0]
    assert json.loads(delivered.body) == {"projectId": "p1", "workerName": "frontend_engineer"}

    message = decode_dispatch_message(delivered)
    assert message.project_id == "p1"
    assert message.worker_name == "frontend_engineer"
    assert message.dedup_key == dispatch_dedup_key("p1", "frontend_engineer")


@pytest.mark.parametrize("body", ["not json", "[1, 2]", '{"projectId": "p1"}', '{"projectId": "", "workerName": "x"}'])
def test_decode_rejects_malformed_bodies(body: str) -> None:
    message = QueueMessage(message_id="m", receipt_handle="r", partition_key="p1", dedup_key="d", body=body, receive_count=1)
    with pytest.raises(ValueError):
        decode_dispatch_message(message)
