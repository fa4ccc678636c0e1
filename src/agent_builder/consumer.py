from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from .coordinator import DispatchOutcome, PipelineCoordinator
from .dispatch import QueueMessage, QueueTransport, decode_dispatch_message

logger = logging.getLogger(__name__)


class QueueConsumer:
    """Feeds delivered Dispatch Messages to the coordinator.

    A message is acknowledged once ``handle_dispatch`` returns, including
    when it was dropped. If the coordinator raises, the message is released
    for redelivery. Bodies that cannot be parsed are acknowledged and
    dropped since redelivering them cannot help.
    """

    def __init__(
        self,
        transport: QueueTransport,
        coordinator: PipelineCoordinator,
        *,
        batch_size: int = 10,
        concurrency: int = 4,
    ) -> None:
        self.transport = transport
        self.coordinator = coordinator
        self.batch_size = batch_size
        self.concurrency = concurrency

    def poll_once(self) -> int:
        """Receive and handle one batch; return the number of messages received."""
        messages = self.transport.receive(self.batch_size)
        if not messages:
            return 0
        if self.concurrency == 1 or len(messages) == 1:
            for message in messages:
                self._process(message)
        else:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(messages)), thread_name_prefix="dispatch") as pool:
                list(pool.map(self._process, messages))
        return len(messages)

    def drain(self, *, max_polls: int = 10_000) -> int:
        """Poll until the queue returns nothing; return the total messages handled."""
        handled = 0
        for _ in range(max_polls):
            received = self.poll_once()
            if received == 0:
                return handled
            handled += received
        logger.warning("Stopped draining after %d polls with messages still arriving", max_polls)
        return handled

    def _process(self, message: QueueMessage) -> DispatchOutcome | None:
        try:
            dispatch = decode_dispatch_message(message)
        except ValueError as exc:
            logger.error("Dropping malformed message %s: %s", message.message_id, exc)
            self.transport.ack(message.receipt_handle)
            return None

        try:
            outcome = self.coordinator.handle_dispatch(dispatch)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Dispatch of %s for project %s failed (receive %d); releasing for redelivery",
                dispatch.worker_name,
                dispatch.project_id,
                message.receive_count,
            )
            self.transport.release(message.receipt_handle)
            return None

        self.transport.ack(message.receipt_handle)
        return outcome
