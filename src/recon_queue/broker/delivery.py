"""Delivery acknowledgment adapters for consumed broker messages."""

from __future__ import annotations

import logging
from typing import Protocol

from kombu import Queue
from kombu.message import Message

from recon_queue.broker.channels import BrokerPublisher, PublishError

logger = logging.getLogger(__name__)

RETRY_COUNT_HEADER = "x-retry-count"
DELIVERY_COUNT_HEADER = "x-delivery-count"


class Delivery(Protocol):
    """One unacknowledged message as seen by a handler."""

    @property
    def body(self) -> bytes | str: ...

    @property
    def retry_count(self) -> int:
        """How many times this job was already handed back for retry."""

    def ack(self) -> None: ...

    def requeue(self) -> None:
        """Hand the message back for redelivery."""

    def reject(self) -> None:
        """Reject without requeue; routes to the dead-letter exchange if configured."""


class KombuDelivery:
    """Delivery backed by a kombu message.

    When a ``republisher`` is given, ``requeue`` republishes a copy with an
    incremented ``x-retry-count`` header and acks the original, so the retry
    bound travels with the message. Without one it falls back to a plain
    broker requeue.
    """

    def __init__(
        self,
        message: Message,
        *,
        republisher: BrokerPublisher | None = None,
        queue: Queue | None = None,
    ) -> None:
        self.message = message
        self.republisher = republisher
        self.queue = queue

    @property
    def body(self) -> bytes | str:
        return self.message.body

    @property
    def retry_count(self) -> int:
        headers = self.message.headers or {}
        explicit = _header_int(headers, RETRY_COUNT_HEADER)
        if explicit is not None:
            return explicit
        broker_count = _header_int(headers, DELIVERY_COUNT_HEADER)
        if broker_count is not None:
            return broker_count
        return 0

    def ack(self) -> None:
        self.message.ack()

    def requeue(self) -> None:
        if self.republisher is None or self.queue is None:
            self.message.requeue()
            return

        body = self.message.body
        text = body.decode("utf-8") if isinstance(body, bytes | bytearray) else body
        try:
            self.republisher.publish_json(
                text,
                queue=self.queue,
                persistent=True,
                headers={RETRY_COUNT_HEADER: self.retry_count + 1},
            )
        except PublishError as error:
            logger.warning("Retry republish failed, using broker requeue: %s", error)
            self.message.requeue()
            return
        self.message.ack()

    def reject(self) -> None:
        self.message.reject(requeue=False)


def _header_int(headers: dict, key: str) -> int | None:
    value = headers.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
