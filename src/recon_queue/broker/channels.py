"""Publishing ports with explicit delivery guarantees.

Two status channels with different guarantees; they stay separate:

- the authoritative channel is durable and at-least-once: messages are
  persistent and a failed publish raises ``PublishError`` to the caller;
- the verbose channel is best-effort: messages are transient and callers are
  expected to swallow its failures.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from kombu import Connection, Queue
from kombu.exceptions import KombuError

from recon_queue.broker.messages import StatusUpdateMessage, VerboseStatusMessage
from recon_queue.broker.topology import DEFAULT_EXCHANGE

logger = logging.getLogger(__name__)

PERSISTENT = 2
TRANSIENT = 1
JSON_CONTENT_TYPE = "application/json"


class PublishError(RuntimeError):
    """Broker did not accept a publish."""

    def __init__(self, message: str, *, queue: str) -> None:
        super().__init__(message)
        self.queue = queue


class AuthoritativeStatusPort(Protocol):
    """Durable status transitions; failures must surface."""

    def publish(self, update: StatusUpdateMessage) -> None:
        """Publish one transition or raise PublishError."""


class VerboseStatusPort(Protocol):
    """Loss-tolerant progress events."""

    def publish(self, event: VerboseStatusMessage) -> None:
        """Publish one progress event; may raise, callers swallow."""


class BrokerPublisher:
    """Publishes raw JSON bodies to named queues through the default exchange."""

    def __init__(self, connection: Connection, *, max_retries: int = 3) -> None:
        self.connection = connection
        self.max_retries = max_retries
        self._producer = connection.Producer(exchange=DEFAULT_EXCHANGE)

    def publish_json(
        self,
        body: str,
        *,
        queue: Queue,
        persistent: bool,
        headers: Mapping[str, object] | None = None,
    ) -> None:
        """Publish one JSON document; raises PublishError if the broker refuses it."""

        retry_errors = (
            OSError,
            KombuError,
            *self.connection.connection_errors,
            *self.connection.channel_errors,
        )
        try:
            self._producer.publish(
                body,
                exchange=DEFAULT_EXCHANGE,
                routing_key=queue.name,
                content_type=JSON_CONTENT_TYPE,
                content_encoding="utf-8",
                delivery_mode=PERSISTENT if persistent else TRANSIENT,
                headers=dict(headers or {}),
                retry=self.max_retries > 0,
                retry_policy={
                    "max_retries": self.max_retries,
                    "interval_start": 0,
                    "interval_step": 1,
                    "interval_max": 5,
                },
            )
        except retry_errors as error:
            raise PublishError(
                f"Publish to {queue.name} failed: {error}",
                queue=queue.name,
            ) from error


class AmqpAuthoritativeStatusChannel:
    """Authoritative status port over a durable queue."""

    def __init__(self, publisher: BrokerPublisher, queue: Queue) -> None:
        self.publisher = publisher
        self.queue = queue

    def publish(self, update: StatusUpdateMessage) -> None:
        self.publisher.publish_json(update.to_json(), queue=self.queue, persistent=True)
        logger.info(
            "Status update published: project %s -> %s",
            update.project_id,
            update.status.value,
        )


class AmqpVerboseStatusChannel:
    """Verbose status port; messages are marked non-persistent."""

    def __init__(self, publisher: BrokerPublisher, queue: Queue) -> None:
        self.publisher = publisher
        self.queue = queue

    def publish(self, event: VerboseStatusMessage) -> None:
        self.publisher.publish_json(event.to_json(), queue=self.queue, persistent=False)
