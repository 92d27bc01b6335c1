"""Durable queue topology shared by producers, workers and consumers.

All declarations are idempotent: declaring an identical topology against a
broker where it already exists is a no-op, so every process declares what it
uses on startup instead of relying on a separate provisioning step.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from kombu import Connection, Exchange, Queue

from recon_queue.config import BrokerSettings

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE = Exchange("", type="direct")


@dataclass(slots=True, frozen=True)
class BrokerTopology:
    """Exchange and queue entities derived from broker settings."""

    work_queue: Queue
    dead_letter_exchange: Exchange
    dead_letter_queue: Queue
    status_queue: Queue
    verbose_queue: Queue

    @classmethod
    def from_settings(cls, settings: BrokerSettings) -> BrokerTopology:
        dead_letter_exchange = Exchange(
            settings.dead_letter_exchange,
            type="direct",
            durable=True,
        )
        dead_letter_queue = Queue(
            settings.dead_letter_queue,
            exchange=dead_letter_exchange,
            routing_key=settings.dead_letter_routing_key,
            durable=True,
            exclusive=False,
            auto_delete=False,
        )
        work_queue = Queue(
            settings.work_queue,
            exchange=DEFAULT_EXCHANGE,
            routing_key=settings.work_queue,
            durable=True,
            exclusive=False,
            auto_delete=False,
            queue_arguments={
                "x-consumer-timeout": settings.consumer_timeout_ms,
                "x-dead-letter-exchange": settings.dead_letter_exchange,
                "x-dead-letter-routing-key": settings.dead_letter_routing_key,
            },
        )
        status_queue = Queue(
            settings.status_queue,
            exchange=DEFAULT_EXCHANGE,
            routing_key=settings.status_queue,
            durable=True,
            exclusive=False,
            auto_delete=False,
        )
        verbose_queue = Queue(
            settings.verbose_queue,
            exchange=DEFAULT_EXCHANGE,
            routing_key=settings.verbose_queue,
            durable=True,
            exclusive=False,
            auto_delete=False,
        )
        return cls(
            work_queue=work_queue,
            dead_letter_exchange=dead_letter_exchange,
            dead_letter_queue=dead_letter_queue,
            status_queue=status_queue,
            verbose_queue=verbose_queue,
        )

    def all_queues(self) -> tuple[Queue, ...]:
        """Queues in declaration order; the dead-letter target comes first."""

        return (
            self.dead_letter_queue,
            self.work_queue,
            self.status_queue,
            self.verbose_queue,
        )


def declare_topology(connection: Connection, topology: BrokerTopology) -> None:
    """Declare exchanges, queues and bindings on the given connection."""

    channel = connection.default_channel
    topology.dead_letter_exchange.bind(channel).declare()
    for queue in topology.all_queues():
        queue.bind(channel).declare()
        logger.debug("Declared queue %s", queue.name)
    logger.info(
        "Broker topology ready: work=%s status=%s verbose=%s dead_letter=%s",
        topology.work_queue.name,
        topology.status_queue.name,
        topology.verbose_queue.name,
        topology.dead_letter_queue.name,
    )


@dataclass(slots=True)
class QueueDepth:
    """Passive-declare snapshot of one queue."""

    name: str
    messages: int
    consumers: int


@dataclass(slots=True)
class QueueStats:
    """Operator-facing queue health for the work and dead-letter queues."""

    work: QueueDepth
    dead_letter: QueueDepth

    @property
    def status(self) -> str:
        return "active" if self.work.consumers > 0 else "no_workers"


def queue_stats(connection: Connection, topology: BrokerTopology) -> QueueStats:
    """Report message and consumer counts without modifying the topology."""

    channel = connection.default_channel
    return QueueStats(
        work=_passive_depth(channel, topology.work_queue),
        dead_letter=_passive_depth(channel, topology.dead_letter_queue),
    )


def _passive_depth(channel, queue: Queue) -> QueueDepth:
    result = queue.bind(channel).queue_declare(passive=True)
    return QueueDepth(
        name=queue.name,
        messages=int(result.message_count),
        consumers=int(result.consumer_count),
    )
