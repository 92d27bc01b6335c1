"""Applies authoritative status transitions to persisted project records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from kombu import Connection, Queue
from kombu.message import Message

from recon_queue.broker.delivery import Delivery, KombuDelivery
from recon_queue.broker.messages import (
    MessageDecodeError,
    StatusUpdateMessage,
    UnknownStatusError,
)
from recon_queue.models import ProcessingStatus, ProjectRecord, StatusKind
from recon_queue.shutdown import GracefulStop
from recon_queue.storage.repository import ProjectNotFoundError, ProjectRepository

logger = logging.getLogger(__name__)


class ApplyResult(str, Enum):
    """Disposition of one authoritative status message."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TERMINAL = "terminal"
    NOT_FOUND = "not_found"
    UNKNOWN_STATUS = "unknown_status"
    UNDECODABLE = "undecodable"
    PERSIST_FAILED = "persist_failed"


@dataclass(slots=True)
class StatusConsumerSummary:
    """Aggregate consumer counters for CLI reporting."""

    received: int = 0
    applied: int = 0
    skipped: int = 0
    rejected: int = 0
    requeued: int = 0
    idle_polls: int = 0

    def record(self, result: ApplyResult) -> None:
        self.received += 1
        if result is ApplyResult.APPLIED:
            self.applied += 1
        elif result is ApplyResult.UNDECODABLE:
            self.rejected += 1
        elif result is ApplyResult.PERSIST_FAILED:
            self.requeued += 1
        else:
            self.skipped += 1


class StatusConsumer:
    """Sole writer of project status after creation.

    Application is idempotent and tolerant of reordering: ``Finished`` is
    terminal, and a message older than the last applied one is dropped.
    """

    def __init__(self, repository: ProjectRepository, *, poll_timeout_seconds: float = 1.0) -> None:
        self.repository = repository
        self.poll_timeout_seconds = poll_timeout_seconds
        self.stop = GracefulStop()

    def apply(self, message: StatusUpdateMessage) -> ApplyResult:
        """Apply one message; errors propagate to the caller."""

        record = self.repository.find_project(message.project_id)
        if record is None:
            logger.warning("Status for unknown project %s dropped", message.project_id)
            return ApplyResult.NOT_FOUND

        if record.status == ProcessingStatus.FINISHED and message.status != StatusKind.COMPLETED:
            logger.info(
                "Project %s already finished; ignoring %s",
                record.id,
                message.status.value,
            )
            return ApplyResult.TERMINAL
        if record.status_updated_at is not None and message.timestamp < record.status_updated_at:
            logger.info(
                "Stale %s for project %s (%s < %s) dropped",
                message.status.value,
                record.id,
                message.timestamp.isoformat(),
                record.status_updated_at.isoformat(),
            )
            return ApplyResult.STALE

        updated = _transition(record, message)
        if updated == record:
            return ApplyResult.DUPLICATE
        try:
            self.repository.update_project(updated)
        except ProjectNotFoundError:
            logger.warning("Project %s disappeared before update", record.id)
            return ApplyResult.NOT_FOUND
        logger.info(
            "Project %s: %s -> %s",
            record.id,
            record.status.value,
            updated.status.value,
        )
        return ApplyResult.APPLIED

    def handle(self, delivery: Delivery) -> ApplyResult:
        """Decode, apply and settle one delivery."""

        try:
            message = StatusUpdateMessage.from_json(delivery.body)
        except UnknownStatusError as error:
            logger.warning("Dropping status message: %s", error)
            _settle(delivery.ack, action="ack")
            return ApplyResult.UNKNOWN_STATUS
        except MessageDecodeError as error:
            logger.error("Rejecting undecodable status message: %s", error)
            _settle(delivery.reject, action="reject")
            return ApplyResult.UNDECODABLE

        try:
            result = self.apply(message)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Applying %s for project %s failed, requeueing",
                message.status.value,
                message.project_id,
            )
            _settle(delivery.requeue, action="requeue")
            return ApplyResult.PERSIST_FAILED
        _settle(delivery.ack, action="ack")
        return result

    def run_loop(
        self,
        connection: Connection,
        status_queue: Queue,
        *,
        max_messages: int | None = None,
        max_idle_polls: int | None = None,
    ) -> StatusConsumerSummary:
        """Consume the authoritative status queue until stopped or idle."""

        summary = StatusConsumerSummary()

        def _on_message(message: Message) -> None:
            summary.record(self.handle(KombuDelivery(message)))

        consecutive_idle = 0
        with (
            self.stop.installed(),
            connection.Consumer(queues=[status_queue], on_message=_on_message, prefetch_count=1),
        ):
            logger.info("Status consumer listening on %s", status_queue.name)
            while not self.stop.requested:
                if max_messages is not None and summary.received >= max_messages:
                    break
                received_before = summary.received
                try:
                    connection.drain_events(timeout=self.poll_timeout_seconds)
                except TimeoutError:
                    pass
                if summary.received > received_before:
                    consecutive_idle = 0
                    continue
                summary.idle_polls += 1
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    break
        return summary


def _transition(record: ProjectRecord, message: StatusUpdateMessage) -> ProjectRecord:
    if message.status == StatusKind.PROCESSING:
        return replace(
            record,
            status=ProcessingStatus.PROCESSING,
            processing_started_at=message.timestamp,
            completed_at=None,
            error_message=None,
            status_updated_at=message.timestamp,
        )
    if message.status == StatusKind.COMPLETED:
        if record.status == ProcessingStatus.FINISHED:
            # Redelivered completion: keep the first recorded result.
            return record
        return replace(
            record,
            status=ProcessingStatus.FINISHED,
            completed_at=message.timestamp,
            output_model_path=message.output_model_path or record.output_model_path,
            status_updated_at=message.timestamp,
        )
    return replace(
        record,
        status=ProcessingStatus.FAILED,
        completed_at=message.timestamp,
        error_message=message.error_message,
        status_updated_at=message.timestamp,
    )


def _settle(action_fn: Callable[[], None], *, action: str) -> None:
    try:
        action_fn()
    except Exception as error:  # noqa: BLE001
        logger.error("Status delivery %s failed: %s", action, error)
