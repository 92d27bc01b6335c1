"""Queue worker that turns one photo set into one mesh per delivery."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from kombu import Connection, Queue
from kombu.message import Message

from recon_queue.broker.channels import BrokerPublisher
from recon_queue.broker.delivery import Delivery, KombuDelivery
from recon_queue.broker.messages import JobMessage, MessageDecodeError
from recon_queue.models import WorkerActivity
from recon_queue.shutdown import GracefulStop
from recon_queue.status.publisher import StatusPublisher
from recon_queue.worker.errors import JobError, JobErrorKind
from recon_queue.worker.failure_classifier import classify_job_failure
from recon_queue.worker.pipeline import (
    ReconstructionPipeline,
    ReconstructionStage,
    step_label,
)
from recon_queue.worker.workspace import (
    ProjectLayout,
    flatten_images,
    relative_to_jobs_root,
    scratch_directory,
)

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    """What happened to one delivery."""

    COMPLETED = "completed"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    MALFORMED = "malformed"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    malformed: int = 0
    idle_polls: int = 0
    heartbeats: int = 0

    def record(self, outcome: JobOutcome) -> None:
        self.processed += 1
        if outcome is JobOutcome.COMPLETED:
            self.succeeded += 1
        elif outcome is JobOutcome.REQUEUED:
            self.retried += 1
        elif outcome is JobOutcome.DEAD_LETTERED:
            self.failed += 1
        else:
            self.malformed += 1


class ReconstructionWorker:
    """Consumes job messages and drives the reconstruction state machine.

    Per delivery: ``Received -> Validating -> Stage 1..7 -> Completed`` or
    ``-> Failed``. The delivery is acked only after the pipeline succeeded
    and the authoritative ``Completed`` was published. Failures publish
    ``Failed`` and then requeue (retriable, attempts left) or reject, which
    dead-letters the job.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        status: StatusPublisher,
        pipeline: ReconstructionPipeline,
        jobs_root: Path,
        image_extensions: tuple[str, ...] = (".jpg", ".jpeg", ".png"),
        min_images: int = 3,
        scratch_root: Path | None = None,
        max_attempts: int = 5,
        retry_unclassified: bool = True,
        heartbeat_interval_seconds: float = 30.0,
        poll_timeout_seconds: float = 1.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.status = status
        self.pipeline = pipeline
        self.jobs_root = jobs_root
        self.image_extensions = image_extensions
        self.min_images = min_images
        self.scratch_root = scratch_root
        self.max_attempts = max_attempts
        self.retry_unclassified = retry_unclassified
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self._monotonic = monotonic
        self.stop = GracefulStop(on_request=self._log_stop_request)
        self._current_project_id: int | None = None
        self._last_heartbeat_at: float | None = None

    @property
    def worker_id(self) -> str:
        return self.status.worker_id

    def handle(self, delivery: Delivery) -> JobOutcome:
        """Process one delivery and settle it exactly once."""

        try:
            job = JobMessage.from_json(delivery.body)
        except MessageDecodeError as error:
            logger.error("Rejecting malformed job message: %s", error)
            _settle(delivery.reject, action="reject")
            return JobOutcome.MALFORMED

        project_id = job.project_id
        attempt = delivery.retry_count + 1
        self._current_project_id = project_id
        logger.info("Received project %s (attempt %s)", project_id, attempt)
        try:
            output_model_path = self._execute(project_id)
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(delivery, project_id=project_id, attempt=attempt, error=error)
        finally:
            self._current_project_id = None
            self._last_heartbeat_at = None

        self.status.progress(
            project_id,
            activity=WorkerActivity.COMPLETED,
            current_step="Completed",
            message=f"Model ready: {output_model_path}",
        )
        try:
            delivery.ack()
        except Exception as error:  # noqa: BLE001
            logger.error("Ack failed for completed project %s: %s", project_id, error)
        logger.info("Project %s completed: %s", project_id, output_model_path)
        return JobOutcome.COMPLETED

    def run_loop(  # noqa: C901
        self,
        connection: Connection,
        work_queue: Queue,
        *,
        republisher: BrokerPublisher | None = None,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Consume the work queue with prefetch 1 until stopped.

        Args:
            max_jobs: Stop after this many deliveries (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = wait forever).
        """

        aggregate = WorkerRunSummary()
        retry_republisher = republisher if self.max_attempts > 0 else None

        def _on_message(message: Message) -> None:
            delivery = KombuDelivery(message, republisher=retry_republisher, queue=work_queue)
            aggregate.record(self.handle(delivery))

        consecutive_idle = 0
        with (
            self.stop.installed(),
            connection.Consumer(
                queues=[work_queue],
                on_message=_on_message,
                prefetch_count=1,
            ),
        ):
            logger.info("Worker %s consuming %s", self.worker_id, work_queue.name)
            if self._maybe_heartbeat():
                aggregate.heartbeats += 1
            while not self.stop.requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                processed_before = aggregate.processed
                try:
                    connection.drain_events(timeout=self.poll_timeout_seconds)
                except TimeoutError:
                    pass
                if aggregate.processed > processed_before:
                    consecutive_idle = 0
                else:
                    aggregate.idle_polls += 1
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                if self._maybe_heartbeat():
                    aggregate.heartbeats += 1

        if self.stop.requested:
            logger.info("Worker %s stopped by %s", self.worker_id, self.stop.signal_name)
        return aggregate

    def _execute(self, project_id: int) -> str:
        self.status.processing(project_id)
        self.status.progress(
            project_id,
            activity=WorkerActivity.PROCESSING,
            current_step="Validating",
            message="Validating project directory",
        )

        layout = ProjectLayout(jobs_root=self.jobs_root, project_id=project_id)
        layout.require_project_dir()
        with scratch_directory(project_id, root=self.scratch_root) as scratch_dir:
            image_count = flatten_images(
                layout.images_dir,
                layout.flat_images_dir,
                extensions=self.image_extensions,
            )
            if image_count < self.min_images:
                raise JobError(
                    f"Invalid input: found {image_count} images, at least {self.min_images} required",
                    kind=JobErrorKind.INVALID_INPUT,
                )

            def _on_stage_start(index: int, total: int, stage: ReconstructionStage) -> None:
                self.status.progress(
                    project_id,
                    activity=WorkerActivity.PROCESSING,
                    current_step=step_label(index, total, stage),
                    message=f"Running {stage.name}",
                    image_count=image_count,
                )

            self.pipeline.run(layout, log_dir=scratch_dir / "logs", on_stage_start=_on_stage_start)

        mesh_path = layout.locate_mesh()
        if mesh_path is None:
            raise JobError(
                f"No mesh file found in {layout.output_dir}",
                kind=JobErrorKind.MESH_NOT_FOUND,
            )
        output_model_path = relative_to_jobs_root(self.jobs_root, mesh_path)
        self.status.completed(project_id, output_model_path=output_model_path)
        return output_model_path

    def _handle_failure(
        self,
        delivery: Delivery,
        *,
        project_id: int,
        attempt: int,
        error: Exception,
    ) -> JobOutcome:
        classification = classify_job_failure(error, retry_unclassified=self.retry_unclassified)
        error_text = str(error) or error.__class__.__name__
        exhausted = self.max_attempts > 0 and attempt >= self.max_attempts
        requeue = classification.retriable and not exhausted
        logger.error(
            "Project %s failed on attempt %s: %s (%s)",
            project_id,
            attempt,
            error_text,
            classification.to_log_details(),
        )

        try:
            self.status.failed(project_id, error_message=error_text)
        except Exception as publish_error:  # noqa: BLE001
            logger.error("Failed status for project %s not published: %s", project_id, publish_error)
        self.status.progress(
            project_id,
            activity=WorkerActivity.FAILED,
            current_step="Failed",
            message=error_text,
        )

        if requeue:
            logger.warning("Requeueing project %s for retry", project_id)
            _settle(delivery.requeue, action="requeue")
            return JobOutcome.REQUEUED
        if classification.retriable:
            logger.warning(
                "Project %s exhausted %s attempts; dead-lettering",
                project_id,
                self.max_attempts,
            )
        _settle(delivery.reject, action="reject")
        return JobOutcome.DEAD_LETTERED

    def _maybe_heartbeat(self) -> bool:
        if self.heartbeat_interval_seconds <= 0 or self._current_project_id is not None:
            return False
        now = self._monotonic()
        if (
            self._last_heartbeat_at is not None
            and now - self._last_heartbeat_at < self.heartbeat_interval_seconds
        ):
            return False
        self._last_heartbeat_at = now
        return self.status.heartbeat()

    def _log_stop_request(self, signal_name: str) -> None:
        if self._current_project_id is not None:
            logger.info(
                "Shutdown requested by %s; finishing project %s first",
                signal_name,
                self._current_project_id,
            )


def _settle(action_fn: Callable[[], None], *, action: str) -> None:
    try:
        action_fn()
    except Exception as error:  # noqa: BLE001
        logger.error("Delivery %s failed: %s", action, error)
