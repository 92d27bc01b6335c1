"""Use-case services for project submission."""

from __future__ import annotations

import logging
from pathlib import Path

from recon_queue.broker.channels import PublishError, VerboseStatusPort
from recon_queue.broker.messages import VerboseStatusMessage
from recon_queue.broker.producer import JobProducer
from recon_queue.models import ProcessingStatus, ProjectCreate, ProjectRecord, WorkerActivity
from recon_queue.storage.common import utc_now
from recon_queue.storage.repository import ProjectRepository
from recon_queue.worker.errors import JobError
from recon_queue.worker.workspace import ProjectLayout, extract_archive

logger = logging.getLogger(__name__)


class ProjectSubmissionService:
    """Registers an uploaded photo archive and schedules exactly one job for it."""

    def __init__(
        self,
        *,
        repository: ProjectRepository,
        producer: JobProducer,
        jobs_root: Path,
        verbose: VerboseStatusPort | None = None,
    ) -> None:
        self.repository = repository
        self.producer = producer
        self.jobs_root = jobs_root
        self.verbose = verbose

    def submit(self, name: str, zip_path: Path) -> ProjectRecord:
        """Create the record, unpack the archive, then enqueue.

        A corrupt archive or a refused publish leaves the record ``Failed``
        and re-raises, so nothing reports a project as scheduled when no work
        message exists for it.

        Once the job is queued an ``InQueue`` event goes out on the verbose
        channel; losing it only affects the dashboard.
        """

        record = self.repository.create_project(
            ProjectCreate(name=name, zip_file_path=str(zip_path)),
        )
        layout = ProjectLayout(jobs_root=self.jobs_root, project_id=record.id)
        try:
            extracted = extract_archive(zip_path, layout.images_dir)
            logger.info("Project %s: extracted %d files from %s", record.id, extracted, zip_path)
            self.producer.enqueue(record.id)
        except (JobError, PublishError, OSError) as error:
            self._mark_failed(record, reason=str(error))
            raise
        self._announce_queued(record)
        return record

    def _announce_queued(self, record: ProjectRecord) -> None:
        if self.verbose is None:
            return
        try:
            self.verbose.publish(
                VerboseStatusMessage(
                    project_id=record.id,
                    status=WorkerActivity.IN_QUEUE.value,
                    worker_id="",
                    timestamp=utc_now(),
                    message=f"Queued {record.name}",
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("InQueue event for project %s dropped: %s", record.id, error)

    def _mark_failed(self, record: ProjectRecord, *, reason: str) -> None:
        now = utc_now()
        record.status = ProcessingStatus.FAILED
        record.error_message = reason
        record.completed_at = now
        record.status_updated_at = now
        self.repository.update_project(record)
        logger.error("Project %s could not be scheduled: %s", record.id, reason)
