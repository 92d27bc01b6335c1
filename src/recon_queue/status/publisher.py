"""Worker-side status publishing over the authoritative and verbose channels."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from recon_queue.broker.channels import AuthoritativeStatusPort, VerboseStatusPort
from recon_queue.broker.messages import StatusUpdateMessage, VerboseStatusMessage
from recon_queue.models import HEARTBEAT_PROJECT_ID, StatusKind, WorkerActivity
from recon_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


class StatusPublisher:
    """Publishes status for one worker.

    Authoritative transitions raise on failure. Verbose events never do: a
    lost progress message is logged and forgotten.
    """

    def __init__(
        self,
        *,
        authoritative: AuthoritativeStatusPort,
        verbose: VerboseStatusPort,
        worker_id: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.authoritative = authoritative
        self.verbose = verbose
        self.worker_id = worker_id
        self.clock = clock

    def processing(self, project_id: int) -> None:
        self.authoritative.publish(
            StatusUpdateMessage(
                project_id=project_id,
                status=StatusKind.PROCESSING,
                timestamp=self.clock(),
            ),
        )

    def completed(self, project_id: int, *, output_model_path: str) -> None:
        self.authoritative.publish(
            StatusUpdateMessage(
                project_id=project_id,
                status=StatusKind.COMPLETED,
                timestamp=self.clock(),
                output_model_path=output_model_path,
            ),
        )

    def failed(self, project_id: int, *, error_message: str) -> None:
        self.authoritative.publish(
            StatusUpdateMessage(
                project_id=project_id,
                status=StatusKind.FAILED,
                timestamp=self.clock(),
                error_message=error_message,
            ),
        )

    def progress(
        self,
        project_id: int,
        *,
        activity: WorkerActivity,
        current_step: str | None = None,
        message: str | None = None,
        image_count: int | None = None,
    ) -> bool:
        """Best-effort progress event; returns whether the broker took it."""

        return self._publish_verbose(
            VerboseStatusMessage(
                project_id=project_id,
                status=activity.value,
                worker_id=self.worker_id,
                timestamp=self.clock(),
                current_step=current_step,
                message=message,
                image_count=image_count,
            ),
        )

    def heartbeat(self) -> bool:
        return self._publish_verbose(
            VerboseStatusMessage(
                project_id=HEARTBEAT_PROJECT_ID,
                status=WorkerActivity.IDLE.value,
                worker_id=self.worker_id,
                timestamp=self.clock(),
                message="Waiting for jobs",
            ),
        )

    def _publish_verbose(self, event: VerboseStatusMessage) -> bool:
        try:
            self.verbose.publish(event)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Verbose status dropped for project %s (%s): %s",
                event.project_id,
                event.status,
                error,
            )
            return False
        return True
