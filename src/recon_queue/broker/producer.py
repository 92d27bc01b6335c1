"""Job producer for the durable work queue."""

from __future__ import annotations

import logging

from kombu import Queue

from recon_queue.broker.channels import BrokerPublisher
from recon_queue.broker.messages import JobMessage

logger = logging.getLogger(__name__)


class JobProducer:
    """Enqueue one persistent job message per project.

    Fire-and-forget: returns once the broker accepted the publish and never
    waits for a worker. ``PublishError`` propagates so a caller does not
    report a project as scheduled when it is not.
    """

    def __init__(self, publisher: BrokerPublisher, work_queue: Queue) -> None:
        self.publisher = publisher
        self.work_queue = work_queue

    def enqueue(self, project_id: int) -> JobMessage:
        job = JobMessage(project_id=project_id)
        self.publisher.publish_json(job.to_json(), queue=self.work_queue, persistent=True)
        logger.info("Project %s enqueued on %s", project_id, self.work_queue.name)
        return job
