from __future__ import annotations

import json
import zipfile
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import RecordingAuthoritativePort, RecordingVerbosePort

from recon_queue.broker.channels import AmqpVerboseStatusChannel, BrokerPublisher, PublishError
from recon_queue.broker.messages import VerboseStatusMessage
from recon_queue.broker.producer import JobProducer
from recon_queue.broker.topology import BrokerTopology, declare_topology
from recon_queue.dashboard.reconciler import DashboardReconciler
from recon_queue.models import ProcessingStatus
from recon_queue.services import ProjectSubmissionService
from recon_queue.status.publisher import StatusPublisher
from recon_queue.storage.common import utc_now
from recon_queue.worker.errors import JobError, JobErrorKind

pytestmark = [
    allure.epic("Project Records"),
    allure.feature("Submission"),
]


class _RefusingProducer:
    def enqueue(self, project_id: int):
        raise PublishError("Publish to photogrammetry-queue failed: connection refused", queue="work")


def _archive(path: Path, count: int = 3) -> Path:
    with zipfile.ZipFile(path, "w") as handle:
        for index in range(count):
            handle.writestr(f"photos/IMG_{index}.jpg", b"\xff\xd8" + bytes([index]))
    return path


@pytest.fixture()
def topology(broker_settings, memory_connection) -> BrokerTopology:
    topology = BrokerTopology.from_settings(broker_settings)
    declare_topology(memory_connection, topology)
    return topology


def test_submit_extracts_and_enqueues_one_job(
    tmp_path: Path,
    repository,
    memory_connection,
    topology,
) -> None:
    service = ProjectSubmissionService(
        repository=repository,
        producer=JobProducer(BrokerPublisher(memory_connection, max_retries=0), topology.work_queue),
        jobs_root=tmp_path / "jobs",
    )

    record = service.submit("Lighthouse", _archive(tmp_path / "lighthouse.zip"))

    assert record.status == ProcessingStatus.IN_QUEUE
    images = tmp_path / "jobs" / f"project_{record.id}" / "images" / "photos"
    assert sorted(path.name for path in images.iterdir()) == ["IMG_0.jpg", "IMG_1.jpg", "IMG_2.jpg"]
    queue = topology.work_queue.bind(memory_connection.default_channel)
    message = queue.get(no_ack=True)
    assert json.loads(message.body) == {"ProjectId": record.id}
    assert queue.get(no_ack=True) is None


def test_corrupt_archive_marks_project_failed(tmp_path: Path, repository) -> None:
    broken = tmp_path / "broken.zip"
    broken.write_bytes(b"not an archive")
    service = ProjectSubmissionService(
        repository=repository,
        producer=_RefusingProducer(),
        jobs_root=tmp_path / "jobs",
    )

    with pytest.raises(JobError) as excinfo:
        service.submit("Broken", broken)

    assert excinfo.value.kind == JobErrorKind.CORRUPT_ARCHIVE
    [stored] = repository.list_projects()
    assert stored.status == ProcessingStatus.FAILED
    assert stored.error_message
    assert stored.completed_at is not None


def test_refused_publish_marks_project_failed(tmp_path: Path, repository) -> None:
    service = ProjectSubmissionService(
        repository=repository,
        producer=_RefusingProducer(),
        jobs_root=tmp_path / "jobs",
    )

    with pytest.raises(PublishError):
        service.submit("Unscheduled", _archive(tmp_path / "photos.zip"))

    [stored] = repository.list_projects()
    assert stored.status == ProcessingStatus.FAILED
    assert "connection refused" in (stored.error_message or "")


def test_submission_announces_queued_project_to_dashboard(
    tmp_path: Path,
    repository,
    memory_connection,
    topology,
) -> None:
    publisher = BrokerPublisher(memory_connection, max_retries=0)
    service = ProjectSubmissionService(
        repository=repository,
        producer=JobProducer(publisher, topology.work_queue),
        jobs_root=tmp_path / "jobs",
        verbose=AmqpVerboseStatusChannel(publisher, topology.verbose_queue),
    )
    worker_events = RecordingVerbosePort()
    worker_status = StatusPublisher(
        authoritative=RecordingAuthoritativePort(),
        verbose=worker_events,
        worker_id="worker-a",
    )

    record = service.submit("Courtyard", _archive(tmp_path / "courtyard.zip"))
    worker_status.heartbeat()

    reconciler = DashboardReconciler()
    verbose_queue = topology.verbose_queue.bind(memory_connection.default_channel)
    message = verbose_queue.get(no_ack=True)
    reconciler.apply_update(VerboseStatusMessage.from_json(message.body))
    reconciler.apply_update(worker_events.messages[-1])
    snapshot = reconciler.render_snapshot(utc_now() + timedelta(seconds=1))

    assert [project.project_id for project in snapshot.projects] == [record.id]
    assert snapshot.counters.projects_queued == 1
    assert [worker.worker_id for worker in snapshot.workers] == ["worker-a"]
    assert snapshot.evicted.surplus_idle == ()


def test_lost_queued_event_does_not_fail_submission(
    tmp_path: Path,
    repository,
    memory_connection,
    topology,
) -> None:
    verbose = RecordingVerbosePort()
    verbose.fail_with = ConnectionError("verbose channel closed")
    service = ProjectSubmissionService(
        repository=repository,
        producer=JobProducer(BrokerPublisher(memory_connection, max_retries=0), topology.work_queue),
        jobs_root=tmp_path / "jobs",
        verbose=verbose,
    )

    record = service.submit("Harbour", _archive(tmp_path / "harbour.zip"))

    assert record.status == ProcessingStatus.IN_QUEUE
    assert repository.find_project(record.id).status == ProcessingStatus.IN_QUEUE
