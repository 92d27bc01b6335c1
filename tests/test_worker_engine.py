from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest
from conftest import FAKE_COLMAP_COMMAND, RecordingDelivery, write_images

from recon_queue.broker.channels import PublishError
from recon_queue.broker.messages import JobMessage
from recon_queue.models import HEARTBEAT_PROJECT_ID, StatusKind, WorkerActivity
from recon_queue.worker.engine import JobOutcome, ReconstructionWorker, WorkerRunSummary
from recon_queue.worker.errors import StageFailedError
from recon_queue.worker.pipeline import ReconstructionPipeline, StageRunner, build_stages
from recon_queue.worker.workspace import ProjectLayout

pytestmark = [
    allure.epic("Worker Execution"),
    allure.feature("Job State Machine"),
]


class StubPipeline:
    """Pipeline double that writes a mesh or raises a configured error."""

    def __init__(
        self,
        *,
        error: Exception | None = None,
        write_mesh: bool = True,
        fused_bytes: int = 0,
    ) -> None:
        self.error = error
        self.write_mesh = write_mesh
        self.fused_bytes = fused_bytes
        self.calls = 0

    def run(self, layout: ProjectLayout, *, log_dir: Path, on_stage_start=None):
        self.calls += 1
        layout.prepare_output_dirs()
        stages = build_stages(layout)
        if on_stage_start is not None:
            on_stage_start(1, len(stages), stages[0])
        if self.error is not None:
            raise self.error
        if self.fused_bytes:
            layout.fused_path.write_bytes(b"x" * self.fused_bytes)
        if self.write_mesh:
            layout.mesh_path.write_bytes(b"ply\n")
        return []


def _job(project_id: int, *, retry_count: int = 0) -> RecordingDelivery:
    return RecordingDelivery(JobMessage(project_id=project_id).to_json(), retry_count=retry_count)


def _worker(status_publisher, jobs_root: Path, pipeline, **overrides) -> ReconstructionWorker:
    options = {
        "status": status_publisher,
        "pipeline": pipeline,
        "jobs_root": jobs_root,
        "scratch_root": jobs_root.parent / "scratch",
        "max_attempts": 5,
    }
    options.update(overrides)
    return ReconstructionWorker(**options)


@pytest.fixture()
def jobs_root(tmp_path: Path) -> Path:
    root = tmp_path / "jobs"
    root.mkdir()
    return root


def test_successful_job_publishes_completed_then_acks(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
    verbose_port,
) -> None:
    write_images(jobs_root / "project_1" / "images", 5)
    worker = _worker(
        status_publisher,
        jobs_root,
        ReconstructionPipeline(StageRunner(FAKE_COLMAP_COMMAND)),
    )
    delivery = _job(1)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.COMPLETED
    assert delivery.settled == ["ack"]
    assert [message.status for message in authoritative_port.messages] == [
        StatusKind.PROCESSING,
        StatusKind.COMPLETED,
    ]
    completed = authoritative_port.messages[-1]
    assert completed.output_model_path == "project_1/output/dense/meshed-poisson.ply"
    steps = [message.current_step for message in verbose_port.messages]
    assert steps[0] == "Validating"
    assert "Step 1/7: Feature extraction" in steps
    assert "Step 7/7: Poisson meshing" in steps
    assert verbose_port.messages[-1].status == WorkerActivity.COMPLETED.value
    assert verbose_port.messages[1].image_count == 5
    assert list((jobs_root.parent / "scratch").iterdir()) == []
    assert (jobs_root / "project_1" / "images" / "batch_0" / "IMG_0000.jpg").exists()


def test_missing_project_dir_is_dead_lettered_without_retry(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
) -> None:
    pipeline = StubPipeline()
    worker = _worker(status_publisher, jobs_root, pipeline)
    delivery = _job(42)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.DEAD_LETTERED
    assert delivery.settled == ["reject"]
    assert pipeline.calls == 0
    failed = authoritative_port.messages[-1]
    assert failed.status == StatusKind.FAILED
    assert "Project directory not found" in (failed.error_message or "")


def test_fatal_stage_failure_is_dead_lettered_with_stage_text(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
    monkeypatch,
) -> None:
    monkeypatch.setenv("RECON_QUEUE_FAKE_FAIL_STAGE", "mapper")
    monkeypatch.setenv("RECON_QUEUE_FAKE_FAIL_MESSAGE", "command failed: no good initial pair")
    write_images(jobs_root / "project_2" / "images", 4)
    worker = _worker(
        status_publisher,
        jobs_root,
        ReconstructionPipeline(StageRunner(FAKE_COLMAP_COMMAND)),
    )
    delivery = _job(2)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.DEAD_LETTERED
    assert delivery.settled == ["reject"]
    failed = authoritative_port.messages[-1]
    assert failed.status == StatusKind.FAILED
    assert "Stage mapper failed with exit code 1" in (failed.error_message or "")
    assert "no good initial pair" in (failed.error_message or "")


def test_retriable_failure_is_requeued(jobs_root: Path, status_publisher, authoritative_port) -> None:
    write_images(jobs_root / "project_3" / "images", 4)
    worker = _worker(
        status_publisher,
        jobs_root,
        StubPipeline(error=RuntimeError("Connection refused by shared storage")),
    )
    delivery = _job(3)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.REQUEUED
    assert delivery.settled == ["requeue"]
    assert authoritative_port.messages[-1].status == StatusKind.FAILED


def test_retriable_failure_is_dead_lettered_once_attempts_run_out(
    jobs_root: Path,
    status_publisher,
) -> None:
    write_images(jobs_root / "project_4" / "images", 4)
    worker = _worker(
        status_publisher,
        jobs_root,
        StubPipeline(error=RuntimeError("operation timed out")),
        max_attempts=3,
    )

    early = _job(4, retry_count=1)
    last = _job(4, retry_count=2)

    assert worker.handle(early) is JobOutcome.REQUEUED
    assert worker.handle(last) is JobOutcome.DEAD_LETTERED
    assert last.settled == ["reject"]


def test_zero_max_attempts_never_caps_retries(jobs_root: Path, status_publisher) -> None:
    write_images(jobs_root / "project_5" / "images", 4)
    worker = _worker(
        status_publisher,
        jobs_root,
        StubPipeline(error=RuntimeError("network unreachable")),
        max_attempts=0,
    )
    delivery = _job(5, retry_count=500)

    assert worker.handle(delivery) is JobOutcome.REQUEUED


def test_malformed_job_is_rejected_without_status(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
    verbose_port,
) -> None:
    worker = _worker(status_publisher, jobs_root, StubPipeline())
    delivery = RecordingDelivery(b'{"ProjectId": "seven"}')

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.MALFORMED
    assert delivery.settled == ["reject"]
    assert authoritative_port.messages == []
    assert verbose_port.messages == []


def test_too_few_images_is_fatal(jobs_root: Path, status_publisher, authoritative_port) -> None:
    write_images(jobs_root / "project_6" / "images", 2)
    pipeline = StubPipeline()
    worker = _worker(status_publisher, jobs_root, pipeline)
    delivery = _job(6)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.DEAD_LETTERED
    assert pipeline.calls == 0
    assert "at least 3 required" in (authoritative_port.messages[-1].error_message or "")


def test_missing_mesh_is_fatal(jobs_root: Path, status_publisher, authoritative_port) -> None:
    write_images(jobs_root / "project_7" / "images", 3)
    worker = _worker(status_publisher, jobs_root, StubPipeline(write_mesh=False))
    delivery = _job(7)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.DEAD_LETTERED
    assert "No mesh file found" in (authoritative_port.messages[-1].error_message or "")


def test_larger_fused_cloud_is_not_published_as_model(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
) -> None:
    write_images(jobs_root / "project_8" / "images", 3)
    worker = _worker(status_publisher, jobs_root, StubPipeline(fused_bytes=50_000))

    outcome = worker.handle(_job(8))

    assert outcome is JobOutcome.COMPLETED
    completed = authoritative_port.messages[-1]
    assert completed.output_model_path == "project_8/output/dense/meshed-poisson.ply"


def test_fused_cloud_alone_is_not_a_mesh(jobs_root: Path, status_publisher, authoritative_port) -> None:
    write_images(jobs_root / "project_9" / "images", 3)
    worker = _worker(
        status_publisher,
        jobs_root,
        StubPipeline(write_mesh=False, fused_bytes=50_000),
    )

    outcome = worker.handle(_job(9))

    assert outcome is JobOutcome.DEAD_LETTERED
    assert "No mesh file found" in (authoritative_port.messages[-1].error_message or "")


def test_verbose_failures_never_change_outcome(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
    verbose_port,
) -> None:
    verbose_port.fail_with = ConnectionError("verbose queue down")
    write_images(jobs_root / "project_8" / "images", 3)
    worker = _worker(status_publisher, jobs_root, StubPipeline())
    delivery = _job(8)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.COMPLETED
    assert delivery.settled == ["ack"]
    assert authoritative_port.messages[-1].status == StatusKind.COMPLETED


def test_ack_failure_after_success_is_not_a_job_failure(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
    caplog,
) -> None:
    write_images(jobs_root / "project_9" / "images", 3)
    worker = _worker(status_publisher, jobs_root, StubPipeline())
    delivery = RecordingDelivery(JobMessage(project_id=9).to_json(), fail_on="ack")

    with caplog.at_level(logging.ERROR, logger="recon_queue.worker.engine"):
        outcome = worker.handle(delivery)

    assert outcome is JobOutcome.COMPLETED
    assert [message.status for message in authoritative_port.messages] == [
        StatusKind.PROCESSING,
        StatusKind.COMPLETED,
    ]
    assert any("Ack failed" in record.getMessage() for record in caplog.records)


def test_completed_publish_failure_leads_to_requeue(
    jobs_root: Path,
    status_publisher,
    authoritative_port,
) -> None:
    write_images(jobs_root / "project_10" / "images", 3)
    worker = _worker(status_publisher, jobs_root, StubPipeline())
    original_publish = authoritative_port.publish

    def _fail_on_completed(update) -> None:
        if update.status == StatusKind.COMPLETED:
            raise PublishError("Publish to status failed: connection reset", queue="status")
        original_publish(update)

    authoritative_port.publish = _fail_on_completed
    delivery = _job(10)

    outcome = worker.handle(delivery)

    assert outcome is JobOutcome.REQUEUED
    assert delivery.settled == ["requeue"]
    assert [message.status for message in authoritative_port.messages] == [
        StatusKind.PROCESSING,
        StatusKind.FAILED,
    ]


def test_heartbeat_only_when_idle_and_interval_elapsed(jobs_root: Path, status_publisher, verbose_port) -> None:
    ticks = iter([0.0, 10.0, 31.0])
    worker = _worker(
        status_publisher,
        jobs_root,
        StubPipeline(),
        heartbeat_interval_seconds=30,
        monotonic=lambda: next(ticks),
    )

    assert worker._maybe_heartbeat() is True
    assert worker._maybe_heartbeat() is False
    assert worker._maybe_heartbeat() is True
    heartbeats = [message for message in verbose_port.messages if message.is_heartbeat]
    assert len(heartbeats) == 2
    assert heartbeats[0].project_id == HEARTBEAT_PROJECT_ID
    assert heartbeats[0].status == WorkerActivity.IDLE.value


def test_run_summary_counts_outcomes() -> None:
    summary = WorkerRunSummary()
    for outcome in (
        JobOutcome.COMPLETED,
        JobOutcome.REQUEUED,
        JobOutcome.DEAD_LETTERED,
        JobOutcome.MALFORMED,
    ):
        summary.record(outcome)

    assert (summary.processed, summary.succeeded, summary.retried, summary.failed, summary.malformed) == (
        4,
        1,
        1,
        1,
        1,
    )


def test_stage_failed_error_keeps_exit_code() -> None:
    error = StageFailedError(stage="stereo_fusion", exit_code=3, stderr_tail="")

    assert error.exit_code == 3
    assert str(error) == "Stage stereo_fusion failed with exit code 3"
