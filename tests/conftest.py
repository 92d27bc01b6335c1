"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from kombu import Connection

from recon_queue.broker.messages import StatusUpdateMessage, VerboseStatusMessage
from recon_queue.config import BrokerSettings
from recon_queue.status.publisher import StatusPublisher
from recon_queue.storage.repository import ProjectRepository

FAKE_COLMAP_COMMAND = f"{shlex.quote(sys.executable)} -m recon_queue.worker.fake_colmap"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


class RecordingDelivery:
    """In-process stand-in for one broker delivery."""

    def __init__(self, body: bytes | str, *, retry_count: int = 0, fail_on: str | None = None):
        self.body = body
        self.retry_count = retry_count
        self.settled: list[str] = []
        self._fail_on = fail_on

    def _settle(self, action: str) -> None:
        if self._fail_on == action:
            raise ConnectionError(f"{action} failed: channel closed")
        self.settled.append(action)

    def ack(self) -> None:
        self._settle("ack")

    def requeue(self) -> None:
        self._settle("requeue")

    def reject(self) -> None:
        self._settle("reject")


class RecordingAuthoritativePort:
    def __init__(self) -> None:
        self.messages: list[StatusUpdateMessage] = []
        self.fail_with: Exception | None = None

    def publish(self, update: StatusUpdateMessage) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append(update)


class RecordingVerbosePort:
    def __init__(self) -> None:
        self.messages: list[VerboseStatusMessage] = []
        self.fail_with: Exception | None = None

    def publish(self, event: VerboseStatusMessage) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append(event)


class SteppingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture(autouse=True)
def _source_tree_on_subprocess_path(monkeypatch):
    """Tool subprocesses started with ``-m`` import from the source tree."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(filter(None, [str(SRC_DIR), existing])))


@pytest.fixture()
def authoritative_port() -> RecordingAuthoritativePort:
    return RecordingAuthoritativePort()


@pytest.fixture()
def verbose_port() -> RecordingVerbosePort:
    return RecordingVerbosePort()


@pytest.fixture()
def status_publisher(authoritative_port, verbose_port) -> StatusPublisher:
    return StatusPublisher(
        authoritative=authoritative_port,
        verbose=verbose_port,
        worker_id="worker-a",
        clock=SteppingClock(),
    )


@pytest.fixture()
def repository(tmp_path: Path):
    repo = ProjectRepository(tmp_path / "projects.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def delivery_factory():
    return RecordingDelivery


def write_images(images_dir: Path, count: int, *, nested: bool = True) -> list[Path]:
    """Create ``count`` small fake images, optionally spread over subdirectories."""

    paths: list[Path] = []
    for index in range(count):
        folder = images_dir / f"batch_{index % 2}" if nested else images_dir
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"IMG_{index:04d}.jpg"
        path.write_bytes(b"\xff\xd8fake-jpeg" + bytes([index % 256]))
        paths.append(path)
    return paths


@pytest.fixture()
def project_images():
    return write_images


@pytest.fixture()
def broker_settings():
    """Memory-transport settings with queue names unique to one test."""

    suffix = uuid4().hex[:8]
    return BrokerSettings(
        url="memory://",
        work_queue=f"work-{suffix}",
        status_queue=f"status-{suffix}",
        verbose_queue=f"verbose-{suffix}",
        dead_letter_exchange=f"dlx-{suffix}",
        dead_letter_queue=f"failed-{suffix}",
        publish_max_retries=0,
    )


@pytest.fixture()
def memory_connection(broker_settings):
    with Connection(broker_settings.url) as connection:
        yield connection
