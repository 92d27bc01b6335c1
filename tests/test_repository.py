from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from recon_queue.models import ProcessingStatus, ProjectCreate
from recon_queue.storage.repository import ProjectNotFoundError, ProjectRepository

pytestmark = [
    allure.epic("Project Records"),
    allure.feature("Persistence"),
]


def test_new_project_starts_in_queue(repository) -> None:
    record = repository.create_project(ProjectCreate(name="Bridge", zip_file_path="/uploads/bridge.zip"))

    assert record.id > 0
    assert record.status == ProcessingStatus.IN_QUEUE
    assert record.created_at.tzinfo is not None
    assert record.processing_started_at is None
    assert record.status_updated_at is None
    assert repository.find_project(record.id) == record


def test_find_missing_project_returns_none(repository) -> None:
    assert repository.find_project(404) is None


def test_update_round_trips_aware_timestamps(repository) -> None:
    record = repository.create_project(ProjectCreate(name="Statue", zip_file_path="/uploads/statue.zip"))
    started = datetime(2026, 3, 1, 12, 0, 0, 250000, tzinfo=UTC)

    repository.update_project(
        replace(
            record,
            status=ProcessingStatus.PROCESSING,
            processing_started_at=started,
            status_updated_at=started,
        ),
    )

    stored = repository.find_project(record.id)
    assert stored is not None
    assert stored.status == ProcessingStatus.PROCESSING
    assert stored.processing_started_at == started
    assert stored.status_updated_at == started


def test_update_missing_project_raises(repository) -> None:
    record = repository.create_project(ProjectCreate(name="Tower", zip_file_path="/uploads/tower.zip"))

    with pytest.raises(ProjectNotFoundError):
        repository.update_project(replace(record, id=record.id + 100))


def test_list_projects_filters_and_orders_newest_first(repository) -> None:
    first = repository.create_project(ProjectCreate(name="One", zip_file_path="/uploads/1.zip"))
    second = repository.create_project(ProjectCreate(name="Two", zip_file_path="/uploads/2.zip"))
    repository.update_project(replace(first, status=ProcessingStatus.FAILED, error_message="boom"))

    assert [record.id for record in repository.list_projects()] == [second.id, first.id]
    failed = repository.list_projects(status=ProcessingStatus.FAILED)
    assert [record.name for record in failed] == ["One"]
    assert len(repository.list_projects(limit=1)) == 1


def test_records_survive_reopening(tmp_path: Path) -> None:
    db_path = tmp_path / "state" / "projects.db"
    first = ProjectRepository(db_path)
    first.init_schema()
    created = first.create_project(ProjectCreate(name="Arch", zip_file_path="/uploads/arch.zip"))
    first.close()

    second = ProjectRepository(db_path)
    second.init_schema()
    try:
        assert second.find_project(created.id) == created
    finally:
        second.close()
