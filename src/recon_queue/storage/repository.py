"""Project record persistence facade backed by SQLModel + SQLite."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, SQLModel, col, select

from recon_queue.models import ProcessingStatus, ProjectCreate, ProjectRecord
from recon_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from recon_queue.storage.sqlmodel_models import Project


class ProjectNotFoundError(LookupError):
    """Raised when an update targets a project that does not exist."""


class ProjectRepository:
    """Durable, immediately consistent store for project records."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create tables if they do not exist yet."""

        SQLModel.metadata.create_all(self.engine)

    def create_project(self, payload: ProjectCreate) -> ProjectRecord:
        """Insert a new project in the InQueue state."""

        now = utc_now()
        with Session(self.engine) as session:
            row = Project(
                name=payload.name,
                status=ProcessingStatus.IN_QUEUE.value,
                zip_file_path=payload.zip_file_path,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def find_project(self, project_id: int) -> ProjectRecord | None:
        """Return the project record or None when it does not exist."""

        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is None:
                return None
            return _to_record(row)

    def update_project(self, record: ProjectRecord) -> ProjectRecord:
        """Persist all mutable fields of an existing record."""

        with Session(self.engine) as session:
            row = session.get(Project, record.id)
            if row is None:
                raise ProjectNotFoundError(f"Project not found: {record.id}")
            row.name = record.name
            row.status = record.status.value
            row.zip_file_path = record.zip_file_path
            row.output_model_path = record.output_model_path
            row.processing_started_at = _optional_db_datetime(record.processing_started_at)
            row.completed_at = _optional_db_datetime(record.completed_at)
            row.error_message = record.error_message
            row.status_updated_at = _optional_db_datetime(record.status_updated_at)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def list_projects(
        self,
        *,
        status: ProcessingStatus | None = None,
        limit: int = 50,
    ) -> list[ProjectRecord]:
        """List most recently created projects first."""

        with Session(self.engine) as session:
            query = select(Project)
            if status is not None:
                query = query.where(Project.status == status.value)
            query = query.order_by(col(Project.created_at).desc(), col(Project.id).desc())
            rows = session.exec(query.limit(max(1, limit))).all()
            return [_to_record(row) for row in rows]


def _optional_db_datetime(value):
    if value is None:
        return None
    return to_db_datetime(value)


def _optional_aware(value):
    if value is None:
        return None
    return to_utc_aware(value)


def _to_record(row: Project) -> ProjectRecord:
    if row.id is None:
        raise RuntimeError("Project row has no primary key after flush.")
    return ProjectRecord(
        id=row.id,
        name=row.name,
        status=ProcessingStatus(row.status),
        zip_file_path=row.zip_file_path,
        created_at=to_utc_aware(row.created_at),
        output_model_path=row.output_model_path,
        processing_started_at=_optional_aware(row.processing_started_at),
        completed_at=_optional_aware(row.completed_at),
        error_message=row.error_message,
        status_updated_at=_optional_aware(row.status_updated_at),
    )
