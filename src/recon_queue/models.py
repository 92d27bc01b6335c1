"""Domain models for project records and status transitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ProcessingStatus(str, Enum):
    """Persisted project lifecycle states."""

    IN_QUEUE = "InQueue"
    PROCESSING = "Processing"
    FINISHED = "Finished"
    FAILED = "Failed"


class StatusKind(str, Enum):
    """Authoritative status transitions published by workers."""

    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class WorkerActivity(str, Enum):
    """Status values carried by verbose progress messages."""

    IDLE = "Idle"
    IN_QUEUE = "InQueue"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_ACTIVITIES = frozenset(
    {WorkerActivity.COMPLETED.value, WorkerActivity.FAILED.value},
)

HEARTBEAT_PROJECT_ID = 0


@dataclass(slots=True)
class ProjectCreate:
    """Input payload for registering an uploaded photo set."""

    name: str
    zip_file_path: str


@dataclass(slots=True)
class ProjectRecord:
    """Persisted project record mutated by the status consumer."""

    id: int
    name: str
    status: ProcessingStatus
    zip_file_path: str
    created_at: datetime
    output_model_path: str | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    status_updated_at: datetime | None = None
