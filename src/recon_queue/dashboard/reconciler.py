"""In-memory worker and project views rebuilt from verbose status events.

``DashboardReconciler`` owns both keyed collections behind one lock. The only
entry points are ``apply_update`` and ``render_snapshot``; a snapshot is a
detached copy, so rendering never observes a half-applied update.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from recon_queue.broker.messages import VerboseStatusMessage
from recon_queue.models import TERMINAL_ACTIVITIES, WorkerActivity

logger = logging.getLogger(__name__)

_IDLE = WorkerActivity.IDLE.value
_PROCESSING = WorkerActivity.PROCESSING.value
_FAILED = WorkerActivity.FAILED.value
_RESTART_FROM = frozenset({WorkerActivity.FAILED.value, WorkerActivity.IN_QUEUE.value})


@dataclass(slots=True)
class WorkerView:
    """Last known activity of one worker process."""

    worker_id: str
    last_update: datetime
    status: str = _IDLE
    current_project_id: int | None = None
    current_step: str = ""
    processing_started: datetime | None = None
    image_count: int = 0
    detailed_message: str | None = None

    def clear_assignment(self) -> None:
        self.current_project_id = None
        self.processing_started = None
        self.status = _IDLE
        self.current_step = ""
        self.image_count = 0


@dataclass(slots=True)
class ProjectView:
    """Observed lifecycle of one project; never evicted."""

    project_id: int
    queued_at: datetime
    status: str
    name: str = ""
    worker_id: str | None = None
    current_step: str | None = None
    image_count: int = 0
    processing_started: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class DashboardCounters:
    workers_total: int
    workers_processing: int
    workers_idle: int
    projects_total: int
    projects_queued: int
    projects_processing: int
    projects_completed: int
    projects_failed: int


@dataclass(slots=True, frozen=True)
class EvictionReport:
    stale: tuple[str, ...] = ()
    stuck: tuple[str, ...] = ()
    surplus_idle: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class DashboardSnapshot:
    """Immutable view handed to the renderer."""

    generated_at: datetime
    workers: tuple[WorkerView, ...]
    projects: tuple[ProjectView, ...]
    counters: DashboardCounters
    evicted: EvictionReport


class DashboardReconciler:
    """Reconciles verbose status events into worker and project views."""

    def __init__(
        self,
        *,
        stale_after_seconds: int = 300,
        stuck_after_seconds: int = 120,
        recent_projects: int = 15,
    ) -> None:
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.stuck_after = timedelta(seconds=stuck_after_seconds)
        self.recent_projects = recent_projects
        self._lock = threading.Lock()
        self._workers: dict[str, WorkerView] = {}
        self._projects: dict[int, ProjectView] = {}

    def apply_update(self, message: VerboseStatusMessage) -> None:
        with self._lock:
            if message.worker_id:
                self._apply_worker(message)
            if message.is_heartbeat:
                return
            self._apply_project(message)

    def render_snapshot(self, now: datetime) -> DashboardSnapshot:
        """Evict dead workers, then copy out the current views."""

        with self._lock:
            evicted = self._evict(now)
            workers = tuple(
                replace(worker) for _, worker in sorted(self._workers.items())
            )
            recent = sorted(
                self._projects.values(),
                key=lambda project: (project.queued_at, project.project_id),
                reverse=True,
            )[: self.recent_projects]
            projects = tuple(replace(project) for project in recent)
            counters = self._counters()
        return DashboardSnapshot(
            generated_at=now,
            workers=workers,
            projects=projects,
            counters=counters,
            evicted=evicted,
        )

    def _apply_worker(self, message: VerboseStatusMessage) -> None:
        worker = self._workers.get(message.worker_id)
        if worker is None:
            worker = WorkerView(worker_id=message.worker_id, last_update=message.timestamp)
            self._workers[message.worker_id] = worker
            logger.info("Worker %s appeared", message.worker_id)

        worker.last_update = message.timestamp
        worker.status = message.status
        worker.current_step = message.current_step or ""
        worker.detailed_message = message.message

        if message.status == _PROCESSING and not message.is_heartbeat:
            for other in self._workers.values():
                if other is not worker and other.current_project_id == message.project_id:
                    logger.info(
                        "Project %s reclaimed by %s from %s",
                        message.project_id,
                        worker.worker_id,
                        other.worker_id,
                    )
                    other.clear_assignment()
            if worker.current_project_id != message.project_id:
                worker.processing_started = None
                worker.image_count = 0
            worker.current_project_id = message.project_id
            if worker.processing_started is None:
                worker.processing_started = message.timestamp
            if message.image_count is not None:
                worker.image_count = message.image_count
        elif message.status in TERMINAL_ACTIVITIES or message.status == _IDLE:
            worker.clear_assignment()

    def _apply_project(self, message: VerboseStatusMessage) -> None:
        project = self._projects.get(message.project_id)
        if project is None:
            project = ProjectView(
                project_id=message.project_id,
                queued_at=message.timestamp,
                status=message.status,
                name=f"Project {message.project_id}",
            )
            self._projects[message.project_id] = project
            previous_status = None
        else:
            previous_status = project.status

        project.status = message.status
        if message.worker_id:
            project.worker_id = message.worker_id
        project.current_step = message.current_step
        if message.image_count is not None:
            project.image_count = message.image_count

        if message.status == _PROCESSING:
            if previous_status in _RESTART_FROM or project.processing_started is None:
                project.processing_started = message.timestamp
        elif message.status in TERMINAL_ACTIVITIES:
            project.completed_at = message.timestamp
            if message.status == _FAILED:
                project.error_message = message.message

    def _evict(self, now: datetime) -> EvictionReport:
        stale = [
            worker_id
            for worker_id, worker in self._workers.items()
            if now - worker.last_update > self.stale_after
        ]
        for worker_id in stale:
            del self._workers[worker_id]

        stuck = [
            worker_id
            for worker_id, worker in self._workers.items()
            if worker.status == _PROCESSING and now - worker.last_update > self.stuck_after
        ]
        for worker_id in stuck:
            del self._workers[worker_id]

        idle = sorted(
            (worker for worker in self._workers.values() if worker.status == _IDLE),
            key=lambda worker: (worker.last_update, worker.worker_id),
        )
        queued = sum(
            1 for project in self._projects.values() if project.status == WorkerActivity.IN_QUEUE.value
        )
        surplus = [worker.worker_id for worker in idle[: max(0, len(idle) - queued)]]
        for worker_id in surplus:
            del self._workers[worker_id]

        if stale or stuck or surplus:
            logger.debug(
                "Evicted workers: stale=%s stuck=%s surplus_idle=%s",
                stale,
                stuck,
                surplus,
            )
        return EvictionReport(stale=tuple(stale), stuck=tuple(stuck), surplus_idle=tuple(surplus))

    def _counters(self) -> DashboardCounters:
        workers = self._workers.values()
        projects = self._projects.values()
        return DashboardCounters(
            workers_total=len(self._workers),
            workers_processing=sum(1 for worker in workers if worker.status == _PROCESSING),
            workers_idle=sum(1 for worker in workers if worker.status == _IDLE),
            projects_total=len(self._projects),
            projects_queued=_count_status(projects, WorkerActivity.IN_QUEUE.value),
            projects_processing=_count_status(projects, _PROCESSING),
            projects_completed=_count_status(projects, WorkerActivity.COMPLETED.value),
            projects_failed=_count_status(projects, _FAILED),
        )


def _count_status(projects, status: str) -> int:
    return sum(1 for project in projects if project.status == status)
