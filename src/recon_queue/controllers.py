"""Controllers for recon-queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from kombu import Connection
from rich.console import Console

from recon_queue.broker.channels import (
    AmqpAuthoritativeStatusChannel,
    AmqpVerboseStatusChannel,
    BrokerPublisher,
)
from recon_queue.broker.producer import JobProducer
from recon_queue.broker.topology import BrokerTopology, declare_topology, queue_stats
from recon_queue.config import Settings
from recon_queue.dashboard.app import DashboardApp
from recon_queue.dashboard.reconciler import DashboardReconciler
from recon_queue.models import ProcessingStatus
from recon_queue.services import ProjectSubmissionService
from recon_queue.status.consumer import StatusConsumer
from recon_queue.status.publisher import StatusPublisher
from recon_queue.storage.repository import ProjectRepository
from recon_queue.worker.engine import ReconstructionWorker
from recon_queue.worker.pipeline import ReconstructionPipeline, StageRunner
from recon_queue.worker.workspace import resolve_output_path


@dataclass(slots=True)
class TopologyDeclareCommand:
    """CLI input for broker topology declaration."""

    broker_url: str | None = None


@dataclass(slots=True)
class SubmitProjectCommand:
    """CLI input for project submission."""

    db_path: Path | None
    name: str
    zip_path: Path
    jobs_root: Path | None = None


@dataclass(slots=True)
class ListProjectsCommand:
    """CLI input for project listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ShowProjectCommand:
    """CLI input for project inspection."""

    db_path: Path | None
    project_id: int


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for re-enqueueing an existing project."""

    project_id: int


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    max_jobs: int | None
    max_idle_polls: int | None
    jobs_root: Path | None = None


@dataclass(slots=True)
class StatusConsumerRunCommand:
    """CLI input for the authoritative status consumer."""

    db_path: Path | None
    max_messages: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class DashboardCommand:
    """CLI input for the live dashboard."""

    max_refreshes: int | None


class CliController:
    """Wires settings, broker and storage for each CLI command."""

    def declare_topology(self, command: TopologyDeclareCommand) -> list[str]:
        settings = Settings.from_env()
        if command.broker_url:
            settings.broker.url = command.broker_url
        with _broker(settings) as (_, topology):
            return [f"Declared queue: {queue.name}" for queue in topology.all_queues()]

    def submit_project(self, command: SubmitProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        jobs_root = command.jobs_root or settings.storage.jobs_root
        with _repository(settings) as repository, _broker(settings) as (connection, topology):
            publisher = _publisher(connection, settings)
            service = ProjectSubmissionService(
                repository=repository,
                producer=JobProducer(publisher, topology.work_queue),
                jobs_root=jobs_root,
                verbose=AmqpVerboseStatusChannel(publisher, topology.verbose_queue),
            )
            record = service.submit(command.name, command.zip_path)
        return [
            f"Project submitted: id={record.id} name={record.name} status={record.status.value}",
            f"Images: {jobs_root / f'project_{record.id}' / 'images'}",
        ]

    def list_projects(self, command: ListProjectsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            projects = repository.list_projects(status=status_filter, limit=command.limit)

        lines = [f"Projects: {len(projects)}"]
        for project in projects:
            lines.append(
                f"  {project.id} name={project.name} status={project.status.value} "
                f"created_at={project.created_at.isoformat()}",
            )
        return lines

    def show_project(self, command: ShowProjectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.find_project(command.project_id)
        if project is None:
            return [f"Project not found: {command.project_id}"]

        output = "-"
        if project.output_model_path:
            resolved = resolve_output_path(settings.storage.jobs_root, project.output_model_path)
            output = f"{project.output_model_path} ({resolved})"
        return [
            f"Project: {project.id}",
            f"Name: {project.name}",
            f"Status: {project.status.value}",
            f"Archive: {project.zip_file_path}",
            f"Created: {project.created_at.isoformat()}",
            f"Processing started: {_iso_or_dash(project.processing_started_at)}",
            f"Completed: {_iso_or_dash(project.completed_at)}",
            f"Output model: {output}",
            f"Error: {project.error_message or '-'}",
        ]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env()
        with _broker(settings) as (connection, topology):
            producer = JobProducer(_publisher(connection, settings), topology.work_queue)
            producer.enqueue(command.project_id)
        return [f"Job enqueued: project_id={command.project_id} queue={topology.work_queue.name}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env()
        settings.validate_for_worker()
        with _broker(settings) as (connection, topology):
            publisher = _publisher(connection, settings)
            worker = ReconstructionWorker(
                status=StatusPublisher(
                    authoritative=AmqpAuthoritativeStatusChannel(publisher, topology.status_queue),
                    verbose=AmqpVerboseStatusChannel(publisher, topology.verbose_queue),
                    worker_id=settings.worker.worker_id,
                ),
                pipeline=ReconstructionPipeline(
                    StageRunner(
                        settings.pipeline.colmap_executable,
                        timeout_seconds=settings.pipeline.stage_timeout_seconds,
                    ),
                ),
                jobs_root=command.jobs_root or settings.storage.jobs_root,
                image_extensions=settings.pipeline.image_extensions,
                min_images=settings.pipeline.min_images,
                scratch_root=settings.pipeline.scratch_root,
                max_attempts=settings.worker.max_attempts,
                retry_unclassified=settings.worker.retry_unclassified,
                heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
                poll_timeout_seconds=settings.worker.poll_timeout_seconds,
            )
            summary = worker.run_loop(
                connection,
                topology.work_queue,
                republisher=publisher,
                max_jobs=command.max_jobs,
                max_idle_polls=command.max_idle_polls,
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"malformed={summary.malformed} idle_polls={summary.idle_polls}",
        ]

    def run_status_consumer(self, command: StatusConsumerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _broker(settings) as (connection, topology):
            consumer = StatusConsumer(
                repository,
                poll_timeout_seconds=settings.worker.poll_timeout_seconds,
            )
            summary = consumer.run_loop(
                connection,
                topology.status_queue,
                max_messages=command.max_messages,
                max_idle_polls=command.max_idle_polls,
            )
        return [
            "Status consumer summary: "
            f"received={summary.received} applied={summary.applied} "
            f"skipped={summary.skipped} rejected={summary.rejected} "
            f"requeued={summary.requeued}",
        ]

    def run_dashboard(self, command: DashboardCommand, *, console: Console | None = None) -> list[str]:
        settings = Settings.from_env()
        settings.validate_for_dashboard()
        reconciler = DashboardReconciler(
            stale_after_seconds=settings.dashboard.stale_worker_seconds,
            stuck_after_seconds=settings.dashboard.stuck_worker_seconds,
            recent_projects=settings.dashboard.recent_projects,
        )
        app = DashboardApp(
            reconciler,
            refresh_seconds=settings.dashboard.refresh_seconds,
            console=console,
        )
        with _broker(settings) as (connection, topology):
            snapshot = app.run(connection, topology.verbose_queue, max_refreshes=command.max_refreshes)
        return [
            "Dashboard closed: "
            f"updates={app.received} dropped={app.dropped} "
            f"workers={snapshot.counters.workers_total} projects={snapshot.counters.projects_total}",
        ]

    def queue_stats(self) -> list[str]:
        settings = Settings.from_env()
        with _broker(settings) as (connection, topology):
            stats = queue_stats(connection, topology)
        return [
            f"Status: {stats.status}",
            f"Workers: {stats.work.consumers}",
            f"Queued jobs: {stats.work.messages} ({stats.work.name})",
            f"Failed jobs: {stats.dead_letter.messages} ({stats.dead_letter.name})",
        ]


def _parse_status(value: str | None) -> ProcessingStatus | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    for status in ProcessingStatus:
        if status.value.lower() == normalized:
            return status
    raise ValueError(f"Unknown project status: {value!r}")


def _iso_or_dash(value) -> str:
    return value.isoformat() if value is not None else "-"


def _publisher(connection: Connection, settings: Settings) -> BrokerPublisher:
    return BrokerPublisher(connection, max_retries=settings.broker.publish_max_retries)


@contextmanager
def _repository(settings: Settings) -> Iterator[ProjectRepository]:
    repository = ProjectRepository(
        settings.storage.db_path,
        sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _broker(settings: Settings) -> Iterator[tuple[Connection, BrokerTopology]]:
    topology = BrokerTopology.from_settings(settings.broker)
    with Connection(settings.broker.url, heartbeat=settings.broker.heartbeat_seconds) as connection:
        connection.ensure_connection(max_retries=settings.broker.publish_max_retries)
        declare_topology(connection, topology)
        yield connection, topology
