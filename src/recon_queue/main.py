"""CLI entrypoint for recon-queue."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click
from kombu.exceptions import KombuError

from recon_queue import __version__
from recon_queue.broker.channels import PublishError
from recon_queue.controllers import (
    CliController,
    DashboardCommand,
    EnqueueCommand,
    ListProjectsCommand,
    ShowProjectCommand,
    StatusConsumerRunCommand,
    SubmitProjectCommand,
    TopologyDeclareCommand,
    WorkerRunCommand,
)
from recon_queue.worker.errors import JobError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="recon-queue")
@click.option(
    "--log-level",
    envvar="RECON_QUEUE_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def recon_queue(log_level: str) -> None:
    """Photogrammetry job queue CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@recon_queue.group()
def topology() -> None:
    """Broker topology commands."""


@topology.command("declare")
@click.option("--broker-url", default=None, help="Override RECON_QUEUE_BROKER_URL.")
def topology_declare(broker_url: str | None) -> None:
    """Declare work, status, verbose and dead-letter queues (idempotent)."""

    _emit_lines(_guarded(lambda: CONTROLLER.declare_topology(TopologyDeclareCommand(broker_url))))


@recon_queue.group()
def projects() -> None:
    """Project record commands."""


@projects.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Project name.")
@click.option(
    "--zip",
    "zip_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Photo archive to register.",
)
@click.option(
    "--jobs-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Override RECON_QUEUE_JOBS_ROOT.",
)
def projects_submit(
    db_path: Path | None,
    name: str,
    zip_path: Path,
    jobs_root: Path | None,
) -> None:
    """Register a photo archive and enqueue exactly one reconstruction job."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.submit_project(
                SubmitProjectCommand(
                    db_path=db_path,
                    name=name,
                    zip_path=zip_path,
                    jobs_root=jobs_root,
                ),
            ),
        ),
    )


@projects.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["InQueue", "Processing", "Finished", "Failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max projects to print.",
)
def projects_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List project records, newest first."""

    _emit_lines(
        CONTROLLER.list_projects(
            ListProjectsCommand(
                db_path=db_path,
                status=status,
                limit=limit,
            ),
        ),
    )


@projects.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", type=click.IntRange(min=1), required=True, help="Project id.")
def projects_show(db_path: Path | None, project_id: int) -> None:
    """Show one project record."""

    _emit_lines(
        CONTROLLER.show_project(
            ShowProjectCommand(
                db_path=db_path,
                project_id=project_id,
            ),
        ),
    )


@recon_queue.command("enqueue")
@click.option("--project-id", type=click.IntRange(min=1), required=True, help="Project id.")
def enqueue(project_id: int) -> None:
    """Publish a job message for an existing project."""

    _emit_lines(_guarded(lambda: CONTROLLER.enqueue(EnqueueCommand(project_id=project_id))))


@recon_queue.group()
def worker() -> None:
    """Reconstruction worker commands."""


@worker.command("run")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many deliveries.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls (default: run until signalled).",
)
@click.option(
    "--jobs-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Override RECON_QUEUE_JOBS_ROOT.",
)
def worker_run(max_jobs: int | None, max_idle_polls: int | None, jobs_root: Path | None) -> None:
    """Consume the work queue with prefetch 1."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerRunCommand(
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                    jobs_root=jobs_root,
                ),
            ),
        ),
    )


@recon_queue.group("status-consumer")
def status_consumer() -> None:
    """Authoritative status consumer commands."""


@status_consumer.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many messages.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls.",
)
def status_consumer_run(
    db_path: Path | None,
    max_messages: int | None,
    max_idle_polls: int | None,
) -> None:
    """Apply authoritative status transitions to project records."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_status_consumer(
                StatusConsumerRunCommand(
                    db_path=db_path,
                    max_messages=max_messages,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@recon_queue.command("dashboard")
@click.option(
    "--max-refreshes",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many redraws.",
)
def dashboard(max_refreshes: int | None) -> None:
    """Live worker/project dashboard fed by the verbose status queue."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.run_dashboard(DashboardCommand(max_refreshes=max_refreshes))),
    )


@recon_queue.group()
def queue() -> None:
    """Queue inspection commands."""


@queue.command("stats")
def queue_stats() -> None:
    """Show worker count and work/dead-letter queue depth."""

    _emit_lines(_guarded(CONTROLLER.queue_stats))


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, JobError, PublishError, KombuError, OSError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    recon_queue()
