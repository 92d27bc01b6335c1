"""Rich renderables for dashboard snapshots."""

from __future__ import annotations

from datetime import datetime

from rich import box
from rich.console import Group
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

from recon_queue.dashboard.reconciler import DashboardSnapshot, ProjectView, WorkerView

MAX_STEP_CHARS = 40
STATUS_STYLES = {
    "Idle": "yellow",
    "InQueue": "blue",
    "Processing": "green",
    "Completed": "bright_green",
    "Failed": "red",
}


def format_elapsed(start: datetime | None, end: datetime) -> str:
    if start is None:
        return "-"
    seconds = max(0, int((end - start).total_seconds()))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def truncate_step(step: str | None, limit: int = MAX_STEP_CHARS) -> str:
    if not step:
        return "-"
    if len(step) <= limit:
        return step
    return step[: limit - 3] + "..."


def render_dashboard(snapshot: DashboardSnapshot) -> Group:
    counters = snapshot.counters
    summary = (
        f"Workers: {counters.workers_total} "
        f"([green]{counters.workers_processing} busy[/], "
        f"[yellow]{counters.workers_idle} idle[/])  "
        f"Projects: {counters.projects_total} "
        f"([blue]{counters.projects_queued} queued[/], "
        f"[green]{counters.projects_processing} processing[/], "
        f"[bright_green]{counters.projects_completed} done[/], "
        f"[red]{counters.projects_failed} failed[/])"
    )
    return Group(
        Rule("[bold blue]Photogrammetry Status Dashboard[/]"),
        summary,
        workers_table(snapshot.workers, now=snapshot.generated_at),
        projects_table(snapshot.projects, now=snapshot.generated_at),
        f"[dim]Updated {snapshot.generated_at:%Y-%m-%d %H:%M:%S} UTC[/]",
    )


def workers_table(workers: tuple[WorkerView, ...], *, now: datetime) -> Table:
    table = Table(title="Workers", box=box.ROUNDED, expand=True)
    table.add_column("Worker")
    table.add_column("Status")
    table.add_column("Project", justify="right")
    table.add_column("Step")
    table.add_column("Images", justify="right")
    table.add_column("Elapsed", justify="right")
    table.add_column("Last update", justify="right")
    if not workers:
        table.add_row("[dim]No workers connected[/]", "", "", "", "", "", "")
    for worker in workers:
        table.add_row(
            escape(worker.worker_id),
            _styled(worker.status),
            str(worker.current_project_id) if worker.current_project_id else "-",
            escape(truncate_step(worker.current_step)),
            str(worker.image_count) if worker.image_count else "-",
            format_elapsed(worker.processing_started, now),
            f"{format_elapsed(worker.last_update, now)} ago",
        )
    return table


def projects_table(projects: tuple[ProjectView, ...], *, now: datetime) -> Table:
    table = Table(title="Recent projects", box=box.ROUNDED, expand=True)
    table.add_column("ID", justify="right")
    table.add_column("Status")
    table.add_column("Worker")
    table.add_column("Step")
    table.add_column("Images", justify="right")
    table.add_column("Elapsed", justify="right")
    table.add_column("Error")
    if not projects:
        table.add_row("", "[dim]No projects seen yet[/]", "", "", "", "", "")
    for project in projects:
        end = project.completed_at or now
        table.add_row(
            str(project.project_id),
            _styled(project.status),
            escape(project.worker_id or "-"),
            escape(truncate_step(project.current_step)),
            str(project.image_count) if project.image_count else "-",
            format_elapsed(project.processing_started, end),
            escape(truncate_step(project.error_message)) if project.error_message else "",
        )
    return table


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status)
    if style is None:
        return escape(status)
    return f"[{style}]{status}[/]"
