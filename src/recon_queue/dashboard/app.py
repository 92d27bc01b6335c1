"""Terminal dashboard: verbose-queue consumer plus a periodic rich render."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from kombu import Connection, Queue
from kombu.message import Message
from rich.console import Console
from rich.live import Live

from recon_queue.broker.messages import MessageDecodeError, VerboseStatusMessage
from recon_queue.dashboard.reconciler import DashboardReconciler, DashboardSnapshot
from recon_queue.dashboard.render import render_dashboard
from recon_queue.shutdown import GracefulStop
from recon_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


class DashboardApp:
    """Feeds the reconciler from the verbose queue and redraws on its own cadence."""

    def __init__(
        self,
        reconciler: DashboardReconciler,
        *,
        refresh_seconds: float = 1.0,
        console: Console | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.reconciler = reconciler
        self.refresh_seconds = refresh_seconds
        self.console = console or Console()
        self.clock = clock
        self.stop = GracefulStop()
        self.received = 0
        self.dropped = 0

    def on_message(self, message: Message) -> None:
        try:
            update = VerboseStatusMessage.from_json(message.body)
        except MessageDecodeError as error:
            self.dropped += 1
            logger.warning("Dropping undecodable verbose message: %s", error)
            return
        self.received += 1
        self.reconciler.apply_update(update)

    def snapshot(self) -> DashboardSnapshot:
        return self.reconciler.render_snapshot(self.clock())

    def run(
        self,
        connection: Connection,
        verbose_queue: Queue,
        *,
        max_refreshes: int | None = None,
    ) -> DashboardSnapshot:
        """Consume and render until stopped; returns the last snapshot drawn."""

        snapshot = self.snapshot()
        refreshes = 0
        with (
            self.stop.installed(),
            connection.Consumer(queues=[verbose_queue], on_message=self.on_message, no_ack=True),
            Live(
                render_dashboard(snapshot),
                console=self.console,
                auto_refresh=False,
                transient=False,
            ) as live,
        ):
            next_render = time.monotonic() + self.refresh_seconds
            while not self.stop.requested:
                if max_refreshes is not None and refreshes >= max_refreshes:
                    break
                timeout = max(0.0, next_render - time.monotonic())
                try:
                    connection.drain_events(timeout=timeout or 0.01)
                except TimeoutError:
                    pass
                if time.monotonic() < next_render:
                    continue
                snapshot = self.snapshot()
                live.update(render_dashboard(snapshot), refresh=True)
                refreshes += 1
                next_render = time.monotonic() + self.refresh_seconds
        logger.info(
            "Dashboard stopped: %s updates applied, %s dropped",
            self.received,
            self.dropped,
        )
        return snapshot
