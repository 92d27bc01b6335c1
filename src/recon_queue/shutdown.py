"""Cooperative SIGINT/SIGTERM handling for long-running consumer loops."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class GracefulStop:
    """Stop flag flipped by a signal; the loop finishes its current unit of work."""

    def __init__(self, on_request: Callable[[str], None] | None = None) -> None:
        self.requested = False
        self.signal_name: str | None = None
        self._on_request = on_request

    def request(self, *, signal_name: str) -> None:
        if self.requested:
            return
        self.requested = True
        self.signal_name = signal_name
        logger.info("Stop requested by %s", signal_name)
        if self._on_request is not None:
            self._on_request(signal_name)

    @contextmanager
    def installed(self) -> Iterator[GracefulStop]:
        """Route SIGINT/SIGTERM to ``request`` for the duration of the block."""

        if not hasattr(signal, "SIGINT"):
            yield self
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield self
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
