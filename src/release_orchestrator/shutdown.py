"""Run cancellation on SIGINT / SIGTERM.

The first signal asks the pipeline to stop at the next safe point (between
stages, or between two polls of the stability wait). A second signal
cancels the running pipeline task outright. Either way no further request
is sent to ECS and an already requested service update stays in effect.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.release_orchestrator.state import RunState

logger = logging.getLogger(__name__)


class GracefulShutdown:
    """Tracks stop requests for one run.

    Usage::

        shutdown = GracefulShutdown()
        shutdown.install()
        shutdown.set_state(run_state)

        # In the pipeline loop and the stability wait:
        if shutdown.should_stop:
            ...
    """

    def __init__(self) -> None:
        self._should_stop = False
        self._state: RunState | None = None
        self._task: asyncio.Task[Any] | None = None
        self._signals_seen = 0

    @property
    def should_stop(self) -> bool:
        """Whether a stop has been requested."""
        return self._should_stop

    @should_stop.setter
    def should_stop(self, value: bool) -> None:
        self._should_stop = value

    def set_state(self, state: Any) -> None:
        """Inject the run state so a stop request can be persisted."""
        self._state = state

    def set_task(self, task: asyncio.Task[Any] | None) -> None:
        """Register the task a second signal cancels."""
        self._task = task

    def install(self) -> None:
        """Register handlers for SIGINT and SIGTERM.

        Uses ``loop.add_signal_handler`` when a loop is running (Unix), and
        ``signal.signal`` otherwise.
        """
        if sys.platform != "win32":
            try:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, self.request_stop)
                return
            except RuntimeError:
                pass
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum: int, frame: Any) -> None:
        self.request_stop()

    def request_stop(self) -> None:
        """Handle one stop request; escalate to cancellation on the second."""
        self._signals_seen += 1
        if self._signals_seen == 1:
            logger.warning("Stop requested -- finishing at the next safe point")
            self._should_stop = True
            self._record_interrupt()
            return
        if self._task is not None and not self._task.done():
            logger.warning("Second stop request -- cancelling the run")
            self._task.cancel()

    def _record_interrupt(self) -> None:
        """Persist the interrupt flag on the run state."""
        if self._state is None:
            logger.warning("No run state to save on interrupt")
            return
        try:
            self._state.interrupted = True
            self._state.interrupt_reason = "Signal received"
            self._state.save()
        except OSError:
            logger.exception("Failed to save state on interrupt")
