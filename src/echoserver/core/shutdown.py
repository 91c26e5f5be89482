"""
=============================================================================
SHUTDOWN COORDINATOR
=============================================================================

Drives a running server to quiescence with a bounded total latency.

=============================================================================
GRACEFUL FIRST, FORCED SECOND
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      Shutdown Sequence                               │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. running.clear()           accept loop will exit on next wake    │
    │          │                                                           │
    │   2. close listening socket    wakes the blocked accept()            │
    │          │                     new connections now get refused       │
    │          │                                                           │
    │   3. dispatch.shutdown(grace)  sessions may finish naturally...      │
    │          │                                                           │
    │   4. grace expired?            ...or get their sockets shut down     │
    │          │                                                           │
    │   5. log completion                                                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Total time is bounded by roughly grace_period plus the short forced-join
window of the dispatch.

Nothing in here raises: a socket that is already closed, a worker that
refuses to die - all of it is logged and the sequence keeps going. Whoever
calls stop() gets a report, never an exception.

=============================================================================
"""

import time
import logging
from dataclasses import dataclass

from .state import ServerRuntimeState


logger = logging.getLogger(__name__)


DEFAULT_GRACE_PERIOD = 5.0


@dataclass(frozen=True)
class ShutdownReport:
    """
    Outcome of a shutdown.

    Attributes:
        forced: True if sessions had to be force-cancelled.
        duration: Seconds the shutdown took.
    """
    forced: bool
    duration: float


class ShutdownCoordinator:
    """Runs the ordered shutdown steps against a ServerRuntimeState."""

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD):
        if grace_period < 0:
            raise ValueError("grace_period must be >= 0")
        self.grace_period = grace_period

    def shutdown(self, state: ServerRuntimeState) -> ShutdownReport:
        started = time.monotonic()

        # Step 1: the accept loop checks this flag after every wake-up
        state.running.clear()

        # Step 2: unblock accept() and refuse new connections
        try:
            if state.close_listen_socket():
                logger.debug("Listening socket closed")
        except Exception as e:
            logger.exception(f"Unexpected error closing listening socket: {e}")

        # Steps 3 and 4: grace period, then forced cancellation
        try:
            graceful = state.dispatch.shutdown(self.grace_period)
        except Exception as e:
            logger.exception(f"Unexpected error shutting down worker dispatch: {e}")
            graceful = False

        if not graceful:
            logger.warning(
                f"Sessions still active after {self.grace_period}s grace period "
                f"were terminated forcibly"
            )

        # Step 5
        duration = time.monotonic() - started
        logger.info(f"Server shutdown complete in {duration:.2f}s")
        return ShutdownReport(forced=not graceful, duration=duration)
