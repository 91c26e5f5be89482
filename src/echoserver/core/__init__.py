"""
=============================================================================
CORE SERVER COMPONENTS
=============================================================================

The low-level building blocks behind EchoServer.

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    ECHOSERVER (server.py)                            │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Binds the listening socket                                       │
    │  • Runs the accept() loop on its own thread                         │
    │  • Wraps every accepted socket in a ConnectionSession               │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    │ submit(session)
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    WORKER DISPATCH (dispatch.py)                     │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Reuses idle workers, spawns new ones up to max_workers           │
    │  • Idle workers retire after a timeout                              │
    │  • Graceful shutdown with a grace period, then forced cancel        │
    └─────────────────────────────────────────────────────────────────────┘
                                    │
                                    │ worker runs session.run()
                                    ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONNECTION SESSION (session.py)                   │
    │  ─────────────────────────────────────────────────────────────────  │
    │  • Reads one line, writes one response, repeat                      │
    │  • "bye" → Goodbye! → close                                         │
    │  • Closes its socket exactly once, whatever happens                 │
    └─────────────────────────────────────────────────────────────────────┘

    ShutdownCoordinator (shutdown.py) ties the stop sequence together;
    ServerRuntimeState (state.py) is the mutable state it operates on.

=============================================================================
"""

from .session import ConnectionSession, SessionState
from .dispatch import WorkerDispatch, DispatchClosedError
from .state import ServerState, ServerRuntimeState
from .shutdown import ShutdownCoordinator, ShutdownReport

__all__ = [
    "ConnectionSession",     # One accepted connection and its echo loop
    "SessionState",          # Session lifecycle enum
    "WorkerDispatch",        # Elastic worker pool for sessions
    "DispatchClosedError",   # submit() after shutdown
    "ServerState",           # Server lifecycle enum
    "ServerRuntimeState",    # Running flag, listening socket, dispatch
    "ShutdownCoordinator",   # Ordered, bounded shutdown
    "ShutdownReport",        # What stop() returns
]
