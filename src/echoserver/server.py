"""
=============================================================================
ECHO SERVER
=============================================================================

The server owns the listening socket, the accept loop and the server
lifecycle. Everything a connected client experiences happens in a
ConnectionSession on a worker thread; the server's job is only to get each
new connection there as fast as possible.

=============================================================================
THREADS AT RUNTIME
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   echo-accept        accept() → ConnectionSession → submit()         │
    │        │                                                             │
    │        ├──► echo-worker-0    session 127.0.0.1:50312                 │
    │        ├──► echo-worker-1    session 127.0.0.1:50318                 │
    │        └──► echo-worker-2    (idle, retires after 60s)               │
    │                                                                      │
    │   caller of stop()   ShutdownCoordinator                             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The ONLY state shared between the accept thread and the shutdown thread is
the running flag (a threading.Event) and the listening socket handle. The
dispatch protects its own bookkeeping.

=============================================================================
UNBLOCKING accept() WITHOUT POLLING
=============================================================================

accept() blocks until a client arrives. To stop the loop we do not set a
timeout and poll a flag every second. stop() clears the running flag and
then shuts down + closes the listening socket. The blocked accept() fails
with an OSError right away.

That same OSError could also mean a real problem (e.g. out of file
descriptors). The accept loop tells the two apart by looking at the running
flag, never by parsing the error message:

    except OSError:
        running?  yes → genuine error: log it, keep accepting
                  no  → we are shutting down: leave quietly

=============================================================================
SO_REUSEADDR, BUT NOT SO_REUSEPORT
=============================================================================

SO_REUSEADDR lets a new server bind right after the previous one stopped,
even while old connections sit in TIME_WAIT.

SO_REUSEPORT would let two LIVE servers share the port. We want exactly the
opposite: a second server on a busy port must fail to start.

=============================================================================
"""

import signal
import socket
import logging
import threading
from typing import Optional, Union

from .config import ServerConfig
from .core import (
    ConnectionSession,
    DispatchClosedError,
    ServerRuntimeState,
    ServerState,
    ShutdownCoordinator,
    ShutdownReport,
    WorkerDispatch,
)


logger = logging.getLogger(__name__)


ACCEPT_THREAD_JOIN_TIMEOUT = 2.0


class EchoServer:
    """
    Multi-threaded line echo server.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      EchoServer Lifecycle                            │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │    __init__()      Validate config, create dispatch (STOPPED)        │
    │        │                                                             │
    │        ▼                                                             │
    │    start()         STARTING: socket(), bind(), listen()              │
    │        │              bind fails → STOPPED, OSError raised           │
    │        ▼                                                             │
    │                    RUNNING: accept loop (BLOCKS here)                │
    │        │                                                             │
    │    stop()          STOPPING: ShutdownCoordinator                     │
    │        │                                                             │
    │        ▼                                                             │
    │                    STOPPED (final - no restart)                      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Usage:
        server = EchoServer(ServerConfig(port=9000))
        server.serve_in_background()     # returns once bound
        ...
        server.stop()                    # graceful, bounded

    Or, blocking in the current thread:
        server.start()                   # returns after stop()
    """

    def __init__(self, config: Union[ServerConfig, int, None] = None):
        """
        Args:
            config: ServerConfig, or just the port to listen on.

        Raises:
            ValueError: If the port or any other setting is invalid.
        """
        if config is None:
            config = ServerConfig()
        elif not isinstance(config, ServerConfig):
            config = ServerConfig(port=config)
        self.config = config

        self._state = ServerRuntimeState(
            dispatch=WorkerDispatch(
                max_workers=config.max_workers,
                idle_timeout=config.worker_idle_timeout,
            )
        )

        self._started = False
        self._bound_address: Optional[tuple] = None
        self._startup_error: Optional[OSError] = None
        self._shutdown_report: Optional[ShutdownReport] = None

        # Set once bind() finished, successfully or not
        self._ready = threading.Event()
        # Set when the accept loop has returned
        self._accept_exited = threading.Event()
        # Set when stop() completed
        self._stopped = threading.Event()

        self._accept_thread: Optional[threading.Thread] = None
        self._original_handlers: dict = {}

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def state(self) -> ServerState:
        return self._state.lifecycle

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def address(self) -> tuple:
        """The bound (host, port), or the configured one before binding."""
        return self._bound_address or (self.config.host, self.config.port)

    @property
    def dispatch(self) -> WorkerDispatch:
        return self._state.dispatch

    # =========================================================================
    # STARTUP
    # =========================================================================

    def _create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

        # Rebind immediately after a previous server on this port stopped
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Echo replies are tiny; don't let Nagle hold them back
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        return sock

    def start(self):
        """
        Bind the listening socket and run the accept loop.

        BLOCKS until stop() is called from another thread (or a signal
        handler installed with install_signal_handlers()).

        Raises:
            OSError: If the socket cannot be bound (port in use, permission
                     denied). The server is back in STOPPED.
            RuntimeError: If this instance was already started once.
        """
        with self._state.lock:
            if self._started:
                raise RuntimeError("EchoServer can only be started once")
            self._started = True
            self._state.lifecycle = ServerState.STARTING

        try:
            sock = self._bind()
        except OSError as e:
            self._startup_error = e
            with self._state.lock:
                if self._state.lifecycle == ServerState.STARTING:
                    self._state.lifecycle = ServerState.STOPPED
            self._ready.set()
            self._accept_exited.set()
            raise

        with self._state.lock:
            if self._state.lifecycle != ServerState.STARTING:
                # stop() won the race while we were binding
                sock.close()
                abort = True
            else:
                self._state.listen_socket = sock
                self._state.running.set()
                self._state.lifecycle = ServerState.RUNNING
                abort = False

        self._ready.set()
        if abort:
            self._accept_exited.set()
            return

        logger.info(f"Server listening on {self.address[0]}:{self.address[1]}")

        try:
            self._accept_loop(sock)
        finally:
            self._accept_exited.set()
            logger.debug("Accept loop exited")

    def _bind(self) -> socket.socket:
        sock = self._create_socket()
        try:
            sock.bind((self.config.host, self.config.port))
            sock.listen(self.config.backlog)
        except OSError as e:
            logger.error(f"Failed to bind to {self.config.host}:{self.config.port}: {e}")
            sock.close()
            raise
        self._bound_address = sock.getsockname()[:2]
        return sock

    def serve_in_background(self, timeout: float = 5.0) -> threading.Thread:
        """
        Run start() on a dedicated accept thread.

        Returns once the listening socket is bound, so a client can connect
        as soon as this returns.

        Raises:
            OSError: The bind error, re-raised in the calling thread.
            TimeoutError: If binding did not finish within timeout.
        """
        thread = threading.Thread(
            target=self._run_accept_thread,
            name="echo-accept",
            daemon=True,
        )
        self._accept_thread = thread
        thread.start()

        if not self._ready.wait(timeout):
            raise TimeoutError(f"Server did not start within {timeout}s")
        if self._startup_error is not None:
            thread.join(timeout=ACCEPT_THREAD_JOIN_TIMEOUT)
            raise self._startup_error
        return thread

    def _run_accept_thread(self):
        try:
            self.start()
        except OSError:
            # Already logged in _bind(); serve_in_background re-raises it
            pass

    # =========================================================================
    # ACCEPT LOOP
    # =========================================================================

    def _accept_loop(self, sock: socket.socket):
        """
        Accept connections until the running flag is cleared.

        ┌─────────────────────────────────────────────────────────────────┐
        │                     Accept Loop Flow                             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │   while running:                                                 │
        │       accept()               ← BLOCKS (no timeout, no polling)   │
        │         ├── OSError, running     → log, continue                 │
        │         ├── OSError, not running → shutdown, leave               │
        │         └── (client, address)    → session → dispatch.submit()   │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘
        """
        running = self._state.running

        while running.is_set():
            try:
                client_socket, client_address = sock.accept()
            except OSError as e:
                if not running.is_set():
                    break  # stop() closed the socket under us
                logger.error(f"Accept error: {e}")
                if sock.fileno() == -1:
                    logger.error("Listening socket closed unexpectedly, leaving accept loop")
                    break
                continue

            logger.debug(f"Accepted connection from {client_address[0]}:{client_address[1]}")
            self._handle_connection(client_socket, client_address)

    def _handle_connection(self, client_socket: socket.socket, client_address: tuple):
        session = ConnectionSession(
            socket=client_socket,
            address=client_address,
            encoding=self.config.encoding,
            max_line_length=self.config.max_line_length,
        )

        try:
            self._state.dispatch.submit(session)
        except DispatchClosedError:
            # Accepted in the same instant stop() began
            logger.debug(f"[{session.id}] Shutting down, dropping connection from {session.remote}")
            session.close()

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def stop(self, grace_period: Optional[float] = None) -> ShutdownReport:
        """
        Stop the server gracefully.

        Idempotent: only the first call does the work. A call made while
        another stop() is in progress waits for it and returns the same
        report. Safe to call from any thread, concurrently with the accept
        loop. Never raises for shutdown-time failures.

        Args:
            grace_period: Seconds to let active sessions finish before
                          they are forcibly closed. Defaults to
                          config.shutdown_grace_period.

        Returns:
            ShutdownReport (forced, duration).
        """
        if grace_period is None:
            grace_period = self.config.shutdown_grace_period
        # Raises ValueError for a negative grace period, before any state changes
        coordinator = ShutdownCoordinator(grace_period)

        with self._state.lock:
            if self._state.lifecycle == ServerState.STOPPING or self._shutdown_report is not None:
                first_call = False
            else:
                first_call = True
                self._started = True  # no start() after stop()
                self._state.lifecycle = ServerState.STOPPING

        if not first_call:
            self._stopped.wait()
            return self._shutdown_report

        logger.info("Shutting down server...")
        report = coordinator.shutdown(self._state)

        # The accept loop has been woken up; make sure it is gone
        if self._accept_thread is not None and self._accept_thread is not threading.current_thread():
            self._accept_thread.join(timeout=ACCEPT_THREAD_JOIN_TIMEOUT)
        elif self._ready.is_set() and not self._accept_exited.wait(ACCEPT_THREAD_JOIN_TIMEOUT):
            logger.warning("Accept loop did not exit in time")

        self._restore_signals()

        with self._state.lock:
            self._state.lifecycle = ServerState.STOPPED
            self._shutdown_report = report
        self._stopped.set()

        logger.info("Server stopped")
        return report

    def wait_for_shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until stop() has completed.

        Returns:
            True if the server is stopped, False on timeout.
        """
        return self._stopped.wait(timeout)

    # =========================================================================
    # SIGNAL HANDLING
    # =========================================================================

    def install_signal_handlers(self):
        """
        Stop gracefully on SIGINT (Ctrl+C) and SIGTERM (docker stop, kill).

        Must be called from the main thread. The handler hands stop() to a
        separate thread: running it inside the handler would block the
        main thread, which may be the one sitting in accept().
        """
        def shutdown_handler(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"Received {signal_name}, initiating shutdown...")
            # Handlers run in the main thread: put the originals back here,
            # so a second Ctrl+C interrupts a stuck shutdown
            self._restore_signals()
            threading.Thread(target=self.stop, name="echo-shutdown", daemon=True).start()

        for sig in (signal.SIGINT, signal.SIGTERM):
            self._original_handlers[sig] = signal.signal(sig, shutdown_handler)

    def _restore_signals(self):
        if threading.current_thread() is not threading.main_thread():
            # signal.signal() only works in the main thread; leave them to
            # the caller in that case
            if self._original_handlers:
                logger.debug("Not in main thread, signal handlers left installed")
            return
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    # =========================================================================
    # CONTEXT MANAGER
    # =========================================================================

    def __enter__(self) -> "EchoServer":
        """Start in the background: `with EchoServer(9000) as server: ...`"""
        self.serve_in_background()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


def create_server(port: int, **options) -> EchoServer:
    """
    Build a server for a port with optional ServerConfig overrides.

    Example:
        server = create_server(9000, max_workers=32, shutdown_grace_period=1.0)
    """
    return EchoServer(ServerConfig(port=port, **options))
