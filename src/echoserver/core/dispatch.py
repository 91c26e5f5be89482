"""
=============================================================================
WORKER DISPATCH - ELASTIC THREAD POOL FOR SESSIONS
=============================================================================

The dispatch runs ConnectionSessions on worker threads so the accept loop
never blocks on session work.

=============================================================================
WHY NOT ONE THREAD PER CONNECTION?
=============================================================================

The simplest design spawns a thread for each accepted connection:

    for conn in accept_connections():
        Thread(target=handle, args=(conn,)).start()

That has no upper bound: a connection flood turns into a thread flood, and
each thread costs a stack (1-8 MB of address space). A fixed-size pool has
the opposite problem for this workload: sessions are LONG-LIVED (they block
until the client says "bye"), so a pool of 4 would serve 4 clients and
leave the 5th waiting forever.

The dispatch sits in between:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      ELASTIC WORKER POOL                             │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   submit(session)                                                    │
    │       │                                                              │
    │       ├── idle worker available?  → reuse it                         │
    │       ├── below max_workers?      → spawn a new worker               │
    │       └── at the cap?             → wait in the queue (FIFO)         │
    │                                                                      │
    │   ┌────────────────────────────────────────────────────────────┐    │
    │   │                     TASK QUEUE                              │    │
    │   │   [session] [session] ... [None] [None]  ← poison pills     │    │
    │   └──────────────────────────┬─────────────────────────────────┘    │
    │                              │ get()                                 │
    │                              ▼                                       │
    │   ┌──────────┐ ┌──────────┐ ┌──────────┐                            │
    │   │ Worker 0 │ │ Worker 1 │ │ Worker 2 │   idle too long → exit     │
    │   │ (busy)   │ │ (busy)   │ │ (idle)   │                            │
    │   └──────────┘ └──────────┘ └──────────┘                            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
IDLE TRACKING WITH A SEMAPHORE
=============================================================================

Deciding "is there an idle worker?" with counters races: a worker may be
between get() and "mark busy" while submit() looks. Instead each worker
RELEASES an idle semaphore when it finishes a task, and submit() tries a
non-blocking ACQUIRE:

    worker finishes task  → idle_semaphore.release()      (+1 idle slot)
    submit()              → idle_semaphore.acquire(False)
                                success → an idle worker will pick it up
                                failure → spawn a worker (if below cap)

A worker that times out waiting for work takes one idle slot for itself
before exiting, so the count never promises a worker that is gone.

=============================================================================
SHUTDOWN
=============================================================================

    shutdown(grace_period)
        1. Refuse new submissions
        2. One poison pill per worker (queued sessions still run first)
        3. Join workers until the grace period runs out
        4. Still busy? cancel() their sessions, close queued ones
        5. Short final join

=============================================================================
"""

import threading
import queue
import time
import logging
from typing import Callable, Optional, Any
from dataclasses import dataclass, field
from enum import Enum


logger = logging.getLogger(__name__)


FORCE_JOIN_TIMEOUT = 2.0
"""Seconds to wait for workers after their sessions were force-cancelled."""

FORCE_RECHECK_INTERVAL = 0.05
"""Seconds between cancel passes while waiting for forced workers."""


class DispatchClosedError(RuntimeError):
    """Raised by submit() once shutdown() has been called."""


class WorkerState(Enum):
    """Worker thread states."""
    IDLE = "idle"        # Waiting for a session
    BUSY = "busy"        # Running a session
    STOPPED = "stopped"  # Thread exited


@dataclass
class Task:
    """
    A unit of work waiting for a worker.

    Attributes:
        func: Callable that runs the work (session.run).
        cancel: Callable that forces the work to stop (session.cancel).
                Called from the shutdown thread.
        name: Label for logging.
        submitted_at: Time the task was queued.
        cancelled: Set once cancel was requested, so it is requested once.
    """
    func: Callable[[], Any]
    cancel: Optional[Callable[[], Any]] = None
    name: str = ""
    submitted_at: float = field(default_factory=time.time)
    cancelled: bool = False


class Worker(threading.Thread):
    """
    Worker thread that runs tasks from the shared queue.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        Worker Loop                                   │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. get(timeout=idle_timeout)                                       │
    │          ├── Empty  → claim an idle slot? exit : loop                │
    │          ├── None   → poison pill, exit                              │
    │          └── Task   → step 2                                         │
    │                                                                      │
    │   2. task.func()        exceptions logged, worker survives           │
    │                                                                      │
    │   3. task_done(), release idle slot, back to 1                       │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘
    """

    def __init__(self, dispatch: "WorkerDispatch", worker_id: int):
        # daemon=True: a worker stuck past forced shutdown cannot keep the
        # process alive
        super().__init__(name=f"echo-worker-{worker_id}", daemon=True)

        self.dispatch = dispatch
        self.worker_id = worker_id

        self.state = WorkerState.IDLE
        self._current_task: Optional[Task] = None
        self._task_lock = threading.Lock()

        self.tasks_completed = 0
        self.tasks_failed = 0

    def run(self):
        logger.debug(f"Worker {self.worker_id} started")
        task_queue = self.dispatch._task_queue

        try:
            while True:
                try:
                    task = task_queue.get(timeout=self.dispatch.idle_timeout)
                except queue.Empty:
                    if self.dispatch._idle_semaphore.acquire(blocking=False):
                        logger.debug(f"Worker {self.worker_id} idle, exiting")
                        break
                    # A submit() counted on an idle worker; stay for it
                    continue

                if task is None:
                    task_queue.task_done()
                    break

                try:
                    self._execute_task(task)
                finally:
                    task_queue.task_done()
                self.dispatch._idle_semaphore.release()
                # Only now, so an IDLE worker is always one submit() can count on
                self.state = WorkerState.IDLE
        finally:
            self.state = WorkerState.STOPPED
            self.dispatch._worker_exited(self)
            logger.debug(f"Worker {self.worker_id} stopped")

    def _execute_task(self, task: Task):
        with self._task_lock:
            self._current_task = task
        self.state = WorkerState.BUSY
        start_time = time.time()
        logger.debug(
            f"Worker {self.worker_id} picked up {task.name} after "
            f"{start_time - task.submitted_at:.3f}s in queue"
        )

        try:
            task.func()
            elapsed = time.time() - start_time
            logger.debug(f"Worker {self.worker_id} finished {task.name} in {elapsed:.3f}s")
            self.tasks_completed += 1
        except Exception as e:
            # One broken session must not take the worker down with it
            elapsed = time.time() - start_time
            logger.exception(f"Worker {self.worker_id} task {task.name} failed after {elapsed:.3f}s: {e}")
            self.tasks_failed += 1
        finally:
            with self._task_lock:
                self._current_task = None

    def cancel_current(self) -> bool:
        """
        Force the running task to stop.

        Returns:
            True if a task was running and got cancelled by this call.
        """
        with self._task_lock:
            task = self._current_task
        if task is None or task.cancel is None or task.cancelled:
            return False
        task.cancelled = True
        try:
            task.cancel()
        except Exception as e:
            logger.warning(f"Worker {self.worker_id} failed to cancel {task.name}: {e}")
        return True


class WorkerDispatch:
    """
    Elastic pool that executes sessions concurrently.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      WorkerDispatch Usage                            │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   dispatch = WorkerDispatch(max_workers=256)                         │
    │                                                                      │
    │   dispatch.submit(session)        # returns immediately              │
    │                                                                      │
    │   print(dispatch.stats)           # {"workers": {...}, ...}          │
    │                                                                      │
    │   dispatch.shutdown(5.0)          # graceful, then forced            │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘
    """

    def __init__(self, max_workers: int = 256, idle_timeout: float = 60.0):
        """
        Args:
            max_workers: Upper bound on concurrently running workers.
            idle_timeout: Seconds an idle worker waits before exiting.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")

        self.max_workers = max_workers
        self.idle_timeout = idle_timeout

        self._task_queue: queue.Queue[Optional[Task]] = queue.Queue()
        self._idle_semaphore = threading.Semaphore(0)

        self._workers: list[Worker] = []
        self._lock = threading.Lock()  # Protects _workers and _shutdown
        self._shutdown = False
        self._next_worker_id = 0

        # Counters for workers that already exited
        self._retired_completed = 0
        self._retired_failed = 0

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(self, session) -> None:
        """
        Hand a session off for asynchronous execution.

        Args:
            session: Object with run() and cancel() (a ConnectionSession).

        Raises:
            DispatchClosedError: If the dispatch is shutting down.
        """
        task = Task(
            func=session.run,
            cancel=session.cancel,
            name=f"session {getattr(session, 'id', '?')}",
        )

        with self._lock:
            if self._shutdown:
                raise DispatchClosedError("Worker dispatch is shutting down")

            self._task_queue.put(task)

            if self._idle_semaphore.acquire(blocking=False):
                return  # An idle worker will take it

            if len(self._workers) < self.max_workers:
                self._add_worker()
            else:
                logger.warning(
                    f"All {self.max_workers} workers busy, "
                    f"{task.name} queued ({self._task_queue.qsize()} waiting)"
                )

    def _add_worker(self) -> Worker:
        # Caller holds self._lock
        worker = Worker(self, self._next_worker_id)
        self._next_worker_id += 1
        self._workers.append(worker)
        worker.start()
        logger.debug(f"Spawned worker {worker.worker_id} ({len(self._workers)} total)")
        return worker

    def _worker_exited(self, worker: Worker):
        with self._lock:
            if worker in self._workers:
                self._workers.remove(worker)
            self._retired_completed += worker.tasks_completed
            self._retired_failed += worker.tasks_failed

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def shutdown(self, grace_period: float = 5.0) -> bool:
        """
        Stop the dispatch.

        Already-submitted sessions keep running. After grace_period seconds
        anything still running is cancelled and anything still queued is
        closed without running.

        Args:
            grace_period: Seconds to wait for sessions to finish naturally.

        Returns:
            True if every session finished within the grace period,
            False if forced cancellation was needed.
        """
        with self._lock:
            already_down = self._shutdown
            self._shutdown = True
            workers = list(self._workers)

        if already_down:
            return True

        logger.info(f"Shutting down worker dispatch ({len(workers)} workers)...")

        # ─────────────────────────────────────────────────────────────────
        # POISON PILLS
        # ─────────────────────────────────────────────────────────────────
        # Pills go behind any queued sessions, so those still run first.
        for _ in workers:
            self._task_queue.put(None)

        # ─────────────────────────────────────────────────────────────────
        # GRACE PERIOD
        # ─────────────────────────────────────────────────────────────────
        deadline = time.monotonic() + grace_period
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))

        stragglers = [w for w in workers if w.is_alive()]
        if not stragglers:
            logger.info("Worker dispatch stopped gracefully")
            return True

        # ─────────────────────────────────────────────────────────────────
        # FORCED CANCELLATION
        # ─────────────────────────────────────────────────────────────────
        # Idle workers that simply have not swallowed their pill yet are
        # not counted as forced.
        abandoned = self._drain_queue()
        # Draining took the pills too; stragglers need one each to exit
        for _ in stragglers:
            self._task_queue.put(None)
        cancelled = sum(1 for w in stragglers if w.cancel_current())

        force_deadline = time.monotonic() + FORCE_JOIN_TIMEOUT
        while True:
            alive = [w for w in stragglers if w.is_alive()]
            remaining = force_deadline - time.monotonic()
            if not alive or remaining <= 0:
                break
            for worker in alive:
                worker.join(timeout=max(0.0, min(FORCE_RECHECK_INTERVAL, remaining)))
            # A straggler may have taken a queued session just before the
            # drain and registered it only after the first cancel pass
            cancelled += sum(1 for w in stragglers if w.is_alive() and w.cancel_current())

        forced = (cancelled + abandoned) > 0
        if forced:
            logger.warning(
                f"Grace period of {grace_period}s expired: force-cancelled "
                f"{cancelled} running and {abandoned} queued sessions"
            )

        still_alive = sum(1 for w in stragglers if w.is_alive())
        if still_alive:
            logger.error(f"{still_alive} workers did not exit after forced cancellation")
        elif not forced:
            logger.info("Worker dispatch stopped gracefully")

        return not forced

    def _drain_queue(self) -> int:
        """Cancel sessions that were queued but never started."""
        abandoned = 0
        while True:
            try:
                task = self._task_queue.get_nowait()
            except queue.Empty:
                break
            self._task_queue.task_done()
            if task is None:
                continue
            abandoned += 1
            if task.cancel is not None:
                try:
                    task.cancel()
                except Exception as e:
                    logger.warning(f"Failed to cancel queued {task.name}: {e}")
        return abandoned

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    # =========================================================================
    # MONITORING
    # =========================================================================

    @property
    def worker_count(self) -> int:
        """Number of live worker threads."""
        with self._lock:
            return len(self._workers)

    @property
    def busy_workers(self) -> int:
        with self._lock:
            return sum(1 for w in self._workers if w.state == WorkerState.BUSY)

    @property
    def idle_workers(self) -> int:
        with self._lock:
            return sum(1 for w in self._workers if w.state == WorkerState.IDLE)

    @property
    def queued(self) -> int:
        """Sessions waiting for a worker (poison pills included)."""
        return self._task_queue.qsize()

    @property
    def stats(self) -> dict:
        """
        Snapshot of pool statistics for logging and health checks.
        """
        with self._lock:
            workers = list(self._workers)
            completed = self._retired_completed + sum(w.tasks_completed for w in workers)
            failed = self._retired_failed + sum(w.tasks_failed for w in workers)

        return {
            "workers": {
                "total": len(workers),
                "busy": sum(1 for w in workers if w.state == WorkerState.BUSY),
                "idle": sum(1 for w in workers if w.state == WorkerState.IDLE),
                "max": self.max_workers,
            },
            "tasks": {
                "queued": self._task_queue.qsize(),
                "completed": completed,
                "failed": failed,
            },
        }
