"""Process-wide shutdown coordination.

The coordinator owns every cleanup obligation created while the app runs: named
cleanup tasks, tracked child processes and tracked timers. ``graceful_shutdown`` runs
the tasks, cancels timers and asks processes to exit; if that does not finish in time it
escalates to ``force_shutdown``, which skips the tasks and kills processes outright.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from dictate_tools.config import (
    DEFAULT_SHUTDOWN_TIMEOUT,
    FORCE_SHUTDOWN_TIMEOUT,
    KILL_EXIT_GRACE,
    PROCESS_EXIT_GRACE,
    SIGNAL_SHUTDOWN_TIMEOUT,
)

logger = logging.getLogger(__name__)


class ShutdownError(Exception):
    """Raised when the forced shutdown path itself fails."""


class ShutdownState(Enum):
    """Lifecycle of the coordinator. Only ever moves forward."""

    IDLE = "idle"
    GRACEFUL = "graceful"
    FORCED = "forced"
    COMPLETED = "completed"


class ProcessHandle(Protocol):
    """The subset of ``asyncio.subprocess.Process`` the coordinator relies on."""

    pid: int | None
    returncode: int | None

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


@dataclass
class CleanupTask:
    """A named unit of shutdown work. Lower priority runs first."""

    name: str
    priority: int
    cleanup: Callable[[], Awaitable[None] | None]


@dataclass
class ProcessTracker:
    """A live child process the coordinator is responsible for."""

    name: str
    pid: int
    process: ProcessHandle
    _watcher: asyncio.Future | None = field(default=None, repr=False)


class TrackedTimer:
    """A cancellable timer handed out by ``ShutdownCoordinator.after``/``every``."""

    def __init__(
        self,
        coordinator: ShutdownCoordinator,
        delay: float,
        callback: Callable[..., Any],
        args: tuple[Any, ...],
        repeat: bool,
    ):
        self._coordinator = coordinator
        self.delay = delay
        self.callback = callback
        self.args = args
        self.repeat = repeat
        self._loop = asyncio.get_running_loop()
        self._handle: asyncio.TimerHandle | None = None
        self._active = True
        self._schedule()

    def _schedule(self) -> None:
        self._handle = self._loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        if self.repeat:
            self._schedule()
        else:
            self._active = False
            self._coordinator._forget_timer(self)
        self.callback(*self.args)

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        """Stop the timer. Safe to call more than once."""
        if self._handle is not None:
            self._handle.cancel()
        self._active = False
        self._coordinator._forget_timer(self)

    def __repr__(self) -> str:
        kind = "interval" if self.repeat else "timeout"
        return f"<TrackedTimer {kind} {self.delay:.3f}s active={self._active}>"


class ShutdownCoordinator:
    """Registry of cleanup tasks, child processes and timers with shutdown procedures."""

    def __init__(
        self,
        process_grace: float = PROCESS_EXIT_GRACE,
        kill_grace: float = KILL_EXIT_GRACE,
        force_timeout: float = FORCE_SHUTDOWN_TIMEOUT,
    ):
        """
        Create a coordinator.

        Args:
            process_grace: Seconds each process gets to exit after SIGTERM
            kill_grace: Seconds to observe exit after SIGKILL
            force_timeout: Upper bound for the whole forced shutdown
        """
        self.process_grace = process_grace
        self.kill_grace = kill_grace
        self.force_timeout = force_timeout

        self._cleanup_tasks: dict[str, CleanupTask] = {}
        self._processes: dict[str, ProcessTracker] = {}
        self._timers: set[TrackedTimer] = set()
        self._state = ShutdownState.IDLE
        self._graceful_task: asyncio.Future | None = None
        self._force_task: asyncio.Future | None = None

    # ------------------------------------------------------------------
    # Cleanup tasks
    # ------------------------------------------------------------------
    def register_cleanup_task(self, task: CleanupTask) -> None:
        """Register (or replace by name) a task to run during graceful shutdown."""
        self._cleanup_tasks[task.name] = task
        logger.debug("Registered cleanup task: %s (priority: %d)", task.name, task.priority)

    def unregister_cleanup_task(self, name: str) -> None:
        if self._cleanup_tasks.pop(name, None) is not None:
            logger.debug("Unregistered cleanup task: %s", name)

    def get_cleanup_tasks(self) -> list[CleanupTask]:
        """Registered tasks in the order they would run."""
        return sorted(self._cleanup_tasks.values(), key=lambda task: task.priority)

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------
    def track_process(self, name: str, process: ProcessHandle) -> None:
        """
        Take responsibility for a child process.

        The process is untracked automatically as soon as it exits on its own.
        Must be called from a running event loop.
        """
        if not process.pid:
            logger.warning("Cannot track process %s: no PID", name)
            return

        previous = self._processes.get(name)
        if previous is not None and previous.process is not process:
            logger.warning("Replacing tracked process %s (PID: %s)", name, previous.pid)
            self._stop_watching(previous)

        tracker = ProcessTracker(name=name, pid=process.pid, process=process)
        self._processes[name] = tracker
        tracker._watcher = asyncio.ensure_future(process.wait())
        tracker._watcher.add_done_callback(functools.partial(self._on_process_exit, tracker))
        logger.info("Tracking process: %s (PID: %s)", name, process.pid)

    def untrack_process(self, name: str) -> None:
        tracker = self._processes.pop(name, None)
        if tracker is None:
            return
        self._stop_watching(tracker)
        logger.info("Untracked process: %s (PID: %s)", name, tracker.pid)

    def get_tracked_processes(self) -> list[ProcessTracker]:
        return list(self._processes.values())

    def _on_process_exit(self, tracker: ProcessTracker, watcher: asyncio.Future) -> None:
        if watcher.cancelled():
            return
        if watcher.exception() is not None:
            logger.debug("Exit watcher for %s failed: %s", tracker.name, watcher.exception())
        if self._processes.get(tracker.name) is tracker:
            del self._processes[tracker.name]
            logger.info(
                "Process exited: %s (PID: %s, code: %s)",
                tracker.name,
                tracker.pid,
                tracker.process.returncode,
            )

    @staticmethod
    def _stop_watching(tracker: ProcessTracker) -> None:
        if tracker._watcher is not None and not tracker._watcher.done():
            tracker._watcher.cancel()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------
    def after(self, delay: float, callback: Callable[..., Any], *args: Any) -> TrackedTimer:
        """Run ``callback(*args)`` once after ``delay`` seconds."""
        timer = TrackedTimer(self, delay, callback, args, repeat=False)
        self._timers.add(timer)
        return timer

    def every(self, interval: float, callback: Callable[..., Any], *args: Any) -> TrackedTimer:
        """Run ``callback(*args)`` every ``interval`` seconds until cancelled."""
        timer = TrackedTimer(self, interval, callback, args, repeat=True)
        self._timers.add(timer)
        return timer

    @property
    def active_timer_count(self) -> int:
        return len(self._timers)

    def _forget_timer(self, timer: TrackedTimer) -> None:
        self._timers.discard(timer)

    def _clear_all_timers(self) -> None:
        timers = list(self._timers)
        logger.info("Clearing %d timers", len(timers))
        for timer in timers:
            timer.cancel()
        self._timers.clear()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    @property
    def state(self) -> ShutdownState:
        return self._state

    def is_shutdown_in_progress(self) -> bool:
        """True once any shutdown has started (it stays True after completion)."""
        return self._state is not ShutdownState.IDLE

    async def graceful_shutdown(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """
        Run cleanup tasks, cancel timers and terminate processes within ``timeout``.

        Concurrent callers join the shutdown already in flight. If the sequence does not
        finish in time it escalates to a forced shutdown.

        Raises:
            ShutdownError: If the escalation itself fails
        """
        if self._state is ShutdownState.COMPLETED:
            return
        if self._graceful_task is None:
            if self._force_task is not None:
                # A forced shutdown is already retiring everything; join it.
                await asyncio.shield(self._force_task)
                return
            self._state = ShutdownState.GRACEFUL
            logger.info("Starting graceful shutdown (timeout: %.1fs)", timeout)
            self._graceful_task = asyncio.ensure_future(self._run_graceful(timeout))
        else:
            logger.info("Shutdown already in progress, joining it")
        await asyncio.shield(self._graceful_task)

    async def force_shutdown(self) -> None:
        """
        Skip cleanup tasks, cancel timers and kill every tracked process.

        Raises:
            ShutdownError: If processes could not be killed within the force timeout
        """
        if self._state is ShutdownState.COMPLETED:
            return
        if self._state is ShutdownState.GRACEFUL:
            logger.warning("Forcing shutdown while graceful shutdown is in progress")
        try:
            await self._escalate()
        finally:
            if self._graceful_task is None or self._graceful_task.done():
                self._state = ShutdownState.COMPLETED

    async def _run_graceful(self, timeout: float) -> None:
        started = time.perf_counter()
        try:
            sequence = asyncio.ensure_future(self._run_cleanup_sequence(force=False))
            done, _ = await asyncio.wait({sequence}, timeout=timeout)
            if not done:
                sequence.cancel()
                logger.warning("Graceful shutdown timed out after %.1fs, forcing", timeout)
                await self._escalate()
            elif sequence.exception() is not None:
                logger.error("Graceful shutdown failed: %s, forcing", sequence.exception())
                await self._escalate()
            elif self._force_task is not None:
                await asyncio.shield(self._force_task)
            logger.info("Shutdown completed in %.0fms", (time.perf_counter() - started) * 1000)
        finally:
            self._state = ShutdownState.COMPLETED

    async def _escalate(self) -> None:
        if self._force_task is None:
            self._state = ShutdownState.FORCED
            logger.info("Starting forced shutdown")
            self._force_task = asyncio.ensure_future(self._run_forced())
        await asyncio.shield(self._force_task)

    async def _run_forced(self) -> None:
        sequence = asyncio.ensure_future(self._run_cleanup_sequence(force=True))
        done, _ = await asyncio.wait({sequence}, timeout=self.force_timeout)
        if not done:
            sequence.cancel()
            raise ShutdownError(f"Forced shutdown did not finish within {self.force_timeout:.1f}s")
        if sequence.exception() is not None:
            raise ShutdownError(f"Forced shutdown failed: {sequence.exception()}") from sequence.exception()

    async def _run_cleanup_sequence(self, force: bool) -> None:
        if not force:
            await self._run_cleanup_tasks()
        self._clear_all_timers()
        await self._terminate_processes(force)
        logger.info("Cleanup sequence finished (force: %s)", force)

    async def _run_cleanup_tasks(self) -> None:
        tasks = self.get_cleanup_tasks()
        logger.info("Running %d cleanup tasks", len(tasks))
        for task in tasks:
            try:
                logger.debug("Running cleanup task: %s", task.name)
                result = task.cleanup()
                if inspect.isawaitable(result):
                    await result
                logger.info("Completed cleanup task: %s", task.name)
            except Exception as e:
                # Keep going: later tasks still own resources that must be released.
                logger.error("Error in cleanup task %s: %s", task.name, e, exc_info=True)

    async def _terminate_processes(self, force: bool) -> None:
        trackers = list(self._processes.values())
        if not trackers:
            return
        logger.info("Terminating %d processes (force: %s)", len(trackers), force)
        await asyncio.gather(*(self._terminate_one(tracker, force) for tracker in trackers))
        for tracker in trackers:
            if self._processes.get(tracker.name) is tracker:
                self.untrack_process(tracker.name)

    async def _terminate_one(self, tracker: ProcessTracker, force: bool) -> None:
        process = tracker.process
        if process.returncode is not None:
            return

        sig_name = "SIGKILL" if force else "SIGTERM"
        logger.info("Sending %s to process: %s (PID: %s)", sig_name, tracker.name, tracker.pid)
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            return
        except OSError as e:
            logger.warning("Failed to send %s to process %s: %s", sig_name, tracker.name, e)

        grace = self.kill_grace if force else self.process_grace
        if await wait_for_exit(process, grace):
            logger.info("Process %s exited", tracker.name)
            return

        logger.warning("Process %s did not exit after %s", tracker.name, sig_name)
        if force:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        except OSError as e:
            logger.warning("Failed to send SIGKILL to process %s: %s", tracker.name, e)
            return
        if not await wait_for_exit(process, self.kill_grace):
            logger.warning("Process %s did not exit after SIGKILL", tracker.name)


async def wait_for_exit(process: ProcessHandle, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for ``process`` to exit. True if it did."""
    try:
        await asyncio.wait_for(process.wait(), timeout)
        return True
    except asyncio.TimeoutError:
        return False


def install_signal_handlers(
    coordinator: ShutdownCoordinator,
    loop: asyncio.AbstractEventLoop | None = None,
    timeout: float = SIGNAL_SHUTDOWN_TIMEOUT,
    on_complete: Callable[[], None] | None = None,
) -> list[signal.Signals]:
    """
    Route SIGTERM/SIGINT into ``coordinator.graceful_shutdown``.

    Repeated signals join the shutdown already running. ``on_complete`` runs after the
    shutdown settles, e.g. to stop the host's main loop.

    Returns:
        The signals that were successfully hooked
    """
    loop = loop or asyncio.get_running_loop()

    async def _shutdown(sig_name: str) -> None:
        try:
            await coordinator.graceful_shutdown(timeout)
        except ShutdownError as e:
            logger.error("%s graceful shutdown failed: %s", sig_name, e)
        finally:
            if on_complete is not None:
                on_complete()

    def _handle(sig: signal.Signals) -> None:
        logger.info("%s received", sig.name)
        loop.create_task(_shutdown(sig.name))

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle, sig)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            try:
                signal.signal(
                    sig, lambda signum, frame: loop.call_soon_threadsafe(_handle, signal.Signals(signum))
                )
            except (ValueError, OSError) as e:
                logger.warning("Could not register handler for %s: %s", sig.name, e)
                continue
        installed.append(sig)
        logger.debug("Registered handler for %s", sig.name)
    return installed


def install_exception_handler(
    coordinator: ShutdownCoordinator,
    loop: asyncio.AbstractEventLoop | None = None,
) -> None:
    """Force a shutdown when an exception escapes into the event loop."""
    loop = loop or asyncio.get_running_loop()

    def _handle(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        loop.default_exception_handler(context)
        if coordinator.is_shutdown_in_progress():
            return
        logger.error("Unhandled exception in event loop, forcing shutdown")
        loop.create_task(_force(coordinator))

    loop.set_exception_handler(_handle)


async def _force(coordinator: ShutdownCoordinator) -> None:
    try:
        await coordinator.force_shutdown()
    except ShutdownError as e:
        logger.error("Cleanup after unhandled exception failed: %s", e)
