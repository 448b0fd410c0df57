# core/lifecycle.py - Process-wide registry of the active bottle and child process
"""
LifecycleCoordinator: SINGLE SOURCE OF TRUTH for "what must be torn down if
this process dies now".

Holds at most one mounted bottle state and one sandboxed child process.
cleanup() terminates the child (SIGTERM, grace period, SIGKILL) and runs the
injected unmount on the registered state. Termination signals run cleanup()
and exit with 128 + signum.

The coordinator is an explicit object passed to whoever mounts or spawns;
there is no module-level instance.
"""

import logging
import os
import signal
import subprocess
import threading
from typing import Callable, Dict, Optional

from .constants import ExitCodes
from .limits import Limits
from .modes import MountState

_lifecycle_logger = logging.getLogger("bottle_launch.lifecycle")

# Signals that always trigger cleanup; SIGINT is added in CLI mode
TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)


def _hard_exit(code: int) -> None:
    logging.shutdown()
    os._exit(code)


class LifecycleCoordinator:
    """
    Lock-guarded registry plus signal-driven cleanup.

    Args:
        unmount: Called with the registered MountState during cleanup
        grace_period: Seconds between SIGTERM and SIGKILL for the child
        exit_func: Process exit used by the signal handler
    """

    def __init__(
        self,
        unmount: Callable[[MountState], None],
        grace_period: float = Limits.CHILD_TERMINATE_GRACE,
        exit_func: Callable[[int], None] = _hard_exit,
    ):
        self._unmount = unmount
        self._grace_period = grace_period
        self._exit = exit_func
        self._lock = threading.RLock()
        self._mount_state: Optional[MountState] = None
        self._child: Optional[subprocess.Popen] = None
        self._cleanup_running = False
        self._previous_handlers: Dict[int, object] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    def register_mount(self, state: MountState) -> None:
        with self._lock:
            self._mount_state = state
        _lifecycle_logger.debug(f"lifecycle.register_mount: bottle={state.bottle_path}")

    def clear_mount(self) -> None:
        with self._lock:
            self._mount_state = None

    def register_child(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._child = process
        _lifecycle_logger.debug(f"lifecycle.register_child: pid={process.pid}")

    def clear_child(self) -> None:
        with self._lock:
            self._child = None

    def wait_for_child(self, process: subprocess.Popen) -> int:
        """
        Register a child, wait for it to exit, then clear it.

        Waits in timed slices so the Popen wait lock is never held across a
        blocking waitpid; a signal handler on this thread must be able to reap
        the child during cleanup.
        """
        self.register_child(process)
        try:
            while True:
                try:
                    return process.wait(timeout=Limits.CHILD_WAIT_POLL_INTERVAL)
                except subprocess.TimeoutExpired:
                    continue
        finally:
            self.clear_child()

    @property
    def mount_state(self) -> Optional[MountState]:
        with self._lock:
            return self._mount_state

    @property
    def child(self) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._child

    @property
    def cleanup_running(self) -> bool:
        with self._lock:
            return self._cleanup_running

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup(self) -> bool:
        """
        Terminate the child and unmount the registered bottle.

        The registry is emptied before any work starts, so each registration
        is torn down at most once. Unmount failures are logged.

        Returns:
            False if another cleanup is already in progress, else True
        """
        with self._lock:
            if self._cleanup_running:
                return False
            self._cleanup_running = True
            child, self._child = self._child, None
            state, self._mount_state = self._mount_state, None

        try:
            if child is not None:
                self._terminate_child(child)
            if state is not None and not state.is_empty:
                _lifecycle_logger.info(f"lifecycle.cleanup.unmount: bottle={state.bottle_path}")
                try:
                    self._unmount(state)
                except Exception as e:
                    _lifecycle_logger.error(f"lifecycle.cleanup.unmount_failed: bottle={state.bottle_path}, error={e}")
        finally:
            with self._lock:
                self._cleanup_running = False
        return True

    def _terminate_child(self, child: subprocess.Popen) -> None:
        if child.poll() is not None:
            return
        _lifecycle_logger.info(f"lifecycle.cleanup.terminate_child: pid={child.pid}")
        child.terminate()
        try:
            child.wait(timeout=self._grace_period)
        except subprocess.TimeoutExpired:
            _lifecycle_logger.warning(f"lifecycle.cleanup.kill_child: pid={child.pid}")
            child.kill()
            try:
                child.wait(timeout=self._grace_period)
            except subprocess.TimeoutExpired:
                _lifecycle_logger.error(f"lifecycle.cleanup.child_not_reaped: pid={child.pid}")

    # =========================================================================
    # Signal handling
    # =========================================================================

    def install_signal_handlers(self, cli_mode: bool = False) -> None:
        """Route termination signals (plus SIGINT in CLI mode) to cleanup. Main thread only."""
        signals = list(TERMINATION_SIGNALS)
        if cli_mode:
            signals.append(signal.SIGINT)
        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum, frame) -> None:
        _lifecycle_logger.warning(f"lifecycle.signal: signum={signum}")
        if not self.cleanup():
            # Interrupted the cleanup already running on this thread; let it finish
            return
        self._exit(ExitCodes.for_signal(signum))
