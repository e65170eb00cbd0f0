"""Run-wide abort coordination.

The abort flag is one-way. The first abort() records its reason, sets the
cancellation token observed by every job, and terminates the process group of
every collaborator still running. Collaborators started by a run can ask the
leading process to abort by sending it SIGUSR1 (see notify_leader()).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable, Collection

from .resources import ResourceStack
from .state import RunState

logger = logging.getLogger(__name__)

LEADER_PID_ENV = "PLATBUILD_LEADER_PID"

# Seconds between SIGTERM and SIGKILL for collaborators that keep running
DEFAULT_KILL_GRACE: float = 5.0

# Signal -> abort reason
ABORT_SIGNALS: dict[str, str] = {
    "SIGINT": "interrupted by user",
    "SIGTERM": "terminated by signal",
    "SIGUSR1": "build failure reported by a collaborator",
}


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    if process.returncode is not None:
        return
    try:
        if os.name == "nt":
            # No process groups: terminates the direct child only
            process.terminate()
        else:
            os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Failed to signal PID {process.pid}: {e}")


def notify_leader(pid: int | None = None) -> bool:
    """Ask the run's leading process to abort.

    Args:
        pid: Leader pid (default: taken from PLATBUILD_LEADER_PID)

    Returns:
        True if the signal was delivered
    """
    if pid is None:
        value = os.environ.get(LEADER_PID_ENV, "")
        if not value.isdigit():
            logger.error(f"{LEADER_PID_ENV} is not set, no run to notify")
            return False
        pid = int(value)

    sig = getattr(signal, "SIGUSR1", None)
    if sig is None:
        logger.error("Build failure notification is not supported on this platform")
        return False
    try:
        os.kill(pid, sig)
    except OSError as e:
        logger.error(f"Cannot notify run leader PID {pid}: {e}")
        return False
    return True


class AbortCoordinator:
    """Tracks the abort flag and terminates outstanding collaborators."""

    def __init__(self, state: RunState, kill_grace: float = DEFAULT_KILL_GRACE):
        self._state = state
        self._kill_grace = kill_grace
        self._token = asyncio.Event()
        self._processes: set[asyncio.subprocess.Process] = set()
        self._listeners: list[Callable[[str], None]] = []

    @property
    def aborted(self) -> bool:
        """Whether the run was aborted."""
        return self._state.aborted

    @property
    def reason(self) -> str | None:
        """Reason recorded by the first abort()."""
        return self._state.abort_reason

    @property
    def token(self) -> asyncio.Event:
        """Cancellation token, set once the run is aborted."""
        return self._token

    @property
    def running_processes(self) -> int:
        """Number of tracked collaborator processes."""
        return len(self._processes)

    def on_abort(self, listener: Callable[[str], None]) -> None:
        """Register a listener called with the reason on the first abort."""
        self._listeners.append(listener)

    def register(self, process: asyncio.subprocess.Process) -> None:
        """Track a running collaborator. Terminated at once if already aborted."""
        self._processes.add(process)
        if self.aborted:
            _signal_group(process, signal.SIGTERM)

    def unregister(self, process: asyncio.subprocess.Process) -> None:
        """Stop tracking a finished collaborator."""
        self._processes.discard(process)

    def abort(self, reason: str) -> bool:
        """Abort the run.

        Idempotent: later calls are ignored and keep the first reason.

        Returns:
            True if this call aborted the run
        """
        if not self._state.mark_aborted(reason):
            logger.debug(f"Already aborted, ignoring: {reason}")
            return False

        logger.error(f"Aborting build: {reason}")
        self._token.set()
        self.terminate_all(signal.SIGTERM)

        if self._processes:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                loop.call_later(self._kill_grace, self._kill_survivors)

        for listener in self._listeners:
            try:
                listener(reason)
            except Exception:
                logger.exception("Abort listener error")
        return True

    def terminate_all(self, sig: int) -> None:
        """Send a signal to every tracked collaborator's process group."""
        for process in list(self._processes):
            _signal_group(process, sig)

    def _kill_survivors(self) -> None:
        if self._processes:
            logger.warning(f"Killing {len(self._processes)} collaborators still running")
            self.terminate_all(getattr(signal, "SIGKILL", signal.SIGTERM))

    def install_signal_handlers(
        self,
        resources: ResourceStack,
        names: Collection[str] | None = None,
    ) -> set[str]:
        """Turn SIGINT/SIGTERM/SIGUSR1 into aborts for the current loop.

        Handler removal is registered on the resource stack.

        Args:
            resources: Stack receiving the handler removals
            names: Subset of ABORT_SIGNALS to handle (default: all)

        Returns:
            Names of the signals now handled
        """
        loop = asyncio.get_running_loop()
        installed: set[str] = set()
        for name, reason in ABORT_SIGNALS.items():
            if names is not None and name not in names:
                continue
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self.abort, reason)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handlers not supported for {name}")
                continue
            resources.push(
                lambda s=sig: loop.remove_signal_handler(s),
                f"remove {name} handler",
            )
            installed.add(name)
        return installed
