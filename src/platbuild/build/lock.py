"""Singleton run lock.

The lock file exists only while a run is active and holds the owner's pid on
a single line. Creation is atomic (a fully written file is hard-linked into
place, failing if the lock exists); a lock left behind by a dead process can
be reclaimed after explicit confirmation.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

from ..errors import LockContentionError
from .resources import ResourceStack

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]

# An empty lock younger than this is still being written by its owner
LOCK_SETTLE_SECONDS: float = 5.0


def prompt_confirm(question: str) -> bool:
    """Ask a yes/no question on the terminal. Non-interactive sessions answer no."""
    if not sys.stdin or not sys.stdin.isatty():
        logger.warning(f"{question} [non-interactive, assuming no]")
        return False
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def pid_alive(pid: int) -> bool:
    """Check whether a process with the given pid exists."""
    if pid <= 0:
        return False

    if os.name == "nt":
        try:
            import ctypes

            kernel32 = ctypes.windll.kernel32
            PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
            STILL_ACTIVE = 259
            handle = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
            if not handle:
                return False
            try:
                code = ctypes.c_ulong()
                if not kernel32.GetExitCodeProcess(handle, ctypes.byref(code)):
                    return True
                return code.value == STILL_ACTIVE
            finally:
                kernel32.CloseHandle(handle)
        except Exception as e:
            logger.warning(f"Liveness check failed for PID {pid}: {e}")
            return True

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class SingletonLock:
    """System-wide lock ensuring a single live run."""

    def __init__(
        self,
        path: str | Path,
        resources: ResourceStack,
        confirm: ConfirmCallback | None = None,
    ):
        """Initialize lock.

        Args:
            path: Well-known lock file path
            resources: Stack on which release() is registered after acquire()
            confirm: Callback asked before reclaiming a stale lock
        """
        self._path = Path(path)
        self._resources = resources
        self._confirm = confirm or prompt_confirm
        self._pid = os.getpid()
        self._held = False

    @property
    def path(self) -> Path:
        """Lock file path."""
        return self._path

    @property
    def held(self) -> bool:
        """Whether this process currently owns the lock."""
        return self._held

    def _try_create(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Link a fully written file into place so the lock never appears empty
        fd, staging = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{self._pid}\n")
            try:
                os.link(staging, self._path)
            except FileExistsError:
                return False
        finally:
            os.unlink(staging)
        return True

    def _read(self) -> str | None:
        try:
            return self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read lock file {self._path}: {e}")
            return None

    def _recently_created(self) -> bool:
        try:
            age = time.time() - self._path.stat().st_mtime
        except OSError:
            return False
        return age < LOCK_SETTLE_SECONDS

    def owner_pid(self) -> int | None:
        """Read the pid recorded in the lock file, if any."""
        content = self._read()
        return int(content) if content and content.isdigit() else None

    def owner_alive(self) -> bool:
        """Whether the recorded owner process still exists."""
        pid = self.owner_pid()
        return pid is not None and pid_alive(pid)

    def acquire(self) -> None:
        """Take the lock, reclaiming it from a dead owner if confirmed.

        Raises:
            LockContentionError: If a live run holds the lock, or a stale lock
                was not reclaimed
        """
        if self._held:
            return

        created = self._try_create()
        if not created and self._read() is None:
            # Released between the attempt and the read
            created = self._try_create()
        if not created:
            self._check_stale(self._read())
            self._reclaim()

        self._held = True
        self._resources.push(self.release, f"release run lock {self._path}")
        logger.info(f"Acquired run lock {self._path} (PID {self._pid})")

    def _check_stale(self, content: str | None) -> None:
        owner = int(content) if content and content.isdigit() else None
        if owner is not None and pid_alive(owner):
            raise LockContentionError(
                f"Another run is active (PID {owner}, lock {self._path})",
                owner_pid=owner,
            )
        if not content and self._recently_created():
            raise LockContentionError(
                f"Lock {self._path} is being created by another run"
            )

        question = (
            f"Lock {self._path} is held by PID {owner}, which is not running. "
            "Reclaim it?"
            if owner is not None
            else f"Lock {self._path} has no valid owner. Reclaim it?"
        )
        if not self._confirm(question):
            raise LockContentionError(
                f"Stale lock {self._path} was not reclaimed", owner_pid=owner
            )
        logger.warning(f"Reclaiming stale lock {self._path} from PID {owner}")

    def _reclaim(self) -> None:
        self._path.unlink(missing_ok=True)
        if not self._try_create():
            raise LockContentionError(
                f"Lock {self._path} was taken by another run during reclaim",
                owner_pid=self.owner_pid(),
            )

    def release(self) -> None:
        """Remove the lock file if this process still owns it."""
        if not self._held:
            return
        self._held = False
        if self.owner_pid() != self._pid:
            logger.warning(f"Run lock {self._path} no longer records PID {self._pid}")
            return
        self._path.unlink(missing_ok=True)
        logger.info(f"Released run lock {self._path}")
