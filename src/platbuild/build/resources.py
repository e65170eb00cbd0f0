"""LIFO cleanup stack with a single guaranteed unwind.

Every resource a run acquires (run lock, checkpoint scratch, hidden marker
files, half-generated artifacts) registers its release here. The stack is
unwound exactly once, newest entry first, whether the run completes, fails or
is interrupted.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Union

logger = logging.getLogger(__name__)

CleanupAction = Callable[[], Union[None, Awaitable[None]]]


@dataclass(eq=False)
class CleanupEntry:
    """A deferred zero-argument cleanup action."""

    description: str
    action: CleanupAction

    async def run(self) -> None:
        """Invoke the action, awaiting it if it is a coroutine."""
        outcome = self.action()
        if inspect.isawaitable(outcome):
            await outcome


class ResourceStack:
    """Ordered cleanup registry unwound last-pushed first.

    Usage:
        async with ResourceStack() as resources:
            resources.push(lock.release, "release run lock")
            ...
    """

    def __init__(self) -> None:
        self._entries: list[CleanupEntry] = []
        self._unwound = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def unwound(self) -> bool:
        """Whether pop_all() already ran."""
        return self._unwound

    def push(self, action: CleanupAction, description: str = "") -> CleanupEntry:
        """Register a cleanup action.

        Args:
            action: Zero-argument callable, sync or async
            description: Label used in log messages

        Returns:
            The entry, usable with cancel()
        """
        if self._unwound:
            raise RuntimeError("Cannot register cleanup after the stack was unwound")
        entry = CleanupEntry(description or getattr(action, "__name__", "cleanup"), action)
        self._entries.append(entry)
        logger.debug(f"Registered cleanup: {entry.description}")
        return entry

    def cancel(self, entry: CleanupEntry) -> bool:
        """Drop an entry without running it.

        Returns:
            True if the entry was still registered
        """
        try:
            self._entries.remove(entry)
        except ValueError:
            return False
        logger.debug(f"Cancelled cleanup: {entry.description}")
        return True

    async def run_now(self, entry: CleanupEntry) -> None:
        """Run one entry immediately and retire it.

        Failures propagate to the caller; the entry is retired either way.
        """
        if not self.cancel(entry):
            return
        await entry.run()

    async def pop_all(self) -> int:
        """Run and remove every entry, newest first.

        A failing action is logged and does not stop the remaining ones.
        Only the first call does anything.

        Returns:
            Number of actions that failed
        """
        if self._unwound:
            logger.warning("Cleanup stack already unwound, ignoring")
            return 0
        self._unwound = True

        failures = 0
        while self._entries:
            entry = self._entries.pop()
            try:
                logger.debug(f"Cleanup: {entry.description}")
                await entry.run()
            except Exception:
                failures += 1
                logger.exception(f"Cleanup failed: {entry.description}")
        return failures

    async def __aenter__(self) -> ResourceStack:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.pop_all()
