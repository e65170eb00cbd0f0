"""Load-based admission control for new job starts."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Collection

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL: float = 1.0


def cpu_count() -> int:
    """Number of CPUs, never less than 1."""
    return os.cpu_count() or 1


def system_load() -> float:
    """One-minute load average, 0.0 where the OS has none."""
    if hasattr(os, "getloadavg"):
        try:
            return os.getloadavg()[0]
        except OSError:
            pass
    return 0.0


class LoadGovernor:
    """Blocks the scheduling loop while the system is overloaded.

    The loop only ever waits while asynchronous jobs are outstanding, since
    nothing else could bring the load down.
    """

    def __init__(
        self,
        load_ceiling: float | None = None,
        parallelism: int | None = None,
        max_jobs: int | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        load_fn: Callable[[], float] | None = None,
    ):
        """Initialize governor.

        Args:
            load_ceiling: Load at or above which dispatch pauses (default 2 x CPUs)
            parallelism: Parallelism passed to the build driver (default CPUs + 1)
            max_jobs: Optional cap on outstanding asynchronous jobs
            poll_interval: Seconds between load samples while waiting
            load_fn: Load sampler (default: one-minute load average)
        """
        cpus = cpu_count()
        self.load_ceiling = load_ceiling if load_ceiling is not None else float(2 * cpus)
        self.parallelism = parallelism if parallelism is not None else cpus + 1
        self.max_jobs = max_jobs
        self.poll_interval = poll_interval
        self._load_fn = load_fn or system_load

    def overloaded(self, outstanding: int) -> bool:
        """Whether a new job start should wait."""
        if self.max_jobs is not None and outstanding >= self.max_jobs:
            return True
        return self._load_fn() >= self.load_ceiling

    async def throttle(self, outstanding: Collection[asyncio.Task]) -> None:
        """Wait until a new job may start.

        Wakes on the first completion among outstanding jobs or after the
        poll interval, whichever comes first.

        Args:
            outstanding: Currently running asynchronous jobs (live view)
        """
        waited = False
        while outstanding and self.overloaded(len(outstanding)):
            if not waited:
                logger.info(
                    f"System busy (ceiling {self.load_ceiling:g}, "
                    f"{len(outstanding)} jobs running), waiting"
                )
                waited = True
            await asyncio.wait(
                set(outstanding),
                timeout=self.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        if waited:
            logger.debug("Load below ceiling, resuming dispatch")
