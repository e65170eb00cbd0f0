"""Dispatcher - walks the job list and issues jobs.

State machine:
NOT_STARTED → DISPATCHING → COMPLETED | ABORTED

Directive order is dispatch order. Barrier directives (wait-then-*) start
only after every async job issued before them finished. Whatever happens,
no async job is left unjoined when run() returns.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Protocol

from .abort import AbortCoordinator
from .governor import LoadGovernor
from .jobs import JobDirective
from .state import DispatchState, JobResult, RunState

logger = logging.getLogger(__name__)


class Executor(Protocol):
    """What the dispatcher needs from a job executor."""

    def validate(self, directive: JobDirective) -> str | None: ...

    async def run(self, directive: JobDirective) -> JobResult: ...


class Dispatcher:
    """Single-threaded scheduling loop over an immutable job list."""

    def __init__(
        self,
        jobs: Sequence[JobDirective],
        executor: Executor,
        governor: LoadGovernor,
        abort: AbortCoordinator,
        state: RunState,
    ):
        self._jobs = tuple(jobs)
        self._executor = executor
        self._governor = governor
        self._abort = abort
        self._run_state = state
        self._state = DispatchState.NOT_STARTED
        self._outstanding: set[asyncio.Task] = set()
        self._results: list[JobResult] = []
        self._state_listeners: list[Callable[[DispatchState], None]] = []

    @property
    def state(self) -> DispatchState:
        """Current dispatcher state."""
        return self._state

    @property
    def results(self) -> list[JobResult]:
        """Results of finished jobs, in completion order."""
        return list(self._results)

    @property
    def outstanding(self) -> int:
        """Number of async jobs still running."""
        return len(self._outstanding)

    def on_state_change(self, listener: Callable[[DispatchState], None]) -> None:
        """Register state change listener."""
        self._state_listeners.append(listener)

    def _set_state(self, new_state: DispatchState) -> None:
        """Update state and notify listeners."""
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"Dispatch state: {old_state.value} -> {new_state.value}")
            for listener in self._state_listeners:
                try:
                    listener(new_state)
                except Exception:
                    logger.exception("State listener error")

    async def _run_job(self, directive: JobDirective) -> JobResult:
        try:
            result = await self._executor.run(directive)
        except Exception as e:
            logger.exception(f"Job {directive.describe()} crashed")
            result = JobResult(
                index=directive.index,
                source_dir=directive.source_dir,
                success=False,
                reason=f"internal error: {e}",
            )

        self._results.append(result)
        if result.success:
            logger.info(result.to_summary())
        else:
            logger.error(result.to_summary())
            self._abort.abort(
                f"job #{directive.index} ({directive.source_dir}) failed: "
                f"{result.reason or 'unknown error'}"
            )
        return result

    def _launch(self, directive: JobDirective) -> None:
        task = asyncio.create_task(self._run_job(directive), name=f"job-{directive.index}")
        self._outstanding.add(task)
        task.add_done_callback(self._outstanding.discard)

    async def drain(self) -> None:
        """Wait for every outstanding async job."""
        while self._outstanding:
            await asyncio.wait(set(self._outstanding))

    async def run(self) -> DispatchState:
        """Dispatch every job unless the run aborts.

        Returns:
            COMPLETED or ABORTED
        """
        if self._state != DispatchState.NOT_STARTED:
            raise RuntimeError(f"Dispatcher already ran (state {self._state.value})")
        self._set_state(DispatchState.DISPATCHING)

        try:
            while self._run_state.next_index < len(self._jobs) and not self._abort.aborted:
                await self._governor.throttle(self._outstanding)
                if self._abort.aborted:
                    break

                directive = self._jobs[self._run_state.next_index]
                problem = self._executor.validate(directive)
                if problem:
                    self._abort.abort(
                        f"invalid directive #{directive.index} "
                        f"(line {directive.line_number}): {problem}"
                    )
                    break

                if directive.mode.is_barrier and self._outstanding:
                    logger.info(
                        f"Barrier before {directive.describe()}: "
                        f"waiting for {len(self._outstanding)} jobs"
                    )
                    await self.drain()
                    if self._abort.aborted:
                        break

                if directive.mode.is_async:
                    self._launch(directive)
                else:
                    await self._run_job(directive)

                self._run_state.next_index += 1
        finally:
            await self.drain()

        self._set_state(
            DispatchState.ABORTED if self._abort.aborted else DispatchState.COMPLETED
        )
        return self._state
