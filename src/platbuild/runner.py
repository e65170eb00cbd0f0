"""Build run - one locked, checkpointed execution of the requested stages."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .build.abort import AbortCoordinator
from .build.checkpoint import CheckpointManager
from .build.dispatcher import Dispatcher
from .build.executor import JobExecutor
from .build.governor import LoadGovernor
from .build.jobs import JobDirective, parse_job_list
from .build.lock import ConfirmCallback, SingletonLock
from .build.resources import ResourceStack
from .build.state import DispatchState, RunState
from .build.tools import ToolRunner
from .config import RunConfig
from .errors import EXIT_OK, CleanupError, PlatbuildError, RunAborted

logger = logging.getLogger(__name__)


class BuildRun:
    """Runs the configured stages for one platform.

    Usage:
        run = BuildRun(RunConfig.from_env("x86_64-linux"))
        exit_code = await run.execute()
    """

    def __init__(
        self,
        config: RunConfig,
        confirm: ConfirmCallback | None = None,
        install_signal_handlers: bool = True,
        load_fn: Callable[[], float] | None = None,
    ):
        """Initialize run.

        Args:
            config: Run configuration
            confirm: Callback asked before reclaiming a stale run lock
            install_signal_handlers: Abort on SIGINT/SIGTERM/SIGUSR1
            load_fn: Load sampler override for the governor
        """
        self.config = config
        self.state = RunState()
        self.exit_code: int | None = None
        self._confirm = confirm
        self._install_signal_handlers = install_signal_handlers
        self._load_fn = load_fn
        self._abort: AbortCoordinator | None = None
        self._dispatcher: Dispatcher | None = None
        self._resources: ResourceStack | None = None
        self._checkpoint: CheckpointManager | None = None
        self._pending_abort: str | None = None
        self._started_at: float | None = None
        self._finished_at: float | None = None

    @property
    def dispatch_state(self) -> DispatchState:
        """State of the build stage dispatcher."""
        if self._dispatcher is None:
            return DispatchState.NOT_STARTED
        return self._dispatcher.state

    @property
    def resources(self) -> ResourceStack | None:
        """Cleanup stack of the run, once started."""
        return self._resources

    @property
    def checkpoint(self) -> CheckpointManager | None:
        """Checkpoint manager of the run, once started."""
        return self._checkpoint

    @property
    def finished(self) -> bool:
        """Whether execute() returned."""
        return self.exit_code is not None

    def request_abort(self, reason: str) -> bool:
        """Abort the run from outside the scheduling loop's own jobs.

        Returns:
            True if this call aborted the run
        """
        if self.finished:
            return False
        if self._abort is None:
            if self._pending_abort is not None:
                return False
            self._pending_abort = reason
            return True
        return self._abort.abort(reason)

    async def execute(self) -> int:
        """Run every stage.

        Returns:
            Process exit code (0 success, 1 configuration error, 130 aborted)
        """
        self._started_at = time.perf_counter()
        try:
            self.exit_code = await self._execute()
        except PlatbuildError as e:
            logger.error(str(e))
            self.exit_code = e.exit_code
        finally:
            self._finished_at = time.perf_counter()
            if self.exit_code is None:
                # Unexpected exception propagating to the caller
                self.exit_code = 1
        return self.exit_code

    async def _execute(self) -> int:
        config = self.config
        config.validate()
        if config.debug_trace:
            logging.getLogger("platbuild").setLevel(logging.DEBUG)

        jobs: tuple[JobDirective, ...] = ()
        if "build" in config.stages:
            jobs = parse_job_list(config.job_list_path())

        self._abort = abort = AbortCoordinator(self.state)
        if self._pending_abort is not None:
            abort.abort(self._pending_abort)

        self._resources = resources = ResourceStack()
        try:
            await self._run_locked(jobs, resources, abort)
        finally:
            failures = await resources.pop_all()

        if failures:
            self.state.succeeded = False
            if not abort.aborted:
                raise CleanupError(
                    f"{failures} cleanup action(s) failed after the build of "
                    f"{config.platform}; the output tree may be incomplete",
                    failures,
                )
        if abort.aborted:
            raise RunAborted(abort.reason or "unknown reason")

        elapsed = time.perf_counter() - (self._started_at or time.perf_counter())
        logger.info(f"Build of {config.platform} succeeded in {elapsed:.1f}s")
        return EXIT_OK

    async def _run_locked(
        self,
        jobs: tuple[JobDirective, ...],
        resources: ResourceStack,
        abort: AbortCoordinator,
    ) -> None:
        config = self.config
        # Before the abort handlers: Ctrl-C must still interrupt a reclaim prompt
        SingletonLock(config.lock_path, resources, self._confirm).acquire()

        # Embedded runs leave SIGINT/SIGTERM to the host but must survive the
        # SIGUSR1 a collaborator sends to report failure
        handled = abort.install_signal_handlers(
            resources, None if self._install_signal_handlers else ("SIGUSR1",)
        )

        runner = ToolRunner(
            abort,
            env=config.tool_environment(leader="SIGUSR1" in handled),
            trace=config.debug_trace,
        )
        self._checkpoint = CheckpointManager(config, resources, self.state, runner)
        if not abort.aborted:
            await self._checkpoint.setup()

        for stage in config.stages:
            if abort.aborted:
                break
            logger.info(f"Stage: {stage} ({config.platform})")
            if stage == "clean":
                await self._clean()
            elif stage == "build":
                await self._build(jobs, resources, runner, abort, self._checkpoint.view)

        if not abort.aborted:
            self.state.succeeded = True

    async def _clean(self) -> None:
        target = self.config.platform_build_root
        if target.exists():
            logger.info(f"Removing {target}")
            await asyncio.to_thread(shutil.rmtree, target)

    async def _build(
        self,
        jobs: tuple[JobDirective, ...],
        resources: ResourceStack,
        runner: ToolRunner,
        abort: AbortCoordinator,
        output_view: Path,
    ) -> None:
        config = self.config
        governor = LoadGovernor(
            load_ceiling=config.load_ceiling,
            max_jobs=config.max_jobs,
            load_fn=self._load_fn,
        )
        executor = JobExecutor(
            config,
            resources,
            runner,
            output_view=output_view,
            parallelism=governor.parallelism,
        )
        self._dispatcher = Dispatcher(jobs, executor, governor, abort, self.state)
        logger.info(
            f"Dispatching {len(jobs)} jobs (load ceiling {governor.load_ceiling:g}, "
            f"parallelism {governor.parallelism})"
        )
        await self._dispatcher.run()

    def to_dict(self) -> dict[str, Any]:
        """Get run status as dictionary."""
        result: dict[str, Any] = {
            "platform": self.config.platform,
            "stages": list(self.config.stages),
            "dispatchState": self.dispatch_state.value,
            "run": self.state.to_dict(),
        }
        if self._dispatcher is not None:
            result["outstandingJobs"] = self._dispatcher.outstanding
            result["results"] = [r.to_dict() for r in self._dispatcher.results]
        if self._checkpoint is not None:
            result["checkpointCommitted"] = self._checkpoint.committed
        if self.exit_code is not None:
            result["exitCode"] = self.exit_code
        if self._started_at is not None:
            end = self._finished_at or time.perf_counter()
            result["durationMs"] = round((end - self._started_at) * 1000, 2)
        return result


async def run_build(config: RunConfig, **kwargs: Any) -> int:
    """Execute a build run and return its exit code."""
    return await BuildRun(config, **kwargs).execute()
