"""Job execution: one source directory, built inside its working mirror.

Jobs without files run the default build driver for the directory. Jobs with
files dispatch each file by extension to a build action:

- ``.idl``: interface generation, always re-run
- ``.comp``: component compilation, skipped while its artifacts are fresh
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from ..config import BUILD_MARKER, DISCOVERY_MARKER, RunConfig
from .jobs import JobDirective
from .resources import CleanupEntry, ResourceStack
from .state import JobResult
from .tools import ToolRunner

logger = logging.getLogger(__name__)


@dataclass
class JobWorkspace:
    """Resolved locations of a running job."""

    directive: JobDirective
    source_dir: Path
    mirror_dir: Path
    env: dict[str, str] = field(default_factory=dict)


class BuildAction(ABC):
    """Builds one requested file of a job."""

    extension: str = ""

    def __init__(self, config: RunConfig, runner: ToolRunner, resources: ResourceStack):
        self._tools = config.tools
        self._runner = runner
        self._resources = resources

    @abstractmethod
    async def run(self, workspace: JobWorkspace, filename: str) -> int:
        """Build a file. Returns the exit status of the failing tool, or 0."""


class InterfaceAction(BuildAction):
    """Regenerates headers/bindings from an interface description."""

    extension = ".idl"

    async def run(self, workspace: JobWorkspace, filename: str) -> int:
        source = workspace.source_dir / filename
        header = workspace.mirror_dir / f"{Path(filename).stem}.h"
        return await self._runner.run(
            [*self._tools.interface_generator, "-o", str(header), str(source)],
            cwd=workspace.mirror_dir,
            env=workspace.env,
        )


def artifacts_fresh(source: Path, artifacts: list[Path]) -> bool:
    """Whether every artifact exists and is strictly newer than source."""
    source_mtime = source.stat().st_mtime_ns
    for artifact in artifacts:
        try:
            if artifact.stat().st_mtime_ns <= source_mtime:
                return False
        except FileNotFoundError:
            return False
    return True


class ComponentAction(BuildAction):
    """Compiles a component description into class, dependency and header files."""

    extension = ".comp"

    def artifacts(self, workspace: JobWorkspace, filename: str) -> list[Path]:
        """Files generated from a component description, in the working mirror."""
        stem = Path(filename).stem
        return [workspace.mirror_dir / f"{stem}{suffix}" for suffix in (".class", ".d", ".h")]

    async def run(self, workspace: JobWorkspace, filename: str) -> int:
        source = workspace.source_dir / filename
        class_file, dep_file, header = self.artifacts(workspace, filename)

        if artifacts_fresh(source, [class_file, dep_file, header]):
            logger.debug(f"{filename} is up to date")
            return 0

        def remove_artifacts() -> None:
            for artifact in (class_file, dep_file, header):
                artifact.unlink(missing_ok=True)

        entry = self._resources.push(remove_artifacts, f"remove partial artifacts of {source}")
        try:
            exit_code = await self._runner.run(
                [
                    *self._tools.component_compiler,
                    "-o", str(class_file),
                    "-M", str(dep_file),
                    str(source),
                ],
                cwd=workspace.mirror_dir,
                env=workspace.env,
            )
            if exit_code == 0:
                exit_code = await self._runner.run(
                    [
                        *self._tools.interface_generator,
                        "--header",
                        "-o", str(header),
                        str(class_file),
                    ],
                    cwd=workspace.mirror_dir,
                    env=workspace.env,
                )
        except BaseException:
            await self._resources.run_now(entry)
            raise

        if exit_code == 0:
            self._resources.cancel(entry)
        else:
            await self._resources.run_now(entry)
        return exit_code


class JobExecutor:
    """Runs jobs for the dispatcher."""

    def __init__(
        self,
        config: RunConfig,
        resources: ResourceStack,
        runner: ToolRunner,
        output_view: Path | None = None,
        parallelism: int = 1,
    ):
        """Initialize executor.

        Args:
            config: Run configuration
            resources: Stack for marker restores and artifact rollbacks
            runner: Collaborator tool runner
            output_view: Output tree as jobs must see it (checkpoint view)
            parallelism: Parallelism passed to the default build driver
        """
        self._config = config
        self._resources = resources
        self._runner = runner
        self._output_view = output_view or config.output_root
        self._parallelism = parallelism
        self._dir_locks: dict[Path, asyncio.Lock] = {}
        self._actions: dict[str, BuildAction] = {}
        for action_cls in (InterfaceAction, ComponentAction):
            self.register_action(action_cls(config, runner, resources))

    def register_action(self, action: BuildAction) -> None:
        """Route files with action.extension to action."""
        self._actions[action.extension.lower()] = action

    def supports(self, filename: str) -> bool:
        """Whether a build action exists for the file's extension."""
        return Path(filename).suffix.lower() in self._actions

    def source_path(self, directive: JobDirective) -> Path:
        """Absolute source directory of a directive."""
        return (self._config.sources_root / directive.source_dir).resolve()

    def mirror_path(self, source_dir: Path) -> Path:
        """Working mirror paralleling a source directory."""
        relative = source_dir.relative_to(self._config.sources_root)
        return self._config.platform_build_root / relative

    def validate(self, directive: JobDirective) -> str | None:
        """Check a directive before dispatch.

        Returns:
            Problem description, or None if the directive can run
        """
        source = self.source_path(directive)
        try:
            source.relative_to(self._config.sources_root)
        except ValueError:
            return f"source directory outside sources root: {directive.source_dir}"
        if not source.is_dir():
            return f"source directory not found: {directive.source_dir}"
        for filename in directive.files:
            if not self.supports(filename):
                return f"unsupported file type: {filename}"
        return None

    def _hide_discovery_marker(self, source_dir: Path) -> CleanupEntry | None:
        marker = source_dir / DISCOVERY_MARKER
        if not marker.exists():
            return None
        hidden = source_dir / f".{DISCOVERY_MARKER}"
        marker.rename(hidden)

        def restore() -> None:
            if hidden.exists():
                hidden.rename(marker)

        return self._resources.push(restore, f"restore {marker}")

    async def run(self, directive: JobDirective) -> JobResult:
        """Run one job.

        The build marker is checked before anything in the source directory
        is touched; jobs without it are skipped.

        Returns:
            Job result; failures are reported, not raised
        """
        start = time.perf_counter()

        def result(success: bool, reason: str = "", exit_code: int | None = None,
                   skipped: bool = False) -> JobResult:
            return JobResult(
                index=directive.index,
                source_dir=directive.source_dir,
                success=success,
                skipped=skipped,
                exit_code=exit_code,
                reason=reason,
                duration_ms=(time.perf_counter() - start) * 1000,
            )

        problem = self.validate(directive)
        if problem:
            return result(False, problem)

        source = self.source_path(directive)
        if not (source / BUILD_MARKER).is_file():
            logger.info(f"Skipping {directive.describe()}: no {BUILD_MARKER}")
            return result(True, f"no {BUILD_MARKER}", skipped=True)

        lock = self._dir_locks.setdefault(source, asyncio.Lock())
        async with lock:
            restore = self._hide_discovery_marker(source)
            try:
                mirror = self.mirror_path(source)
                mirror.mkdir(parents=True, exist_ok=True)
                workspace = JobWorkspace(
                    directive=directive,
                    source_dir=source,
                    mirror_dir=mirror,
                    env={
                        "PLATBUILD_SOURCE_DIR": str(source),
                        "PLATBUILD_MIRROR_DIR": str(mirror),
                        "PLATBUILD_OUTPUT_DIR": str(self._output_view),
                        "PLATBUILD_JOBS": str(self._parallelism),
                    },
                )
                logger.info(f"Building {directive.describe()}")
                if directive.files:
                    outcome = await self._build_files(workspace)
                else:
                    outcome = await self._build_directory(workspace)
            finally:
                if restore is not None:
                    await self._resources.run_now(restore)

        exit_code, reason = outcome
        if exit_code != 0:
            return result(False, reason, exit_code)
        return result(True)

    async def _build_directory(self, workspace: JobWorkspace) -> tuple[int, str]:
        command = [
            *self._config.tools.build_driver,
            "-C", str(workspace.mirror_dir),
            "-f", str(workspace.source_dir / BUILD_MARKER),
            f"-j{self._parallelism}",
            f"SRCDIR={workspace.source_dir}",
            f"OUTDIR={self._output_view}",
            *shlex.split(self._config.build_options),
        ]
        exit_code = await self._runner.run(command, cwd=workspace.mirror_dir, env=workspace.env)
        return exit_code, f"build driver exited with status {exit_code}"

    async def _build_files(self, workspace: JobWorkspace) -> tuple[int, str]:
        for filename in workspace.directive.files:
            source = workspace.source_dir / filename
            if not source.is_file():
                return 1, f"source file not found: {source}"
            action = self._actions[Path(filename).suffix.lower()]
            exit_code = await action.run(workspace, filename)
            if exit_code != 0:
                return exit_code, f"{filename}: tool exited with status {exit_code}"
        return 0, ""
