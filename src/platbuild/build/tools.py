"""Collaborator tool invocation.

Tools are opaque: their output goes straight to the console and only the exit
status is consumed. On POSIX each tool starts in its own session so an abort
can terminate the whole process tree it spawned.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from .abort import AbortCoordinator

logger = logging.getLogger(__name__)

# Exit status reported for tools that could not be started
EXIT_NOT_STARTED: int = 127


class ToolRunner:
    """Runs collaborator commands on behalf of jobs."""

    def __init__(
        self,
        abort: AbortCoordinator,
        env: Mapping[str, str] | None = None,
        trace: bool = False,
    ):
        """Initialize runner.

        Args:
            abort: Coordinator tracking live processes and the cancellation token
            env: Extra environment exported to every tool
            trace: Log every command line at INFO instead of DEBUG
        """
        self._abort = abort
        self._env = dict(env or {})
        self._trace = trace

    async def run(
        self,
        command: Sequence[str],
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        essential: bool = False,
    ) -> int:
        """Run one command and wait for it.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Extra environment for this invocation
            essential: Cleanup command; runs even after an abort and is not
                terminated by it

        Returns:
            Exit status (negative when killed by a signal on POSIX)
        """
        if not essential and self._abort.token.is_set():
            logger.debug(f"Not starting {command[0]}: run aborted")
            return EXIT_NOT_STARTED

        log = logger.info if self._trace else logger.debug
        log(f"Running: {' '.join(str(c) for c in command)}" + (f" (in {cwd})" if cwd else ""))

        full_env = {**os.environ, **self._env, **(env or {})}
        try:
            # Never use shell=True
            process = await asyncio.create_subprocess_exec(
                *[str(c) for c in command],
                cwd=str(cwd) if cwd else None,
                env=full_env,
                start_new_session=os.name != "nt" and not essential,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Cannot start {command[0]}: {e}")
            return EXIT_NOT_STARTED

        if essential:
            return await process.wait()

        self._abort.register(process)
        try:
            exit_code = await process.wait()
        finally:
            self._abort.unregister(process)

        if exit_code != 0:
            logger.debug(f"{command[0]} exited with status {exit_code}")
        return exit_code
