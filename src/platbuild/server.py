"""MCP Server exposing platform builds."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import DEFAULT_STAGES, RunConfig
from .runner import BuildRun

logger = logging.getLogger(__name__)

# Single run at a time (the run lock enforces this system-wide anyway)
_run: BuildRun | None = None
_task: asyncio.Task | None = None


def get_run() -> BuildRun | None:
    """Most recent build run started by this server."""
    return _run


def _status() -> dict[str, Any]:
    if _run is None:
        return {"state": "idle"}
    status = _run.to_dict()
    status["state"] = "finished" if _run.finished else "running"
    return status


def _on_run_done(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("Build task cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Build task crashed", exc_info=exc)


def create_server() -> FastMCP:
    """Create and configure the MCP server."""
    mcp = FastMCP("platbuild")

    @mcp.tool()
    async def start_build(
        platform: str,
        stages: list[str] | None = None,
        checkpoint: bool = False,
        dry_run: bool = False,
        ccache: bool = False,
        load_ceiling: float | None = None,
        build_options: str = "",
        force_reclaim: bool = False,
    ) -> dict:
        """
        Start building a platform in the background.

        Jobs come from the platform's job list. Poll build_status() for progress.
        Only one build can run at a time.

        Args:
            platform: Target platform identifier
            stages: Stages to run in order (default: ["build"]; known: clean, build)
            checkpoint: Stage output writes, commit only if the whole build succeeds
            dry_run: Build into a staged output tree and discard it
            ccache: Enable compiler caching
            load_ceiling: Pause dispatch at or above this load average
            build_options: Options passed through to the default build driver
            force_reclaim: Reclaim a run lock left behind by a dead process
        """
        global _run, _task
        if _run is not None and not _run.finished:
            return {"success": False, "error": "A build is already running", "status": _status()}

        try:
            config = RunConfig.from_env(
                platform,
                stages=stages or list(DEFAULT_STAGES),
                checkpoint=checkpoint,
                dry_run=dry_run,
                ccache=ccache,
                load_ceiling=load_ceiling,
                build_options=build_options,
            )
        except Exception as e:
            return {"success": False, "error": str(e)}

        _run = BuildRun(
            config,
            confirm=lambda question: force_reclaim,
            install_signal_handlers=False,
        )
        _task = asyncio.create_task(_run.execute(), name=f"build-{platform}")
        _task.add_done_callback(_on_run_done)
        logger.info(f"Started build of {platform}")
        return {"success": True, "status": _status()}

    @mcp.tool()
    async def build_status() -> dict:
        """
        Get the state of the current or last build.

        Returns dispatch state, next job index, abort reason, finished job
        results and, once finished, the exit code (0 ok, 1 config error, 130 aborted).
        """
        return _status()

    @mcp.tool()
    async def abort_build(reason: str = "aborted by MCP client") -> dict:
        """
        Abort the running build.

        Running jobs are terminated, no further jobs start, and staged output
        is discarded.

        Args:
            reason: Reason recorded in the build log
        """
        if _run is None or _run.finished:
            return {"success": False, "error": "No build is running"}
        aborted = _run.request_abort(reason)
        return {"success": aborted, "status": _status()}

    @mcp.tool()
    async def wait_for_build(timeout: float = 600.0) -> dict:
        """
        Wait until the running build finishes.

        Args:
            timeout: Maximum seconds to wait
        """
        if _task is None:
            return {"success": False, "error": "No build was started"}
        try:
            await asyncio.wait_for(asyncio.shield(_task), timeout=timeout)
        except asyncio.TimeoutError:
            return {"success": False, "error": f"Build still running after {timeout}s", "status": _status()}
        except Exception as e:
            return {"success": False, "error": str(e), "status": _status()}
        return {"success": _run is not None and _run.exit_code == 0, "status": _status()}

    # ============== Resources ==============

    @mcp.resource("build://state", mime_type="application/json")
    async def build_state_resource() -> str:
        """Current build state (JSON).

        Contains: dispatch state, next index, abort reason, job results.
        """
        return json.dumps(_status(), indent=2)

    logger.info("platbuild MCP Server initialized")
    return mcp
