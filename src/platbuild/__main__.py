"""Entry point for platbuild."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from .build.abort import notify_leader
from .config import DEFAULT_STAGES, RunConfig
from .errors import EXIT_ABORTED, EXIT_CONFIG_ERROR, EXIT_OK
from .runner import BuildRun
from .server import create_server


def configure_logging(debug: bool = False) -> None:
    """Configure logging based on environment."""
    level = "DEBUG" if debug else os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser reporting usage errors with the configuration exit code."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_CONFIG_ERROR, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    """Create the command line parser."""
    parser = ArgumentParser(
        prog="platbuild",
        description="Build every module of a platform from its job list",
    )
    parser.add_argument(
        "platform",
        nargs="?",
        help="Target platform identifier (selects <lists>/<platform>.jobs)",
    )
    parser.add_argument(
        "--stage",
        dest="stages",
        action="append",
        default=None,
        help="Stage to run, repeatable, in order (default: build). "
        "Known stages: clean, build.",
    )
    parser.add_argument(
        "--checkpoint",
        action="store_true",
        help="Stage output tree writes and commit them only if the whole run succeeds.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Build into a staged output tree and discard it afterwards.",
    )
    parser.add_argument(
        "--checkpoint-backend",
        choices=["auto", "overlay", "shadow"],
        default="auto",
        help="How output writes are staged (default: auto).",
    )
    parser.add_argument("--ccache", action="store_true", help="Enable compiler caching.")
    parser.add_argument(
        "--debug-trace",
        action="store_true",
        help="Log every collaborator command and debug messages.",
    )
    parser.add_argument(
        "--load-ceiling",
        type=float,
        default=None,
        help="Pause dispatch while the load average is at or above this value "
        "(default: twice the CPU count).",
    )
    parser.add_argument(
        "--max-jobs",
        type=int,
        default=None,
        help="Maximum number of asynchronous jobs running at once.",
    )
    parser.add_argument(
        "--build-options",
        default="",
        help="Options passed through to the default build driver.",
    )
    parser.add_argument(
        "--signal-failure",
        action="store_true",
        help="Tell the run that started this process that the build failed "
        "(for use inside collaborator tools).",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run as an MCP server instead of building.",
    )
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.platform and not (args.serve or args.signal_failure):
        parser.error("the platform argument is required")
    return args


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Translate parsed arguments into a run configuration."""
    return RunConfig.from_env(
        args.platform,
        stages=args.stages or list(DEFAULT_STAGES),
        checkpoint=args.checkpoint,
        dry_run=args.dry_run,
        checkpoint_backend=args.checkpoint_backend,
        ccache=args.ccache,
        debug_trace=args.debug_trace,
        load_ceiling=args.load_ceiling,
        max_jobs=args.max_jobs,
        build_options=args.build_options,
    )


async def main(argv: list[str] | None = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = parse_args(argv)
    configure_logging(debug=args.debug_trace)
    logger = logging.getLogger(__name__)

    if args.signal_failure:
        return EXIT_OK if notify_leader() else EXIT_CONFIG_ERROR

    if args.serve:
        logger.info("Starting platbuild MCP server...")
        mcp = create_server()
        try:
            await mcp.run_stdio_async()
        except Exception:
            logger.exception("Server error")
            raise
        finally:
            logger.info("Server stopped")
        return EXIT_OK

    return await BuildRun(config_from_args(args)).execute()


def run() -> None:
    """Run the command line tool."""
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        code = EXIT_ABORTED
    sys.exit(code)


if __name__ == "__main__":
    run()
