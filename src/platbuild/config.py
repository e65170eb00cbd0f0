"""Run configuration.

Paths and collaborator command lines come from PLATBUILD_* environment
variables, everything else from the caller.
"""

from __future__ import annotations

import os
import re
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from .errors import ConfigError

# Dots only ("." or "..") would put the working mirrors outside build_root
PLATFORM_PATTERN: Final[re.Pattern[str]] = re.compile(r"^(?!\.+$)[A-Za-z0-9_.-]+$")

DEFAULT_STAGES: Final[tuple[str, ...]] = ("build",)
KNOWN_STAGES: Final[frozenset[str]] = frozenset({"clean", "build"})

CHECKPOINT_BACKENDS: Final[frozenset[str]] = frozenset({"auto", "overlay", "shadow"})

# Marker files looked up in each source directory
BUILD_MARKER: Final[str] = "Makefile"
DISCOVERY_MARKER: Final[str] = "SUBDIRS"


def _tool_from_env(name: str, default: list[str]) -> list[str]:
    value = os.environ.get(name)
    return shlex.split(value) if value else list(default)


@dataclass
class ToolConfig:
    """Command lines of the collaborator tools (argv prefixes)."""

    build_driver: list[str] = field(default_factory=lambda: ["make"])
    interface_generator: list[str] = field(default_factory=lambda: ["idlgen"])
    component_compiler: list[str] = field(default_factory=lambda: ["compcc"])
    sync: list[str] = field(default_factory=lambda: ["rsync", "-a", "--delete"])
    overlay_mount: list[str] = field(
        default_factory=lambda: ["mount", "-t", "overlay", "overlay"]
    )
    unmount: list[str] = field(default_factory=lambda: ["umount"])

    @classmethod
    def from_env(cls) -> ToolConfig:
        """Build tool settings, honouring PLATBUILD_<TOOL> overrides."""
        defaults = cls()
        return cls(
            build_driver=_tool_from_env("PLATBUILD_MAKE", defaults.build_driver),
            interface_generator=_tool_from_env(
                "PLATBUILD_IDLGEN", defaults.interface_generator
            ),
            component_compiler=_tool_from_env(
                "PLATBUILD_COMPCC", defaults.component_compiler
            ),
            sync=_tool_from_env("PLATBUILD_SYNC", defaults.sync),
            overlay_mount=_tool_from_env("PLATBUILD_MOUNT", defaults.overlay_mount),
            unmount=_tool_from_env("PLATBUILD_UMOUNT", defaults.unmount),
        )


@dataclass
class RunConfig:
    """Structured input of one build run."""

    platform: str
    sources_root: Path
    output_root: Path
    build_root: Path
    lists_dir: Path
    lock_path: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "platbuild.lock"
    )
    stages: list[str] = field(default_factory=lambda: list(DEFAULT_STAGES))
    checkpoint: bool = False
    dry_run: bool = False
    ccache: bool = False
    debug_trace: bool = False
    load_ceiling: float | None = None
    max_jobs: int | None = None
    build_options: str = ""
    checkpoint_backend: str = "auto"
    tools: ToolConfig = field(default_factory=ToolConfig)

    def __post_init__(self) -> None:
        self.sources_root = Path(self.sources_root).resolve()
        self.output_root = Path(self.output_root).resolve()
        self.build_root = Path(self.build_root).resolve()
        self.lists_dir = Path(self.lists_dir).resolve()
        self.lock_path = Path(self.lock_path)

    @classmethod
    def from_env(cls, platform: str, **overrides: Any) -> RunConfig:
        """Create a config from PLATBUILD_* environment variables.

        Args:
            platform: Target platform identifier
            **overrides: Explicit field values, taking precedence over the environment

        Returns:
            Run configuration (not yet validated)
        """
        cwd = Path.cwd()
        values: dict[str, Any] = {
            "sources_root": Path(os.environ.get("PLATBUILD_SOURCES", cwd / "src")),
            "output_root": Path(os.environ.get("PLATBUILD_OUTPUT", cwd / "out")),
            "build_root": Path(os.environ.get("PLATBUILD_BUILD_ROOT", cwd / "build")),
            "lists_dir": Path(os.environ.get("PLATBUILD_LISTS", cwd / "lists")),
            "tools": ToolConfig.from_env(),
        }
        if "PLATBUILD_LOCK" in os.environ:
            values["lock_path"] = Path(os.environ["PLATBUILD_LOCK"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(platform=platform, **values)

    @property
    def platform_build_root(self) -> Path:
        """Root of the working mirrors for this platform."""
        return self.build_root / self.platform

    @property
    def checkpoint_requested(self) -> bool:
        """Whether output writes must be staged (a dry run always stages)."""
        return self.checkpoint or self.dry_run

    @property
    def commit_requested(self) -> bool:
        """Whether staged writes may be merged into the real output tree."""
        return self.checkpoint and not self.dry_run

    def job_list_path(self) -> Path:
        """Job descriptor file for the configured platform."""
        return self.lists_dir / f"{self.platform}.jobs"

    def validate(self) -> None:
        """Check settings that must hold before anything runs.

        Raises:
            ConfigError: If the platform, stages or numeric limits are invalid
        """
        if not self.platform or not PLATFORM_PATTERN.match(self.platform):
            raise ConfigError(f"Invalid platform identifier: {self.platform!r}")
        if not self.job_list_path().is_file():
            raise ConfigError(
                f"Unknown platform {self.platform!r}: "
                f"job list not found at {self.job_list_path()}"
            )
        if not self.stages:
            raise ConfigError("No stages requested")
        unknown = [s for s in self.stages if s not in KNOWN_STAGES]
        if unknown:
            raise ConfigError(
                f"Unknown stage(s): {', '.join(unknown)} "
                f"(known: {', '.join(sorted(KNOWN_STAGES))})"
            )
        if not self.sources_root.is_dir():
            raise ConfigError(f"Sources root not found: {self.sources_root}")
        if self.load_ceiling is not None and self.load_ceiling <= 0:
            raise ConfigError(f"Load ceiling must be positive: {self.load_ceiling}")
        if self.max_jobs is not None and self.max_jobs < 1:
            raise ConfigError(f"max_jobs must be at least 1: {self.max_jobs}")
        if self.checkpoint_backend not in CHECKPOINT_BACKENDS:
            raise ConfigError(
                f"Unknown checkpoint backend: {self.checkpoint_backend!r}"
            )

    def tool_environment(self, leader: bool = True) -> dict[str, str]:
        """Extra environment exported to every collaborator.

        Args:
            leader: Export PLATBUILD_LEADER_PID; only when the run handles SIGUSR1
        """
        env = {"PLATBUILD_PLATFORM": self.platform}
        if leader:
            env["PLATBUILD_LEADER_PID"] = str(os.getpid())
        if self.ccache:
            env["USE_CCACHE"] = "1"
            env["CCACHE_DIR"] = str(self.build_root / ".ccache")
        return env
