"""Job descriptors and the per-platform job list parser.

Job list format (UTF-8, one directive per line):

    # comment
    [marker] sourceDir [file ...]

Markers: ``-`` sync, ``=`` async, ``<`` wait then async, ``>`` wait then
sync. A directive without a marker is async.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import ConfigError

logger = logging.getLogger(__name__)


class JobMode(str, Enum):
    """How a directive is dispatched."""

    SYNC = "sync"
    ASYNC = "async"
    WAIT_THEN_ASYNC = "wait_then_async"
    WAIT_THEN_SYNC = "wait_then_sync"

    @property
    def is_barrier(self) -> bool:
        """Whether outstanding async jobs must drain before dispatch."""
        return self in (JobMode.WAIT_THEN_ASYNC, JobMode.WAIT_THEN_SYNC)

    @property
    def is_async(self) -> bool:
        """Whether dispatch returns without waiting for the job."""
        return self in (JobMode.ASYNC, JobMode.WAIT_THEN_ASYNC)


MODE_MARKERS: dict[str, JobMode] = {
    "-": JobMode.SYNC,
    "=": JobMode.ASYNC,
    "<": JobMode.WAIT_THEN_ASYNC,
    ">": JobMode.WAIT_THEN_SYNC,
}


@dataclass(frozen=True)
class JobDirective:
    """One line of the job list."""

    index: int
    mode: JobMode
    source_dir: str
    files: tuple[str, ...] = ()
    line_number: int = 0

    def describe(self) -> str:
        """Short label used in log and error messages."""
        label = f"#{self.index} {self.source_dir}"
        if self.files:
            label += f" [{' '.join(self.files)}]"
        return label


def list_file_for(lists_dir: str | Path, platform: str) -> Path:
    """Path of the job list for a platform."""
    return Path(lists_dir) / f"{platform}.jobs"


def parse_job_line(line: str, index: int, line_number: int = 0) -> JobDirective | None:
    """Parse a single line.

    Returns:
        Directive, or None for blank and comment lines

    Raises:
        ConfigError: If the line has a marker but no source directory
    """
    if not line.strip() or line.startswith("#"):
        return None

    tokens = line.split()
    mode = JobMode.ASYNC
    if tokens[0] in MODE_MARKERS:
        mode = MODE_MARKERS[tokens.pop(0)]
    if not tokens:
        raise ConfigError(f"Line {line_number}: directive has no source directory")

    return JobDirective(
        index=index,
        mode=mode,
        source_dir=tokens[0],
        files=tuple(tokens[1:]),
        line_number=line_number,
    )


def parse_job_list(path: str | Path) -> tuple[JobDirective, ...]:
    """Load the ordered job list from a descriptor file.

    Args:
        path: Job list file

    Returns:
        Immutable job list in dispatch order

    Raises:
        ConfigError: If the file is missing or malformed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigError(f"Job list not found: {path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read job list {path}: {e}") from e

    jobs: list[JobDirective] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        directive = parse_job_line(line, len(jobs), line_number)
        if directive is not None:
            jobs.append(directive)

    logger.debug(f"Loaded {len(jobs)} jobs from {path}")
    return tuple(jobs)
