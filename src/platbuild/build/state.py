"""Run state and job result types.

Dispatcher state machine:
NOT_STARTED → DISPATCHING → COMPLETED | ABORTED
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class DispatchState(str, Enum):
    """Dispatcher state machine states."""

    NOT_STARTED = "not_started"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RunState:
    """Mutable state of one run, shared by the dispatcher and abort coordinator."""

    next_index: int = 0
    aborted: bool = False
    abort_reason: str | None = None
    succeeded: bool = False

    def mark_aborted(self, reason: str) -> bool:
        """Flip the abort flag. Returns True only for the first call."""
        if self.aborted:
            return False
        self.aborted = True
        self.abort_reason = reason
        self.succeeded = False
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "nextIndex": self.next_index,
            "aborted": self.aborted,
            "succeeded": self.succeeded,
        }
        if self.abort_reason:
            result["abortReason"] = self.abort_reason
        return result


@dataclass
class JobResult:
    """Result of running one job."""

    index: int
    source_dir: str
    success: bool
    skipped: bool = False
    exit_code: int | None = None
    reason: str = ""
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "index": self.index,
            "sourceDir": self.source_dir,
            "success": self.success,
            "durationMs": round(self.duration_ms, 2),
        }
        if self.skipped:
            result["skipped"] = True
        if self.exit_code is not None:
            result["exitCode"] = self.exit_code
        if self.reason:
            result["reason"] = self.reason
        return result

    def to_summary(self) -> str:
        """Generate a one-line human-readable summary."""
        if self.skipped:
            status = "[SKIPPED]"
        elif self.success:
            status = "[OK]"
        else:
            status = "[FAILED]"
        line = f"{status} #{self.index} {self.source_dir} ({self.duration_ms:.0f}ms)"
        if self.reason:
            line += f": {self.reason}"
        return line
