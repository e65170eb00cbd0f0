"""Build run exceptions and exit codes."""

from __future__ import annotations

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_ABORTED = 130


class PlatbuildError(Exception):
    """Base exception for build run errors."""

    exit_code: int = EXIT_CONFIG_ERROR


class ConfigError(PlatbuildError):
    """Raised for a bad platform, missing job list or invalid run settings."""

    pass


class LockContentionError(PlatbuildError):
    """Raised when another run holds the singleton lock."""

    def __init__(self, message: str, owner_pid: int | None = None):
        super().__init__(message)
        self.owner_pid = owner_pid


class CheckpointSetupError(PlatbuildError):
    """Raised when the output tree cannot be staged for checkpointing."""

    def __init__(self, message: str, guidance: str = ""):
        super().__init__(f"{message}\n{guidance}" if guidance else message)
        self.guidance = guidance


class RunAborted(PlatbuildError):
    """Raised when the run stopped because of an abort."""

    exit_code = EXIT_ABORTED

    def __init__(self, reason: str):
        super().__init__(f"Build aborted: {reason}")
        self.reason = reason


class CleanupError(PlatbuildError):
    """Raised when unwinding a run failed (checkpoint commit, unmount, ...)."""

    def __init__(self, message: str, failures: int = 1):
        super().__init__(message)
        self.failures = failures
