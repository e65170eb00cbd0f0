"""Transactional staging of the shared output tree.

While checkpointing, jobs write into a staged view of the output tree. At the
end of a successful run the staged view is merged back file-for-file; after a
failed, aborted or dry run it is discarded and the real tree stays untouched.

Backends:
- overlay: copy-on-write overlay mount (Linux, needs privileges)
- shadow: full copy of the tree, merged back by hand (portable)
"""

from __future__ import annotations

import asyncio
import filecmp
import logging
import os
import shutil
import sys
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from ..config import RunConfig
from ..errors import CheckpointSetupError, PlatbuildError
from .resources import ResourceStack
from .state import RunState
from .tools import ToolRunner

logger = logging.getLogger(__name__)

OVERLAY_GUIDANCE = (
    "Mounting the checkpoint overlay needs root privileges. Re-run as root, "
    "point PLATBUILD_MOUNT/PLATBUILD_UMOUNT at an unprivileged overlay tool "
    "(e.g. fuse-overlayfs / fusermount -u), select the 'shadow' checkpoint "
    "backend, or run without checkpointing."
)


@dataclass
class CheckpointOverlay:
    """Layers of a staged output tree."""

    lower_path: Path  # real output tree, read-only while staged
    upper_path: Path  # writable scratch layer
    union_path: Path  # what jobs see as the output tree


def _same_file(a: Path, b: Path) -> bool:
    if a.is_symlink() or b.is_symlink():
        return a.is_symlink() and b.is_symlink() and os.readlink(a) == os.readlink(b)
    return filecmp.cmp(a, b, shallow=False)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def merge_tree(source: Path, target: Path) -> tuple[int, int]:
    """Make target identical to source.

    Added and changed files are copied, files missing from source are
    deleted from target.

    Returns:
        Tuple of (files copied, entries removed)
    """
    copied = 0
    removed = 0
    target.mkdir(parents=True, exist_ok=True)

    for entry in sorted(source.iterdir()):
        dest = target / entry.name
        if entry.is_dir() and not entry.is_symlink():
            # is_symlink() first: a dangling link does not exist()
            if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
                _remove(dest)
            sub_copied, sub_removed = merge_tree(entry, dest)
            copied += sub_copied
            removed += sub_removed
            continue

        if dest.is_dir() and not dest.is_symlink():
            shutil.rmtree(dest)
            removed += 1
        elif dest.exists() or dest.is_symlink():
            if _same_file(entry, dest):
                continue
            dest.unlink()
        if entry.is_symlink():
            os.symlink(os.readlink(entry), dest)
        else:
            shutil.copy2(entry, dest)
        copied += 1

    source_names = {e.name for e in source.iterdir()}
    for entry in list(target.iterdir()):
        if entry.name not in source_names:
            _remove(entry)
            removed += 1

    return copied, removed


class CheckpointBackend(ABC):
    """Staging mechanism behind the checkpoint manager."""

    name: str = ""

    @abstractmethod
    async def setup(self, overlay: CheckpointOverlay) -> None:
        """Create the staged view at overlay.union_path."""

    @abstractmethod
    async def commit(self, overlay: CheckpointOverlay) -> None:
        """Merge the staged view into overlay.lower_path."""

    async def teardown(self, overlay: CheckpointOverlay) -> None:
        """Release whatever setup() created besides the scratch directory."""


class ShadowCopyBackend(CheckpointBackend):
    """Stages a full copy of the output tree."""

    name = "shadow"

    async def setup(self, overlay: CheckpointOverlay) -> None:
        overlay.upper_path = overlay.union_path
        try:
            await asyncio.to_thread(
                shutil.copytree, overlay.lower_path, overlay.union_path, symlinks=True
            )
        except (OSError, shutil.Error) as e:
            raise CheckpointSetupError(
                f"Cannot copy output tree {overlay.lower_path} for checkpointing: {e}",
                "Check free space and permissions under the build root.",
            ) from e

    async def commit(self, overlay: CheckpointOverlay) -> None:
        copied, removed = await asyncio.to_thread(
            merge_tree, overlay.union_path, overlay.lower_path
        )
        logger.info(f"Checkpoint merge: {copied} files updated, {removed} entries removed")


class OverlayMountBackend(CheckpointBackend):
    """Stages writes in the upper layer of an overlay mount."""

    name = "overlay"

    def __init__(self, config: RunConfig, runner: ToolRunner):
        self._tools = config.tools
        self._runner = runner
        self._mounted = False

    async def setup(self, overlay: CheckpointOverlay) -> None:
        work = overlay.upper_path.parent / "work"
        for path in (overlay.upper_path, work, overlay.union_path):
            path.mkdir(parents=True, exist_ok=True)

        options = (
            f"lowerdir={overlay.lower_path},upperdir={overlay.upper_path},workdir={work}"
        )
        exit_code = await self._runner.run(
            [*self._tools.overlay_mount, "-o", options, str(overlay.union_path)],
            essential=True,
        )
        if exit_code != 0:
            raise CheckpointSetupError(
                f"Overlay mount of {overlay.lower_path} failed (exit {exit_code})",
                OVERLAY_GUIDANCE,
            )
        self._mounted = True

    async def commit(self, overlay: CheckpointOverlay) -> None:
        exit_code = await self._runner.run(
            [*self._tools.sync, f"{overlay.union_path}/", f"{overlay.lower_path}/"],
            essential=True,
        )
        if exit_code != 0:
            raise PlatbuildError(
                f"Checkpoint commit into {overlay.lower_path} failed (exit {exit_code})"
            )

    async def teardown(self, overlay: CheckpointOverlay) -> None:
        if not self._mounted:
            return
        exit_code = await self._runner.run(
            [*self._tools.unmount, str(overlay.union_path)], essential=True
        )
        if exit_code != 0:
            raise PlatbuildError(
                f"Cannot unmount checkpoint overlay {overlay.union_path} (exit {exit_code})"
            )
        self._mounted = False


def select_backend(config: RunConfig, runner: ToolRunner) -> CheckpointBackend:
    """Pick the staging backend for this run. Never changes after setup starts."""
    choice = config.checkpoint_backend
    if choice == "auto":
        privileged = hasattr(os, "geteuid") and os.geteuid() == 0
        choice = "overlay" if sys.platform.startswith("linux") and privileged else "shadow"
    if choice == "overlay":
        return OverlayMountBackend(config, runner)
    return ShadowCopyBackend()


class CheckpointManager:
    """Stages output tree writes and commits or discards them at unwind."""

    def __init__(
        self,
        config: RunConfig,
        resources: ResourceStack,
        state: RunState,
        runner: ToolRunner,
        backend: CheckpointBackend | None = None,
    ):
        self._config = config
        self._resources = resources
        self._state = state
        self._runner = runner
        self._backend = backend
        self._overlay: CheckpointOverlay | None = None
        self._scratch: Path | None = None
        self._committed = False

    @property
    def active(self) -> bool:
        """Whether output writes are being staged."""
        return self._overlay is not None

    @property
    def committed(self) -> bool:
        """Whether staged writes were merged into the output tree."""
        return self._committed

    @property
    def overlay(self) -> CheckpointOverlay | None:
        """Staged layers, if active."""
        return self._overlay

    @property
    def view(self) -> Path:
        """Output tree path jobs must write to."""
        if self._overlay is not None:
            return self._overlay.union_path
        return self._config.output_root

    async def setup(self) -> None:
        """Stage the output tree if checkpointing applies.

        Raises:
            CheckpointSetupError: If staging was requested but cannot be set up
        """
        config = self._config
        if not config.checkpoint_requested:
            return
        if not config.output_root.is_dir():
            logger.info(f"No output tree at {config.output_root}, checkpoint inactive")
            return

        if self._backend is None:
            self._backend = select_backend(config, self._runner)

        scratch_root = config.build_root / ".checkpoints"
        try:
            scratch_root.mkdir(parents=True, exist_ok=True)
            self._scratch = Path(
                tempfile.mkdtemp(prefix=f"run-{os.getpid()}-", dir=scratch_root)
            )
        except OSError as e:
            raise CheckpointSetupError(
                f"Cannot create checkpoint scratch under {scratch_root}: {e}",
                "Make sure the build root is writable.",
            ) from e

        # Teardown first so it unwinds after commit
        self._resources.push(self._teardown, "discard checkpoint scratch")

        overlay = CheckpointOverlay(
            lower_path=config.output_root,
            upper_path=self._scratch / "upper",
            union_path=self._scratch / "union",
        )
        await self._backend.setup(overlay)
        self._overlay = overlay
        logger.info(
            f"Checkpoint active ({self._backend.name}): output staged at {overlay.union_path}"
        )

        if config.commit_requested:
            self._resources.push(self._commit, "commit checkpoint")
        else:
            logger.info("Dry run: staged output will be discarded")

    async def _commit(self) -> None:
        if self._overlay is None or self._backend is None:
            return
        if self._state.aborted or not self._state.succeeded:
            logger.warning(
                f"Run did not succeed, discarding staged output "
                f"({self._state.abort_reason or 'incomplete'})"
            )
            return
        logger.info(f"Committing staged output into {self._overlay.lower_path}")
        await self._backend.commit(self._overlay)
        self._committed = True

    async def _teardown(self) -> None:
        # A failed unmount raises here and leaves the scratch directory alone
        if self._overlay is not None and self._backend is not None:
            await self._backend.teardown(self._overlay)
        self._overlay = None
        if self._scratch is not None:
            await asyncio.to_thread(shutil.rmtree, self._scratch, True)
            logger.debug(f"Removed checkpoint scratch {self._scratch}")
            self._scratch = None
