"""Pytest fixtures for platbuild tests."""

import os
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from platbuild.config import RunConfig, ToolConfig  # noqa: E402

# Stand-in for every collaborator tool. Behaviour depends on the name of the
# source directory being built:
#   fail*  -> exit FAKE_FAIL_CODE (default 3)
#   slow*  -> sleep 30s
# Each call is logged to FAKE_TOOL_LOG, flagged "+SUBDIRS" when the discovery
# marker is visible. Every path following -o/-M is written; in build-driver mode (no -o) a file
# <name>.out is written into PLATBUILD_OUTPUT_DIR.
FAKE_TOOL = textwrap.dedent(
    """
    import os, sys, time

    args = sys.argv[1:]
    source = os.environ.get("PLATBUILD_SOURCE_DIR", "")
    name = os.path.basename(source)

    log = os.environ.get("FAKE_TOOL_LOG")
    if log:
        visible = os.path.exists(os.path.join(source, "SUBDIRS"))
        with open(log, "a") as f:
            f.write(name + (" +SUBDIRS " if visible else " ") + " ".join(args) + "\\n")

    if name.startswith("fail"):
        sys.exit(int(os.environ.get("FAKE_FAIL_CODE", "3")))
    if name.startswith("slow"):
        time.sleep(30)

    outputs = [args[i + 1] for i, a in enumerate(args[:-1]) if a in ("-o", "-M")]
    for path in outputs:
        with open(path, "w") as f:
            f.write("generated from " + args[-1] + "\\n")

    output_dir = os.environ.get("PLATBUILD_OUTPUT_DIR")
    if not outputs and output_dir and os.path.isdir(output_dir):
        with open(os.path.join(output_dir, name + ".out"), "w") as f:
            f.write("built " + name + "\\n")
    """
)


@pytest.fixture
def fake_tool(tmp_path) -> list[str]:
    """Command line of the fake collaborator tool."""
    script = tmp_path / "fake_tool.py"
    script.write_text(FAKE_TOOL)
    return [sys.executable, str(script)]


@dataclass
class BuildTree:
    """Scratch layout of sources, job lists and output for one test."""

    root: Path
    tool: list[str]
    platform: str = "testplat"

    @property
    def sources(self) -> Path:
        return self.root / "sources"

    @property
    def output(self) -> Path:
        return self.root / "out"

    @property
    def build(self) -> Path:
        return self.root / "build"

    @property
    def lists(self) -> Path:
        return self.root / "lists"

    @property
    def tool_log(self) -> Path:
        return self.root / "tool.log"

    def add_source(self, name: str, marker: bool = True, files: dict | None = None) -> Path:
        """Create a source directory, with the build marker unless disabled."""
        path = self.sources / name
        path.mkdir(parents=True, exist_ok=True)
        if marker:
            (path / "Makefile").write_text("all:\n")
        for filename, content in (files or {}).items():
            (path / filename).write_text(content)
        return path

    def write_jobs(self, *lines: str) -> Path:
        """Write the platform job list."""
        path = self.lists / f"{self.platform}.jobs"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def config(self, **overrides) -> RunConfig:
        """Run configuration pointing at this tree and the fake tool."""
        tool = list(self.tool)
        values = dict(
            platform=self.platform,
            sources_root=self.sources,
            output_root=self.output,
            build_root=self.build,
            lists_dir=self.lists,
            lock_path=self.root / "platbuild.lock",
            checkpoint_backend="shadow",
            tools=ToolConfig(
                build_driver=tool,
                interface_generator=tool,
                component_compiler=tool,
            ),
        )
        values.update(overrides)
        return RunConfig(**values)


@pytest.fixture
def tree(tmp_path, fake_tool, monkeypatch) -> BuildTree:
    """Empty build tree wired to the fake tool."""
    tree = BuildTree(root=tmp_path, tool=fake_tool)
    for path in (tree.sources, tree.lists, tree.build):
        path.mkdir()
    monkeypatch.setenv("FAKE_TOOL_LOG", str(tree.tool_log))
    return tree
