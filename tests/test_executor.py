"""Tests for job execution against the fake collaborator tool."""

import os
import time

import pytest

from platbuild.build.abort import AbortCoordinator
from platbuild.build.executor import JobExecutor, artifacts_fresh
from platbuild.build.jobs import parse_job_line
from platbuild.build.resources import ResourceStack
from platbuild.build.state import RunState
from platbuild.build.tools import EXIT_NOT_STARTED, ToolRunner


def make_executor(config):
    abort = AbortCoordinator(RunState())
    resources = ResourceStack()
    runner = ToolRunner(abort)
    return JobExecutor(config, resources, runner), resources, abort


def tool_calls(tree):
    if not tree.tool_log.exists():
        return []
    return tree.tool_log.read_text().splitlines()


def set_mtime(path, offset):
    stamp = time.time() + offset
    os.utime(path, (stamp, stamp))


class TestValidate:
    """Tests for pre-dispatch checks."""

    def test_valid_directive(self, tree):
        """Test an existing directory with known file types passes."""
        tree.add_source("libA", files={"api.idl": "", "widget.comp": ""})
        executor, _, _ = make_executor(tree.config())

        assert executor.validate(parse_job_line("- libA api.idl widget.comp", 0)) is None

    def test_missing_directory(self, tree):
        """Test a missing source directory is reported."""
        executor, _, _ = make_executor(tree.config())

        problem = executor.validate(parse_job_line("= missingDir", 0))

        assert "not found" in problem

    def test_directory_outside_sources_root(self, tree):
        """Test paths escaping the sources root are rejected."""
        (tree.root / "elsewhere").mkdir()
        executor, _, _ = make_executor(tree.config())

        problem = executor.validate(parse_job_line("- ../elsewhere", 0))

        assert "outside sources root" in problem

    def test_unsupported_file_type(self, tree):
        """Test files without a build action are rejected."""
        tree.add_source("libA", files={"readme.txt": ""})
        executor, _, _ = make_executor(tree.config())

        problem = executor.validate(parse_job_line("- libA readme.txt", 0))

        assert problem == "unsupported file type: readme.txt"


class TestDirectoryJobs:
    """Tests for jobs without a file list."""

    @pytest.mark.asyncio
    async def test_default_driver_builds_in_mirror(self, tree):
        """Test the build driver runs and the mirror directory is created."""
        tree.add_source("libA")
        tree.output.mkdir()
        config = tree.config()
        executor, _, _ = make_executor(config)

        result = await executor.run(parse_job_line("- libA", 0))

        assert result.success
        assert not result.skipped
        assert (config.platform_build_root / "libA").is_dir()
        assert (tree.output / "libA.out").read_text() == "built libA\n"
        calls = tool_calls(tree)
        assert len(calls) == 1
        assert "-C" in calls[0].split()

    @pytest.mark.asyncio
    async def test_skipped_without_build_marker(self, tree):
        """Test a directory without the build marker is skipped untouched."""
        source = tree.add_source("docs", marker=False, files={"SUBDIRS": "api\n"})
        executor, _, _ = make_executor(tree.config())

        result = await executor.run(parse_job_line("- docs", 0))

        assert result.success
        assert result.skipped
        assert (source / "SUBDIRS").exists()
        assert not (source / ".SUBDIRS").exists()
        assert tool_calls(tree) == []

    @pytest.mark.asyncio
    async def test_discovery_marker_hidden_while_building(self, tree):
        """Test the discovery marker is invisible to the tool and restored after."""
        source = tree.add_source("libA", files={"SUBDIRS": "plugins\n"})
        executor, resources, _ = make_executor(tree.config())

        result = await executor.run(parse_job_line("- libA", 0))

        assert result.success
        calls = tool_calls(tree)
        assert len(calls) == 1
        assert "+SUBDIRS" not in calls[0]
        assert (source / "SUBDIRS").read_text() == "plugins\n"
        assert not (source / ".SUBDIRS").exists()
        assert len(resources) == 0

    @pytest.mark.asyncio
    async def test_discovery_marker_restored_after_failure(self, tree):
        """Test a failing job still restores the discovery marker."""
        source = tree.add_source("failing", files={"SUBDIRS": "x\n"})
        executor, _, _ = make_executor(tree.config())

        result = await executor.run(parse_job_line("- failing", 3))

        assert not result.success
        assert result.exit_code == 3
        assert result.index == 3
        assert "status 3" in result.reason
        assert (source / "SUBDIRS").exists()

    @pytest.mark.asyncio
    async def test_aborted_run_does_not_start_tools(self, tree):
        """Test no tool starts once the run is aborted."""
        tree.add_source("libA")
        executor, _, abort = make_executor(tree.config())
        abort.abort("interrupted by user")

        result = await executor.run(parse_job_line("- libA", 0))

        assert not result.success
        assert result.exit_code == EXIT_NOT_STARTED
        assert tool_calls(tree) == []


class TestFileJobs:
    """Tests for per-file build actions."""

    @pytest.mark.asyncio
    async def test_interface_always_regenerated(self, tree):
        """Test interface descriptions are rebuilt on every run."""
        tree.add_source("libA", files={"api.idl": "interface A;\n"})
        config = tree.config()
        executor, _, _ = make_executor(config)
        directive = parse_job_line("- libA api.idl", 0)

        assert (await executor.run(directive)).success
        assert (await executor.run(directive)).success

        assert len(tool_calls(tree)) == 2
        assert (config.platform_build_root / "libA" / "api.h").exists()

    @pytest.mark.asyncio
    async def test_component_generates_three_artifacts(self, tree):
        """Test a component yields class, dependency and header files."""
        source = tree.add_source("libA", files={"widget.comp": "component W;\n"})
        set_mtime(source / "widget.comp", -60)
        config = tree.config()
        executor, resources, _ = make_executor(config)

        result = await executor.run(parse_job_line("- libA widget.comp", 0))

        mirror = config.platform_build_root / "libA"
        assert result.success
        for suffix in (".class", ".d", ".h"):
            assert (mirror / f"widget{suffix}").exists()
        # compiler, then header generation
        assert len(tool_calls(tree)) == 2
        assert len(resources) == 0

    @pytest.mark.asyncio
    async def test_fresh_component_not_rebuilt(self, tree):
        """Test artifacts newer than the source skip the compiler."""
        source = tree.add_source("libA", files={"widget.comp": "component W;\n"})
        set_mtime(source / "widget.comp", -60)
        executor, _, _ = make_executor(tree.config())
        directive = parse_job_line("- libA widget.comp", 0)
        await executor.run(directive)
        calls_after_first = len(tool_calls(tree))

        result = await executor.run(directive)

        assert result.success
        assert len(tool_calls(tree)) == calls_after_first

    @pytest.mark.asyncio
    async def test_stale_component_rebuilt(self, tree):
        """Test a source newer than its artifacts is recompiled."""
        source = tree.add_source("libA", files={"widget.comp": "component W;\n"})
        set_mtime(source / "widget.comp", -60)
        executor, _, _ = make_executor(tree.config())
        directive = parse_job_line("- libA widget.comp", 0)
        await executor.run(directive)
        set_mtime(source / "widget.comp", 60)

        await executor.run(directive)

        assert len(tool_calls(tree)) == 4

    @pytest.mark.asyncio
    async def test_missing_artifact_triggers_rebuild(self, tree):
        """Test one missing artifact is enough to recompile."""
        source = tree.add_source("libA", files={"widget.comp": "component W;\n"})
        set_mtime(source / "widget.comp", -60)
        config = tree.config()
        executor, _, _ = make_executor(config)
        directive = parse_job_line("- libA widget.comp", 0)
        await executor.run(directive)
        (config.platform_build_root / "libA" / "widget.d").unlink()

        await executor.run(directive)

        assert len(tool_calls(tree)) == 4
        assert (config.platform_build_root / "libA" / "widget.d").exists()

    @pytest.mark.asyncio
    async def test_failed_component_leaves_no_artifacts(self, tree):
        """Test partial artifacts are removed when compilation fails."""
        source = tree.add_source("failcomp", files={"widget.comp": "broken\n"})
        config = tree.config()
        mirror = config.platform_build_root / "failcomp"
        mirror.mkdir(parents=True)
        for suffix in (".class", ".d", ".h"):
            (mirror / f"widget{suffix}").write_text("stale\n")
            set_mtime(mirror / f"widget{suffix}", -120)
        set_mtime(source / "widget.comp", -60)
        executor, resources, _ = make_executor(config)

        result = await executor.run(parse_job_line("- failcomp widget.comp", 0))

        assert not result.success
        assert "widget.comp" in result.reason
        for suffix in (".class", ".d", ".h"):
            assert not (mirror / f"widget{suffix}").exists()
        assert len(resources) == 0

    @pytest.mark.asyncio
    async def test_missing_source_file(self, tree):
        """Test a listed file that does not exist fails the job."""
        tree.add_source("libA")
        executor, _, _ = make_executor(tree.config())

        result = await executor.run(parse_job_line("- libA gone.idl", 0))

        assert not result.success
        assert "source file not found" in result.reason

    @pytest.mark.asyncio
    async def test_unsupported_file_fails_job(self, tree):
        """Test run() reports validation problems as failures."""
        tree.add_source("libA", files={"notes.txt": ""})
        executor, _, _ = make_executor(tree.config())

        result = await executor.run(parse_job_line("- libA notes.txt", 0))

        assert not result.success
        assert "unsupported file type" in result.reason
        assert tool_calls(tree) == []


class TestArtifactsFresh:
    """Tests for the freshness rule."""

    def test_equal_mtime_is_stale(self, tmp_path):
        """Test artifacts must be strictly newer."""
        source = tmp_path / "a.comp"
        artifact = tmp_path / "a.class"
        source.write_text("")
        artifact.write_text("")
        stamp = time.time()
        os.utime(source, (stamp, stamp))
        os.utime(artifact, (stamp, stamp))

        assert artifacts_fresh(source, [artifact]) is False

    def test_newer_artifacts_are_fresh(self, tmp_path):
        """Test all-newer artifacts are fresh."""
        source = tmp_path / "a.comp"
        artifact = tmp_path / "a.class"
        source.write_text("")
        artifact.write_text("")
        set_mtime(source, -10)

        assert artifacts_fresh(source, [artifact]) is True
