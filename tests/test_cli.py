"""Tests for CLI entry point - argument parsing and configuration."""

import os
import shlex
from pathlib import Path

import pytest

from platbuild.__main__ import config_from_args, main, parse_args
from platbuild.build.abort import LEADER_PID_ENV
from platbuild.errors import EXIT_CONFIG_ERROR, EXIT_OK


class TestParseArgs:
    """Tests for parse_args function."""

    def test_platform_only(self):
        """Test defaults with just a platform."""
        args = parse_args(["x86_64-linux"])

        assert args.platform == "x86_64-linux"
        assert args.stages is None
        assert not args.checkpoint
        assert not args.dry_run
        assert args.checkpoint_backend == "auto"

    def test_repeated_stages_keep_order(self):
        """Test --stage is repeatable and ordered."""
        args = parse_args(["arm64", "--stage", "clean", "--stage", "build"])
        assert args.stages == ["clean", "build"]

    def test_missing_platform_exits_with_config_error(self):
        """Test usage errors exit 1, not argparse's 2."""
        with pytest.raises(SystemExit) as exc_info:
            parse_args([])
        assert exc_info.value.code == EXIT_CONFIG_ERROR

    def test_bad_number_exits_with_config_error(self):
        """Test a non-numeric load ceiling is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            parse_args(["arm64", "--load-ceiling", "lots"])
        assert exc_info.value.code == EXIT_CONFIG_ERROR

    def test_serve_needs_no_platform(self):
        """Test server mode without a platform."""
        args = parse_args(["--serve"])
        assert args.serve
        assert args.platform is None


class TestConfigFromArgs:
    """Tests for translating arguments into a run configuration."""

    def test_flags_carried_over(self, tmp_path, monkeypatch):
        """Test every option reaches the configuration."""
        monkeypatch.setenv("PLATBUILD_SOURCES", str(tmp_path / "src"))
        monkeypatch.setenv("PLATBUILD_LOCK", str(tmp_path / "run.lock"))
        args = parse_args([
            "arm64",
            "--checkpoint",
            "--ccache",
            "--load-ceiling", "6.5",
            "--max-jobs", "4",
            "--build-options", "V=1 DEBUG=1",
            "--checkpoint-backend", "shadow",
        ])

        config = config_from_args(args)

        assert config.platform == "arm64"
        assert config.stages == ["build"]
        assert config.checkpoint
        assert config.ccache
        assert config.load_ceiling == 6.5
        assert config.max_jobs == 4
        assert config.build_options == "V=1 DEBUG=1"
        assert config.checkpoint_backend == "shadow"
        assert config.sources_root == (tmp_path / "src").resolve()
        assert config.lock_path == tmp_path / "run.lock"

    def test_tool_overrides_from_environment(self, monkeypatch):
        """Test PLATBUILD_MAKE is split like a shell command line."""
        monkeypatch.setenv("PLATBUILD_MAKE", "gmake --no-print-directory")

        config = config_from_args(parse_args(["arm64"]))

        assert config.tools.build_driver == ["gmake", "--no-print-directory"]

    def test_defaults_relative_to_cwd(self, tmp_path, monkeypatch):
        """Test unset paths default under the working directory."""
        for name in ("PLATBUILD_SOURCES", "PLATBUILD_OUTPUT", "PLATBUILD_LISTS"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.chdir(tmp_path)

        config = config_from_args(parse_args(["arm64"]))

        assert config.job_list_path() == Path(tmp_path).resolve() / "lists" / "arm64.jobs"


class TestMain:
    """Tests for main()."""

    @pytest.mark.asyncio
    async def test_unknown_platform_exit_code(self, tmp_path, monkeypatch):
        """Test a platform without a job list exits 1."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PLATBUILD_LOCK", str(tmp_path / "run.lock"))

        assert await main(["nosuch"]) == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_build_via_cli(self, tree, monkeypatch):
        """Test a full build started from the command line."""
        tree.add_source("libA")
        tree.write_jobs("- libA")
        monkeypatch.setenv("PLATBUILD_SOURCES", str(tree.sources))
        monkeypatch.setenv("PLATBUILD_OUTPUT", str(tree.output))
        monkeypatch.setenv("PLATBUILD_BUILD_ROOT", str(tree.build))
        monkeypatch.setenv("PLATBUILD_LISTS", str(tree.lists))
        monkeypatch.setenv("PLATBUILD_LOCK", str(tree.root / "run.lock"))
        monkeypatch.setenv("PLATBUILD_MAKE", shlex.join(tree.tool))

        exit_code = await main([tree.platform, "--load-ceiling", "10000"])

        assert exit_code == EXIT_OK
        assert "libA" in tree.tool_log.read_text()

    @pytest.mark.asyncio
    async def test_signal_failure_without_run(self, monkeypatch):
        """Test --signal-failure outside a run exits 1."""
        monkeypatch.delenv(LEADER_PID_ENV, raising=False)

        assert await main(["--signal-failure"]) == EXIT_CONFIG_ERROR

    @pytest.mark.asyncio
    async def test_signal_failure_delivers(self, monkeypatch):
        """Test --signal-failure signals the leader."""
        sent = []
        monkeypatch.setenv(LEADER_PID_ENV, "4242")
        monkeypatch.setattr(os, "kill", lambda pid, sig: sent.append(pid))

        assert await main(["--signal-failure"]) == EXIT_OK
        assert sent == [4242]
