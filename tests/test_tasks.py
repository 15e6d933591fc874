"""Tests for task hooks and reports."""

import asyncio
import tempfile
from pathlib import Path
from unittest import mock

import pytest

from stowage.config import PackageConfig, ReportConfig, TaskConfig
from stowage.errors import ConfigurationError, ProcessError
from stowage.lease import ScratchSession
from stowage.orchestrator import TaskResult
from stowage.reports import format_summary, send_report, should_report
from stowage.snapshot import PreSnapshot
from stowage.tasks import ScriptTask, TaskContext, create_task
from stowage.util.process import CommandResult


def make_context(temp_dir: str, **package) -> TaskContext:
    return TaskContext(
        package=PackageConfig(name="db", **package),
        snapshot=PreSnapshot(id="f" * 32, date="2024-05-01T08:00:00.000Z"),
        session=ScratchSession(Path(temp_dir)),
    )


class TestScriptTask:
    """Test the script task hook."""

    def test_backup_runs_steps_in_scratch(self):
        """Test backup steps write into a leased scratch directory."""
        with tempfile.TemporaryDirectory() as temp_dir:
            hook = ScriptTask({"backup_steps": ["echo dump > dump.sql"]})
            ctx = make_context(temp_dir)

            output = asyncio.run(hook.backup(ctx))

            assert ctx.session.contains(output.snapshot_path)
            assert (output.snapshot_path / "dump.sql").read_text() == "dump\n"

    def test_backup_uses_package_path(self):
        """Test a package path is created and used as the working directory."""
        with tempfile.TemporaryDirectory() as temp_dir:
            target = Path(temp_dir) / "dump"
            hook = ScriptTask({"backup_steps": [["touch", "marker"]]})

            output = asyncio.run(hook.backup(make_context(temp_dir, path=str(target))))

            assert output.snapshot_path == target
            assert (target / "marker").exists()

    def test_environment(self):
        """Test the snapshot is exposed through environment variables."""
        with tempfile.TemporaryDirectory() as temp_dir:
            hook = ScriptTask({"env": {"PGHOST": "db"}, "backup_steps": ["pg_dump"]})
            run = mock.AsyncMock(return_value=CommandResult(["sh"], 0, "", ""))

            with mock.patch("stowage.tasks.script.run_command", run):
                output = asyncio.run(hook.backup(make_context(temp_dir)))

            command = run.await_args.args[0]
            env = run.await_args.kwargs["env"]
            assert command == ["sh", "-c", "pg_dump"]
            assert env["PGHOST"] == "db"
            assert env["STOWAGE_SNAPSHOT_ID"] == "f" * 32
            assert env["STOWAGE_SNAPSHOT_DATE"] == "2024-05-01T08:00:00.000Z"
            assert env["STOWAGE_PACKAGE_NAME"] == "db"
            assert env["STOWAGE_SNAPSHOT_PATH"] == str(output.snapshot_path)

    def test_failing_step(self):
        """Test a failing step raises ProcessError."""
        with tempfile.TemporaryDirectory() as temp_dir:
            hook = ScriptTask({"backup_steps": ["exit 4"]})

            with pytest.raises(ProcessError):
                asyncio.run(hook.backup(make_context(temp_dir)))

    def test_restore(self):
        """Test restore steps run in the restored directory."""
        with tempfile.TemporaryDirectory() as temp_dir:
            restored = Path(temp_dir) / "restored"
            restored.mkdir()
            (restored / "dump.sql").write_text("data")
            hook = ScriptTask({"restore_steps": ["cp dump.sql loaded.sql"]})
            ctx = make_context(temp_dir)
            ctx.snapshot_path = restored

            asyncio.run(hook.restore(ctx))

            assert (restored / "loaded.sql").read_text() == "data"

    def test_prepare_restore_prefers_restore_path(self):
        """Test prepare_restore returns the package restore path."""
        with tempfile.TemporaryDirectory() as temp_dir:
            hook = ScriptTask({})
            ctx = make_context(temp_dir, restore_path="/srv/restore")

            output = asyncio.run(hook.prepare_restore(ctx))

            assert output.snapshot_path == Path("/srv/restore")


class TestCreateTask:
    """Test task hook creation."""

    def test_script(self):
        """Test the script task is created from its config."""
        hook = create_task(TaskConfig(name="script", config={"backup_steps": ["true"]}))
        assert isinstance(hook, ScriptTask)
        assert hook.options.backup_steps == ["true"]

    def test_unknown_name(self):
        """Test an unknown task name is a configuration error."""
        with pytest.raises(ConfigurationError):
            create_task(TaskConfig(name="mysql"))

    def test_invalid_config(self):
        """Test an invalid task config is a configuration error."""
        with pytest.raises(ConfigurationError):
            create_task(TaskConfig(name="script", config={"backup_steps": "not a list"}))


class TestReports:
    """Test report selection and formatting."""

    def test_should_report(self):
        """Test the when switch."""
        assert should_report(ReportConfig(run="true"), failed=False)
        assert should_report(ReportConfig(run="true", when="error"), failed=True)
        assert not should_report(ReportConfig(run="true", when="error"), failed=False)
        assert should_report(ReportConfig(run="true", when="success"), failed=False)
        assert not should_report(ReportConfig(run="true", when="success"), failed=True)

    def test_format_summary(self):
        """Test every result gets a status line and failures are counted."""
        results = [
            TaskResult(key="backup", key_index=("web", "r1"), title="Back up web", elapsed=1.5),
            TaskResult(key="copy", key_index=("web",), title="Copy web", error=RuntimeError("offline")),
            TaskResult(key="prune", key_index=("web",), title="Prune web", skipped="nothing to do"),
        ]

        text = format_summary(results)

        assert "Back up web: ok [1.5s]" in text
        assert "Copy web: FAILED: offline" in text
        assert "Prune web: skipped (nothing to do)" in text
        assert text.endswith("3 task(s), 1 failed\n")

    def test_send_report(self):
        """Test the report command receives the text on stdin."""
        with tempfile.TemporaryDirectory() as temp_dir:
            output = Path(temp_dir) / "report.txt"
            report = ReportConfig(name="file", run=f"cat > {output}")

            asyncio.run(send_report(report, "all good\n"))

            assert output.read_text() == "all good\n"
