"""
Tests for the vigil command line.

Every command exits through sys.exit, so each call is wrapped in
pytest.raises(SystemExit) and the exit code checked.
"""

import json

import pytest

from vigil.cli import build_parser, main
from vigil.observability.logger import StructuredLogger
from vigil.observability.models import LogCategory, LogLevel
from vigil.persistence.sessions import SessionManager


def run(argv):
    with pytest.raises(SystemExit) as excinfo:
        main(argv)
    return excinfo.value.code


@pytest.fixture
def base_dir(tmp_path):
    return tmp_path / "sessions"


@pytest.fixture
def recorded(base_dir):
    """One completed session holding two entries."""
    manager = SessionManager(base_dir=base_dir)
    session = manager.create_session("cli-run")
    log = StructuredLogger("cli-run", log_path=session.log_file)
    log.log(LogLevel.INFO, LogCategory.EVENT, "HOST", "ONE")
    log.log(LogLevel.WARN, LogCategory.EVENT, "HOST", "TWO")
    log.close()
    session.entry_count = log.entry_count
    manager.complete_session(session)
    return session


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8765


class TestSessionsCommands:
    def test_list_empty(self, base_dir, capsys):
        assert run(["--base-dir", str(base_dir), "sessions", "list"]) == 0
        assert "No sessions" in capsys.readouterr().out

    def test_list_shows_session(self, base_dir, recorded, capsys):
        assert run(["--base-dir", str(base_dir), "sessions", "list"]) == 0
        out = capsys.readouterr().out
        assert "cli-run" in out
        assert "completed" in out
        assert "2 entries" in out

    def test_summary(self, base_dir, recorded, capsys):
        assert run(["--base-dir", str(base_dir), "sessions", "summary"]) == 0
        out = capsys.readouterr().out
        assert "Total:      1" in out
        assert "Completed:  1" in out

    def test_cleanup_nothing_to_remove(self, base_dir, recorded, capsys):
        assert run(["--base-dir", str(base_dir), "sessions", "cleanup"]) == 0
        assert "Nothing to remove" in capsys.readouterr().out

    def test_export_to_stdout(self, base_dir, recorded, capsys):
        assert run(["--base-dir", str(base_dir), "sessions", "export", "cli-run"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["session"]["session_id"] == "cli-run"
        assert [e["action"] for e in data["entries"]] == ["ONE", "TWO"]

    def test_export_to_file(self, base_dir, recorded, tmp_path, capsys):
        target = tmp_path / "export.json"
        assert run(["--base-dir", str(base_dir), "sessions", "export", "cli-run", "--output", str(target)]) == 0
        assert json.loads(target.read_text(encoding="utf-8"))["session"]["status"] == "completed"
        assert "Exported 2 entries" in capsys.readouterr().out

    def test_export_unknown_session_exits_1(self, base_dir, capsys):
        assert run(["--base-dir", str(base_dir), "sessions", "export", "missing"]) == 1
        assert "ERROR" in capsys.readouterr().err

    def test_export_unwritable_output_exits_4(self, base_dir, recorded, tmp_path):
        target = tmp_path / "no-such-dir" / "export.json"
        assert run(["--base-dir", str(base_dir), "sessions", "export", "cli-run", "--output", str(target)]) == 4

    def test_unusable_base_dir_exits_4(self, tmp_path, capsys):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        assert run(["--base-dir", str(blocker / "sessions"), "sessions", "list"]) == 4
        assert "Cannot use sessions directory" in capsys.readouterr().err
