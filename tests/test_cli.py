"""Tests for the command-line interface."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from tmbackup.backup import BackupResult
from tmbackup.cli import create_parser, main
from tmbackup.config import parse_config


pytestmark = pytest.mark.usefixtures("reset_tmbackup_logger")


@pytest.fixture
def write_config(tmp_path):
    def _write(destination: Path) -> Path:
        path = tmp_path / "config.toml"
        path.write_text(f'''
[main]
source = "{tmp_path / 'source'}"
destination = "{destination}"

[logging]
log_file = "{tmp_path / 'logs' / 'tmbackup.log'}"
error_log_file = "{tmp_path / 'logs' / 'tmbackup.err'}"

[profile]
folder = "{tmp_path / 'profile'}"
''')
        return path
    return _write


class TestParser:
    """Tests for argument parsing."""

    def test_run_positional(self):
        args = create_parser().parse_args(["run", "/src", "/dst", "/excl"])
        assert (args.source, args.destination, args.exclusion_file) == ("/src", "/dst", "/excl")

    def test_global_options(self):
        args = create_parser().parse_args(["-v", "--config", "/c.toml", "prune", "--dry-run"])
        assert args.verbose
        assert args.config == Path("/c.toml")
        assert args.dry_run

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])
        assert excinfo.value.code == 0
        assert "tmbackup 0.1.0" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out


class TestInit:
    """Tests for 'init'."""

    def test_creates_config(self, tmp_path):
        path = tmp_path / "cfg" / "config.toml"

        assert main(["--config", str(path), "init"]) == 0
        assert parse_config(path).transfer.auto_expire is True

    def test_refuses_to_overwrite(self, tmp_path, capsys):
        path = tmp_path / "config.toml"
        path.write_text("keep")

        assert main(["--config", str(path), "init"]) == 1
        assert path.read_text() == "keep"
        assert "--force" in capsys.readouterr().err

    def test_force(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("old")

        assert main(["--config", str(path), "init", "--force"]) == 0
        assert "[main]" in path.read_text()


class TestRun:
    """Tests for 'run'."""

    def test_positional_arguments_without_config(self, tmp_path):
        with patch("tmbackup.cli.run_backup", return_value=BackupResult(True, 0)) as run:
            code = main(["--config", str(tmp_path / "none.toml"), "run", "/src", "/dst"])

        assert code == 0
        config = run.call_args.kwargs["config"]
        assert config.source == "/src"
        assert config.destination == "/dst"
        assert config.exclusion_file is None

    def test_positional_arguments_override_config(self, tmp_path, write_config):
        config_path = write_config(tmp_path / "dest")

        with patch("tmbackup.cli.run_backup", return_value=BackupResult(True, 0)) as run:
            main(["--config", str(config_path), "run", "/src", "/dst", "/excl"])

        config = run.call_args.kwargs["config"]
        assert config.destination == "/dst"
        assert config.exclusion_file == Path("/excl")
        assert config.profile.folder == tmp_path / "profile"

    def test_source_without_destination(self, capsys):
        assert main(["run", "/src"]) == 1
        assert "Usage" in capsys.readouterr().err

    def test_exit_code_from_result(self, tmp_path, write_config, capsys):
        config_path = write_config(tmp_path / "dest")
        failed = BackupResult(False, 3, error_message="Safety check failed")

        with patch("tmbackup.cli.run_backup", return_value=failed):
            assert main(["--config", str(config_path), "run"]) == 3

        assert "Safety check failed" in capsys.readouterr().err

    def test_missing_config(self, tmp_path):
        assert main(["--config", str(tmp_path / "none.toml"), "run"]) == 1


class TestInspectionCommands:
    """Tests for 'list', 'status' and 'mark'."""

    def test_list(self, make_destination, write_config, capsys):
        root = make_destination(snapshots=["2022-04-19-202210", "2022-10-25-213541"])

        assert main(["--config", str(write_config(root)), "list"]) == 0

        out = capsys.readouterr().out.splitlines()
        assert out[0] == f"{root}/2022-10-25-213541"
        assert out[1] == f"{root}/2022-04-19-202210"
        assert "Total: 2 snapshot(s)" in out

    def test_list_json(self, make_destination, write_config, capsys):
        root = make_destination(snapshots=["2022-04-19-202210"])

        assert main(["--config", str(write_config(root)), "list", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data == [{
            "name": "2022-04-19-202210",
            "timestamp": "2022-04-19T20:22:10",
            "path": f"{root}/2022-04-19-202210",
        }]

    def test_list_empty(self, make_destination, write_config, capsys):
        root = make_destination()
        assert main(["--config", str(write_config(root)), "list"]) == 0
        assert "No snapshots found." in capsys.readouterr().out

    def test_status_does_not_mutate(self, make_destination, write_config, capsys):
        root = make_destination(
            snapshots=["2022-04-19-202210", "2022-10-25-213541"],
            latest="2022-04-19-202210",
            in_progress=True,
        )

        assert main(["--config", str(write_config(root)), "status"]) == 0

        out = capsys.readouterr().out
        assert "Last backup: 2022-10-25-213541" in out
        assert f"Latest: {root}/2022-04-19-202210" in out
        assert "Total snapshots: 2" in out
        assert "interrupted" in out
        assert (root / "2022-10-25-213541").is_dir()
        assert (root / "backup.inprogress").exists()

    def test_status_escaping_latest(self, make_destination, write_config):
        root = make_destination(snapshots=["2022-04-19-202210"], latest="../x")
        assert main(["--config", str(write_config(root)), "status"]) == 4

    def test_mark(self, tmp_path, write_config):
        root = tmp_path / "new-drive"

        assert main(["--config", str(write_config(root)), "mark"]) == 0
        assert (root / "backup.marker").is_file()


class TestPrune:
    """Tests for 'prune'."""

    def test_dry_run(self, make_destination, write_config, capsys):
        root = make_destination(snapshots=["2020-01-20-000000", "2020-01-10-000000"])

        assert main(["--config", str(write_config(root)), "prune", "--dry-run"]) == 0

        assert f"Would expire: {root}/2020-01-10-000000" in capsys.readouterr().out
        assert (root / "2020-01-10-000000").is_dir()

    def test_prune(self, make_destination, write_config, tmp_path):
        root = make_destination(snapshots=["2020-01-20-000000", "2020-01-10-000000"])

        assert main(["--config", str(write_config(root)), "prune"]) == 0

        assert not (root / "2020-01-10-000000").exists()
        assert (root / "2020-01-20-000000").is_dir()
        assert not (tmp_path / "profile" / "tmbackup.pid").exists()

    def test_unmarked_destination(self, make_destination, write_config, capsys):
        root = make_destination(marker=False, snapshots=["2020-01-20-000000"])

        assert main(["--config", str(write_config(root)), "prune"]) == 3
        assert "backup.marker" in capsys.readouterr().err
