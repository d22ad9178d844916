"""Tests for the command line interface."""

import json

import pytest

from automation_engine.startup import create_argument_parser, load_configuration, main
from automation_engine.storage.database import reset_database_engine


@pytest.fixture
def cli_database(tmp_path):
    reset_database_engine()
    yield f"sqlite:///{tmp_path / 'cli.db'}"
    reset_database_engine()


class TestCli:

    def test_overrides_are_applied(self):
        args = create_argument_parser().parse_args(
            ["--env", "testing", "--port", "9100", "--max-steps", "50", "config", "show"]
        )

        config = load_configuration(args)

        assert config.port == 9100
        assert config.max_steps_per_run == 50
        assert config.database_url == "sqlite:///:memory:"

    def test_config_show_redacts_secret(self, capsys, monkeypatch):
        monkeypatch.setenv("AUTOMATION_ENGINE_CRON_SECRET", "hunter2")

        main(["config", "show"])

        output = capsys.readouterr().out
        assert "cron_secret: ***" in output
        assert "hunter2" not in output

    def test_config_validate(self, capsys):
        main(["--env", "testing", "config", "validate"])

        assert "PASSED" in capsys.readouterr().out

    def test_scheduler_tick_prints_report(self, capsys, cli_database):
        main(["--env", "testing", "--log-level", "ERROR", "--database-url", cli_database, "scheduler", "tick"])

        report = json.loads(capsys.readouterr().out)
        assert report["processed"] == 0
        assert report["errors"] == []

    def test_db_init(self, cli_database):
        main(["--env", "testing", "--database-url", cli_database, "db", "init"])

    def test_missing_subcommand_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["--env", "testing", "db"])

        assert exc_info.value.code == 1
