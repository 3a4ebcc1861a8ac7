"""Tests de la CLI (check-rules / init-db) sobre SQLite."""

from unittest.mock import patch

import pytest

from automation_engine.cli import build_parser, main
from automation_engine.core.domain.rules import parse_rule
from automation_engine.core.domain.sensor import SensorOrigin


@pytest.fixture
def cli_engine(sqlite_engine):
    with patch("automation_engine.cli.get_engine", return_value=sqlite_engine):
        yield sqlite_engine


class TestCli:

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_init_db_is_idempotent(self, cli_engine, capsys):
        assert main(["init-db"]) == 0
        assert main(["init-db"]) == 0
        assert "Schema ready" in capsys.readouterr().out

    def test_check_rules_ok(self, cli_engine, sql_repository, capsys):
        sql_repository.upsert_sensor("s1", "Invernadero/S1/data", {}, origin=SensorOrigin.MANUAL)
        sql_repository.save_rule(
            parse_rule(
                {
                    "id": "r1",
                    "name": "Frío",
                    "conditions": [{"sensorId": "s1", "field": "temp", "operator": "<", "threshold": 5}],
                    "actions": [{"type": "NOTIFY"}],
                }
            )
        )

        assert main(["check-rules"]) == 0
        assert "All rules valid" in capsys.readouterr().out

    def test_check_rules_reports_problems(self, cli_engine, sql_repository, capsys):
        sql_repository.save_rule(
            parse_rule(
                {
                    "id": "r-ghost",
                    "name": "Fantasma",
                    "conditions": [{"sensorId": "ghost", "field": "ph", "operator": "<", "threshold": 5.5}],
                    "actions": [{"type": "DEVICE_CONTROL", "deviceId": "phantom", "command": "on"}],
                }
            )
        )

        assert main(["check-rules"]) == 1
        out = capsys.readouterr().out
        assert "rule r-ghost:" in out
        assert "unknown sensor 'ghost'" in out
        assert "unknown device 'phantom'" in out
