"""
CLI tests
"""
import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from clinic_automation.cli import cli


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    return CliRunner()


def test_init_then_validate(runner):
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["init"], obj={})
        assert result.exit_code == 0
        assert Path("workflows/follow_up.yaml").is_file()

        result = runner.invoke(cli, ["validate", "workflows/follow_up.yaml", "--org-id", "org-1"], obj={})

        assert result.exit_code == 0
        assert "OK: 'Post-treatment follow-up'" in result.output
        assert "4 steps" in result.output


def test_validate_reports_errors(runner):
    with runner.isolated_filesystem():
        Path("bad.json").write_text(json.dumps({
            "org_id": "org-1",
            "name": "Broken",
            "trigger": "manual",
            "steps": [{"id": "sms", "type": "send_sms", "config": {}, "next_step_id": "ghost"}]
        }))

        result = runner.invoke(cli, ["validate", "bad.json"], obj={})

        assert result.exit_code == 1
        assert "Invalid workflow" in result.output


def test_tick_prints_summary(runner):
    result = runner.invoke(cli, ["tick"], obj={})

    assert result.exit_code == 0
    assert '"enrollments_triggered": 0' in result.output
    assert '"errors": {}' in result.output
