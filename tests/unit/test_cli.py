"""
Unit tests for the click command line interface.
"""

import json

import pytest
from click.testing import CliRunner

from copilot.cli.main import cli
from copilot.lib.config import ENV_OVERRIDES


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_args(tmp_path, monkeypatch):
    """Point the CLI at a fresh configuration file."""
    for name in list(ENV_OVERRIDES) + ["COPILOT_CONFIG_PATH"]:
        monkeypatch.delenv(name, raising=False)
    return ["--config", str(tmp_path / "config.yaml")]


class TestCommands:
    """Test CLI commands against the local stack."""

    def test_validate(self, runner, config_args):
        """Test validation of a freshly created default configuration."""
        result = runner.invoke(cli, config_args + ["validate"])

        assert result.exit_code == 0
        assert "Configuration validation completed successfully!" in result.output
        assert "Default autonomy mode: assisted" in result.output
        assert "No warnings found." in result.output

    def test_capabilities_manual(self, runner, config_args):
        """Test manual mode holds every catalogue tool."""
        result = runner.invoke(cli, config_args + ["capabilities", "manual"])

        assert result.exit_code == 0
        assert "Autonomy mode: manual" in result.output
        assert "ALLOW (0):" in result.output
        assert "HOLD (23):" in result.output

    def test_capabilities_json(self, runner, config_args):
        """Test structured output."""
        result = runner.invoke(cli, config_args + ["capabilities", "full_auto", "-f", "json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert sorted(data["tools"]["deny"]) == ["artefact_revert", "jira_create_issue", "outlook_send_email"]

    def test_unknown_autonomy_mode(self, runner, config_args):
        """Test click rejects unknown autonomy modes."""
        result = runner.invoke(cli, config_args + ["capabilities", "yolo"])

        assert result.exit_code == 2

    def test_invoke_quick_query(self, runner, config_args):
        """Test a short message runs as a quick query."""
        result = runner.invoke(cli, config_args + ["invoke", "hi there"])

        assert result.exit_code == 0
        assert "Mode: quick_query" in result.output
        assert "Personas: operator" in result.output

    def test_invoke_blank_message(self, runner, config_args):
        """Test malformed requests exit with a usage-style code."""
        result = runner.invoke(cli, config_args + ["invoke", "   "])

        assert result.exit_code == 2
        assert "Invalid request" in result.output

    def test_health(self, runner, config_args):
        """Test the health command reports every collaborator."""
        result = runner.invoke(cli, config_args + ["health"])

        assert result.exit_code == 0
        assert "Status: healthy" in result.output
        assert "reasoning: ok" in result.output
