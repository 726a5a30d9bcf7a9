"""Tests for the command line interface."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from autobooks.cli import main


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep CLI invocations from reconfiguring structlog for the whole session."""
    with patch("autobooks.cli.configure_logging"):
        yield


@pytest.fixture
def runner():
    return CliRunner()


class TestWorkflowsCommand:
    def test_lists_default_workflows(self, runner):
        result = runner.invoke(main, ["workflows"])

        assert result.exit_code == 0
        assert "monthly_invoicing" in result.output
        assert "overdue_collection" in result.output

    def test_includes_workflow_file(self, runner, tmp_path):
        path = tmp_path / "extra.yaml"
        path.write_text(
            "workflows:\n  - id: nightly_sync\n    name: Nightly Sync\n    steps:\n"
            "      - {id: a, agent_id: x, action: go}\n"
        )

        result = runner.invoke(main, ["workflows", "--file", str(path)])

        assert result.exit_code == 0
        assert "nightly_sync" in result.output

    def test_invalid_workflow_file(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("workflows: 3\n")

        result = runner.invoke(main, ["workflows", "--file", str(path)])

        assert result.exit_code == 1
        assert "Error" in result.output


class TestClassifyCommand:
    def test_month_end_plan(self, runner):
        result = runner.invoke(main, ["classify", "Run the month-end close"])

        assert result.exit_code == 0
        assert "month_end_close" in result.output
        assert "quickbooks_agent" in result.output
        assert "reconcile_accounts" in result.output

    def test_unrecognized_prompt(self, runner):
        result = runner.invoke(main, ["classify", "hello there"])

        assert result.exit_code == 1
        assert "Could not understand the request" in result.output


class TestValidateWorkflowsCommand:
    def test_valid_file(self, runner, tmp_path):
        path = tmp_path / "ok.yaml"
        path.write_text(
            "- id: one\n  name: One\n  steps:\n"
            "    - {id: a, agent_id: x, action: go}\n"
            "    - {id: b, agent_id: y, action: go, input_from: a}\n"
        )

        result = runner.invoke(main, ["validate-workflows", str(path)])

        assert result.exit_code == 0
        assert "1 workflow(s) valid" in result.output

    def test_invalid_reference(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(
            "- id: one\n  name: One\n  steps:\n"
            "    - {id: a, agent_id: x, action: go, on_success: ghost}\n"
        )

        result = runner.invoke(main, ["validate-workflows", str(path)])

        assert result.exit_code == 1
        assert "ghost" in result.output
