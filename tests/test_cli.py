"""
Tests for the personaflow command line.
"""

import json
from pathlib import Path

import pytest

from personaflow.cli import main, parse_input_params

ROOT = Path(__file__).parent.parent
ECHO_AGENTS_FILE = str(ROOT / "config" / "agents" / "echo_agent.yaml")


@pytest.fixture
def cli(sample_marketplace_path, tmp_path):
    """Run the CLI against the sample marketplace."""
    def _run(*argv):
        return main([
            "--marketplace", str(sample_marketplace_path),
            "--config", str(tmp_path / "orchestrator.yaml"),
            *argv,
        ])
    return _run


class TestParseInputParams:
    """Tests for key=value input parsing."""

    def test_types(self):
        params = parse_input_params(["flag=true", "off=False", "n=3", "ratio=0.5", "name=shop", "eq=a=b"])
        assert params == {"flag": True, "off": False, "n": 3, "ratio": 0.5, "name": "shop", "eq": "a=b"}

    def test_invalid_entry_skipped(self, capsys):
        assert parse_input_params(["novalue"]) == {}
        assert "Invalid input format" in capsys.readouterr().out


class TestCatalogCommands:
    """Tests for listing personas, commands and workflows."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_personas(self, cli, capsys):
        assert cli("personas") == 0
        out = capsys.readouterr().out
        assert "Personas (5)" in out
        assert "security-auditor" in out

    def test_commands(self, cli, capsys):
        assert cli("commands") == 0
        assert "/full-feature <feature name>" in capsys.readouterr().out

    def test_workflows(self, cli, capsys):
        assert cli("workflows") == 0
        assert "full_feature v" in capsys.readouterr().out

    def test_plan(self, cli, capsys):
        assert cli("plan", "full_feature") == 0
        out = capsys.readouterr().out
        assert "Wave 3:" in out
        assert "implement_backend" in out
        assert cli("plan", "nope") == 1

    def test_validate(self, tmp_path, capsys):
        good = tmp_path / "good.yaml"
        good.write_text("name: ok\nstages:\n  - name: a\n    roles: [x]\n")
        bad = tmp_path / "bad.yaml"
        bad.write_text("name: broken\nstages:\n  - name: a\n    roles: [x]\n    depends_on: [ghost]\n")

        assert main(["validate", str(good)]) == 0
        assert "is valid" in capsys.readouterr().out
        assert main(["validate", str(bad)]) == 1
        assert "ghost" in capsys.readouterr().out
        assert main(["validate", str(tmp_path / "missing.yaml")]) == 1


class TestRunCommands:
    """Tests for running, resuming and listing runs."""

    def test_run(self, cli, capsys):
        code = cli("run", "full_feature", "--task", "Checkout flow", "--agents", ECHO_AGENTS_FILE)
        out = capsys.readouterr().out
        assert code == 0
        assert "Run completed" in out
        assert "database: PostgreSQL (backend-developer, domain_expert)" in out
        assert "Rate limit login endpoint" in out

    def test_run_json(self, cli, capsys):
        assert cli("run", "full_feature", "--task", "x", "--json") == 0
        out = capsys.readouterr().out
        document = json.loads(out[out.index("{"):])
        assert document["status"] == "completed"

    def test_run_unknown_workflow(self, cli, capsys):
        assert cli("run", "ghost", "--task", "x") == 1
        assert "Workflow not found" in capsys.readouterr().out

    def test_failed_run_then_resume(self, cli, tmp_path, capsys):
        db = str(tmp_path / "runs.db")
        failing = tmp_path / "failing.yaml"
        failing.write_text(
            "agents:\n"
            "  default:\n"
            "    type: echo\n"
            "    failures: {architect@requirements: 1}\n"
        )
        assert cli("run", "full_feature", "--task", "x", "--agents", str(failing), "--db", db) == 1
        assert "Run failed" in capsys.readouterr().out

        assert cli("runs", "--db", db, "--status", "failed") == 0
        out = capsys.readouterr().out
        assert "Runs (1)" in out
        run_id = out.strip().splitlines()[-1].split()[0]

        assert cli("resume", run_id, "--db", db) == 0
        assert "Run completed" in capsys.readouterr().out

    def test_resume_unknown_run(self, cli, tmp_path, capsys):
        assert cli("resume", "missing", "--db", str(tmp_path / "runs.db")) == 1
        assert "Run not found" in capsys.readouterr().out

    def test_invoke(self, cli, capsys):
        assert cli("invoke", "/security-review api.py auth") == 0
        assert "Review api.py for security issues. Focus: auth" in capsys.readouterr().out

    def test_invoke_and_run(self, cli, capsys):
        assert cli("invoke", "/full-feature checkout", "--run") == 0
        assert "Run completed" in capsys.readouterr().out

    def test_invoke_unknown(self, cli, capsys):
        assert cli("invoke", "/deploy") == 1
        assert "Unknown command: /deploy" in capsys.readouterr().out

    def test_invoke_unbound_command_runs(self, cli, capsys):
        """A command without workflow cannot run; the error is reported."""
        assert cli("invoke", "/security-review api.py", "--run") == 1
        assert "not bound to a workflow" in capsys.readouterr().out
