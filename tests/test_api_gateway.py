"""
Tests for the Workspace and the HTTP API gateway.
"""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from personaflow.api_gateway import APIGateway, create_app
from personaflow.marketplace.models import CommandInvocation
from personaflow.workflow.models import RunStatus, StageStatus
from personaflow.workspace import Workspace

ROOT = Path(__file__).parent.parent
ECHO_AGENTS_FILE = str(ROOT / "config" / "agents" / "echo_agent.yaml")


@pytest.fixture
def workspace(sample_marketplace_path, tmp_path):
    workspace = Workspace(
        marketplace=str(sample_marketplace_path),
        agents_file=ECHO_AGENTS_FILE,
        db_path=":memory:",
        orchestrator_config=str(tmp_path / "orchestrator.yaml"),
    )
    yield workspace
    workspace.close()


@pytest.fixture
def client(workspace, tmp_path):
    gateway = APIGateway(config_path=str(tmp_path / "api_gateway.yaml"), workspace=workspace)
    return TestClient(create_app(gateway))


# =============================================================================
# Workspace
# =============================================================================

class TestWorkspace:
    """Tests for the marketplace-backed workspace."""

    def test_registries_filled(self, workspace):
        assert len(workspace.personas) == 5
        assert workspace.commands.get("full-feature").workflow == "full_feature"
        assert workspace.workflow_names() == ["full_feature"]

    def test_get_workflow_by_path(self, workspace, tmp_path):
        path = tmp_path / "solo.yaml"
        path.write_text("name: solo\nstages:\n  - name: only\n    roles: [dev]\n")
        assert workspace.get_workflow(str(path)).name == "solo"
        assert workspace.get_workflow("unknown") is None

    def test_sample_workflow_runs(self, workspace):
        """The sample workflow completes with the scripted echo agents."""
        definition = workspace.get_workflow("full_feature")
        run = workspace.run_workflow(definition, task="Checkout flow")
        context = workspace.orchestrator.get_context(run.id)

        assert run.status == RunStatus.COMPLETED
        assert all(r.status == StageStatus.COMPLETED for r in run.stage_results.values())
        assert context.get_decision("database").choice == "PostgreSQL"
        assert context.get_decision("auth").choice == "OAuth2 with PKCE"
        assert context.get_artifact("api-contract").produced_by == "architect"
        assert [i.title for i in context.open_issues()] == ["Rate limit login endpoint"]
        assert workspace.store.get_run(run.id).status == RunStatus.COMPLETED

    def test_run_invocation(self, workspace):
        invocation = workspace.commands.invoke('/full-feature "Checkout flow"')
        run = workspace.run_invocation(invocation)
        assert run.task["title"] == "Checkout flow"
        assert run.task["arguments"] == ["Checkout flow"]
        assert 'Build the feature "Checkout flow"' in run.task["description"]

    def test_invocation_without_workflow(self, workspace):
        invocation = workspace.commands.invoke("/security-review api.py")
        with pytest.raises(ValueError):
            workspace.run_invocation(invocation)

    def test_invocation_with_unknown_workflow(self, workspace):
        with pytest.raises(ValueError):
            workspace.run_invocation(CommandInvocation(command="ghost", workflow="missing"))

    def test_empty_workspace(self, tmp_path):
        workspace = Workspace(orchestrator_config=str(tmp_path / "none.yaml"))
        try:
            assert workspace.workflow_names() == []
            assert workspace.store is None
        finally:
            workspace.close()


# =============================================================================
# HTTP API
# =============================================================================

class TestCatalogEndpoints:
    """Tests for personas, commands and workflows."""

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["endpoints"]["runs"] == "/runs"

    def test_personas(self, client):
        names = [p["name"] for p in client.get("/personas").json()]
        assert names == sorted(names)
        assert "security-auditor" in names

    def test_get_persona(self, client):
        persona = client.get("/personas/backend-developer").json()
        assert "database" in persona["expertise"]
        assert persona["plugin"] == "feature-team"
        assert client.get("/personas/nobody").status_code == 404

    def test_commands(self, client):
        commands = {c["name"]: c for c in client.get("/commands").json()}
        assert commands["full-feature"]["workflow"] == "full_feature"
        assert commands["security-review"]["argument_hint"] == "<component> [focus]"

    def test_invoke_command(self, client):
        response = client.post("/commands/invoke", json={"line": "/security-review api.py auth"})
        assert response.status_code == 200
        body = response.json()
        assert body["invocation"]["prompt"] == "Review api.py for security issues. Focus: auth"
        assert body["run"] is None

    def test_invoke_and_run(self, client):
        response = client.post("/commands/invoke", json={"line": "/full-feature checkout", "run": True})
        assert response.status_code == 200
        assert response.json()["run"]["status"] == "completed"

    def test_invoke_errors(self, client):
        assert client.post("/commands/invoke", json={"line": "/deploy"}).status_code == 404
        assert client.post("/commands/invoke", json={"line": '/full-feature "open'}).status_code == 400
        unbound = client.post("/commands/invoke", json={"line": "/security-review x", "run": True})
        assert unbound.status_code == 400

    def test_workflows(self, client):
        workflows = client.get("/workflows").json()
        assert workflows[0]["name"] == "full_feature"
        assert workflows[0]["stages"][0] == "requirements"

    def test_plan(self, client):
        plan = client.get("/workflows/full_feature/plan").json()
        assert plan["waves"][2] == ["implement_backend", "implement_frontend"]
        assert client.get("/workflows/nope/plan").status_code == 404


class TestRunEndpoints:
    """Tests for starting and inspecting runs."""

    def test_create_and_get_run(self, client):
        response = client.post("/runs", json={
            "workflow": "full_feature",
            "task": "Checkout flow",
            "inputs": {"language": "python"},
        })
        assert response.status_code == 200
        summary = response.json()
        assert summary["status"] == "completed"
        assert summary["stages"]["review"] == "completed"

        run = client.get(f"/runs/{summary['run_id']}").json()
        assert run["inputs"] == {"language": "python"}
        assert run["context"]["decisions"]

    def test_create_run_validation(self, client):
        assert client.post("/runs", json={"workflow": "full_feature", "task": ""}).status_code == 422
        assert client.post("/runs", json={"workflow": "ghost", "task": "x"}).status_code == 404

    def test_list_runs(self, client):
        client.post("/runs", json={"workflow": "full_feature", "task": "one"})
        runs = client.get("/runs").json()
        assert [r["task"] for r in runs] == ["one"]
        assert client.get("/runs", params={"status": "failed"}).json() == []
        assert client.get("/runs", params={"status": "weird"}).status_code == 400

    def test_get_missing_run(self, client):
        assert client.get("/runs/unknown").status_code == 404

    def test_status(self, client):
        client.post("/runs", json={"workflow": "full_feature", "task": "one"})
        status = client.get("/status").json()
        assert status["status"] == "healthy"
        assert status["marketplace"]["personas"] == 5
        assert status["orchestrator"]["runs"]["completed"] == 1
        assert status["storage"]["total_runs"] == 1
