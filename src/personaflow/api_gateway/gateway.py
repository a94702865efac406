"""
API Gateway: HTTP interface for personaflow.

Provides REST API endpoints for:
- GET /personas, /personas/{name}: persona catalog
- GET /commands, POST /commands/invoke: slash commands
- GET /workflows, /workflows/{name}/plan: workflows and their stage waves
- POST /runs, GET /runs, GET /runs/{run_id}: workflow runs
- GET /status: system status
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from personaflow.config import config_dir, default_marketplace, load_section
from personaflow.exceptions import CommandNotFoundError
from personaflow.workflow.graph import WorkflowGraph
from personaflow.workflow.models import RunStatus, WorkflowRun
from personaflow.workspace import Workspace

logger = logging.getLogger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================

class RunRequest(BaseModel):
    """Request to start a workflow run."""
    workflow: str = Field(..., description="Workflow name")
    task: str = Field(..., min_length=1, description="Task title")
    description: str = Field(default="", description="Task description")
    project: Optional[Dict[str, Any]] = Field(default=None, description="Project info")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Run inputs")


class InvokeRequest(BaseModel):
    """Request to invoke a slash command."""
    line: str = Field(..., description="Command line, e.g. '/full-feature checkout'")
    run: bool = Field(default=False, description="Also run the bound workflow")
    project: Optional[Dict[str, Any]] = None


class RunSummary(BaseModel):
    """Short view of a run."""
    run_id: str
    workflow: str
    status: str
    task: str
    created_at: str
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    stages: Dict[str, str]


class StatusResponse(BaseModel):
    """System status response."""
    status: str
    marketplace: Dict[str, Any]
    orchestrator: Dict[str, Any]
    storage: Optional[Dict[str, Any]] = None


def summarize_run(run: WorkflowRun) -> RunSummary:
    return RunSummary(
        run_id=run.id,
        workflow=run.workflow_name,
        status=run.status.value,
        task=run.task.get("title", ""),
        created_at=run.created_at.isoformat(),
        duration_seconds=run.duration_seconds(),
        error=run.error,
        stages={name: r.status.value for name, r in run.stage_results.items()},
    )


# =============================================================================
# API Gateway Class
# =============================================================================

class APIGateway:
    """
    API Gateway for personaflow.

    Manages HTTP requests and delegates to the Workspace (marketplace,
    registries and orchestrator).
    """

    DEFAULTS = {
        "host": "0.0.0.0",
        "port": 8000,
        "marketplace": None,
        "agents_file": None,
        "db_path": ".data/runs.db",
    }

    def __init__(self, config_path: Optional[str] = None, workspace: Optional[Workspace] = None):
        """Initialize API Gateway."""
        if config_path is None:
            config_path = str(config_dir() / "api_gateway.yaml")
        self.config = load_section(config_path, "api_gateway", self.DEFAULTS)

        if workspace is None:
            workspace = Workspace(
                marketplace=self.config["marketplace"] or default_marketplace(),
                agents_file=self.config["agents_file"],
                db_path=self.config["db_path"],
            )
        self.workspace = workspace

        logger.info(
            f"APIGateway initialized: marketplace={self.workspace.marketplace.name}, "
            f"{len(self.workspace.personas)} personas, {len(self.workspace.commands)} commands"
        )

    # =========================================================================
    # Catalog
    # =========================================================================

    def list_personas(self) -> List[dict]:
        return [p.summary() for p in self.workspace.personas.all()]

    def get_persona(self, name: str) -> dict:
        persona = self.workspace.personas.get(name)
        if persona is None:
            raise HTTPException(status_code=404, detail=f"Persona not found: {name}")
        return persona.model_dump(mode="json")

    def list_commands(self) -> List[dict]:
        return [c.summary() for c in self.workspace.commands.all()]

    def invoke_command(self, request: InvokeRequest) -> dict:
        try:
            invocation = self.workspace.commands.invoke(request.line)
        except CommandNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        response = {"invocation": invocation.model_dump(mode="json"), "run": None}
        if request.run:
            try:
                run = self.workspace.run_invocation(invocation, project=request.project)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            response["run"] = summarize_run(run).model_dump()
        return response

    def list_workflows(self) -> List[dict]:
        result = []
        for name in self.workspace.workflow_names():
            definition = self.workspace.marketplace.get_workflow(name)
            result.append({
                "name": definition.name,
                "version": definition.version,
                "description": definition.description,
                "command": definition.command,
                "stages": definition.stage_names(),
                "roles": definition.roles(),
            })
        return result

    def plan_workflow(self, name: str) -> dict:
        definition = self.workspace.marketplace.get_workflow(name)
        if definition is None:
            raise HTTPException(status_code=404, detail=f"Workflow not found: {name}")
        graph = WorkflowGraph(definition)
        return {"workflow": definition.name, "waves": graph.waves(), "stages": graph.describe()}

    # =========================================================================
    # Runs
    # =========================================================================

    def create_run(self, request: RunRequest) -> RunSummary:
        definition = self.workspace.marketplace.get_workflow(request.workflow)
        if definition is None:
            raise HTTPException(status_code=404, detail=f"Workflow not found: {request.workflow}")

        run = self.workspace.run_workflow(
            definition,
            task={"title": request.task, "description": request.description},
            project=request.project,
            inputs=request.inputs,
        )
        return summarize_run(run)

    def list_runs(self, status: Optional[str] = None) -> List[RunSummary]:
        try:
            wanted = RunStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown run status: {status}")
        return [summarize_run(r) for r in self.workspace.orchestrator.list_runs(wanted)]

    def get_run(self, run_id: str) -> dict:
        run = self.workspace.orchestrator.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
        return run.model_dump(mode="json")

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> StatusResponse:
        store = self.workspace.store
        return StatusResponse(
            status="healthy",
            marketplace=self.workspace.marketplace.get_stats(),
            orchestrator=self.workspace.orchestrator.get_stats(),
            storage=store.get_stats() if store is not None else None,
        )


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(gateway: Optional[APIGateway] = None) -> FastAPI:
    """Create FastAPI application."""

    if gateway is None:
        gateway = APIGateway()

    app = FastAPI(
        title="personaflow API",
        description="HTTP API for persona workflows",
        version="1.0.0",
    )

    app.state.gateway = gateway

    # ==========================================================================
    # Routes
    # ==========================================================================

    @app.get("/")
    def root():
        """API root."""
        return {
            "name": "personaflow API",
            "version": "1.0.0",
            "endpoints": {
                "personas": "/personas",
                "commands": "/commands",
                "workflows": "/workflows",
                "runs": "/runs",
                "status": "/status",
            },
        }

    @app.get("/status", response_model=StatusResponse)
    def get_status():
        return gateway.get_status()

    @app.get("/personas")
    def list_personas():
        return gateway.list_personas()

    @app.get("/personas/{name}")
    def get_persona(name: str):
        return gateway.get_persona(name)

    @app.get("/commands")
    def list_commands():
        return gateway.list_commands()

    @app.post("/commands/invoke")
    def invoke_command(request: InvokeRequest):
        """Parse a slash command and optionally run its workflow."""
        return gateway.invoke_command(request)

    @app.get("/workflows")
    def list_workflows():
        return gateway.list_workflows()

    @app.get("/workflows/{name}/plan")
    def plan_workflow(name: str):
        return gateway.plan_workflow(name)

    # Runs execute synchronously, so these are plain defs (run in FastAPI's threadpool)
    @app.post("/runs", response_model=RunSummary)
    def create_run(request: RunRequest):
        return gateway.create_run(request)

    @app.get("/runs", response_model=List[RunSummary])
    def list_runs(status: Optional[str] = None):
        return gateway.list_runs(status)

    @app.get("/runs/{run_id}")
    def get_run(run_id: str):
        return gateway.get_run(run_id)

    return app


# =============================================================================
# Main Entry Point
# =============================================================================

def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )

    gateway = APIGateway()
    uvicorn.run(create_app(gateway), host=gateway.config["host"], port=gateway.config["port"])


if __name__ == "__main__":
    main()
