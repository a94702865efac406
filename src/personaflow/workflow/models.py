"""
Pydantic models for workflow definitions and workflow runs.

A workflow is a named list of stages. Each stage names the roles that take
part in it, the stages it depends on and whether its roles fan out in
parallel. Philosophy: "Dumb Definition, Smart Orchestrator" - the
definition says WHAT, the orchestrator decides HOW.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from personaflow.exceptions import WorkflowValidationError


# =============================================================================
# Enums
# =============================================================================

class RunStatus(str, Enum):
    """Status of a workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """Status of a stage inside a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RoleStateKind(str, Enum):
    """What a role is doing right now."""
    IDLE = "idle"
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"


CONFLICT_STRATEGIES = ("security_first", "domain_expert", "consensus")

# Same limit as TaskData.role on the bus
MAX_ROLE_NAME = 100


# =============================================================================
# Policies
# =============================================================================

class RetryPolicy(BaseModel):
    """Retry policy for the roles of a stage."""
    max_attempts: int = Field(default=1, ge=1, le=10, description="Attempts per role")
    delay_seconds: float = Field(default=0.0, ge=0, description="Delay between attempts")
    on_failure: str = Field(default="abort", description="abort or continue")

    @field_validator("on_failure")
    @classmethod
    def validate_on_failure(cls, v):
        allowed = {"abort", "continue"}
        if v not in allowed:
            raise ValueError(f"on_failure must be one of {sorted(allowed)}")
        return v


class ConflictPolicySpec(BaseModel):
    """How disagreements between roles are settled."""
    strategies: List[str] = Field(
        default_factory=lambda: ["security_first", "domain_expert", "consensus"],
        description="Strategies tried in order",
    )
    domain_experts: Dict[str, str] = Field(
        default_factory=dict,
        description="Topic -> role that has the final word",
    )
    security_roles: List[str] = Field(default_factory=list)
    on_unresolved: str = Field(default="escalate", description="escalate or highest_confidence")

    @field_validator("strategies")
    @classmethod
    def validate_strategies(cls, v):
        unknown = [s for s in v if s not in CONFLICT_STRATEGIES]
        if unknown:
            raise ValueError(f"Unknown conflict strategies: {unknown}")
        return v

    @field_validator("on_unresolved")
    @classmethod
    def validate_on_unresolved(cls, v):
        if v not in ("escalate", "highest_confidence"):
            raise ValueError("on_unresolved must be 'escalate' or 'highest_confidence'")
        return v


# =============================================================================
# Stage / Workflow Definition
# =============================================================================

class StageSpec(BaseModel):
    """
    One stage of a workflow.

    depends_on semantics:
        None (omitted) - depends on the stage declared right before it
        []             - root stage, no dependencies
        [a, b]         - explicit dependencies
    """
    name: str = Field(..., min_length=1, max_length=64, description="Stage name (unique)")
    roles: List[str] = Field(..., min_length=1, description="Participating roles")
    action: Optional[str] = Field(
        None, min_length=1, max_length=100, description="Action sent to roles (defaults to name)"
    )
    description: str = Field(default="")
    depends_on: Optional[List[str]] = Field(None, description="Stage dependencies")
    parallel: bool = Field(default=False, description="Fan roles out concurrently")
    timeout_seconds: int = Field(default=300, ge=1, le=3600, description="Per-role timeout")
    retry: Optional[RetryPolicy] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("roles")
    @classmethod
    def validate_unique_roles(cls, roles):
        if len(roles) != len(set(roles)):
            raise ValueError("Roles within a stage must be unique")
        if any(not r.strip() for r in roles):
            raise ValueError("Role names must not be empty")
        if any(len(r) > MAX_ROLE_NAME for r in roles):
            raise ValueError(f"Role names must be at most {MAX_ROLE_NAME} characters")
        return roles

    def get_action(self) -> str:
        return self.action or self.name

    def get_retry(self) -> RetryPolicy:
        return self.retry or RetryPolicy()


class WorkflowDefinition(BaseModel):
    """Complete workflow definition loaded from YAML."""
    name: str = Field(..., min_length=1, max_length=100)
    version: str = Field(default="1.0")
    description: str = Field(default="")
    command: Optional[str] = Field(None, description="Slash-command bound to this workflow")
    stages: List[StageSpec] = Field(..., min_length=1)
    conflict_policy: ConflictPolicySpec = Field(default_factory=ConflictPolicySpec)

    @field_validator("stages")
    @classmethod
    def validate_unique_stage_names(cls, stages):
        names = [stage.name for stage in stages]
        if len(names) != len(set(names)):
            raise ValueError("Stage names must be unique")
        return stages

    @model_validator(mode="before")
    @classmethod
    def unwrap_workflow_key(cls, data):
        # Accept {"workflow": {...}} as well as the bare mapping
        if isinstance(data, dict) and set(data.keys()) == {"workflow"}:
            return data["workflow"]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """Parse and validate a workflow, including stage references."""
        try:
            definition = cls.model_validate(data)
        except ValidationError as e:
            raise WorkflowValidationError(f"Invalid workflow: {e}") from e
        errors = definition.validate_references()
        if errors:
            raise WorkflowValidationError(
                f"Invalid workflow '{definition.name}': {'; '.join(errors)}", errors
            )

        # Building the graph rejects dependency cycles
        from personaflow.workflow.graph import WorkflowGraph
        WorkflowGraph(definition)
        return definition

    @classmethod
    def from_yaml(cls, path: str) -> "WorkflowDefinition":
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except UnicodeDecodeError as e:
                raise WorkflowValidationError(f"Workflow file {path} is not valid UTF-8: {e}") from e
            except yaml.YAMLError as e:
                raise WorkflowValidationError(f"Workflow file {path} is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise WorkflowValidationError(f"Workflow file {path} is not a mapping")
        return cls.from_dict(data)

    def get_stage(self, name: str) -> Optional[StageSpec]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def roles(self) -> List[str]:
        """All roles in order of first appearance."""
        seen: List[str] = []
        for stage in self.stages:
            for role in stage.roles:
                if role not in seen:
                    seen.append(role)
        return seen

    def resolved_dependencies(self, stage_name: str) -> List[str]:
        """Dependencies of a stage with the implicit 'previous stage' rule applied."""
        names = self.stage_names()
        index = names.index(stage_name)
        stage = self.stages[index]
        if stage.depends_on is not None:
            return list(stage.depends_on)
        return [names[index - 1]] if index > 0 else []

    def validate_references(self) -> List[str]:
        """
        Validate that every dependency points to an existing, different stage.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        names = set(self.stage_names())
        for stage in self.stages:
            for dep in stage.depends_on or []:
                if dep == stage.name:
                    errors.append(f"Stage '{stage.name}' depends on itself")
                elif dep not in names:
                    errors.append(f"Stage '{stage.name}': depends_on references non-existent stage '{dep}'")
        return errors


# =============================================================================
# Run state
# =============================================================================

class RoleState(BaseModel):
    """Runtime state of one role inside a run."""
    role: str
    state: RoleStateKind = RoleStateKind.IDLE
    current_stage: Optional[str] = None
    tasks_completed: int = 0
    last_error: Optional[str] = None


class StageResult(BaseModel):
    """Result of one stage."""
    stage: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict, description="role -> output")
    role_errors: Dict[str, str] = Field(default_factory=dict, description="role -> error")
    decisions: List[str] = Field(default_factory=list, description="Decision IDs recorded")
    escalations: List[str] = Field(default_factory=list, description="Issue IDs raised for conflicts")
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class WorkflowRun(BaseModel):
    """
    Runtime instance of a workflow.

    Created when a WorkflowDefinition is started.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_name: str
    workflow_version: str = "1.0"
    status: RunStatus = RunStatus.PENDING

    task: Dict[str, Any] = Field(default_factory=dict)
    project: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Run inputs merged into stage params")

    stage_results: Dict[str, StageResult] = Field(default_factory=dict)
    role_states: Dict[str, RoleState] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict, description="SharedContext snapshot")
    messages: List[Dict[str, Any]] = Field(default_factory=list, description="Routed role messages")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def get_stage_result(self, stage: str) -> StageResult:
        if stage not in self.stage_results:
            self.stage_results[stage] = StageResult(stage=stage)
        return self.stage_results[stage]

    def stages_with_status(self, status: StageStatus) -> List[str]:
        return [name for name, r in self.stage_results.items() if r.status == status]

    def is_finished(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None
