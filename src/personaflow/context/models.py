"""
Pydantic models for the shared context and for role outputs.

The shared context is the record every role can see: project metadata, the
current task's requirements, decisions made, produced artifacts and open
issues. Role outputs are what a role hands back after a task; the
orchestrator merges them into the context.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["low", "medium", "high", "critical"]


# =============================================================================
# Context records
# =============================================================================

class ProjectInfo(BaseModel):
    """Project metadata."""
    name: str = ""
    description: str = ""
    tech_stack: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskRequirements(BaseModel):
    """Requirements of the task currently being worked on."""
    title: str = ""
    description: str = ""
    requirements: List[str] = Field(default_factory=list)
    acceptance_criteria: List[str] = Field(default_factory=list)
    arguments: List[str] = Field(default_factory=list, description="Slash-command arguments")


class Decision(BaseModel):
    """A decision recorded in the context."""
    id: str
    topic: str
    choice: str
    rationale: str = ""
    made_by: List[str] = Field(default_factory=list)
    stage: Optional[str] = None
    resolved_via: str = "single"
    alternatives: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Artifact(BaseModel):
    """A produced artifact. Same name means a newer version."""
    name: str
    kind: str = "document"
    content: Any = None
    produced_by: str
    stage: Optional[str] = None
    version: int = Field(default=1, ge=1)
    supersedes: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Issue(BaseModel):
    """An issue raised during the workflow."""
    id: str
    title: str
    description: str = ""
    severity: Severity = "medium"
    raised_by: str
    stage: Optional[str] = None
    status: Literal["open", "resolved"] = "open"
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ContextSnapshot(BaseModel):
    """Serialisable state of a SharedContext."""
    project: ProjectInfo = Field(default_factory=ProjectInfo)
    task: TaskRequirements = Field(default_factory=TaskRequirements)
    decisions: List[Decision] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    issues: List[Issue] = Field(default_factory=list)
    notes: Dict[str, Any] = Field(default_factory=dict)
    revision: int = 0


# =============================================================================
# Role output
# =============================================================================

class Recommendation(BaseModel):
    topic: str = Field(..., min_length=1)
    choice: str = Field(..., min_length=1)
    rationale: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    security: bool = False


class ArtifactDraft(BaseModel):
    name: str = Field(..., min_length=1)
    kind: str = "document"
    content: Any = None


class IssueDraft(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    severity: Severity = "medium"


class IssueResolution(BaseModel):
    issue_id: str
    resolution: str = ""


class OutgoingMessage(BaseModel):
    """A message a role wants delivered to another role ("*" = everyone else)."""
    to: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class RoleOutput(BaseModel):
    """
    What a role returns for a task.

    Extra keys are kept so agents can return additional data alongside the
    well-known fields.
    """
    model_config = ConfigDict(extra="allow")

    summary: str = ""
    recommendations: List[Recommendation] = Field(default_factory=list)
    artifacts: List[ArtifactDraft] = Field(default_factory=list)
    issues: List[IssueDraft] = Field(default_factory=list)
    resolved_issues: List[IssueResolution] = Field(default_factory=list)
    messages: List[OutgoingMessage] = Field(default_factory=list)
    notes: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "RoleOutput":
        """Build a RoleOutput from an agent's return value."""
        if value is None:
            return cls()
        if isinstance(value, RoleOutput):
            return value
        if isinstance(value, str):
            return cls(summary=value)
        if isinstance(value, dict):
            return cls.model_validate(value)
        raise TypeError(f"Unsupported role output type: {type(value).__name__}")


class MergeReport(BaseModel):
    """What merging one stage changed in the context."""
    stage: str
    decisions: List[str] = Field(default_factory=list, description="Decision IDs")
    conflicts: List[str] = Field(default_factory=list, description="Topics that needed resolution")
    escalations: List[str] = Field(default_factory=list, description="Issue IDs for unresolved conflicts")
    artifacts: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
