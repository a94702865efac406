"""
Workflow definitions, run state and the stage dependency graph.
"""

from .models import (
    ConflictPolicySpec,
    RetryPolicy,
    RoleState,
    RoleStateKind,
    RunStatus,
    StageResult,
    StageSpec,
    StageStatus,
    WorkflowDefinition,
    WorkflowRun,
)
from .graph import WorkflowGraph

__all__ = [
    "ConflictPolicySpec",
    "RetryPolicy",
    "RoleState",
    "RoleStateKind",
    "RunStatus",
    "StageResult",
    "StageSpec",
    "StageStatus",
    "WorkflowDefinition",
    "WorkflowRun",
    "WorkflowGraph",
]
