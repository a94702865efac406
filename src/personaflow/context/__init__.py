"""
Shared context of a workflow run and the role output format merged into it.
"""

from .models import (
    Artifact,
    ArtifactDraft,
    ContextSnapshot,
    Decision,
    Issue,
    IssueDraft,
    IssueResolution,
    MergeReport,
    OutgoingMessage,
    ProjectInfo,
    Recommendation,
    RoleOutput,
    TaskRequirements,
)
from .shared_context import SharedContext

__all__ = [
    "Artifact",
    "ArtifactDraft",
    "ContextSnapshot",
    "Decision",
    "Issue",
    "IssueDraft",
    "IssueResolution",
    "MergeReport",
    "OutgoingMessage",
    "ProjectInfo",
    "Recommendation",
    "RoleOutput",
    "TaskRequirements",
    "SharedContext",
]
