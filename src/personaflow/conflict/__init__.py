"""
Conflict resolution between roles with differing recommendations.
"""

from .resolver import (
    Conflict,
    ConflictResolver,
    Proposal,
    Resolution,
    has_conflict,
    normalize_choice,
)

__all__ = [
    "Conflict",
    "ConflictResolver",
    "Proposal",
    "Resolution",
    "has_conflict",
    "normalize_choice",
]
