"""
Storage module for personaflow.

Components:
- models: SQLAlchemy model for workflow runs
- run_store: SQLite-backed RunStore
"""

from .models import Base, RunRecord
from .run_store import RunStore

__all__ = ["Base", "RunRecord", "RunStore"]
