"""
Storage Models: SQLAlchemy model for persisted workflow runs.

A run is stored as one row: indexed columns for querying plus the full
WorkflowRun document (stage results, role states, context snapshot,
messages) in a JSON column.
"""

from datetime import datetime

from sqlalchemy import Column, DateTime, JSON, String
from sqlalchemy.orm import declarative_base

from personaflow.workflow.models import WorkflowRun

Base = declarative_base()


class RunRecord(Base):
    """
    SQLAlchemy model for a WorkflowRun.

    The JSON document is the source of truth; the other columns mirror it
    for filtering and listing.
    """
    __tablename__ = "workflow_runs"

    id = Column(String(64), primary_key=True)
    workflow_name = Column(String(100), nullable=False, index=True)
    workflow_version = Column(String(32), nullable=False, default="1.0")
    status = Column(String(16), nullable=False, index=True)
    task_title = Column(String(255), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    document = Column(JSON, nullable=False)

    def to_run(self) -> WorkflowRun:
        """Convert the stored row back to a WorkflowRun."""
        return WorkflowRun.model_validate(self.document)

    def update_from_run(self, run: WorkflowRun) -> None:
        self.workflow_name = run.workflow_name
        self.workflow_version = run.workflow_version
        self.status = run.status.value
        self.task_title = (run.task.get("title") or "")[:255] or None
        self.created_at = run.created_at
        self.updated_at = datetime.utcnow()
        self.completed_at = run.completed_at
        self.document = run.model_dump(mode="json")

    @classmethod
    def from_run(cls, run: WorkflowRun) -> "RunRecord":
        """Create a row from a WorkflowRun."""
        record = cls(id=run.id)
        record.update_from_run(run)
        return record
