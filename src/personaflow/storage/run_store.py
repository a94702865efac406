"""
Run Store: SQLite persistence for workflow runs.

Used by the orchestrator for checkpoints (saved after every wave) and by
resume, the CLI and the API gateway to look runs up after the fact.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import create_engine, func
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from personaflow.workflow.models import RunStatus, WorkflowRun

from .models import Base, RunRecord

logger = logging.getLogger(__name__)


class RunStore:
    """
    Persistent store for WorkflowRun documents.

    Usage:
        store = RunStore(".data/runs.db")
        store.save_run(run)
        run = store.get_run(run_id)
    """

    def __init__(self, db_path: str = ".data/runs.db"):
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database (":memory:" for an in-memory db)
        """
        engine_args: Dict[str, Any] = {}
        if db_path == ":memory:":
            # One shared connection, otherwise every thread sees its own empty db
            self.db_path = db_path
            url = "sqlite://"
            engine_args["poolclass"] = StaticPool
        else:
            path = Path(db_path).resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
            url = f"sqlite:///{path}"

        self.engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            **engine_args,
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine)

        logger.info(f"RunStore initialized: db={self.db_path}")

    def save_run(self, run: WorkflowRun) -> None:
        """Insert or update a run."""
        with self.SessionLocal() as session:
            record = session.get(RunRecord, run.id)
            if record is None:
                session.add(RunRecord.from_run(run))
            else:
                record.update_from_run(run)
            session.commit()
        logger.debug(f"Saved run {run.id[:8]}... ({run.status.value})")

    def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        with self.SessionLocal() as session:
            record = session.get(RunRecord, run_id)
            return record.to_run() if record else None

    def list_runs(
        self,
        workflow: Optional[str] = None,
        status: Optional[Union[RunStatus, str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[WorkflowRun]:
        """
        List runs, newest first.

        Args:
            workflow: Only runs of this workflow
            status: Only runs with this status
            limit: Maximum number of runs
            offset: Number of runs to skip
        """
        with self.SessionLocal() as session:
            query = session.query(RunRecord)
            if workflow:
                query = query.filter(RunRecord.workflow_name == workflow)
            if status:
                value = status.value if isinstance(status, RunStatus) else RunStatus(status).value
                query = query.filter(RunRecord.status == value)
            records = (
                query.order_by(RunRecord.created_at.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [record.to_run() for record in records]

    def delete_run(self, run_id: str) -> bool:
        with self.SessionLocal() as session:
            record = session.get(RunRecord, run_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
        logger.info(f"Deleted run {run_id[:8]}...")
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self.SessionLocal() as session:
            by_status = dict(
                session.query(RunRecord.status, func.count(RunRecord.id))
                .group_by(RunRecord.status)
                .all()
            )
            by_workflow = dict(
                session.query(RunRecord.workflow_name, func.count(RunRecord.id))
                .group_by(RunRecord.workflow_name)
                .all()
            )
        return {
            "db_path": self.db_path,
            "total_runs": sum(by_status.values()),
            "by_status": by_status,
            "by_workflow": by_workflow,
        }

    def close(self) -> None:
        self.engine.dispose()
