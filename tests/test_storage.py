"""
Tests for RunStore (SQLite persistence of workflow runs).
"""

from datetime import datetime, timedelta

import pytest

from personaflow.storage.run_store import RunStore
from personaflow.workflow.models import RunStatus, StageStatus, WorkflowRun


@pytest.fixture
def store():
    store = RunStore(":memory:")
    yield store
    store.close()


def make_run(workflow="flow", status=RunStatus.COMPLETED, title="Checkout", age_minutes=0):
    run = WorkflowRun(
        workflow_name=workflow,
        status=status,
        task={"title": title},
        created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
    )
    run.get_stage_result("design").status = StageStatus.COMPLETED
    return run


class TestRunStore:
    """Tests for saving, loading and querying runs."""

    def test_save_and_get(self, store):
        run = make_run()
        run.context = {"decisions": [{"id": "DEC-001", "topic": "db", "choice": "postgres"}]}
        store.save_run(run)

        loaded = store.get_run(run.id)
        assert loaded.id == run.id
        assert loaded.task == {"title": "Checkout"}
        assert loaded.stage_results["design"].status == StageStatus.COMPLETED
        assert loaded.context["decisions"][0]["choice"] == "postgres"

    def test_get_missing(self, store):
        assert store.get_run("missing") is None

    def test_save_updates_existing_row(self, store):
        run = make_run(status=RunStatus.RUNNING)
        store.save_run(run)
        run.status = RunStatus.FAILED
        run.error = "Stage 'build' failed"
        store.save_run(run)

        loaded = store.get_run(run.id)
        assert loaded.status == RunStatus.FAILED
        assert loaded.error == "Stage 'build' failed"
        assert store.get_stats()["total_runs"] == 1

    def test_list_newest_first_with_filters(self, store):
        old = make_run(age_minutes=10)
        new = make_run(age_minutes=1, status=RunStatus.FAILED)
        other = make_run(workflow="other", age_minutes=5)
        for run in (old, new, other):
            store.save_run(run)

        assert [r.id for r in store.list_runs()] == [new.id, other.id, old.id]
        assert [r.id for r in store.list_runs(workflow="flow")] == [new.id, old.id]
        assert [r.id for r in store.list_runs(status="failed")] == [new.id]
        assert [r.id for r in store.list_runs(status=RunStatus.COMPLETED, limit=1)] == [other.id]
        assert [r.id for r in store.list_runs(offset=2)] == [old.id]

    def test_invalid_status_filter(self, store):
        with pytest.raises(ValueError):
            store.list_runs(status="exploded")

    def test_delete(self, store):
        run = make_run()
        store.save_run(run)
        assert store.delete_run(run.id) is True
        assert store.delete_run(run.id) is False
        assert store.get_run(run.id) is None

    def test_stats(self, store):
        store.save_run(make_run())
        store.save_run(make_run(status=RunStatus.FAILED))
        store.save_run(make_run(workflow="other"))

        stats = store.get_stats()
        assert stats["total_runs"] == 3
        assert stats["by_status"] == {"completed": 2, "failed": 1}
        assert stats["by_workflow"] == {"flow": 2, "other": 1}

    def test_file_database_persists(self, tmp_path):
        """A file database survives reopening and creates missing directories."""
        path = tmp_path / "nested" / "runs.db"
        run = make_run()

        first = RunStore(str(path))
        first.save_run(run)
        first.close()

        second = RunStore(str(path))
        try:
            assert second.get_run(run.id).workflow_name == "flow"
        finally:
            second.close()
