"""
Tests for the shared context.

Tests cover:
1. Decisions, artifacts, issues and notes
2. Stage merges with agreement, conflicts and escalations
3. Snapshots and role views
"""

import threading

import pytest

from personaflow.conflict.resolver import ConflictResolver
from personaflow.context.models import RoleOutput
from personaflow.context.shared_context import ORCHESTRATOR_ROLE, SharedContext
from personaflow.exceptions import ContextError
from personaflow.workflow.models import ConflictPolicySpec


@pytest.fixture
def context():
    return SharedContext(
        project={"name": "shop", "tech_stack": ["python"]},
        task={"title": "Checkout flow"},
    )


def rec(topic, choice, confidence=0.5, security=False):
    return {"topic": topic, "choice": choice, "confidence": confidence, "security": security}


# =============================================================================
# Records
# =============================================================================

class TestRecords:
    """Tests for direct context mutations."""

    def test_decision_ids_are_sequential(self, context):
        first = context.record_decision("db", "postgres", ["backend"])
        second = context.record_decision("cache", "redis", ["backend"])
        assert (first.id, second.id) == ("DEC-001", "DEC-002")

    def test_latest_decision_wins(self, context):
        """get_decision returns the most recent decision for a topic."""
        context.record_decision("db", "mysql", ["backend"])
        context.record_decision("db", "postgres", ["architect"])
        assert context.get_decision("db").choice == "postgres"
        assert context.get_decision("queue") is None

    def test_artifact_versions(self, context):
        """Re-adding an artifact creates a new version that supersedes the old."""
        v1 = context.add_artifact("api-spec", "v1 body", "architect")
        v2 = context.add_artifact("api-spec", "v2 body", "backend")
        assert (v1.version, v2.version) == (1, 2)
        assert v2.supersedes == 1
        assert context.get_artifact("api-spec").content == "v2 body"
        assert len(context.latest_artifacts()) == 1

    def test_issue_lifecycle(self, context):
        issue = context.raise_issue("SQL injection", "security", severity="critical")
        assert issue.id == "ISS-001"
        assert [i.id for i in context.open_issues()] == ["ISS-001"]

        context.resolve_issue("ISS-001", "parameterized queries", "backend")
        assert context.open_issues() == []
        assert context.get_issue("ISS-001").resolved_by == "backend"

    def test_resolve_unknown_issue(self, context):
        with pytest.raises(ContextError):
            context.resolve_issue("ISS-404", "n/a", "qa")

    def test_resolve_twice(self, context):
        context.raise_issue("flaky test", "qa")
        context.resolve_issue("ISS-001", "fixed", "qa")
        with pytest.raises(ContextError):
            context.resolve_issue("ISS-001", "fixed again", "qa")

    def test_notes(self, context):
        context.set_note("deadline", "friday")
        assert context.get_note("deadline") == "friday"
        assert context.get_note("missing", 42) == 42


# =============================================================================
# Stage merge
# =============================================================================

class TestMergeStage:
    """Tests for merging role outputs."""

    def test_single_recommendation_becomes_decision(self, context):
        report = context.merge_stage("design", [
            ("architect", RoleOutput.coerce({"recommendations": [rec("db", "postgres")]})),
        ])
        decision = context.get_decision("db")
        assert decision.resolved_via == "single"
        assert decision.made_by == ["architect"]
        assert report.decisions == [decision.id]
        assert report.conflicts == []

    def test_agreement_ignores_case_and_spacing(self, context):
        """Equivalent choices from several roles are an agreement, not a conflict."""
        report = context.merge_stage("design", [
            ("architect", RoleOutput.coerce({"recommendations": [rec("db", "PostgreSQL")]})),
            ("backend", RoleOutput.coerce({"recommendations": [rec("db", "  postgresql ")]})),
        ])
        decision = context.get_decision("db")
        assert decision.resolved_via == "agreement"
        assert decision.made_by == ["architect", "backend"]
        assert decision.choice == "PostgreSQL"
        assert report.conflicts == []

    def test_conflict_resolved_by_security(self, context):
        resolver = ConflictResolver(ConflictPolicySpec(security_roles=["security"]))
        report = context.merge_stage("design", [
            ("architect", RoleOutput.coerce({"recommendations": [rec("auth", "basic auth", 0.9)]})),
            ("security", RoleOutput.coerce({"recommendations": [rec("auth", "oauth2", 0.6)]})),
        ], resolver)
        decision = context.get_decision("auth")
        assert decision.choice == "oauth2"
        assert decision.resolved_via == "security_first"
        assert decision.alternatives == ["basic auth"]
        assert report.conflicts == ["auth"]

    def test_unresolved_conflict_escalates(self, context):
        """A tie no strategy can break becomes a high-severity issue."""
        report = context.merge_stage("design", [
            ("architect", RoleOutput.coerce({"recommendations": [rec("db", "mongo")]})),
            ("backend", RoleOutput.coerce({"recommendations": [rec("db", "postgres")]})),
        ])
        assert context.get_decision("db") is None
        assert len(report.escalations) == 1
        issue = context.get_issue(report.escalations[0])
        assert issue.title == "Unresolved conflict: db"
        assert issue.severity == "high"
        assert issue.raised_by == ORCHESTRATOR_ROLE

    def test_artifacts_issues_and_notes_applied_in_role_order(self, context):
        report = context.merge_stage("build", [
            ("backend", RoleOutput.coerce({
                "artifacts": [{"name": "service", "content": "draft"}],
                "issues": [{"title": "missing index", "severity": "low"}],
                "notes": {"owner": "backend"},
            })),
            ("frontend", RoleOutput.coerce({
                "artifacts": [{"name": "service", "content": "final"}],
                "notes": {"owner": "frontend"},
            })),
        ])
        assert report.artifacts == ["service@v1", "service@v2"]
        assert context.get_artifact("service").produced_by == "frontend"
        assert context.get_note("owner") == "frontend"
        assert report.issues == ["ISS-001"]

    def test_resolving_unknown_issue_is_a_warning(self, context):
        """A bad issue reference does not break the merge."""
        report = context.merge_stage("review", [
            ("qa", RoleOutput.coerce({"resolved_issues": [{"issue_id": "ISS-999", "resolution": "done"}]})),
        ])
        assert len(report.warnings) == 1
        assert "ISS-999" in report.warnings[0]

    def test_revision_bumped_once_per_merge(self, context):
        context.merge_stage("a", [("x", RoleOutput()), ("y", RoleOutput())])
        context.merge_stage("b", [])
        assert context.revision == 2

    def test_concurrent_merges(self, context):
        """Concurrent merges from several threads keep ids unique."""
        def merge(stage):
            context.merge_stage(stage, [
                ("qa", RoleOutput.coerce({"issues": [{"title": f"bug in {stage}"}]})),
            ])

        threads = [threading.Thread(target=merge, args=(f"s{i}",)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        ids = [i.id for i in context.open_issues()]
        assert len(ids) == len(set(ids)) == 10


# =============================================================================
# Views
# =============================================================================

class TestViews:
    """Tests for snapshots and role views."""

    def test_snapshot_is_a_copy(self, context):
        context.set_note("k", ["v"])
        snapshot = context.snapshot()
        snapshot.notes["k"].append("changed")
        assert context.get_note("k") == ["v"]

    def test_from_snapshot_round_trip(self, context):
        context.record_decision("db", "postgres", ["backend"])
        context.raise_issue("slow query", "qa")
        restored = SharedContext.from_snapshot(context.snapshot().model_dump(mode="json"))
        assert restored.get_decision("db").choice == "postgres"
        assert restored.task.title == "Checkout flow"
        # Ids continue after the restored records
        assert restored.raise_issue("another", "qa").id == "ISS-002"

    def test_view_for_role(self, context):
        context.record_decision("db", "mysql", ["backend"])
        context.record_decision("db", "postgres", ["backend"])
        context.add_artifact("spec", "body", "architect")
        context.raise_issue("open question", "architect")
        view = context.view_for("frontend")

        assert view["role"] == "frontend"
        assert view["project"]["name"] == "shop"
        assert view["decisions"] == [{"topic": "db", "choice": "postgres", "made_by": ["backend"]}]
        assert view["artifacts"][0]["name"] == "spec"
        assert view["open_issues"][0]["id"] == "ISS-001"


class TestRoleOutput:
    """Tests for RoleOutput.coerce."""

    def test_coerce_variants(self):
        assert RoleOutput.coerce(None).summary == ""
        assert RoleOutput.coerce("done").summary == "done"
        output = RoleOutput(summary="x")
        assert RoleOutput.coerce(output) is output

    def test_extra_keys_kept(self):
        output = RoleOutput.coerce({"summary": "s", "metrics": {"tokens": 3}})
        assert output.model_dump()["metrics"] == {"tokens": 3}

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            RoleOutput.coerce(42)

    def test_invalid_recommendation(self):
        with pytest.raises(ValueError):
            RoleOutput.coerce({"recommendations": [{"topic": "db"}]})
