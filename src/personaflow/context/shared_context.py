"""
Shared Context: the record every role in a workflow run can see.

Thread-safe: stages in the same wave finish concurrently, so every mutation
takes the context lock. A whole stage merge happens under one lock hold.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from personaflow.conflict.resolver import (
    Conflict,
    ConflictResolver,
    Proposal,
    has_conflict,
)
from personaflow.context.models import (
    Artifact,
    ContextSnapshot,
    Decision,
    Issue,
    MergeReport,
    ProjectInfo,
    RoleOutput,
    TaskRequirements,
)
from personaflow.exceptions import ContextError

logger = logging.getLogger(__name__)

ORCHESTRATOR_ROLE = "orchestrator"


class SharedContext:
    """
    Shared context of one workflow run.

    Holds:
    - project metadata and task requirements
    - decisions (latest per topic wins on lookup)
    - artifacts (versioned by name)
    - issues (open / resolved)
    - free-form notes
    """

    def __init__(
        self,
        project: Optional[Union[ProjectInfo, Dict[str, Any]]] = None,
        task: Optional[Union[TaskRequirements, Dict[str, Any]]] = None,
    ):
        self._state = ContextSnapshot(
            project=ProjectInfo.model_validate(project or {}),
            task=TaskRequirements.model_validate(task or {}),
        )
        self._lock = threading.RLock()

    @classmethod
    def from_snapshot(cls, snapshot: Union[ContextSnapshot, Dict[str, Any]]) -> "SharedContext":
        context = cls()
        context._state = ContextSnapshot.model_validate(
            snapshot.model_dump() if isinstance(snapshot, ContextSnapshot) else snapshot
        )
        return context

    # =========================================================================
    # Read access
    # =========================================================================

    @property
    def project(self) -> ProjectInfo:
        return self._state.project

    @property
    def task(self) -> TaskRequirements:
        return self._state.task

    @property
    def revision(self) -> int:
        return self._state.revision

    def decisions(self) -> List[Decision]:
        with self._lock:
            return list(self._state.decisions)

    def get_decision(self, topic: str) -> Optional[Decision]:
        """Latest decision recorded for a topic."""
        with self._lock:
            for decision in reversed(self._state.decisions):
                if decision.topic == topic:
                    return decision
            return None

    def get_artifact(self, name: str) -> Optional[Artifact]:
        """Latest version of an artifact."""
        with self._lock:
            versions = [a for a in self._state.artifacts if a.name == name]
            return versions[-1] if versions else None

    def latest_artifacts(self) -> List[Artifact]:
        with self._lock:
            latest: Dict[str, Artifact] = {}
            for artifact in self._state.artifacts:
                latest[artifact.name] = artifact
            return list(latest.values())

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        with self._lock:
            for issue in self._state.issues:
                if issue.id == issue_id:
                    return issue
            return None

    def open_issues(self) -> List[Issue]:
        with self._lock:
            return [i for i in self._state.issues if i.status == "open"]

    def get_note(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._state.notes.get(key, default)

    # =========================================================================
    # Mutations
    # =========================================================================

    def record_decision(
        self,
        topic: str,
        choice: str,
        made_by: Sequence[str],
        rationale: str = "",
        stage: Optional[str] = None,
        resolved_via: str = "single",
        alternatives: Optional[Sequence[str]] = None,
    ) -> Decision:
        with self._lock:
            decision = Decision(
                id=f"DEC-{len(self._state.decisions) + 1:03d}",
                topic=topic,
                choice=choice,
                rationale=rationale,
                made_by=list(made_by),
                stage=stage,
                resolved_via=resolved_via,
                alternatives=list(alternatives or []),
            )
            self._state.decisions.append(decision)
            logger.debug(f"Decision {decision.id}: {topic} -> {choice} ({resolved_via})")
            return decision

    def add_artifact(
        self,
        name: str,
        content: Any,
        produced_by: str,
        kind: str = "document",
        stage: Optional[str] = None,
    ) -> Artifact:
        """Add an artifact; an existing name gets a new version."""
        with self._lock:
            previous = self.get_artifact(name)
            artifact = Artifact(
                name=name,
                kind=kind,
                content=content,
                produced_by=produced_by,
                stage=stage,
                version=previous.version + 1 if previous else 1,
                supersedes=previous.version if previous else None,
            )
            self._state.artifacts.append(artifact)
            return artifact

    def raise_issue(
        self,
        title: str,
        raised_by: str,
        description: str = "",
        severity: str = "medium",
        stage: Optional[str] = None,
    ) -> Issue:
        with self._lock:
            issue = Issue(
                id=f"ISS-{len(self._state.issues) + 1:03d}",
                title=title,
                description=description,
                severity=severity,
                raised_by=raised_by,
                stage=stage,
            )
            self._state.issues.append(issue)
            logger.info(f"Issue {issue.id} raised by {raised_by}: {title} ({severity})")
            return issue

    def resolve_issue(self, issue_id: str, resolution: str, resolved_by: str) -> Issue:
        with self._lock:
            issue = self.get_issue(issue_id)
            if issue is None:
                raise ContextError(f"Unknown issue: {issue_id}")
            if issue.status == "resolved":
                raise ContextError(f"Issue {issue_id} is already resolved")
            issue.status = "resolved"
            issue.resolution = resolution
            issue.resolved_by = resolved_by
            return issue

    def set_note(self, key: str, value: Any) -> None:
        with self._lock:
            self._state.notes[key] = value

    # =========================================================================
    # Stage merge
    # =========================================================================

    def merge_stage(
        self,
        stage: str,
        outputs: Sequence[Tuple[str, RoleOutput]],
        resolver: Optional[ConflictResolver] = None,
    ) -> MergeReport:
        """
        Merge the ordered role outputs of one stage.

        Artifacts, issues, resolutions and notes are applied in role order.
        Recommendations are then grouped by topic: agreeing proposals become
        a decision directly, differing ones go through the resolver.
        Unresolved conflicts are raised as high-severity issues.
        """
        resolver = resolver or ConflictResolver()
        report = MergeReport(stage=stage)

        with self._lock:
            proposals: Dict[str, List[Proposal]] = {}

            for role, output in outputs:
                for draft in output.artifacts:
                    artifact = self.add_artifact(
                        draft.name, draft.content, role, kind=draft.kind, stage=stage
                    )
                    report.artifacts.append(f"{artifact.name}@v{artifact.version}")
                for draft in output.issues:
                    issue = self.raise_issue(
                        draft.title, role, draft.description, draft.severity, stage
                    )
                    report.issues.append(issue.id)
                for item in output.resolved_issues:
                    try:
                        self.resolve_issue(item.issue_id, item.resolution, role)
                    except ContextError as e:
                        logger.warning(f"[{stage}] {role}: {e}")
                        report.warnings.append(f"{role}: {e}")
                for key, value in output.notes.items():
                    self._state.notes[key] = value
                for rec in output.recommendations:
                    proposals.setdefault(rec.topic, []).append(
                        Proposal(
                            role=role,
                            topic=rec.topic,
                            choice=rec.choice,
                            rationale=rec.rationale,
                            confidence=rec.confidence,
                            security=rec.security,
                        )
                    )

            for topic, topic_proposals in proposals.items():
                self._settle_topic(stage, topic, topic_proposals, resolver, report)

            self._state.revision += 1

        logger.info(
            f"[{stage}] merged: {len(report.decisions)} decisions, "
            f"{len(report.conflicts)} conflicts, {len(report.escalations)} escalations"
        )
        return report

    def _settle_topic(
        self,
        stage: str,
        topic: str,
        proposals: List[Proposal],
        resolver: ConflictResolver,
        report: MergeReport,
    ) -> None:
        if not has_conflict(proposals):
            first = proposals[0]
            decision = self.record_decision(
                topic=topic,
                choice=first.choice,
                made_by=[p.role for p in proposals],
                rationale=first.rationale,
                stage=stage,
                resolved_via="single" if len(proposals) == 1 else "agreement",
            )
            report.decisions.append(decision.id)
            return

        report.conflicts.append(topic)
        conflict = Conflict(topic=topic, proposals=proposals)
        resolution = resolver.resolve(conflict)

        if resolution.resolved:
            winner = resolution.winner
            decision = self.record_decision(
                topic=topic,
                choice=winner.choice,
                made_by=[winner.role],
                rationale=winner.rationale or resolution.explanation,
                stage=stage,
                resolved_via=resolution.strategy,
                alternatives=resolution.alternatives(conflict),
            )
            report.decisions.append(decision.id)
        else:
            issue = self.raise_issue(
                title=f"Unresolved conflict: {topic}",
                raised_by=ORCHESTRATOR_ROLE,
                description=resolution.explanation,
                severity="high",
                stage=stage,
            )
            report.escalations.append(issue.id)

    # =========================================================================
    # Views
    # =========================================================================

    def snapshot(self) -> ContextSnapshot:
        with self._lock:
            return self._state.model_copy(deep=True)

    def view_for(self, role: str) -> Dict[str, Any]:
        """Compact, JSON-friendly view handed to a role with its task."""
        with self._lock:
            return {
                "role": role,
                "project": self._state.project.model_dump(),
                "task": self._state.task.model_dump(),
                "decisions": [
                    {"topic": d.topic, "choice": d.choice, "made_by": d.made_by}
                    for d in self._latest_decisions()
                ],
                "artifacts": [
                    {
                        "name": a.name,
                        "kind": a.kind,
                        "version": a.version,
                        "produced_by": a.produced_by,
                        "content": a.content,
                    }
                    for a in self.latest_artifacts()
                ],
                "open_issues": [
                    {"id": i.id, "title": i.title, "severity": i.severity, "raised_by": i.raised_by}
                    for i in self.open_issues()
                ],
                "notes": dict(self._state.notes),
                "revision": self._state.revision,
            }

    def _latest_decisions(self) -> List[Decision]:
        latest: Dict[str, Decision] = {}
        for decision in self._state.decisions:
            latest[decision.topic] = decision
        return list(latest.values())
