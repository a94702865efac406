"""
Orchestrator: runs workflows across roles.

Execution model:
- the workflow's dependency graph is split into waves
- stages of a wave run concurrently (up to max_concurrent_stages)
- roles of a stage run in declared order, or all at once when parallel;
  in sequential stages later roles see earlier roles' outputs
- every role call gets the stage timeout and retry policy; only roles that
  failed (or never ran) are retried
- role outputs are merged into the SharedContext in role order, the stages
  of a wave in declaration order; conflicts go through the ConflictResolver
- role-to-role messages are delivered with the recipient's next task
- lifecycle events are published on the bus, runs are checkpointed to the
  RunStore after every wave
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from personaflow.agents.base_agent import RoleAgent
from personaflow.bus.local import LocalBus
from personaflow.bus.models import TaskData
from personaflow.config import config_dir, load_section
from personaflow.conflict.resolver import ConflictResolver
from personaflow.context.models import MergeReport, RoleOutput
from personaflow.context.shared_context import SharedContext
from personaflow.exceptions import AgentNotFoundError
from personaflow.workflow.graph import WorkflowGraph
from personaflow.workflow.models import (
    RoleState,
    RoleStateKind,
    RunStatus,
    StageResult,
    StageSpec,
    StageStatus,
    WorkflowDefinition,
    WorkflowRun,
)

from .dispatch import Dispatcher, LocalDispatcher
from .models import BROADCAST, RoleMessage

logger = logging.getLogger(__name__)

AgentFactory = Callable[[str], RoleAgent]


class Orchestrator:
    """
    Workflow orchestrator.

    Usage:
        orchestrator = Orchestrator()
        orchestrator.register_agent("architect", EchoAgent())
        orchestrator.set_default_agent(lambda role: EchoAgent())
        run = orchestrator.start(definition, task="Checkout flow")
    """

    DEFAULTS = {
        "name": "personaflow-orchestrator",
        "max_concurrent_stages": 4,
        "max_parallel_roles": 8,
        "max_agent_threads": 16,
        "event_source": "personaflow.orchestrator",
    }

    def __init__(
        self,
        config_path: Optional[str] = None,
        dispatcher: Optional[Dispatcher] = None,
        bus=None,
        store=None,
        persona_registry=None,
    ):
        """
        Initialize orchestrator.

        Args:
            config_path: Path to orchestrator.yaml (section 'orchestrator').
            dispatcher: How tasks reach roles. Defaults to in-process agents.
            bus: Event bus (LocalBus or AmqpBus). Defaults to a LocalBus.
            store: Optional RunStore used for checkpoints.
            persona_registry: Optional PersonaRegistry used to find domain experts.
        """
        if config_path is None:
            config_path = str(config_dir() / "orchestrator.yaml")
        self.config = load_section(config_path, "orchestrator", self.DEFAULTS)
        self.name = self.config["name"]
        self.source = self.config["event_source"]

        self.bus = bus if bus is not None else LocalBus()
        self.store = store
        self.personas = persona_registry

        self._agents: Dict[str, RoleAgent] = {}
        self._default_factory: Optional[AgentFactory] = None
        self.dispatcher = dispatcher or LocalDispatcher(
            self._resolve_agent, max_workers=self.config["max_agent_threads"]
        )

        self._runs: Dict[str, WorkflowRun] = {}
        self._contexts: Dict[str, SharedContext] = {}
        self._cancelled: set = set()
        self._lock = threading.RLock()
        self._publish_lock = threading.Lock()

        logger.info(
            f"Orchestrator initialized: {self.name} "
            f"(max_concurrent_stages={self.config['max_concurrent_stages']}, "
            f"dispatcher={type(self.dispatcher).__name__})"
        )

    # =========================================================================
    # Agents
    # =========================================================================

    def register_agent(self, role: str, agent: RoleAgent) -> None:
        with self._lock:
            self._agents[role] = agent
        logger.info(f"Agent registered for role {role}: {agent!r}")

    def set_default_agent(self, factory: AgentFactory) -> None:
        """Factory used for roles without a registered agent (called once per role)."""
        self._default_factory = factory

    def _resolve_agent(self, role: str) -> RoleAgent:
        with self._lock:
            agent = self._agents.get(role)
            if agent is None and self._default_factory is not None:
                agent = self._default_factory(role)
                self._agents[role] = agent
            if agent is None:
                raise AgentNotFoundError(role)
            return agent

    # =========================================================================
    # Workflows and runs
    # =========================================================================

    def load_workflow(self, path: str) -> WorkflowDefinition:
        definition = WorkflowDefinition.from_yaml(path)
        logger.info(f"Loaded workflow: {definition.name} v{definition.version} ({len(definition.stages)} stages)")
        return definition

    def start(
        self,
        definition: WorkflowDefinition,
        task: Union[str, Dict[str, Any], None] = None,
        project: Optional[Dict[str, Any]] = None,
        inputs: Optional[Dict[str, Any]] = None,
        on_run_created: Optional[Callable[[WorkflowRun], None]] = None,
    ) -> WorkflowRun:
        """
        Run a workflow to completion (blocking).

        Args:
            definition: Workflow to run.
            task: Task title or TaskRequirements dict.
            project: ProjectInfo dict.
            inputs: Run inputs merged into every stage's params.
            on_run_created: Called with the run before execution starts.

        Returns:
            The finished WorkflowRun.
        """
        task_dict = {"title": task} if isinstance(task, str) else dict(task or {})
        run = WorkflowRun(
            workflow_name=definition.name,
            workflow_version=definition.version,
            task=task_dict,
            project=dict(project or {}),
            inputs=dict(inputs or {}),
        )
        context = SharedContext(project=run.project, task=run.task)

        with self._lock:
            self._runs[run.id] = run
            self._contexts[run.id] = context

        logger.info(f"Starting run: {definition.name} (id={run.id[:8]}..., task={task_dict.get('title')!r})")
        if on_run_created:
            on_run_created(run)
        return self._execute(definition, run, context)

    def resume(self, run_id: str, definition: WorkflowDefinition) -> WorkflowRun:
        """
        Resume an unfinished or failed run.

        Completed stages are kept; every other stage runs again.

        Raises:
            KeyError: If the run is unknown.
            ValueError: If the run belongs to another workflow.
        """
        run = self.get_run(run_id)
        if run is None:
            raise KeyError(f"Unknown run: {run_id}")
        if run.workflow_name != definition.name:
            raise ValueError(
                f"Run {run_id} belongs to workflow '{run.workflow_name}', not '{definition.name}'"
            )
        if run.status == RunStatus.COMPLETED:
            logger.info(f"Run {run_id[:8]}... already completed, nothing to resume")
            return run

        rerun = {name for name, r in run.stage_results.items() if r.status != StageStatus.COMPLETED}
        for name in rerun:
            del run.stage_results[name]
        # Stages that run again route their messages again
        run.messages = [
            m for m in run.messages if m.get("delivered") or m.get("stage") not in rerun
        ]
        for state in run.role_states.values():
            state.state = RoleStateKind.IDLE
            state.current_stage = None
        run.error = None
        run.completed_at = None
        context = SharedContext.from_snapshot(run.context) if run.context else SharedContext(
            project=run.project, task=run.task
        )

        with self._lock:
            self._cancelled.discard(run.id)
            self._runs[run.id] = run
            self._contexts[run.id] = context

        logger.info(
            f"Resuming run {run_id[:8]}... ({len(run.stage_results)} completed stages kept)"
        )
        return self._execute(definition, run, context)

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of a running run. Returns False if it is not running."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.is_finished():
                return False
            self._cancelled.add(run_id)
        logger.info(f"Cancellation requested for run {run_id[:8]}...")
        return True

    def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None and self.store is not None:
            run = self.store.get_run(run_id)
        return run

    def get_context(self, run_id: str) -> Optional[SharedContext]:
        with self._lock:
            return self._contexts.get(run_id)

    def list_runs(self, status: Optional[RunStatus] = None) -> List[WorkflowRun]:
        """Runs known in memory (and in the store), newest first."""
        with self._lock:
            runs = dict(self._runs)
        if self.store is not None:
            for stored in self.store.list_runs(limit=1000):
                runs.setdefault(stored.id, stored)
        result = [r for r in runs.values() if status is None or r.status == status]
        return sorted(result, key=lambda r: r.created_at, reverse=True)

    def close(self) -> None:
        self.dispatcher.close()

    # =========================================================================
    # Execution
    # =========================================================================

    def _is_cancelled(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._cancelled

    def _execute(self, definition: WorkflowDefinition, run: WorkflowRun, context: SharedContext) -> WorkflowRun:
        graph = WorkflowGraph(definition)
        resolver = ConflictResolver(
            definition.conflict_policy,
            registry=self.personas,
        )
        for role in definition.roles():
            run.role_states.setdefault(role, RoleState(role=role))

        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or datetime.utcnow()
        self._publish("run", "started", run, {"workflow": definition.name, "task": run.task})
        self._checkpoint(run, context)

        aborted_by: Optional[str] = None
        try:
            for wave_index, wave in enumerate(graph.waves()):
                if self._is_cancelled(run.id) or aborted_by:
                    break
                runnable = [
                    name for name in wave
                    if run.get_stage_result(name).status != StageStatus.COMPLETED
                ]
                if not runnable:
                    continue
                logger.info(f"[{run.id[:8]}] Wave {wave_index + 1}: {runnable}")

                outputs = self._run_wave(definition, run, context, runnable)

                for name in runnable:
                    stage = definition.get_stage(name)
                    result = run.get_stage_result(name)
                    if result.status == StageStatus.COMPLETED:
                        report = context.merge_stage(name, outputs[name], resolver)
                        self._record_merge(run, context, result, report)
                        self._publish("stage", "completed", run, {
                            "stage": name,
                            "attempts": result.attempts,
                            "decisions": result.decisions,
                            "escalations": result.escalations,
                        })
                    else:
                        self._publish("stage", "failed", run, {
                            "stage": name,
                            "attempts": result.attempts,
                            "role_errors": result.role_errors,
                        }, severity="ERROR")
                        if stage.get_retry().on_failure == "abort" and not aborted_by:
                            aborted_by = name

                self._checkpoint(run, context)
        except Exception as e:
            logger.exception(f"[{run.id[:8]}] Run crashed: {e}")
            run.status = RunStatus.FAILED
            run.error = f"{type(e).__name__}: {e}"

        self._finish(definition, run, context, aborted_by)
        return run

    def _run_wave(
        self,
        definition: WorkflowDefinition,
        run: WorkflowRun,
        context: SharedContext,
        stage_names: List[str],
    ) -> Dict[str, List[Tuple[str, RoleOutput]]]:
        if len(stage_names) == 1:
            name = stage_names[0]
            return {name: self._run_stage(definition.get_stage(name), run, context)}

        workers = min(self.config["max_concurrent_stages"], len(stage_names))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as pool:
            futures = {
                name: pool.submit(self._run_stage, definition.get_stage(name), run, context)
                for name in stage_names
            }
            return {name: futures[name].result() for name in stage_names}

    def _run_stage(
        self,
        stage: StageSpec,
        run: WorkflowRun,
        context: SharedContext,
    ) -> List[Tuple[str, RoleOutput]]:
        """Run one stage with retries. Returns role outputs in role order."""
        result = run.get_stage_result(stage.name)
        result.status = StageStatus.RUNNING
        result.started_at = datetime.utcnow()
        result.role_errors = {}
        self._publish("stage", "started", run, {
            "stage": stage.name,
            "roles": stage.roles,
            "parallel": stage.parallel,
        })

        retry = stage.get_retry()
        outputs: Dict[str, RoleOutput] = {}
        remaining = list(stage.roles)

        for attempt in range(1, retry.max_attempts + 1):
            result.attempts = attempt
            if stage.parallel:
                errors = self._run_parallel(stage, run, context, remaining, outputs, attempt)
            else:
                errors = self._run_sequential(stage, run, context, remaining, outputs, attempt)
            result.role_errors = errors
            remaining = [r for r in stage.roles if r not in outputs]

            if not remaining or self._is_cancelled(run.id):
                break
            if attempt < retry.max_attempts:
                logger.info(
                    f"[{run.id[:8]}] Retrying stage {stage.name} for {remaining} "
                    f"(attempt {attempt + 1}/{retry.max_attempts})"
                )
                if retry.delay_seconds:
                    time.sleep(retry.delay_seconds)

        result.outputs = {
            role: outputs[role].model_dump(mode="json") for role in stage.roles if role in outputs
        }
        result.completed_at = datetime.utcnow()
        if remaining:
            result.status = StageStatus.FAILED
            logger.error(f"[{run.id[:8]}] Stage {stage.name} failed: {result.role_errors}")
        else:
            result.status = StageStatus.COMPLETED
            logger.info(f"[{run.id[:8]}] Stage {stage.name} completed ({result.duration_seconds():.2f}s)")

        return [(role, outputs[role]) for role in stage.roles if role in outputs]

    def _run_sequential(
        self,
        stage: StageSpec,
        run: WorkflowRun,
        context: SharedContext,
        roles: List[str],
        outputs: Dict[str, RoleOutput],
        attempt: int,
    ) -> Dict[str, str]:
        # Later roles wait for earlier ones: stop at the first failure
        for role in roles:
            if self._is_cancelled(run.id):
                return {role: "Run cancelled"}
            earlier = {r: outputs[r].model_dump(mode="json") for r in stage.roles if r in outputs}
            try:
                outputs[role] = self._call_role(stage, run, context, role, earlier, attempt)
            except Exception as e:
                return {role: self._describe_error(e)}
        return {}

    def _run_parallel(
        self,
        stage: StageSpec,
        run: WorkflowRun,
        context: SharedContext,
        roles: List[str],
        outputs: Dict[str, RoleOutput],
        attempt: int,
    ) -> Dict[str, str]:
        if self._is_cancelled(run.id):
            return {role: "Run cancelled" for role in roles}

        errors: Dict[str, str] = {}
        workers = min(self.config["max_parallel_roles"], len(roles))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="role-fanout") as pool:
            futures = {
                role: pool.submit(self._call_role, stage, run, context, role, {}, attempt)
                for role in roles
            }
            for role in roles:
                try:
                    outputs[role] = futures[role].result()
                except Exception as e:
                    errors[role] = self._describe_error(e)
        return errors

    @staticmethod
    def _describe_error(error: Exception) -> str:
        return str(error) or type(error).__name__

    def _call_role(
        self,
        stage: StageSpec,
        run: WorkflowRun,
        context: SharedContext,
        role: str,
        stage_outputs: Dict[str, Any],
        attempt: int,
    ) -> RoleOutput:
        inbox = self._pending_messages(run, role)
        view = context.view_for(role)
        view["stage_outputs"] = stage_outputs
        task = TaskData(
            role=role,
            stage=stage.name,
            run_id=run.id,
            action=stage.get_action(),
            params={**run.inputs, **stage.params},
            context=view,
            inbox=[m.inbox_view() for m in inbox],
            attempt=attempt,
            timeout_seconds=stage.timeout_seconds,
        )

        self._set_role_state(run, role, RoleStateKind.WORKING, stage.name)
        try:
            output = RoleOutput.coerce(self.dispatcher.dispatch(task, timeout=stage.timeout_seconds))
        except Exception as e:
            self._set_role_state(run, role, RoleStateKind.FAILED, stage.name, error=self._describe_error(e))
            logger.warning(f"[{run.id[:8]}] {role} failed in {stage.name} (attempt {attempt}): {e}")
            raise

        self._mark_delivered(run, inbox, stage.name)
        self._route_messages(run, stage, role, output)
        self._set_role_state(run, role, RoleStateKind.DONE, stage.name)
        return output

    def _set_role_state(
        self,
        run: WorkflowRun,
        role: str,
        state: RoleStateKind,
        stage: str,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            role_state = run.role_states.setdefault(role, RoleState(role=role))
            role_state.state = state
            role_state.current_stage = stage if state == RoleStateKind.WORKING else None
            if state == RoleStateKind.DONE:
                role_state.tasks_completed += 1
            if error is not None:
                role_state.last_error = error

    # =========================================================================
    # Messages
    # =========================================================================

    def _pending_messages(self, run: WorkflowRun, role: str) -> List[RoleMessage]:
        with self._lock:
            return [
                RoleMessage.model_validate(m)
                for m in run.messages
                if m["recipient"] == role and not m.get("delivered")
            ]

    def _mark_delivered(self, run: WorkflowRun, messages: List[RoleMessage], stage: str) -> None:
        if not messages:
            return
        ids = {m.id for m in messages}
        with self._lock:
            for stored in run.messages:
                if stored["id"] in ids:
                    stored["delivered"] = True
                    stored["delivered_in"] = stage

    def _route_messages(self, run: WorkflowRun, stage: StageSpec, sender: str, output: RoleOutput) -> None:
        if not output.messages:
            return
        known = list(run.role_states)
        for message in output.messages:
            if message.to == BROADCAST:
                recipients = [r for r in known if r != sender]
            elif message.to in known:
                recipients = [message.to]
            else:
                logger.warning(
                    f"[{run.id[:8]}] Message from {sender} to unknown role '{message.to}' dropped"
                )
                continue
            with self._lock:
                for recipient in recipients:
                    routed = RoleMessage(
                        run_id=run.id,
                        stage=stage.name,
                        sender=sender,
                        recipient=recipient,
                        content=message.content,
                    )
                    run.messages.append(routed.model_dump(mode="json"))
            logger.debug(f"[{run.id[:8]}] {sender} -> {recipients}: {message.content[:60]}")

    # =========================================================================
    # Merge bookkeeping, events, checkpoints
    # =========================================================================

    def _record_merge(
        self,
        run: WorkflowRun,
        context: SharedContext,
        result: StageResult,
        report: MergeReport,
    ) -> None:
        result.decisions = list(report.decisions)
        result.escalations = list(report.escalations)

        by_id = {d.id: d for d in context.decisions()}
        for decision_id in report.decisions:
            decision = by_id[decision_id]
            if decision.resolved_via in ("single", "agreement"):
                continue
            self._publish("conflict", "resolved", run, {
                "stage": result.stage,
                "topic": decision.topic,
                "choice": decision.choice,
                "winner": decision.made_by[0] if decision.made_by else None,
                "strategy": decision.resolved_via,
                "alternatives": decision.alternatives,
            })
        for issue_id in report.escalations:
            issue = context.get_issue(issue_id)
            self._publish("conflict", "escalated", run, {
                "stage": result.stage,
                "issue_id": issue_id,
                "title": issue.title if issue else "",
            }, severity="WARNING")

    def _finish(
        self,
        definition: WorkflowDefinition,
        run: WorkflowRun,
        context: SharedContext,
        aborted_by: Optional[str],
    ) -> None:
        for name in definition.stage_names():
            result = run.get_stage_result(name)
            if result.status == StageStatus.PENDING:
                result.status = StageStatus.SKIPPED
            elif result.status == StageStatus.RUNNING:
                # Left behind by a crash
                result.status = StageStatus.FAILED
                result.completed_at = result.completed_at or datetime.utcnow()

        cancelled = self._is_cancelled(run.id)
        if cancelled:
            run.status = RunStatus.CANCELLED
            run.error = run.error or "Cancelled"
        elif run.status == RunStatus.FAILED:
            pass
        elif aborted_by:
            run.status = RunStatus.FAILED
            run.error = f"Stage '{aborted_by}' failed: {run.get_stage_result(aborted_by).role_errors}"
        else:
            run.status = RunStatus.COMPLETED
        run.completed_at = datetime.utcnow()

        summary = {
            "workflow": definition.name,
            "stages": {name: r.status.value for name, r in run.stage_results.items()},
            "duration_seconds": run.duration_seconds(),
        }
        if run.status == RunStatus.COMPLETED:
            failed = run.stages_with_status(StageStatus.FAILED)
            if failed:
                logger.warning(f"[{run.id[:8]}] Run completed with failed stages: {failed}")
            self._publish("run", "completed", run, summary)
        elif run.status == RunStatus.CANCELLED:
            self._publish("run", "cancelled", run, summary, severity="WARNING")
        else:
            self._publish("run", "failed", run, {**summary, "error": run.error}, severity="ERROR")

        self._checkpoint(run, context)
        with self._lock:
            self._cancelled.discard(run.id)
        logger.info(f"Run {run.id[:8]}... finished: {run.status.value}")

    def _publish(
        self,
        topic: str,
        suffix: str,
        run: WorkflowRun,
        data: Dict[str, Any],
        severity: str = "INFO",
    ) -> None:
        payload = {"run_id": run.id, **data}
        try:
            with self._publish_lock:
                self.bus.send_event(topic, suffix, payload, source=self.source, subject=run.id, severity=severity)
        except Exception as e:
            logger.warning(f"Failed to publish {topic}.{suffix}: {e}")

    def _checkpoint(self, run: WorkflowRun, context: SharedContext) -> None:
        with self._lock:
            run.context = context.snapshot().model_dump(mode="json")
        if self.store is not None:
            self.store.save_run(run)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            runs = list(self._runs.values())
            agents = sorted(self._agents)
        return {
            "name": self.name,
            "dispatcher": type(self.dispatcher).__name__,
            "agents": agents,
            "runs": {
                "total": len(runs),
                "running": len([r for r in runs if r.status == RunStatus.RUNNING]),
                "completed": len([r for r in runs if r.status == RunStatus.COMPLETED]),
                "failed": len([r for r in runs if r.status == RunStatus.FAILED]),
                "cancelled": len([r for r in runs if r.status == RunStatus.CANCELLED]),
            },
        }
