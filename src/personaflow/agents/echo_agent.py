"""
EchoAgent: deterministic agent for demos and tests.

Returns a summary of the task it received. Scripted outputs per role and
stage make it possible to rehearse whole workflows, including conflicts and
failures, without an LLM.

Configuration (an agent spec, e.g. the default of config/agents/echo_agent.yaml):

    type: echo
    delay_seconds: 0
    scripts:
      architect:
        design:                       # stage name, or "*" for every stage
          recommendations:
            - {topic: database, choice: postgres, confidence: 0.8}
    failures:
      backend-developer@implement: 1  # fail this many attempts first
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from .base_agent import RoleAgent

logger = logging.getLogger(__name__)


class EchoAgent(RoleAgent):
    """Deterministic role agent."""

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        super().__init__(config_path, config)
        self.delay_seconds = float(self.config.get("delay_seconds", 0))
        self.scripts: Dict[str, Dict[str, Any]] = self.config.get("scripts", {}) or {}
        self.failures: Dict[str, int] = dict(self.config.get("failures", {}) or {})
        self._failed: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.calls = []

    def execute(
        self,
        action: str,
        params: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        context = context or {}
        role = context.get("role", "unknown")
        stage = context.get("stage", action)
        with self._lock:
            self.calls.append((role, stage, action))

        if self.delay_seconds:
            time.sleep(self.delay_seconds)

        self._maybe_fail(role, stage)

        title = (context.get("task") or {}).get("title") or params.get("task") or "the task"
        inbox = context.get("inbox") or []
        output: Dict[str, Any] = {
            "summary": f"{role} completed '{action}' for {title}",
        }
        if inbox:
            output["notes"] = {f"{role}.inbox": [m.get("content") for m in inbox]}

        script = self._script_for(role, stage)
        if script:
            output.update(script)
        logger.debug(f"EchoAgent {role}/{stage}: {output.get('summary')}")
        return output

    def _script_for(self, role: str, stage: str) -> Dict[str, Any]:
        by_stage = self.scripts.get(role) or {}
        script = by_stage.get(stage, by_stage.get("*"))
        return dict(script) if script else {}

    def _maybe_fail(self, role: str, stage: str) -> None:
        for key in (f"{role}@{stage}", role):
            if key not in self.failures:
                continue
            with self._lock:
                used = self._failed.get(key, 0)
                if used >= self.failures[key]:
                    return
                self._failed[key] = used + 1
            raise RuntimeError(f"Scripted failure for {role} in stage {stage}")
