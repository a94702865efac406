"""
Role Worker: hosts a role agent behind the AMQP bus.

The worker:
- consumes TASK messages on task.{role}.#
- ignores task ids it has already answered (idempotency)
- executes the agent and replies with RESULT or ERROR via reply_to
- stops on CONTROL stop/shutdown for its role or for 'all'

Usage:
    python -m personaflow.agents.worker --role architect --agent echo
"""

import argparse
import logging
import signal
import sys
import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional

from personaflow.bus.core import AmqpBus
from personaflow.bus.models import TaskData
from personaflow.context.models import RoleOutput

from .base_agent import RoleAgent

logger = logging.getLogger(__name__)

ERROR_CODES = [
    (TimeoutError, "DEADLINE_EXCEEDED"),
    (ConnectionError, "UNAVAILABLE"),
    (PermissionError, "PERMISSION_DENIED"),
    (FileNotFoundError, "NOT_FOUND"),
    (KeyError, "NOT_FOUND"),
    (NotImplementedError, "UNIMPLEMENTED"),
    (ValueError, "INVALID_ARGUMENT"),
    (TypeError, "INVALID_ARGUMENT"),
]

RETRYABLE = (TimeoutError, ConnectionError, OSError)


def error_code_for(error: Exception) -> str:
    """Map an exception to a google.rpc.Code name."""
    for exc_type, code in ERROR_CODES:
        if isinstance(error, exc_type):
            return code
    return "INTERNAL"


class RoleWorker:
    """Serves one role over the bus."""

    def __init__(
        self,
        role: str,
        agent: RoleAgent,
        bus: Optional[AmqpBus] = None,
        idempotency_ttl_seconds: int = 86400,
    ):
        self.role = role
        self.agent = agent
        self.bus = bus or AmqpBus()
        self.source = f"personaflow.worker.{role}"
        self._processed: Dict[str, datetime] = {}
        self._ttl = idempotency_ttl_seconds
        self._lock = threading.Lock()
        self.tasks_processed = 0
        self.tasks_failed = 0

    # =========================================================================
    # Message handlers
    # =========================================================================

    def on_task(self, event: Dict[str, Any], data: Dict[str, Any]) -> None:
        task_id = event.get("id")
        reply_to = event.get("reply_to")

        if self._is_duplicate(task_id):
            logger.info(f"[{self.role}] Duplicate task ignored: {task_id}")
            return

        start_time = time.time()
        try:
            task = TaskData.model_validate(data)
            if task.role != self.role:
                logger.debug(f"[{self.role}] Ignoring task for role {task.role}")
                return
            context = dict(task.context)
            context.update(
                {"role": task.role, "stage": task.stage, "run_id": task.run_id, "inbox": task.inbox}
            )
            logger.info(f"[{self.role}] Received task: stage={task.stage}, action={task.action}")

            result = self.agent.execute(task.action, task.params, context)
            output = RoleOutput.coerce(result).model_dump(mode="json")
            execution_time_ms = int((time.time() - start_time) * 1000)

            if reply_to:
                self.bus.send_result(
                    output=output,
                    execution_time_ms=execution_time_ms,
                    source=self.source,
                    reply_to=reply_to,
                    correlation_id=task_id,
                    subject=task.run_id,
                )
            else:
                logger.warning(f"[{self.role}] No reply_to in task, cannot send RESULT")

            self.tasks_processed += 1
            self._mark_processed(task_id)
            logger.info(f"[{self.role}] Sent RESULT for stage={task.stage} ({execution_time_ms}ms)")

        except Exception as e:
            execution_time_ms = int((time.time() - start_time) * 1000)
            self.tasks_failed += 1
            if reply_to:
                self.bus.send_error(
                    code=error_code_for(e),
                    message=str(e) or type(e).__name__,
                    retryable=isinstance(e, RETRYABLE),
                    source=self.source,
                    reply_to=reply_to,
                    correlation_id=task_id,
                    subject=data.get("run_id"),
                    details={"exception_type": type(e).__name__},
                    execution_time_ms=execution_time_ms,
                )
                logger.error(f"[{self.role}] Sent ERROR: {e}")
            else:
                logger.error(f"[{self.role}] ERROR: {e} (no reply_to)")

    def on_control(self, event: Dict[str, Any], data: Dict[str, Any]) -> None:
        control_type = data.get("control_type")
        logger.info(f"[{self.role}] Received CONTROL {control_type}: {data.get('reason')}")
        if control_type in ("stop", "shutdown"):
            self.bus.stop_consuming()

    # =========================================================================
    # Idempotency
    # =========================================================================

    def _is_duplicate(self, task_id: Optional[str]) -> bool:
        if not task_id:
            return False
        now = datetime.utcnow()
        with self._lock:
            expired = [
                tid for tid, ts in self._processed.items()
                if (now - ts).total_seconds() > self._ttl
            ]
            for tid in expired:
                del self._processed[tid]
            return task_id in self._processed

    def _mark_processed(self, task_id: Optional[str]) -> None:
        if task_id:
            with self._lock:
                self._processed[task_id] = datetime.utcnow()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Connect, subscribe and consume until stopped."""
        routing_role = self.role.replace(".", "_")
        self.bus.connect()
        self.bus.subscribe(f"task.{routing_role}.#", self.on_task)
        self.bus.subscribe(f"ctl.{routing_role}.#", self.on_control)
        self.bus.subscribe("ctl.all.#", self.on_control)
        logger.info(f"[{self.role}] Worker ready ({self.agent!r}), waiting for tasks")
        try:
            self.bus.start_consuming()
        finally:
            self.bus.disconnect()
            logger.info(
                f"[{self.role}] Worker stopped: {self.tasks_processed} processed, "
                f"{self.tasks_failed} failed"
            )


def main(argv=None) -> int:
    """Run a role worker."""
    from personaflow.agents.factory import create_agent, load_agents_file
    from personaflow.config import default_marketplace
    from personaflow.marketplace.loader import load_marketplace
    from personaflow.personas.registry import PersonaRegistry

    parser = argparse.ArgumentParser(description="Serve a personaflow role over RabbitMQ")
    parser.add_argument("--role", required=True, help="Role to serve")
    parser.add_argument("--agent", default="echo", choices=["echo", "persona"])
    parser.add_argument("--provider", default="openai", choices=["openai", "anthropic"])
    parser.add_argument("--agents", default=None, help="Agents file (overrides --agent and --provider)")
    parser.add_argument("--marketplace", default=default_marketplace())
    parser.add_argument("--bus-config", default=None, help="Path to bus.yaml")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    )
    if not args.verbose:
        logging.getLogger("pika").setLevel(logging.WARNING)

    personas = PersonaRegistry()
    if args.marketplace:
        load_marketplace(args.marketplace).register_into(personas)

    if args.agents:
        agents, default_factory = load_agents_file(args.agents, personas)
        agent = agents.get(args.role) or default_factory(args.role)
    else:
        spec = {"type": args.agent, "llm": {"provider": args.provider}}
        agent = create_agent(spec, args.role, personas)
    worker = RoleWorker(args.role, agent, bus=AmqpBus(args.bus_config))

    def handle_signal(sig, frame):
        logger.info(f"[{args.role}] Received shutdown signal")
        worker.bus.stop_consuming()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    worker.start()
    return 0


if __name__ == "__main__":
    sys.exit(main())
