"""
Dispatchers: how the orchestrator gets a task to a role.

LocalDispatcher calls role agents in-process; AmqpDispatcher sends the task
over RabbitMQ to a RoleWorker and waits for the RESULT.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from personaflow.agents.base_agent import RoleAgent
from personaflow.bus.core import AmqpBus, BusConfig
from personaflow.bus.models import TaskData
from personaflow.exceptions import RoleTimeoutError

logger = logging.getLogger(__name__)


class Dispatcher:
    """Sends one task to one role and returns the raw role output."""

    def dispatch(self, task: TaskData, timeout: float) -> Any:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources held by the dispatcher."""


class LocalDispatcher(Dispatcher):
    """
    Runs agents in-process on a thread pool.

    A role that exceeds its timeout raises RoleTimeoutError; its thread is
    left to finish in the background. The timeout starts when the agent
    starts, not while the task waits for a free thread.
    """

    def __init__(self, resolve_agent: Callable[[str], RoleAgent], max_workers: int = 16):
        self._resolve_agent = resolve_agent
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="role")

    def dispatch(self, task: TaskData, timeout: float) -> Any:
        agent = self._resolve_agent(task.role)
        context = dict(task.context)
        context.update(
            {"role": task.role, "stage": task.stage, "run_id": task.run_id, "inbox": task.inbox}
        )
        started = threading.Event()

        def run():
            started.set()
            return agent.execute(task.action, dict(task.params), context)

        future = self._executor.submit(run)
        started.wait()
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise RoleTimeoutError(task.role, task.stage, timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=False)


class AmqpDispatcher(Dispatcher):
    """
    Sends tasks to RoleWorkers over RabbitMQ.

    pika connections are not thread-safe, so every call opens its own bus
    connection.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        source: str = "personaflow.orchestrator",
        bus_factory: Optional[Callable[[], AmqpBus]] = None,
    ):
        self.source = source
        if bus_factory is None:
            config = BusConfig(config_path)
            bus_factory = lambda: AmqpBus(config=config)  # noqa: E731
        self._bus_factory = bus_factory

    def dispatch(self, task: TaskData, timeout: float) -> Dict[str, Any]:
        bus = self._bus_factory()
        bus.connect()
        try:
            result = bus.call(
                task.role,
                task.model_dump(mode="json"),
                timeout=timeout,
                source=self.source,
            )
        except TimeoutError:
            raise RoleTimeoutError(task.role, task.stage, timeout)
        finally:
            bus.disconnect()
        logger.debug(f"{task.role}/{task.stage}: result in {result.get('execution_time_ms')}ms")
        return result.get("output") or {}
