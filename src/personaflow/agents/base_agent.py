"""
Role Agent: abstract base class for everything that can play a role.

Agents are plain objects: the orchestrator calls them in-process, or a
RoleWorker hosts them behind the AMQP bus. Either way they implement one
method, execute(action, params, context), and return a role output dict:

    {
        "summary": "...",
        "recommendations": [{"topic": "database", "choice": "postgres", "confidence": 0.8}],
        "artifacts": [{"name": "api-spec", "kind": "openapi", "content": "..."}],
        "issues": [{"title": "...", "severity": "high"}],
        "resolved_issues": [{"issue_id": "ISS-001", "resolution": "..."}],
        "messages": [{"to": "qa-engineer", "content": "..."}],
        "notes": {"key": "value"},
    }
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class RoleAgent(ABC):
    """
    Abstract base class for role agents.

    Subclasses must implement:
    - execute(action, params, context) -> dict
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize agent with configuration.

        Args:
            config_path: Path to the agent's YAML config file.
            config: Config dict, used instead of config_path when given.
        """
        if config is not None:
            self.config = dict(config)
        elif config_path is not None:
            self.config = self._load_config(config_path)
        else:
            self.config = {}
        self.name = self.config.get("name", type(self).__name__)

    def _load_config(self, config_path: str) -> Dict[str, Any]:
        """Load agent configuration from a YAML file."""
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
        # {"echo_agent": {...}} -> {...}
        if len(config) == 1 and isinstance(next(iter(config.values())), dict):
            return next(iter(config.values()))
        return config

    @abstractmethod
    def execute(
        self,
        action: str,
        params: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Execute an action for a role.

        Args:
            action: Action of the stage (e.g. "design", "implement")
            params: Stage params plus run inputs
            context: Shared context view for the role, including 'role',
                'stage', 'run_id', 'inbox' and 'stage_outputs'

        Returns:
            Role output dict

        Raises:
            Exception: Any error fails the role for this attempt
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
