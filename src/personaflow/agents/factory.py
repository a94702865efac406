"""
Agent factory: builds role agents from YAML agent specs.

Agents file (passed to `personaflow run --agents FILE`):

    agents:
      default:
        type: echo
      roles:
        architect:
          type: persona
          llm: {provider: anthropic, model: claude-3-5-haiku-latest}
        security-auditor:
          type: echo
          scripts: {...}
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from personaflow.config import load_section
from personaflow.exceptions import AgentNotFoundError
from personaflow.personas.registry import PersonaRegistry

from .base_agent import RoleAgent
from .echo_agent import EchoAgent
from .persona_agent import PersonaAgent

logger = logging.getLogger(__name__)

AgentFactory = Callable[[str], RoleAgent]


def create_agent(
    spec: Dict[str, Any],
    role: str,
    personas: Optional[PersonaRegistry] = None,
) -> RoleAgent:
    """
    Build one agent for a role.

    Raises:
        AgentNotFoundError: If a persona agent is requested for an unknown persona.
        ValueError: If the agent type is unknown.
    """
    kind = spec.get("type", "echo")
    if kind == "echo":
        return EchoAgent(config=spec)
    if kind == "persona":
        persona = personas.get(spec.get("persona", role)) if personas else None
        if persona is None:
            raise AgentNotFoundError(role)
        return PersonaAgent(persona, config=spec)
    raise ValueError(f"Unknown agent type: {kind}")


def load_agents_file(
    path: Optional[str],
    personas: Optional[PersonaRegistry] = None,
) -> Tuple[Dict[str, RoleAgent], AgentFactory]:
    """
    Load an agents file.

    Returns:
        (agents per role, factory for roles without an explicit agent)
    """
    config = load_section(path, "agents", {"default": {"type": "echo"}, "roles": {}})

    agents = {
        role: create_agent(spec or {}, role, personas)
        for role, spec in (config.get("roles") or {}).items()
    }
    default_spec = config.get("default") or {"type": "echo"}

    def factory(role: str) -> RoleAgent:
        return create_agent(default_spec, role, personas)

    logger.info(f"Agents loaded: {sorted(agents)} (default type={default_spec.get('type', 'echo')})")
    return agents, factory
