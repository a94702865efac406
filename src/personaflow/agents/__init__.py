"""
Role agents and the worker that serves them over the bus.
"""

from .base_agent import RoleAgent
from .echo_agent import EchoAgent
from .factory import create_agent, load_agents_file
from .persona_agent import PersonaAgent, parse_reply
from .worker import RoleWorker

__all__ = [
    "RoleAgent",
    "EchoAgent",
    "PersonaAgent",
    "RoleWorker",
    "create_agent",
    "load_agents_file",
    "parse_reply",
]
