"""
Orchestrator for personaflow.

Runs workflows stage by stage, dispatches tasks to roles and merges their
outputs into the shared context.
"""

from .dispatch import AmqpDispatcher, Dispatcher, LocalDispatcher
from .models import BROADCAST, RoleMessage, RoleOutput
from .orchestrator import Orchestrator

__all__ = [
    "Orchestrator",
    "Dispatcher",
    "LocalDispatcher",
    "AmqpDispatcher",
    "RoleMessage",
    "RoleOutput",
    "BROADCAST",
]
