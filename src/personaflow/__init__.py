"""
personaflow: multi-role workflow orchestration for agent personas.

Loads persona/command/workflow marketplaces, runs workflows stage by stage
across role agents, and merges their outputs into a shared context with
conflict resolution.
"""

__version__ = "0.1.0"
