"""
Workspace: a loaded marketplace wired to registries and an orchestrator.

Shared by the CLI and the API gateway.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from personaflow.agents.factory import load_agents_file
from personaflow.marketplace.commands import CommandRegistry
from personaflow.marketplace.loader import load_marketplace
from personaflow.marketplace.models import CommandInvocation, Marketplace
from personaflow.orchestrator.orchestrator import Orchestrator
from personaflow.personas.registry import PersonaRegistry
from personaflow.storage.run_store import RunStore
from personaflow.workflow.models import WorkflowDefinition, WorkflowRun

logger = logging.getLogger(__name__)


class Workspace:
    """
    Personas, commands and workflows of one marketplace plus an orchestrator
    that can run them.
    """

    def __init__(
        self,
        marketplace: Optional[Union[str, Marketplace]] = None,
        agents_file: Optional[str] = None,
        db_path: Optional[str] = None,
        orchestrator_config: Optional[str] = None,
        orchestrator: Optional[Orchestrator] = None,
    ):
        if isinstance(marketplace, Marketplace):
            self.marketplace = marketplace
        elif marketplace:
            self.marketplace = load_marketplace(marketplace)
        else:
            self.marketplace = Marketplace(root="")

        self.personas = PersonaRegistry()
        self.commands = CommandRegistry()
        self.marketplace.register_into(self.personas, self.commands)
        for error in self.marketplace.errors:
            logger.warning(f"Marketplace: {error}")

        self.store = RunStore(db_path) if db_path else None
        if orchestrator is None:
            orchestrator = Orchestrator(
                config_path=orchestrator_config,
                store=self.store,
                persona_registry=self.personas,
            )
            agents, default_factory = load_agents_file(agents_file, self.personas)
            for role, agent in agents.items():
                orchestrator.register_agent(role, agent)
            orchestrator.set_default_agent(default_factory)
        self.orchestrator = orchestrator

    # =========================================================================
    # Workflows
    # =========================================================================

    def workflow_names(self) -> List[str]:
        return sorted(self.marketplace.workflows)

    def get_workflow(self, name_or_path: str) -> Optional[WorkflowDefinition]:
        """Find a marketplace workflow by name, or load a workflow YAML file."""
        definition = self.marketplace.get_workflow(name_or_path)
        if definition is None and Path(name_or_path).is_file():
            definition = self.orchestrator.load_workflow(name_or_path)
        return definition

    def run_workflow(
        self,
        definition: WorkflowDefinition,
        task: Union[str, Dict[str, Any], None],
        project: Optional[Dict[str, Any]] = None,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> WorkflowRun:
        return self.orchestrator.start(definition, task=task, project=project, inputs=inputs)

    def run_invocation(
        self,
        invocation: CommandInvocation,
        project: Optional[Dict[str, Any]] = None,
    ) -> WorkflowRun:
        """
        Run the workflow bound to an invoked slash command.

        Raises:
            ValueError: If the command has no workflow or the workflow is unknown.
        """
        if not invocation.workflow:
            raise ValueError(f"Command /{invocation.command} is not bound to a workflow")
        definition = self.marketplace.get_workflow(invocation.workflow)
        if definition is None:
            raise ValueError(
                f"Command /{invocation.command} references unknown workflow '{invocation.workflow}'"
            )
        command = self.commands.get(invocation.command)
        task = {
            "title": " ".join(invocation.arguments) or (command.description if command else invocation.command),
            "description": invocation.prompt,
            "arguments": invocation.arguments,
        }
        return self.orchestrator.start(definition, task=task, project=project)

    def close(self) -> None:
        self.orchestrator.close()
        if self.store is not None:
            self.store.close()
