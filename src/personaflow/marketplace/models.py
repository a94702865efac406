"""
Pydantic models for plugin marketplaces.

Layout of a marketplace directory:

    marketplace/
      .claude-plugin/marketplace.json     # lists plugins and their sources
      plugins/<plugin>/
        .claude-plugin/plugin.json        # plugin manifest
        agents/*.md                       # personas
        commands/*.md                     # slash-commands
        workflows/*.yaml                  # workflow definitions
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from personaflow.personas.models import Persona
from personaflow.workflow.models import WorkflowDefinition


# =============================================================================
# Manifests
# =============================================================================

class PluginEntry(BaseModel):
    """A plugin listed in marketplace.json."""
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1, description="Path relative to the marketplace root")
    description: str = ""
    version: Optional[str] = None


class MarketplaceManifest(BaseModel):
    """Content of .claude-plugin/marketplace.json."""
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    owner: Optional[Dict[str, Any]] = None
    description: str = ""
    plugins: List[PluginEntry] = Field(default_factory=list)

    @field_validator("plugins")
    @classmethod
    def validate_unique_plugins(cls, plugins):
        names = [p.name for p in plugins]
        if len(names) != len(set(names)):
            raise ValueError("Plugin names must be unique")
        return plugins


class PluginManifest(BaseModel):
    """Content of a plugin's .claude-plugin/plugin.json."""
    model_config = ConfigDict(extra="allow")

    name: str = Field(..., min_length=1)
    version: str = "0.1.0"
    description: str = ""
    author: Optional[Any] = None
    keywords: List[str] = Field(default_factory=list)
    path: Optional[str] = Field(None, description="Directory the plugin was loaded from")


# =============================================================================
# Commands
# =============================================================================

class SlashCommand(BaseModel):
    """A slash-command such as /full-feature."""
    name: str = Field(..., min_length=1)
    description: str = ""
    argument_hint: Optional[str] = None
    workflow: Optional[str] = Field(None, description="Workflow started by this command")
    template: str = Field(default="", description="Prompt template ($ARGUMENTS, $1..$9)")
    plugin: Optional[str] = None
    source_path: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_slash(cls, v):
        return v.lstrip("/")

    def summary(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "argument_hint": self.argument_hint,
            "workflow": self.workflow,
            "plugin": self.plugin,
        }


class CommandInvocation(BaseModel):
    """A parsed and rendered slash-command call."""
    command: str
    arguments: List[str] = Field(default_factory=list)
    prompt: str = ""
    workflow: Optional[str] = None


# =============================================================================
# Loaded marketplace
# =============================================================================

class Marketplace(BaseModel):
    """Everything loaded from one marketplace directory."""
    root: str
    manifest: Optional[MarketplaceManifest] = None
    plugins: List[PluginManifest] = Field(default_factory=list)
    personas: List[Persona] = Field(default_factory=list)
    commands: List[SlashCommand] = Field(default_factory=list)
    workflows: Dict[str, WorkflowDefinition] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list, description="Documents that failed to load")

    @property
    def name(self) -> str:
        return self.manifest.name if self.manifest else self.root

    def get_workflow(self, name: str) -> Optional[WorkflowDefinition]:
        return self.workflows.get(name)

    def register_into(self, persona_registry=None, command_registry=None) -> None:
        """Register personas and commands; later duplicates replace earlier ones."""
        if persona_registry is not None:
            for persona in self.personas:
                persona_registry.register(persona, replace=True)
        if command_registry is not None:
            for command in self.commands:
                command_registry.register(command, replace=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "plugins": len(self.plugins),
            "personas": len(self.personas),
            "commands": len(self.commands),
            "workflows": len(self.workflows),
            "errors": len(self.errors),
        }
