"""
Shared fixtures for personaflow tests.
"""

import json
from pathlib import Path

import pytest

from personaflow.bus.local import LocalBus
from personaflow.workflow.models import WorkflowDefinition

SAMPLE_MARKETPLACE = Path(__file__).parent.parent / "marketplace"


# =============================================================================
# Workflows
# =============================================================================

def make_workflow(stages, name="test_flow", conflict_policy=None):
    data = {"name": name, "stages": stages}
    if conflict_policy is not None:
        data["conflict_policy"] = conflict_policy
    return WorkflowDefinition.from_dict(data)


@pytest.fixture
def linear_workflow():
    """design -> build -> verify, implicit dependencies."""
    return make_workflow([
        {"name": "design", "roles": ["architect"]},
        {"name": "build", "roles": ["backend", "frontend"]},
        {"name": "verify", "roles": ["qa"]},
    ])


@pytest.fixture
def diamond_workflow():
    """plan -> (api, ui) -> release; api and ui share a wave."""
    return make_workflow([
        {"name": "plan", "roles": ["architect"], "depends_on": []},
        {"name": "api", "roles": ["backend"], "depends_on": ["plan"]},
        {"name": "ui", "roles": ["frontend"], "depends_on": ["plan"]},
        {"name": "release", "roles": ["qa"], "depends_on": ["api", "ui"]},
    ])


# =============================================================================
# Bus
# =============================================================================

@pytest.fixture
def bus():
    return LocalBus()


# =============================================================================
# Marketplaces
# =============================================================================

@pytest.fixture
def sample_marketplace_path():
    return SAMPLE_MARKETPLACE


def write_persona(directory: Path, name: str, expertise="", tools="Read", body=None):
    directory.mkdir(parents=True, exist_ok=True)
    text = (
        f"---\nname: {name}\ndescription: {name} persona\n"
        f"expertise: {expertise}\ntools: {tools}\n---\n\n"
        + (body if body is not None else f"# {name.title()}\n\nYou are {name}.\n")
    )
    (directory / f"{name}.md").write_text(text, encoding="utf-8")


@pytest.fixture
def make_marketplace(tmp_path):
    """Build a one-plugin marketplace under tmp_path."""

    def _make(plugin="team", personas=None, commands=None, workflows=None, with_manifest=True):
        root = tmp_path / "market"
        plugin_dir = root / "plugins" / plugin
        (plugin_dir / ".claude-plugin").mkdir(parents=True, exist_ok=True)
        (plugin_dir / ".claude-plugin" / "plugin.json").write_text(
            json.dumps({"name": plugin, "version": "1.2.0", "description": "test plugin"})
        )
        if with_manifest:
            (root / ".claude-plugin").mkdir(parents=True, exist_ok=True)
            (root / ".claude-plugin" / "marketplace.json").write_text(json.dumps({
                "name": "test-market",
                "plugins": [{"name": plugin, "source": f"plugins/{plugin}"}],
            }))

        for name, expertise in (personas or {}).items():
            write_persona(plugin_dir / "agents", name, expertise)

        (plugin_dir / "commands").mkdir(exist_ok=True)
        for name, text in (commands or {}).items():
            (plugin_dir / "commands" / f"{name}.md").write_text(text, encoding="utf-8")

        (plugin_dir / "workflows").mkdir(exist_ok=True)
        for name, text in (workflows or {}).items():
            (plugin_dir / "workflows" / f"{name}.yaml").write_text(text, encoding="utf-8")
        return root

    return _make
