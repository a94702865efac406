"""
Marketplace Loader: discovers plugins, personas, commands and workflows.

Plugins are discovered from:
- .claude-plugin/marketplace.json (explicit plugin list with sources)
- plugins/* directories when no manifest exists
- the root itself when it is a single plugin (.claude-plugin/plugin.json)
"""

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from personaflow.exceptions import MarketplaceError, WorkflowValidationError
from personaflow.personas.loader import load_personas, split_frontmatter
from personaflow.workflow.models import WorkflowDefinition

from .models import (
    Marketplace,
    MarketplaceManifest,
    PluginManifest,
    SlashCommand,
)

logger = logging.getLogger(__name__)

MANIFEST_DIR = ".claude-plugin"
MARKETPLACE_FILE = "marketplace.json"
PLUGIN_FILE = "plugin.json"


def _read_json(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MarketplaceError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise MarketplaceError(f"{path} must contain a JSON object")
    return data


def parse_command(text: str, source_path: Optional[str] = None, plugin: Optional[str] = None) -> SlashCommand:
    """
    Parse a slash-command document.

    Expected format:
        ---
        description: Build a feature end to end
        argument-hint: "<feature name>"
        workflow: full_feature
        ---
        Build the feature "$ARGUMENTS" ...
    """
    meta, body = split_frontmatter(text, source_path or "<string>")
    name = meta.get("name") or (Path(source_path).stem if source_path else None)
    if not name:
        raise MarketplaceError(f"Command in {source_path or '<string>'} has no name")

    hint = meta.get("argument-hint", meta.get("argument_hint"))
    return SlashCommand(
        name=str(name),
        description=str(meta.get("description") or ""),
        argument_hint=str(hint) if hint is not None else None,
        workflow=meta.get("workflow"),
        template=body.strip(),
        plugin=plugin,
        source_path=source_path,
    )


class MarketplaceLoader:
    """
    Loads a marketplace directory into a Marketplace.

    Broken persona, command or workflow documents are skipped and recorded
    in Marketplace.errors; broken manifests raise MarketplaceError.
    """

    def __init__(self, root):
        self.root = Path(root)

    def load(self) -> Marketplace:
        if not self.root.is_dir():
            raise MarketplaceError(f"Marketplace directory not found: {self.root}")

        manifest, plugin_dirs = self._discover_plugins()
        marketplace = Marketplace(root=str(self.root), manifest=manifest)

        for plugin_dir, listed_name in plugin_dirs:
            self._load_plugin(plugin_dir, listed_name, marketplace)

        logger.info(
            f"Marketplace '{marketplace.name}' loaded: {len(marketplace.plugins)} plugins, "
            f"{len(marketplace.personas)} personas, {len(marketplace.commands)} commands, "
            f"{len(marketplace.workflows)} workflows"
        )
        if marketplace.errors:
            logger.warning(f"{len(marketplace.errors)} marketplace documents failed to load")
        return marketplace

    # =========================================================================
    # Discovery
    # =========================================================================

    def _discover_plugins(self) -> Tuple[Optional[MarketplaceManifest], List[Tuple[Path, Optional[str]]]]:
        manifest_path = self.root / MANIFEST_DIR / MARKETPLACE_FILE
        if manifest_path.exists():
            try:
                manifest = MarketplaceManifest.model_validate(_read_json(manifest_path))
            except ValidationError as e:
                raise MarketplaceError(f"Invalid marketplace manifest {manifest_path}: {e}") from e
            return manifest, [
                (self._resolve_source(entry.source), entry.name) for entry in manifest.plugins
            ]

        plugins_dir = self.root / "plugins"
        if plugins_dir.is_dir():
            dirs = sorted(p for p in plugins_dir.iterdir() if p.is_dir())
            return None, [(d, None) for d in dirs]

        if (self.root / MANIFEST_DIR / PLUGIN_FILE).exists():
            return None, [(self.root, None)]

        logger.warning(f"No plugins found in {self.root}")
        return None, []

    def _resolve_source(self, source: str) -> Path:
        root = self.root.resolve()
        path = (root / source).resolve()
        if path != root and root not in path.parents:
            raise MarketplaceError(f"Plugin source '{source}' escapes the marketplace root")
        if not path.is_dir():
            raise MarketplaceError(f"Plugin source '{source}' is not a directory")
        return path

    # =========================================================================
    # Plugin loading
    # =========================================================================

    def _load_plugin(self, plugin_dir: Path, listed_name: Optional[str], marketplace: Marketplace):
        manifest_path = plugin_dir / MANIFEST_DIR / PLUGIN_FILE
        if manifest_path.exists():
            try:
                plugin = PluginManifest.model_validate(_read_json(manifest_path))
            except ValidationError as e:
                raise MarketplaceError(f"Invalid plugin manifest {manifest_path}: {e}") from e
        else:
            plugin = PluginManifest(name=listed_name or plugin_dir.name)

        if listed_name and plugin.name != listed_name:
            logger.warning(
                f"Plugin listed as '{listed_name}' calls itself '{plugin.name}', using '{listed_name}'"
            )
            plugin.name = listed_name
        plugin.path = str(plugin_dir)
        marketplace.plugins.append(plugin)

        personas = load_personas(plugin_dir / "agents", plugin=plugin.name)
        loaded_files = {p.source_path for p in personas}
        for path in sorted((plugin_dir / "agents").glob("*.md")):
            if str(path) not in loaded_files:
                marketplace.errors.append(f"persona {path}")
        marketplace.personas.extend(personas)

        for path in sorted((plugin_dir / "commands").glob("*.md")):
            try:
                command = parse_command(path.read_text(encoding="utf-8"), str(path), plugin.name)
            except (OSError, UnicodeDecodeError, MarketplaceError, ValidationError) as e:
                logger.error(f"Skipping command {path}: {e}")
                marketplace.errors.append(f"command {path}: {e}")
                continue
            marketplace.commands.append(command)

        workflow_files = sorted(
            list((plugin_dir / "workflows").glob("*.yaml")) + list((plugin_dir / "workflows").glob("*.yml"))
        )
        for path in workflow_files:
            try:
                definition = WorkflowDefinition.from_yaml(str(path))
            except (OSError, WorkflowValidationError) as e:
                logger.error(f"Skipping workflow {path}: {e}")
                marketplace.errors.append(f"workflow {path}: {e}")
                continue
            if definition.name in marketplace.workflows:
                logger.warning(f"Workflow '{definition.name}' from {path} replaces an earlier definition")
            marketplace.workflows[definition.name] = definition

        logger.debug(f"Plugin loaded: {plugin.name} from {plugin_dir}")


def load_marketplace(root) -> Marketplace:
    return MarketplaceLoader(root).load()
