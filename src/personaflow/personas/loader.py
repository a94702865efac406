"""
Persona Loader - parses persona Markdown documents.

Expected format:
    ---
    name: backend-developer
    description: Builds APIs and services
    expertise: api, database
    tools: [Read, Write, Bash]
    ---

    # Backend Developer
    You are a senior backend developer...

    ```python
    def example(): ...
    ```
"""

import logging
import re
from pathlib import Path
from typing import Any, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from personaflow.exceptions import MarketplaceError

from .models import CodeExample, Persona

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n(.*))?$", re.DOTALL)
_HEADING_RE = re.compile(r"^#[ \t]+(.+?)[ \t]*$", re.MULTILINE)
_FENCE_RE = re.compile(r"^```([^\n`]*)\n(.*?)^```\s*$", re.DOTALL | re.MULTILINE)


def split_frontmatter(text: str, source: str = "<string>") -> Tuple[dict, str]:
    """
    Split a Markdown document into its YAML frontmatter and body.

    A document without frontmatter yields an empty dict and the whole text.

    Raises:
        MarketplaceError: If the frontmatter is not valid YAML or not a mapping.
    """
    match = _FRONTMATTER_RE.match(text.lstrip("\ufeff"))
    if not match:
        return {}, text

    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise MarketplaceError(f"Invalid YAML frontmatter in {source}: {e}") from e
    if not isinstance(meta, dict):
        raise MarketplaceError(f"Frontmatter in {source} is not a mapping")
    return meta, (match.group(2) or "")


def _as_list(value: Any) -> List[str]:
    """Accept a YAML list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value)]


def parse_persona(
    text: str,
    source_path: Optional[str] = None,
    plugin: Optional[str] = None,
) -> Persona:
    """
    Parse a persona document.

    Args:
        text: Document content.
        source_path: File the content came from. Its stem is the fallback name.
        plugin: Name of the plugin that ships the persona.

    Returns:
        Parsed Persona.

    Raises:
        MarketplaceError: If frontmatter is invalid or no name can be derived.
    """
    source = source_path or "<string>"
    meta, body = split_frontmatter(text, source)

    name = meta.get("name") or (Path(source_path).stem if source_path else None)
    if not name:
        raise MarketplaceError(f"Persona in {source} has no name")

    heading = _HEADING_RE.search(body)
    examples = [
        CodeExample(language=m.group(1).strip(), code=m.group(2).rstrip("\n"))
        for m in _FENCE_RE.finditer(body)
    ]

    return Persona(
        name=str(name),
        description=str(meta.get("description") or ""),
        title=heading.group(1) if heading else None,
        expertise=_as_list(meta.get("expertise")),
        tools=_as_list(meta.get("tools")),
        model=meta.get("model"),
        prompt=body.strip(),
        examples=examples,
        plugin=plugin,
        source_path=source_path,
    )


def load_persona(path, plugin: Optional[str] = None) -> Persona:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MarketplaceError(f"Cannot read persona {path}: {e}") from e
    return parse_persona(text, str(path), plugin)


def load_personas(directory, plugin: Optional[str] = None) -> List[Persona]:
    """
    Load every *.md persona in a directory, sorted by file name.

    Unparseable documents are skipped with an error log.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    personas = []
    for path in sorted(directory.glob("*.md")):
        try:
            personas.append(load_persona(path, plugin))
        except (MarketplaceError, ValidationError) as e:
            logger.error(f"Skipping persona {path}: {e}")
    logger.debug(f"Loaded {len(personas)} personas from {directory}")
    return personas
