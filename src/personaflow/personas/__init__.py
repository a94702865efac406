"""
Agent personas: Markdown role documents and the registry that holds them.
"""

from .loader import load_persona, load_personas, parse_persona, split_frontmatter
from .models import CodeExample, Persona
from .registry import PersonaRegistry

__all__ = [
    "CodeExample",
    "Persona",
    "PersonaRegistry",
    "load_persona",
    "load_personas",
    "parse_persona",
    "split_frontmatter",
]
