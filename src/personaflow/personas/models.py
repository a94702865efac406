"""
Pydantic models for agent personas.

A persona is a Markdown document with YAML frontmatter describing a
specialist role: who it is, what it knows, which tools it may use, and
example code illustrating its style.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class CodeExample(BaseModel):
    """A fenced code block found in a persona document. Never executed."""
    language: str = Field(default="", description="Info string of the fence")
    code: str = Field(..., description="Block content")


class Persona(BaseModel):
    """
    A specialist role definition.

    Example frontmatter:
        ---
        name: security-auditor
        description: Reviews designs and code for vulnerabilities
        expertise: [security, auth, owasp]
        tools: Read, Grep
        model: sonnet
        ---
    """
    name: str = Field(..., min_length=1, max_length=100, description="Role name (unique)")
    description: str = Field(default="")
    title: Optional[str] = Field(None, description="First '# ' heading of the body")
    expertise: List[str] = Field(default_factory=list, description="Topics this role is expert in")
    tools: List[str] = Field(default_factory=list)
    model: Optional[str] = Field(None, description="Preferred model hint")
    prompt: str = Field(default="", description="Markdown body used as system prompt")
    examples: List[CodeExample] = Field(default_factory=list)
    plugin: Optional[str] = None
    source_path: Optional[str] = None

    def has_expertise(self, topic: str) -> bool:
        """Case-insensitive match of a topic against expertise entries."""
        wanted = topic.casefold()
        return any(e.casefold() == wanted for e in self.expertise)

    def has_tool(self, tool: str) -> bool:
        wanted = tool.casefold()
        return any(t.casefold() == wanted for t in self.tools)

    def summary(self) -> dict:
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "expertise": self.expertise,
            "tools": self.tools,
            "plugin": self.plugin,
        }
