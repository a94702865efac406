"""
Tests for persona parsing and the PersonaRegistry.
"""

import threading

import pytest

from personaflow.exceptions import MarketplaceError
from personaflow.personas.loader import load_personas, parse_persona, split_frontmatter
from personaflow.personas.models import Persona
from personaflow.personas.registry import PersonaRegistry

from conftest import write_persona

PERSONA_DOC = """---
name: security-auditor
description: Reviews code for vulnerabilities
expertise: security, authentication
tools: [Read, Grep]
model: sonnet
---

# Security Auditor

You audit everything.

```python
def check(password):
    return bcrypt.verify(password)
```

```
plain block
```
"""


# =============================================================================
# Parsing
# =============================================================================

class TestParsePersona:
    """Tests for persona document parsing."""

    def test_full_document(self):
        persona = parse_persona(PERSONA_DOC, plugin="team")
        assert persona.name == "security-auditor"
        assert persona.title == "Security Auditor"
        assert persona.expertise == ["security", "authentication"]
        assert persona.tools == ["Read", "Grep"]
        assert persona.model == "sonnet"
        assert persona.plugin == "team"
        assert persona.prompt.startswith("# Security Auditor")

    def test_code_examples_collected(self):
        persona = parse_persona(PERSONA_DOC)
        assert [e.language for e in persona.examples] == ["python", ""]
        assert "bcrypt.verify" in persona.examples[0].code

    def test_name_falls_back_to_file_stem(self):
        persona = parse_persona("---\ndescription: helper\n---\nBody", source_path="/x/qa-engineer.md")
        assert persona.name == "qa-engineer"
        assert persona.title is None

    def test_no_frontmatter_without_path(self):
        with pytest.raises(MarketplaceError):
            parse_persona("# Just a heading\n")

    def test_invalid_frontmatter(self):
        with pytest.raises(MarketplaceError):
            split_frontmatter("---\nname: [broken\n---\nbody")

    def test_frontmatter_must_be_mapping(self):
        with pytest.raises(MarketplaceError):
            split_frontmatter("---\n- a\n- b\n---\nbody")

    def test_bom_is_ignored(self):
        meta, body = split_frontmatter("\ufeff---\nname: x\n---\nbody")
        assert meta == {"name": "x"}
        assert body == "body"


class TestLoadPersonas:
    """Tests for loading persona directories."""

    def test_sorted_and_broken_skipped(self, tmp_path):
        write_persona(tmp_path, "zed", "ops")
        write_persona(tmp_path, "amy", "ui")
        (tmp_path / "broken.md").write_text("---\nname: [oops\n---\n")
        personas = load_personas(tmp_path, plugin="p")
        assert [p.name for p in personas] == ["amy", "zed"]
        assert all(p.plugin == "p" for p in personas)

    def test_missing_directory(self, tmp_path):
        assert load_personas(tmp_path / "nope") == []


# =============================================================================
# Registry
# =============================================================================

@pytest.fixture
def registry():
    registry = PersonaRegistry()
    registry.register(Persona(name="backend", expertise=["database", "api"], tools=["Bash"], plugin="core"))
    registry.register(Persona(name="frontend", expertise=["ui"], tools=["Read"], plugin="web"))
    registry.register(Persona(name="security", description="Finds vulnerabilities",
                              expertise=["security"], tools=["Read", "Grep"], plugin="core"))
    return registry


class TestPersonaRegistry:
    """Tests for registration and discovery."""

    def test_duplicate_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.register(Persona(name="backend"))

    def test_replace(self, registry):
        registry.register(Persona(name="backend", expertise=["go"]), replace=True)
        assert registry.get("backend").expertise == ["go"]
        assert len(registry) == 3

    def test_deregister(self, registry):
        assert registry.deregister("frontend") is True
        assert registry.deregister("frontend") is False
        assert "frontend" not in registry

    def test_find_is_and_logic(self, registry):
        assert [p.name for p in registry.find(tool="read")] == ["frontend", "security"]
        assert [p.name for p in registry.find(tool="Read", plugin="core")] == ["security"]
        assert registry.find(expertise="UI", plugin="core") == []

    def test_search(self, registry):
        assert [p.name for p in registry.search("VULNER")] == ["security"]
        assert [p.name for p in registry.search("data")] == ["backend"]

    def test_expert_for_exact(self, registry):
        assert registry.expert_for("Database") == "backend"

    def test_expert_for_contained_topic(self, registry):
        assert registry.expert_for("ui framework") == "frontend"
        assert registry.expert_for("billing") is None

    def test_expert_for_matches_whole_words(self, registry):
        """Expertise tags hidden inside longer words do not count."""
        assert registry.expert_for("build-tooling") is None
        assert registry.expert_for("rapid-prototyping") is None
        assert registry.expert_for("public api_gateway") == "backend"

    def test_expert_for_ambiguous(self, registry):
        registry.register(Persona(name="dba", expertise=["database"]))
        assert registry.expert_for("database") is None

    def test_callbacks(self, registry):
        seen = []
        registry.on_registered(lambda p: seen.append(("+", p.name)))
        registry.on_deregistered(lambda name: seen.append(("-", name)))
        registry.register(Persona(name="qa"))
        registry.deregister("qa")
        assert seen == [("+", "qa"), ("-", "qa")]

    def test_callback_errors_are_contained(self, registry):
        def boom(persona):
            raise RuntimeError("callback failed")

        registry.on_registered(boom)
        assert registry.register(Persona(name="qa")) == "qa"

    def test_stats(self, registry):
        stats = registry.get_stats()
        assert stats["total_personas"] == 3
        assert stats["by_plugin"] == {"core": 2, "web": 1}
        assert "database" in stats["expertise"]

    def test_concurrent_registration(self):
        registry = PersonaRegistry()
        threads = [
            threading.Thread(target=registry.register, args=(Persona(name=f"p{i}"),))
            for i in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(registry) == 20
