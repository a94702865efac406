"""
Persona Registry: in-memory catalog of available roles.

Thread-safe: the API gateway reads it while marketplaces are (re)loaded.
"""

import logging
import re
import threading
from typing import Any, Callable, Dict, List, Optional

from .models import Persona

logger = logging.getLogger(__name__)


def _words(text: str) -> set:
    return {w for w in re.split(r"[\W_]+", text.casefold()) if w}


class PersonaRegistry:
    """
    In-memory Persona Registry.

    Provides:
    - Registration and deregistration of personas
    - Discovery by expertise, tool and plugin (AND logic)
    - Keyword search and domain-expert lookup
    - Callbacks on registration changes
    """

    def __init__(self):
        self._personas: Dict[str, Persona] = {}
        self._lock = threading.RLock()

        self._on_registered: List[Callable[[Persona], None]] = []
        self._on_deregistered: List[Callable[[str], None]] = []

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, persona: Persona, replace: bool = False) -> str:
        """
        Register a persona.

        Args:
            persona: Persona to register.
            replace: Overwrite an existing persona with the same name.

        Returns:
            Name of the registered persona.

        Raises:
            ValueError: If the name is taken and replace is False.
        """
        with self._lock:
            existing = self._personas.get(persona.name)
            if existing is not None and not replace:
                raise ValueError(
                    f"Persona '{persona.name}' already registered "
                    f"(from {existing.source_path or existing.plugin or 'code'})"
                )
            self._personas[persona.name] = persona
            logger.info(
                f"Persona registered: {persona.name} "
                f"(plugin={persona.plugin}, expertise={persona.expertise})"
            )

        for callback in self._on_registered:
            try:
                callback(persona)
            except Exception as e:
                logger.error(f"Error in on_registered callback: {e}")

        return persona.name

    def deregister(self, name: str) -> bool:
        """Remove a persona. Returns False if it was not registered."""
        with self._lock:
            if name not in self._personas:
                logger.warning(f"Cannot deregister: persona {name} not found")
                return False
            del self._personas[name]
            logger.info(f"Persona deregistered: {name}")

        for callback in self._on_deregistered:
            try:
                callback(name)
            except Exception as e:
                logger.error(f"Error in on_deregistered callback: {e}")

        return True

    # =========================================================================
    # Query / Discovery
    # =========================================================================

    def get(self, name: str) -> Optional[Persona]:
        with self._lock:
            return self._personas.get(name)

    def all(self) -> List[Persona]:
        """All personas sorted by name."""
        with self._lock:
            return [self._personas[n] for n in sorted(self._personas)]

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._personas)

    def find(
        self,
        expertise: Optional[str] = None,
        tool: Optional[str] = None,
        plugin: Optional[str] = None,
    ) -> List[Persona]:
        """
        Find personas matching all given criteria.

        Args:
            expertise: Expertise topic (case-insensitive).
            tool: Tool name (case-insensitive).
            plugin: Plugin name.

        Returns:
            Matching personas sorted by name.
        """
        results = []
        for persona in self.all():
            if expertise and not persona.has_expertise(expertise):
                continue
            if tool and not persona.has_tool(tool):
                continue
            if plugin and persona.plugin != plugin:
                continue
            results.append(persona)
        return results

    def search(self, keyword: str) -> List[Persona]:
        """Case-insensitive keyword search over name, title, description and expertise."""
        needle = keyword.casefold()
        results = []
        for persona in self.all():
            haystack = " ".join(
                [persona.name, persona.title or "", persona.description, *persona.expertise]
            ).casefold()
            if needle in haystack:
                results.append(persona)
        return results

    def expert_for(self, topic: str) -> Optional[str]:
        """
        Name of the persona whose expertise covers a topic.

        An exact expertise match wins; otherwise the first persona (by name)
        with an expertise entry whose words all appear as words of the topic
        ("ui" matches "ui framework", not "build-tooling"). None if nobody or
        more than one persona claims an exact match.
        """
        exact = self.find(expertise=topic)
        if len(exact) == 1:
            return exact[0].name
        if len(exact) > 1:
            logger.debug(f"Ambiguous expert for '{topic}': {[p.name for p in exact]}")
            return None

        wanted = _words(topic)
        for persona in self.all():
            if any(_words(e) and _words(e) <= wanted for e in persona.expertise):
                return persona.name
        return None

    # =========================================================================
    # Callbacks
    # =========================================================================

    def on_registered(self, callback: Callable[[Persona], None]):
        self._on_registered.append(callback)

    def on_deregistered(self, callback: Callable[[str], None]):
        self._on_deregistered.append(callback)

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_plugin: Dict[str, int] = {}
            for persona in self._personas.values():
                key = persona.plugin or "local"
                by_plugin[key] = by_plugin.get(key, 0) + 1
            return {
                "total_personas": len(self._personas),
                "by_plugin": by_plugin,
                "expertise": sorted({e for p in self._personas.values() for e in p.expertise}),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._personas)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._personas
