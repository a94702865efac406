"""
Command Registry: slash-commands and their invocation.

    /full-feature "Checkout flow" web
        -> command "full-feature", arguments ["Checkout flow", "web"]
        -> template with $ARGUMENTS = 'Checkout flow web', $1 = 'Checkout flow', $2 = 'web'
"""

import logging
import re
import shlex
import threading
from typing import List, Optional, Tuple

from personaflow.exceptions import CommandNotFoundError

from .models import CommandInvocation, SlashCommand

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\$(ARGUMENTS|[1-9])")


def render_template(template: str, arguments: List[str]) -> str:
    """Substitute $ARGUMENTS and $1..$9; missing positionals become empty."""
    def replace(match):
        key = match.group(1)
        if key == "ARGUMENTS":
            return " ".join(arguments)
        index = int(key) - 1
        return arguments[index] if index < len(arguments) else ""

    return _PLACEHOLDER_RE.sub(replace, template)


class CommandRegistry:
    """Thread-safe registry of slash-commands."""

    def __init__(self):
        self._commands = {}
        self._lock = threading.RLock()

    def register(self, command: SlashCommand, replace: bool = False) -> str:
        """
        Register a command.

        Raises:
            ValueError: If the name is taken and replace is False.
        """
        with self._lock:
            if command.name in self._commands and not replace:
                raise ValueError(f"Command '/{command.name}' already registered")
            self._commands[command.name] = command
            logger.info(f"Command registered: /{command.name} (workflow={command.workflow})")
        return command.name

    def get(self, name: str) -> Optional[SlashCommand]:
        with self._lock:
            return self._commands.get(name.lstrip("/"))

    def all(self) -> List[SlashCommand]:
        with self._lock:
            return [self._commands[n] for n in sorted(self._commands)]

    @staticmethod
    def parse(line: str) -> Tuple[str, List[str]]:
        """
        Split a command line into name and arguments (shell-style quoting).

        Raises:
            ValueError: On an empty line or unbalanced quotes.
        """
        try:
            parts = shlex.split(line)
        except ValueError as e:
            raise ValueError(f"Invalid command line {line!r}: {e}") from e
        if not parts or not parts[0].lstrip("/"):
            raise ValueError("Empty command line")
        return parts[0].lstrip("/"), parts[1:]

    def invoke(self, line: str) -> CommandInvocation:
        """
        Parse a command line and render the command's template.

        Raises:
            ValueError: If the line cannot be parsed.
            CommandNotFoundError: If the command is not registered.
        """
        name, arguments = self.parse(line)
        command = self.get(name)
        if command is None:
            raise CommandNotFoundError(name)

        logger.debug(f"Invoking /{name} with {arguments}")
        return CommandInvocation(
            command=command.name,
            arguments=arguments,
            prompt=render_template(command.template, arguments),
            workflow=command.workflow,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._commands)
