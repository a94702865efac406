"""
Plugin marketplaces: manifests, personas, slash-commands and workflows.
"""

from .commands import CommandRegistry, render_template
from .loader import MarketplaceLoader, load_marketplace, parse_command
from .models import (
    CommandInvocation,
    Marketplace,
    MarketplaceManifest,
    PluginEntry,
    PluginManifest,
    SlashCommand,
)

__all__ = [
    "CommandInvocation",
    "CommandRegistry",
    "Marketplace",
    "MarketplaceLoader",
    "MarketplaceManifest",
    "PluginEntry",
    "PluginManifest",
    "SlashCommand",
    "load_marketplace",
    "parse_command",
    "render_template",
]
