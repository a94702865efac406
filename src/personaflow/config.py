"""
Configuration loading for personaflow components.

Every component keeps its defaults in code and overlays one section of a
YAML file on top of them. Secrets and connection settings come from the
environment (optionally via a .env file).
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "PERSONAFLOW_CONFIG_DIR"
MARKETPLACE_ENV = "PERSONAFLOW_MARKETPLACE"

_dotenv_loaded = False


def ensure_dotenv() -> None:
    """Load .env once per process."""
    global _dotenv_loaded
    if not _dotenv_loaded:
        load_dotenv()
        _dotenv_loaded = True


def config_dir() -> Path:
    """Directory holding the YAML config files."""
    ensure_dotenv()
    return Path(os.getenv(CONFIG_DIR_ENV, "config"))


def default_marketplace() -> Optional[str]:
    ensure_dotenv()
    return os.getenv(MARKETPLACE_ENV)


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def load_section(
    config_path: Optional[str],
    section: Optional[str],
    defaults: Dict[str, Any],
) -> Dict[str, Any]:
    """
    Load one section of a YAML config file on top of defaults.

    Args:
        config_path: Path to the YAML file. Missing file means defaults.
        section: Top-level key to read. None reads the whole document.
        defaults: Default values (not mutated).

    Returns:
        Merged configuration dict.
    """
    config = copy.deepcopy(defaults)
    if not config_path or not Path(config_path).exists():
        return config

    try:
        with open(config_path) as f:
            file_config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}, using defaults")
        return config

    if section is not None:
        file_config = file_config.get(section) or {}
    if not isinstance(file_config, dict):
        logger.warning(f"Config section '{section}' in {config_path} is not a mapping, ignored")
        return config

    _deep_update(config, file_config)
    logger.debug(f"Loaded config from {config_path} (section={section})")
    return config
