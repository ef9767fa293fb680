"""
Configuration loader — reads stateplane.yml into a ProjectConfig.

Reads YAML, validates against the Pydantic schema, and returns the
typed config. The file may be flat or wrap everything under a
``project`` key.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from stateplane.core.errors import InvalidResourceError, StateplaneError
from stateplane.core.models.project import ProjectConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "stateplane.yml"


class ConfigError(StateplaneError):
    """Raised when stateplane.yml is invalid or missing."""


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for stateplane.yml starting from *start_dir*, walking up.

    Returns:
        Path to stateplane.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_config(path: Path | None = None) -> ProjectConfig:
    """Load and validate project configuration.

    Args:
        path: Explicit path to stateplane.yml. If None, searches upward.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(f"No {CONFIG_FILE} found. Create one or pass --config.")

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    if isinstance(data.get("project"), dict):
        project_data = dict(data["project"])
        for key, value in data.items():
            if key != "project" and key not in project_data:
                project_data[key] = value
    else:
        project_data = data

    try:
        config = ProjectConfig.model_validate(project_data)
    except (ValidationError, InvalidResourceError) as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    logger.info("Loaded config for scope '%s' (state: %s)", config.scope, config.state.backend)
    return config


def config_root(config_path: Path) -> Path:
    """Directory that relative paths in the config resolve against."""
    return config_path.parent.resolve()
