"""Configuration loader for termpilot."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from termpilot.config.models import AppConfig

SECTIONS = ("model", "session", "retry", "stream", "tools", "paths")


def _apply_override(config_dict: dict[str, Any], key: str, value: Any) -> None:
    """Set ``value`` at a dotted key such as ``model.name``."""
    parts = key.split(".")
    current = config_dict
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def load_config_from_file(path: Path) -> AppConfig:
    """Load configuration from a TOML file.

    Args:
        path: Path to the TOML configuration file.

    Returns:
        AppConfig instance with loaded configuration.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the config file is invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    return load_config(path)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> AppConfig:
    """Load configuration with optional overrides.

    The TOML file has an optional top-level ``[general]`` table plus one
    table per section (``[model]``, ``[session]``, ``[retry]``, ``[stream]``,
    ``[tools]``, ``[paths]``).

    Args:
        config_path: Optional path to a TOML config file.
        overrides: Optional dictionary of overrides; keys may be dotted
            (``"model.name"``).

    Returns:
        AppConfig instance.
    """
    config_dict: dict[str, Any] = {}

    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            try:
                raw_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ValueError(f"Invalid config file {config_path}: {e}") from e

        for key, value in raw_config.get("general", {}).items():
            config_dict[key] = value

        for section in SECTIONS:
            if section in raw_config:
                config_dict[section] = dict(raw_config[section])

    if overrides:
        for key, value in overrides.items():
            if value is None:
                continue
            _apply_override(config_dict, key, value)

    return AppConfig(**config_dict)


def find_config_file() -> Optional[Path]:
    """Find the configuration file in standard locations.

    Searches in order:
    1. ./termpilot.toml
    2. ~/.config/termpilot/config.toml
    3. ~/.termpilot/config.toml

    Returns:
        Path to the config file if found, None otherwise.
    """
    search_paths = [
        Path.cwd() / "termpilot.toml",
        Path.home() / ".config" / "termpilot" / "config.toml",
        Path.home() / ".termpilot" / "config.toml",
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None
