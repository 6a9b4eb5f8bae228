"""
Configuration loader — reads provision.yml (or a bundled profile).

Reads YAML, validates it against the pydantic schema and applies the
environment overrides the provisioning scripts have always honoured
(``WORKSPACE``, ``AUTO_UPDATE``).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from importlib import resources
from pathlib import Path

import yaml

from aiprovision.core.models.config import ProvisionConfig

logger = logging.getLogger(__name__)

# Default config filename
CONFIG_FILE = "provision.yml"

PROFILES_DIR = ("data", "profiles")

_FALSE_VALUES = ("", "0", "false", "no", "off")


class ConfigError(Exception):
    """Raised when provisioning configuration is invalid or missing."""


def _profiles_root():
    return resources.files("aiprovision").joinpath(*PROFILES_DIR)


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for provision.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to provision.yml, or None if not found.
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


def parse_config(raw: str, source: str = "<string>") -> ProvisionConfig:
    """Validate YAML text into a ProvisionConfig.

    Raises:
        ConfigError: If the YAML or the schema is invalid.
    """
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {source}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {source}, got {type(data).__name__}")

    try:
        config = ProvisionConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid provisioning configuration in {source}: {e}") from e

    logger.debug("Loaded '%s' with %d units from %s", config.name, len(config.units), source)
    return config


def load_config(path: Path | None = None) -> ProvisionConfig:
    """Load and validate a provisioning config file.

    Args:
        path: Explicit path to provision.yml. If None, searches upward.

    Returns:
        Validated ProvisionConfig model.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_config_file()

    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILE} found. "
            "Create one, pass --config, or pick a bundled --profile."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading provisioning config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    return parse_config(raw, source=str(path))


def list_profiles() -> list[str]:
    """Names of the bundled profiles."""
    root = _profiles_root()
    return sorted(
        entry.name.removesuffix(".yml")
        for entry in root.iterdir()
        if entry.name.endswith(".yml")
    )


def load_profile(name: str) -> ProvisionConfig:
    """Load a bundled profile (``user``, ``root``, ``vastai``, ...).

    Raises:
        ConfigError: If there is no such profile.
    """
    resource = _profiles_root().joinpath(f"{name}.yml")
    if not resource.is_file():
        raise ConfigError(
            f"Unknown profile '{name}'. Available: {', '.join(list_profiles())}"
        )
    return parse_config(resource.read_text(encoding="utf-8"), source=f"profile '{name}'")


def apply_env_overrides(
    config: ProvisionConfig,
    environ: Mapping[str, str] | None = None,
    workspace: str | None = None,
) -> ProvisionConfig:
    """Return a copy of ``config`` with environment overrides applied.

    Precedence for the workspace: explicit argument > ``$WORKSPACE`` >
    the config value.  ``$AUTO_UPDATE`` turns updates of existing git
    checkouts on unless it is one of ``false``/``0``/``no``/``off``.
    """
    environ = os.environ if environ is None else environ
    updates: dict = {}

    ws = workspace or environ.get("WORKSPACE")
    if ws:
        updates["workspace"] = ws

    auto_update = environ.get("AUTO_UPDATE")
    if auto_update is not None:
        updates["auto_update"] = auto_update.strip().lower() not in _FALSE_VALUES

    if updates:
        logger.debug("Config overrides from environment: %s", updates)
        return config.model_copy(update=updates)
    return config
