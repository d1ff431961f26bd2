"""Project configuration loading for slot clones."""

import logging
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError, ConfigNotFoundError
from .models import ProjectConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".slot-orchestrator.yaml"


def config_path(repo_path: str | Path) -> Path:
    return Path(repo_path) / CONFIG_FILENAME


def load_project_config(repo_path: str | Path) -> ProjectConfig:
    """Load and validate the project configuration of a clone.

    Args:
        repo_path: Root of the repository (or slot clone)

    Returns:
        Parsed ProjectConfig

    Raises:
        ConfigNotFoundError: If the config file doesn't exist
        ConfigError: If YAML parsing fails or a field is invalid
    """
    path = config_path(repo_path)

    if not path.exists():
        raise ConfigNotFoundError(path)

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {path}: {e}") from e

    config = parse_project_config(raw, source=str(path))
    logger.debug(f"Loaded project configuration from {path}")
    return config


def parse_project_config(raw: Any, source: str = "<config>") -> ProjectConfig:
    """Validate a decoded YAML document and build a ProjectConfig."""
    if not isinstance(raw, dict):
        raise ConfigError(f"{source}: expected a mapping at the top level")

    stack = raw.get("stack")
    if not isinstance(stack, str) or not stack.strip():
        raise ConfigError(f"{source}: 'stack' field is required")

    setup = raw.get("setup") or []
    if not isinstance(setup, list) or not all(isinstance(cmd, str) for cmd in setup):
        raise ConfigError(f"{source}: 'setup' must be a list of commands")

    overrides_raw = raw.get("port_overrides") or {}
    if not isinstance(overrides_raw, dict):
        raise ConfigError(f"{source}: 'port_overrides' must be a mapping")

    port_overrides: dict[str, int | None] = {}
    for var, port in overrides_raw.items():
        if not isinstance(var, str) or not var:
            raise ConfigError(f"{source}: invalid port variable name {var!r}")
        if port is not None and (not isinstance(port, int) or not 0 < port < 65536):
            raise ConfigError(f"{source}: invalid port {port!r} for {var}")
        port_overrides[var] = port

    base_branch = raw.get("base_branch") or "master"
    if not isinstance(base_branch, str):
        raise ConfigError(f"{source}: 'base_branch' must be a string")

    return ProjectConfig(
        stack=stack.strip(),
        setup=list(setup),
        port_overrides=port_overrides,
        base_branch=base_branch,
    )
