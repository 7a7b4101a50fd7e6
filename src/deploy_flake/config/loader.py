# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/deploy_flake/config/loader.py

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from ..nixos.errors import ConfigurationError
from .models import DeployConfig

log = logging.getLogger("deploy_flake")

CONFIG_ENV_VAR = "DEPLOY_FLAKE_CONFIG"


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_config_file(path: Optional[Path]) -> Optional[Path]:
    """
    Locate the config file using this priority:

    1. explicit --config path (must exist)
    2. DEPLOY_FLAKE_CONFIG environment variable
    3. none: built-in defaults only
    """
    if path is not None:
        if not path.is_file():
            raise ConfigurationError(f"Config file {path} does not exist")
        return path

    env = os.environ.get(CONFIG_ENV_VAR)
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("%s=%s does not exist, skipping", CONFIG_ENV_VAR, env)

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Could not parse {path}", context=str(exc)) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def load_config(
    path: Optional[str | Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> DeployConfig:
    """
    Build the deploy configuration.

    Values from the YAML file (if any) are deep-merged with *overrides*
    (typically the CLI flags that were actually given), then validated.
    """
    data: dict = {}
    config_path = _find_config_file(Path(path) if path is not None else None)
    if config_path:
        log.debug("Loading config from %s", config_path)
        data = _load_yaml(config_path)

    if overrides:
        _deep_merge(data, overrides)

    try:
        return DeployConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError("Invalid deploy configuration", context=str(exc)) from exc
