"""
Loading of mirror settings and of the registry's own config.json.

Settings are layered: model defaults, then an optional YAML file, then
environment variables, then explicit overrides (command-line flags).
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from crates_mirror.domain.errors import RegistryConfigError, SettingsError
from crates_mirror.domain.models import MirrorSettings, RegistryConfig
from crates_mirror.services.mirror.index_walker import REGISTRY_CONFIG_FILE

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "CRATES_MIRROR_SETTINGS"
INDEX_DIR_ENV_VAR = "CRATES_MIRROR_INDEX_DIR"
STORE_DIR_ENV_VAR = "CRATES_MIRROR_STORE_DIR"
SNAPSHOT_ENV_VAR = "CRATES_MIRROR_SNAPSHOT"

_ENV_FIELDS = {
    INDEX_DIR_ENV_VAR: "index_dir",
    STORE_DIR_ENV_VAR: "store_dir",
    SNAPSHOT_ENV_VAR: "snapshot_path",
}


def _read_settings_file(path: Path) -> Dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise SettingsError(f"Unable to read settings file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise SettingsError(f"Settings file {path} is not valid YAML: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SettingsError(f"Settings file {path} must contain a mapping, got {type(raw).__name__}")
    return raw


def load_settings(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MirrorSettings:
    """
    Build MirrorSettings from file, environment and overrides.

    ``None`` values in ``overrides`` mean "not given" and do not mask lower layers.
    """
    environ = os.environ if environ is None else environ

    if path is None and environ.get(SETTINGS_ENV_VAR):
        path = Path(environ[SETTINGS_ENV_VAR]).expanduser()

    data: Dict[str, Any] = {}
    if path is not None:
        data.update(_read_settings_file(path))
        logger.debug(f"Loaded settings from {path}")

    for env_var, field_name in _ENV_FIELDS.items():
        value = environ.get(env_var)
        if value:
            data[field_name] = Path(value).expanduser()

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    try:
        return MirrorSettings(**data)
    except ValidationError as e:
        raise SettingsError(f"Invalid settings: {e}") from e


def load_registry_config(index_dir: Path) -> RegistryConfig:
    """Parse ``config.json`` at the root of the index. Any problem is fatal."""
    path = index_dir / REGISTRY_CONFIG_FILE
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryConfigError(f"Unable to open {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RegistryConfigError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise RegistryConfigError(f"{path} must contain a JSON object")

    try:
        config = RegistryConfig.model_validate({**data, "raw": raw})
    except ValidationError as e:
        raise RegistryConfigError(f"{path} is missing a usable 'dl' entry: {e}") from e

    logger.info(f"Using {config.dl}")
    return config
