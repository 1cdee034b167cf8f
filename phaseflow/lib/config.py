"""
Configuration loader for phaseflow.

Loads phaseflow.yaml from the project directory. Every setting has a default,
so a missing file is fine; invalid settings are logged and replaced by their
defaults. PHASEFLOW_STATE_DIR overrides state_dir.

Example phaseflow.yaml:

    state_dir: .phaseflow
    backup_limit: 10
    templates_dir: docs/templates
    log_level: INFO
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from phaseflow.lib.constants import (
    CONFIG_FILENAME,
    DEFAULT_BACKUP_LIMIT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_STATE_DIR,
    SCHEMA_CONFIG,
    STATE_DIR_ENV,
)
from phaseflow.lib.validate import validate

logger = logging.getLogger(__name__)

KNOWN_SETTINGS = ("state_dir", "backup_limit", "templates_dir", "log_level")


@dataclass
class PhaseflowConfig:
    """Resolved configuration; all paths absolute."""
    project_dir: Path
    state_dir: Path
    backup_limit: int = DEFAULT_BACKUP_LIMIT
    templates_dir: Optional[Path] = None
    log_level: str = DEFAULT_LOG_LEVEL


def _read_settings(config_path: Path) -> dict:
    """Read raw settings, dropping anything unknown or invalid with a warning."""
    if not config_path.exists():
        return {}

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_path}: expected a mapping, got {type(data).__name__}")
        return {}

    settings = {}
    for key, value in data.items():
        if key in KNOWN_SETTINGS:
            settings[key] = value
        else:
            logger.warning(f"Unknown setting '{key}' in {config_path} ignored")

    result = validate(settings, SCHEMA_CONFIG)
    for error in result.errors:
        key = error["path"].split(".")[0]
        if key in settings:
            logger.warning(
                f"Invalid {key} {settings[key]!r} in {config_path}: {error['reason']}; using default"
            )
            del settings[key]

    return settings


def _resolve(project_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else project_dir / path


def load_config(project_dir: Path | None = None) -> PhaseflowConfig:
    """Load phaseflow.yaml and return PhaseflowConfig."""
    project_dir = Path(project_dir) if project_dir else Path.cwd()
    settings = _read_settings(project_dir / CONFIG_FILENAME)

    state_dir = os.environ.get(STATE_DIR_ENV) or settings.get("state_dir", DEFAULT_STATE_DIR)
    templates_dir = settings.get("templates_dir")

    return PhaseflowConfig(
        project_dir=project_dir,
        state_dir=_resolve(project_dir, state_dir),
        backup_limit=settings.get("backup_limit", DEFAULT_BACKUP_LIMIT),
        templates_dir=_resolve(project_dir, templates_dir) if templates_dir else None,
        log_level=settings.get("log_level", DEFAULT_LOG_LEVEL),
    )
