"""Shared constants for phaseflow."""

import re

# Phase ID validation: st<2 digits>-<slug>; always use fullmatch()
PHASE_ID_PATTERN = re.compile(r'st[0-9]{2}-[a-z0-9]+(?:-[a-z0-9]+)*')

# Persisted layout (relative to the state root)
PHASES_DIRNAME = "phases"
LOCKS_DIRNAME = "locks"
BACKUPS_DIRNAME = "backups"
STATE_FILENAME = "state.json"
REGISTRY_FILENAME = "registry.json"
MEMORY_FILENAME = "memory.json"
REGISTRY_LOCK_NAME = "registry"
MEMORY_LOCK_NAME = "memory"

DEFAULT_STATE_DIR = ".phaseflow"
DEFAULT_BACKUP_LIMIT = 10
DEFAULT_LOG_LEVEL = "WARNING"
CONFIG_FILENAME = "phaseflow.yaml"
STATE_DIR_ENV = "PHASEFLOW_STATE_DIR"

SCHEMA_PHASE_STATE = "phase_state"
SCHEMA_REGISTRY = "registry"
SCHEMA_MEMORY = "memory"
SCHEMA_CONFIG = "config"

# CLI exit codes
EXIT_OK = 0
EXIT_REFUSED = 1
EXIT_ERROR = 2
EXIT_CONFLICT = 3
