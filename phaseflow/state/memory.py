"""
Memory directives for phaseflow.

The memory log is a process-wide, append-only list of directives recorded
with `remember`. It lives in {state_root}/memory.json and is read at the start
of every stage generation so each directive reaches the template renderer,
whatever phase is being worked on.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from phaseflow.lib.constants import MEMORY_FILENAME, SCHEMA_MEMORY
from phaseflow.lib.errors import StateCorruption
from phaseflow.lib.validate import validate, validate_before_write
from phaseflow.state.files import atomic_write_json, read_json
from phaseflow.workflow.models import now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Directive:
    text: str
    timestamp: str


def memory_path(root: Path) -> Path:
    return root / MEMORY_FILENAME


def load_memory(root: Path) -> list[Directive]:
    """Load all directives, oldest first.

    A missing file is an empty log. An unreadable one is logged and treated as
    empty for reading; append_directive() refuses to overwrite it.
    """
    path = memory_path(root)
    if not path.exists():
        return []

    try:
        data = read_json(path)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"[memory] Failed to read {path}: {e}")
        return []

    result = validate(data, SCHEMA_MEMORY)
    if not result.valid:
        logger.warning(f"[memory] Invalid memory log {path}: {result.summary()}")
        return []

    return [Directive(text=d["text"], timestamp=d["timestamp"]) for d in data["directives"]]


def append_directive(root: Path, text: str) -> Directive:
    """Append one directive. Existing entries are never modified or dropped."""
    path = memory_path(root)
    existing = []
    if path.exists():
        # Fail loudly rather than replace a log we cannot read
        data = read_json(path)
        result = validate(data, SCHEMA_MEMORY)
        if not result.valid:
            raise StateCorruption("memory", f"invalid memory log: {result.summary()}", result.errors)
        existing = list(data["directives"])

    directive = Directive(text=text, timestamp=now_iso())
    data = {"directives": existing + [{"text": directive.text, "timestamp": directive.timestamp}]}
    validate_before_write(data, SCHEMA_MEMORY, path)
    atomic_write_json(path, data)

    logger.info(f"[memory] Recorded directive: {text!r}")
    return directive


def format_memory_section(directives: list[str]) -> str:
    """Format directives for inclusion in a rendered document.

    Returns empty string if there are none.
    """
    if not directives:
        return ""
    return "\n".join(f"- {d}" for d in directives)
