"""Low-level file helpers for the state store.

Writes go to a temp file in the same directory, are fsynced, then moved over
the target with os.replace so a crash never leaves a half-written file.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path


def backup_timestamp() -> str:
    """Sortable timestamp for backup filenames."""
    return datetime.now().strftime("%Y%m%dT%H%M%S%f")


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_json(path: Path, data: dict) -> None:
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def read_json(path: Path):
    """Parse a JSON file. Raises OSError / json.JSONDecodeError unchanged."""
    return json.loads(path.read_text())
