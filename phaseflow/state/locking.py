"""
Lock management for phaseflow.

Uses flock for the short compare-and-replace window of a save. Locks are
never waited on: if another process holds one, LockBusy is raised at once
and the caller reports a conflict instead of queuing.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path

from phaseflow.lib.constants import LOCKS_DIRNAME, MEMORY_LOCK_NAME, REGISTRY_LOCK_NAME


class LockBusy(Exception):
    """Lock is held by another process."""

    def __init__(self, lock_name: str):
        self.lock_name = lock_name
        super().__init__(f"{lock_name} is held by another process")


@contextmanager
def _acquire_lock(lock_file: Path, lock_name: str):
    """
    Internal helper to take a file lock without blocking.

    Note: lock files are never deleted. Deleting creates a race where two
    processes hold "exclusive" locks on different inodes with the same path.
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        fd.close()
        raise LockBusy(lock_name) from None

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


@contextmanager
def phase_lock(root: Path, phase_id: str):
    """Hold the per-phase lock for the duration of a save."""
    lock_file = root / LOCKS_DIRNAME / f"{phase_id}.lock"
    with _acquire_lock(lock_file, f"lock for {phase_id}"):
        yield


@contextmanager
def memory_lock(root: Path):
    """Hold the memory log lock while appending a directive."""
    lock_file = root / LOCKS_DIRNAME / f"{MEMORY_LOCK_NAME}.lock"
    with _acquire_lock(lock_file, "memory lock"):
        yield


@contextmanager
def registry_lock(root: Path):
    """Hold the registry lock while rewriting registry.json."""
    lock_file = root / LOCKS_DIRNAME / f"{REGISTRY_LOCK_NAME}.lock"
    with _acquire_lock(lock_file, "registry lock"):
        yield
