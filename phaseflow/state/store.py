"""
Durable storage for phase state, the registry, and rendered documents.

Layout under the state root:

    registry.json                          summary index (derived)
    memory.json                            global directive log
    phases/<id>/state.json                 PhaseState document
    phases/<id>/<id>-<stage>.md            rendered stage documents
    phases/<id>/backups/state.<ts>.json    prior versions, newest last
    locks/<id>.lock                        per-phase save lock

Every save is validated against the phase_state schema, checked against the
version the caller loaded (optimistic concurrency), backed up, and written
atomically. Nothing else in phaseflow touches these files.
"""

import json
import logging
import shutil
from pathlib import Path

from phaseflow.lib.constants import (
    BACKUPS_DIRNAME,
    DEFAULT_BACKUP_LIMIT,
    PHASE_ID_PATTERN,
    PHASES_DIRNAME,
    REGISTRY_FILENAME,
    SCHEMA_PHASE_STATE,
    SCHEMA_REGISTRY,
    STATE_FILENAME,
)
from phaseflow.lib.errors import (
    ConcurrentModification,
    InvalidArgument,
    InvalidPhaseFormat,
    PhaseNotFound,
    StateCorruption,
    ValidationFailure,
)
from phaseflow.lib.validate import validate, validate_before_write
from phaseflow.state import memory
from phaseflow.state.files import atomic_write_json, atomic_write_text, backup_timestamp, read_json
from phaseflow.state.locking import LockBusy, memory_lock, phase_lock, registry_lock
from phaseflow.workflow.models import (
    STAGE_ORDER,
    PhaseState,
    RegistryEntry,
    Stage,
    StageRecord,
    now_iso,
    title_from_phase_id,
)

logger = logging.getLogger(__name__)


def create_initial_state(phase_id: str) -> PhaseState:
    """Build a fresh PhaseState with every stage not_started. No I/O."""
    if not isinstance(phase_id, str) or not PHASE_ID_PATTERN.fullmatch(phase_id):
        raise InvalidPhaseFormat(phase_id)

    now = now_iso()
    return PhaseState(
        id=phase_id,
        title=title_from_phase_id(phase_id),
        created_at=now,
        updated_at=now,
        stages={stage: StageRecord() for stage in STAGE_ORDER},
        memory=[],
        version=0,
    )


class StateStore:
    """File-backed store rooted at a state directory."""

    def __init__(self, root: Path, backup_limit: int = DEFAULT_BACKUP_LIMIT):
        self.root = Path(root)
        self.backup_limit = backup_limit

    # ── Paths ───────────────────────────────────────────────────────────────

    def phase_dir(self, phase_id: str) -> Path:
        return self.root / PHASES_DIRNAME / phase_id

    def state_path(self, phase_id: str) -> Path:
        return self.phase_dir(phase_id) / STATE_FILENAME

    def backups_dir(self, phase_id: str) -> Path:
        return self.phase_dir(phase_id) / BACKUPS_DIRNAME

    @property
    def registry_path(self) -> Path:
        return self.root / REGISTRY_FILENAME

    def exists(self, phase_id: str) -> bool:
        return self.state_path(phase_id).exists()

    def list_phase_ids(self) -> list[str]:
        phases_dir = self.root / PHASES_DIRNAME
        if not phases_dir.exists():
            return []
        return sorted(
            d.name for d in phases_dir.iterdir()
            if d.is_dir() and PHASE_ID_PATTERN.fullmatch(d.name) and (d / STATE_FILENAME).exists()
        )

    # ── Phase state ─────────────────────────────────────────────────────────

    create_initial_state = staticmethod(create_initial_state)

    def load(self, phase_id: str) -> PhaseState:
        """Read and validate a phase's state.

        Raises:
            PhaseNotFound: No state has been saved for this phase
            StateCorruption: File unreadable, not JSON, or fails the schema
        """
        path = self.state_path(phase_id)
        if not path.exists():
            raise PhaseNotFound(phase_id)

        try:
            data = read_json(path)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            raise StateCorruption(phase_id, e) from e

        result = validate(data, SCHEMA_PHASE_STATE)
        if not result.valid:
            raise StateCorruption(phase_id, f"schema violation: {result.summary()}", result.errors)
        if data["id"] != phase_id:
            raise StateCorruption(phase_id, f"document belongs to {data['id']}")

        return PhaseState.from_dict(data)

    def recover(self, phase_id: str) -> PhaseState:
        """Replace an unreadable state with a fresh one.

        The file is re-checked under the phase lock first: if it is valid
        again (another session already recovered and saved), nothing is
        written and ConcurrentModification is raised so the caller reloads.

        The corrupt bytes are kept as backups/state.corrupt.<ts>.json for
        manual inspection. All prior stage history is lost; callers must
        surface that to the operator.
        """
        path = self.state_path(phase_id)
        fresh = create_initial_state(phase_id)

        try:
            with phase_lock(self.root, phase_id):
                preserved = None
                if path.exists():
                    try:
                        current = self.load(phase_id)
                    except StateCorruption:
                        current = None
                    if current is not None:
                        raise ConcurrentModification(phase_id, None, current.version)

                    preserved = self.backups_dir(phase_id) / f"state.corrupt.{backup_timestamp()}.json"
                    preserved.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(path, preserved)

                fresh.version = 1
                document = fresh.to_dict()
                validate_before_write(document, SCHEMA_PHASE_STATE, path)
                atomic_write_json(path, document)
        except LockBusy:
            raise ConcurrentModification(phase_id, None, None) from None

        logger.warning(
            f"[store] {phase_id}: state was corrupt and has been reset to not_started; "
            f"original kept at {preserved}"
        )
        self.update_registry(phase_id, fresh.summary())
        return fresh

    def load_or_recover(self, phase_id: str) -> tuple[PhaseState, StateCorruption | None]:
        """Load state, resetting it if corrupt.

        Returns (state, corruption) where corruption is the StateCorruption
        that triggered a reset, or None.
        """
        try:
            return self.load(phase_id), None
        except StateCorruption as e:
            logger.warning(f"[store] {e}")
            return self.recover(phase_id), e

    def _read_disk_version(self, phase_id: str) -> int | None:
        path = self.state_path(phase_id)
        if not path.exists():
            return None
        try:
            data = read_json(path)
            return int(data["version"])
        except (json.JSONDecodeError, UnicodeDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            raise StateCorruption(phase_id, e) from e

    def save(
        self,
        phase_id: str,
        state: PhaseState,
        documents: dict[Stage, str] | None = None,
    ) -> PhaseState:
        """Persist state, returning the saved copy with its new version.

        `state.version` must still match the version on disk (0 for a phase
        that has never been saved); otherwise ConcurrentModification is raised
        and nothing is written. Rendered `documents` are written in the same
        critical section, so a losing writer never replaces the winner's
        document.

        Raises:
            ValidationFailure: The document does not match the schema
            ConcurrentModification: State changed on disk since it was loaded
        """
        if state.id != phase_id:
            raise InvalidArgument(
                f"Cannot save state of {state.id} as {phase_id}", phase_id=phase_id
            )

        path = self.state_path(phase_id)
        document = state.to_dict()
        document["version"] = state.version + 1
        document["updated_at"] = now_iso()
        validate_before_write(document, SCHEMA_PHASE_STATE, path)

        try:
            with phase_lock(self.root, phase_id):
                on_disk = self._read_disk_version(phase_id)
                expected = state.version if state.version > 0 else None
                if on_disk != expected:
                    raise ConcurrentModification(phase_id, state.version, on_disk)

                for stage, content in (documents or {}).items():
                    self.write_document(phase_id, stage, content)
                self.backup_state(phase_id)
                atomic_write_json(path, document)
        except LockBusy:
            raise ConcurrentModification(phase_id, state.version, None) from None

        self._prune_backups(phase_id)
        saved = PhaseState.from_dict(document)
        logger.debug(f"[store] {phase_id}: saved version {saved.version}")

        self.update_registry(phase_id, saved.summary())
        return saved

    # ── Backups ─────────────────────────────────────────────────────────────

    def backup_state(self, phase_id: str) -> Path | None:
        """Copy the current state file aside. Returns None if there is none."""
        path = self.state_path(phase_id)
        if not path.exists():
            return None

        backup_path = self.backups_dir(phase_id) / f"state.{backup_timestamp()}.json"
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup_path)
        return backup_path

    def list_backups(self, phase_id: str) -> list[Path]:
        """Regular (non-corrupt) backups, oldest first."""
        backups_dir = self.backups_dir(phase_id)
        if not backups_dir.exists():
            return []
        return sorted(
            p for p in backups_dir.glob("state.*.json")
            if not p.name.startswith("state.corrupt.")
        )

    def _prune_backups(self, phase_id: str) -> None:
        backups = self.list_backups(phase_id)
        for old in backups[:-self.backup_limit]:
            try:
                old.unlink()
            except OSError as e:
                logger.warning(f"[store] Failed to prune backup {old}: {e}")

    def restore_latest_backup(self, phase_id: str) -> PhaseState:
        """Parse the most recent valid backup for manual recovery.

        Does not write anything; the operator decides whether to save it.
        """
        backups = self.list_backups(phase_id)
        if not backups:
            raise PhaseNotFound(phase_id, command="restore")

        for backup in reversed(backups):
            try:
                data = read_json(backup)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"[store] Skipping unreadable backup {backup}: {e}")
                continue
            if validate(data, SCHEMA_PHASE_STATE).valid:
                return PhaseState.from_dict(data)
            logger.warning(f"[store] Skipping invalid backup {backup}")

        raise StateCorruption(phase_id, "no valid backup found")

    # ── Documents ───────────────────────────────────────────────────────────

    def document_reference(self, phase_id: str, stage: Stage) -> str:
        """Reference (path relative to the state root) of a stage document."""
        return f"{PHASES_DIRNAME}/{phase_id}/{phase_id}-{stage.value}.md"

    def write_document(self, phase_id: str, stage: Stage, content: str) -> str:
        """Write a rendered stage document; returns its reference."""
        reference = self.document_reference(phase_id, stage)
        atomic_write_text(self.root / reference, content)
        return reference

    def read_document(self, reference: str | None) -> str | None:
        if not reference:
            return None
        path = self.root / reference
        try:
            return path.read_text()
        except OSError as e:
            logger.warning(f"[store] Failed to read document {reference}: {e}")
            return None

    # ── Registry ────────────────────────────────────────────────────────────

    def _read_registry(self) -> dict:
        if not self.registry_path.exists():
            return {"phases": {}}
        try:
            data = read_json(self.registry_path)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"[store] Registry unreadable, rebuilding from phase state: {e}")
            return {"phases": {}}
        result = validate(data, SCHEMA_REGISTRY)
        if not result.valid:
            logger.warning(f"[store] Registry invalid, rebuilding from phase state: {result.summary()}")
            return {"phases": {}}
        return data

    def load_registry(self) -> dict[str, RegistryEntry]:
        data = self._read_registry()
        return {pid: RegistryEntry.from_dict(entry) for pid, entry in data["phases"].items()}

    def _write_registry(self, entries: dict[str, RegistryEntry]) -> None:
        data = {"phases": {pid: entries[pid].to_dict() for pid in sorted(entries)}}
        validate_before_write(data, SCHEMA_REGISTRY, self.registry_path)
        atomic_write_json(self.registry_path, data)

    def update_registry(self, phase_id: str, summary: RegistryEntry) -> bool:
        """Record a phase summary. Called after every successful save.

        Returns False (after logging) if the registry could not be updated;
        the phase state remains the source of truth and status() repairs the
        entry later.
        """
        try:
            with registry_lock(self.root):
                entries = self.load_registry()
                entries[phase_id] = summary
                self._write_registry(entries)
        except (LockBusy, OSError, ValidationFailure) as e:
            logger.warning(f"[store] Registry not updated for {phase_id}: {e}")
            return False
        return True

    def _registry_is_stale(self, phase_id: str, entry: RegistryEntry | None) -> bool:
        """An entry is stale when its version differs from the state file's.

        Raises:
            StateCorruption: The state file's version cannot be read
        """
        if entry is None:
            return True
        return entry.version != self._read_disk_version(phase_id)

    def reconcile_registry(self) -> dict[str, RegistryEntry]:
        """Return registry entries, repaired from phase state where stale.

        Phases missing from the registry, or whose entry version no longer
        matches the version in their state file, are re-read from their own
        state. Entries for phases that no longer exist are dropped. Corrupt
        phases are skipped here; they are reset when next loaded by a
        workflow operation.
        """
        entries = self.load_registry()
        phase_ids = self.list_phase_ids()
        changed = False

        for phase_id in list(entries):
            if phase_id not in phase_ids:
                del entries[phase_id]
                changed = True

        for phase_id in phase_ids:
            try:
                if not self._registry_is_stale(phase_id, entries.get(phase_id)):
                    continue
                summary = self.load(phase_id).summary()
            except StateCorruption as e:
                logger.warning(f"[store] Skipping corrupt phase in registry rebuild: {e}")
                continue

            if entries.get(phase_id) != summary:
                entries[phase_id] = summary
                changed = True

        if changed:
            try:
                with registry_lock(self.root):
                    self._write_registry(entries)
            except (LockBusy, OSError) as e:
                logger.warning(f"[store] Registry repair deferred: {e}")

        return entries

    def rebuild_registry(self) -> dict[str, RegistryEntry]:
        """Discard the registry and rebuild it from every phase's state."""
        entries = {}
        for phase_id in self.list_phase_ids():
            try:
                entries[phase_id] = self.load(phase_id).summary()
            except StateCorruption as e:
                logger.warning(f"[store] Skipping corrupt phase in registry rebuild: {e}")
        with registry_lock(self.root):
            self._write_registry(entries)
        return entries

    # ── Memory ──────────────────────────────────────────────────────────────

    def load_memory(self) -> list[str]:
        return [d.text for d in memory.load_memory(self.root)]

    def append_memory(self, text: str) -> memory.Directive:
        try:
            with memory_lock(self.root):
                return memory.append_directive(self.root, text)
        except LockBusy:
            raise ConcurrentModification("memory", None, None, stage="remember") from None
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateCorruption("memory", e) from e
