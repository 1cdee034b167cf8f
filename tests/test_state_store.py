"""Tests for phaseflow.state.store module."""

import json
import logging
from unittest.mock import patch

import pytest

from phaseflow.lib.errors import (
    ConcurrentModification,
    InvalidArgument,
    InvalidPhaseFormat,
    PhaseNotFound,
    StateCorruption,
    ValidationFailure,
)
from phaseflow.state.locking import phase_lock, registry_lock
from phaseflow.state.store import StateStore, create_initial_state
from phaseflow.workflow.approvals import record_approval
from phaseflow.workflow.fsm import StageFSM
from phaseflow.workflow.models import Decision, Stage, StageStatus


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / ".phaseflow", backup_limit=3)


def _saved(store, phase_id="st01-demo"):
    return store.save(phase_id, create_initial_state(phase_id))


class TestCreateInitialState:
    """Tests for create_initial_state."""

    def test_all_stages_not_started(self):
        state = create_initial_state("st01-demo")
        assert state.version == 0
        assert state.title == "Demo"
        assert state.memory == []
        for stage in Stage:
            record = state.record(stage)
            assert record.status == StageStatus.NOT_STARTED
            assert record.revision == 0
            assert record.approvals == []

    def test_title_from_slug(self):
        assert create_initial_state("st03-user-management").title == "User Management"

    @pytest.mark.parametrize("bad_id", [
        "demo", "st1-demo", "ST01-demo", "st01-", "st01_demo", 42,
        "st01-demo\n", "st01-de\nmo", "st\u0661\u0662-demo",
    ])
    def test_rejects_bad_format(self, bad_id):
        with pytest.raises(InvalidPhaseFormat):
            create_initial_state(bad_id)


class TestSaveAndLoad:
    """Tests for persisting phase state."""

    def test_round_trip(self, store):
        state = create_initial_state("st01-demo")
        StageFSM(state, Stage.SPEC).start()
        state.memory = ["Use OAuth2"]

        saved = store.save("st01-demo", state)
        loaded = store.load("st01-demo")

        assert loaded == saved
        assert loaded.record(Stage.SPEC).status == StageStatus.IN_PROGRESS
        assert loaded.memory == ["Use OAuth2"]

    def test_version_increments(self, store):
        first = _saved(store)
        assert first.version == 1
        second = store.save("st01-demo", first)
        assert second.version == 2
        assert store.load("st01-demo").version == 2

    def test_layout(self, store):
        _saved(store)
        assert (store.root / "phases" / "st01-demo" / "state.json").exists()
        assert (store.root / "registry.json").exists()

    def test_load_missing_raises(self, store):
        with pytest.raises(PhaseNotFound):
            store.load("st09-missing")

    def test_save_id_mismatch(self, store):
        with pytest.raises(InvalidArgument):
            store.save("st02-other", create_initial_state("st01-demo"))

    def test_invalid_document_not_written(self, store):
        state = create_initial_state("st01-demo")
        state.record(Stage.SPEC).revision = -1
        with pytest.raises(ValidationFailure):
            store.save("st01-demo", state)
        assert not store.exists("st01-demo")

    def test_documents_written_with_state(self, store):
        state = create_initial_state("st01-demo")
        store.save("st01-demo", state, documents={Stage.SPEC: "# Spec\n"})

        reference = store.document_reference("st01-demo", Stage.SPEC)
        assert reference == "phases/st01-demo/st01-demo-spec.md"
        assert store.read_document(reference) == "# Spec\n"

    def test_read_document_missing(self, store):
        assert store.read_document(None) is None
        assert store.read_document("phases/st01-demo/nope.md") is None

    def test_list_phase_ids(self, store):
        _saved(store, "st02-beta")
        _saved(store, "st01-alpha")
        (store.root / "phases" / "scratch").mkdir()
        assert store.list_phase_ids() == ["st01-alpha", "st02-beta"]


class TestConcurrency:
    """Tests for optimistic version checking."""

    def test_stale_snapshot_rejected(self, store):
        """Two saves from one snapshot: the second fails."""
        snapshot = _saved(store)
        store.save("st01-demo", snapshot)

        with pytest.raises(ConcurrentModification) as exc_info:
            store.save("st01-demo", snapshot)
        assert exc_info.value.context == {"expected_version": 1, "actual_version": 2}
        assert store.load("st01-demo").version == 2

    def test_two_creators_one_wins(self, store):
        """Both start from a fresh (version 0) state; only one is saved."""
        a = create_initial_state("st01-demo")
        b = create_initial_state("st01-demo")
        store.save("st01-demo", a)
        with pytest.raises(ConcurrentModification):
            store.save("st01-demo", b)

    def test_loser_document_not_written(self, store):
        snapshot = store.save("st01-demo", create_initial_state("st01-demo"), documents={Stage.SPEC: "winner"})
        store.save("st01-demo", snapshot)
        with pytest.raises(ConcurrentModification):
            store.save("st01-demo", snapshot, documents={Stage.SPEC: "loser"})
        assert store.read_document(store.document_reference("st01-demo", Stage.SPEC)) == "winner"

    def test_held_lock_is_conflict(self, store):
        """A save that finds the phase lock held fails immediately."""
        snapshot = _saved(store)
        with phase_lock(store.root, "st01-demo"):
            with pytest.raises(ConcurrentModification):
                store.save("st01-demo", snapshot)
        assert store.load("st01-demo").version == 1


class TestCorruption:
    """Tests for detecting and recovering corrupt state."""

    def test_unparsable_raises(self, store):
        _saved(store)
        store.state_path("st01-demo").write_text("{truncated")
        with pytest.raises(StateCorruption) as exc_info:
            store.load("st01-demo")
        assert exc_info.value.cause is not None

    def test_schema_violation_raises(self, store):
        _saved(store)
        data = json.loads(store.state_path("st01-demo").read_text())
        data["stages"]["spec"]["status"] = "finished"
        store.state_path("st01-demo").write_text(json.dumps(data))
        with pytest.raises(StateCorruption, match="schema violation"):
            store.load("st01-demo")

    def test_id_mismatch_raises(self, store):
        _saved(store, "st02-other")
        path = store.state_path("st01-demo")
        path.parent.mkdir(parents=True)
        path.write_text(store.state_path("st02-other").read_text())
        with pytest.raises(StateCorruption, match="belongs to st02-other"):
            store.load("st01-demo")

    def test_recover_resets_and_preserves(self, store, caplog):
        _saved(store)
        store.state_path("st01-demo").write_text("garbage")

        with caplog.at_level(logging.WARNING):
            state, corruption = store.load_or_recover("st01-demo")

        assert isinstance(corruption, StateCorruption)
        assert state.version == 1
        assert all(state.record(s).status == StageStatus.NOT_STARTED for s in Stage)
        preserved = list(store.backups_dir("st01-demo").glob("state.corrupt.*.json"))
        assert len(preserved) == 1
        assert preserved[0].read_text() == "garbage"
        assert store.load("st01-demo").version == 1
        assert "reset to not_started" in caplog.text

    def test_load_or_recover_clean(self, store):
        _saved(store)
        state, corruption = store.load_or_recover("st01-demo")
        assert corruption is None
        assert state.version == 1

    def test_save_over_corrupt_file_raises(self, store):
        snapshot = _saved(store)
        store.state_path("st01-demo").write_text("garbage")
        with pytest.raises(StateCorruption):
            store.save("st01-demo", snapshot)

    def test_recover_after_other_session_recovered(self, store):
        """A late recover must not wipe history another session already rebuilt."""
        _saved(store)
        store.state_path("st01-demo").write_text("garbage")
        with pytest.raises(StateCorruption):
            store.load("st01-demo")

        # The other session recovers, then generates and approves spec
        state, _ = store.load_or_recover("st01-demo")
        StageFSM(state, Stage.SPEC).start()
        state = store.save("st01-demo", state)
        state = record_approval(state, Stage.SPEC, Decision.APPROVED)
        store.save("st01-demo", state)

        with pytest.raises(ConcurrentModification) as exc_info:
            store.recover("st01-demo")

        assert exc_info.value.context["actual_version"] == 3
        current = store.load("st01-demo")
        assert current.version == 3
        assert current.record(Stage.SPEC).status == StageStatus.APPROVED
        assert len(list(store.backups_dir("st01-demo").glob("state.corrupt.*.json"))) == 1


class TestBackups:
    """Tests for backup creation, pruning and restore."""

    def test_backup_per_overwrite(self, store):
        state = _saved(store)
        assert store.list_backups("st01-demo") == []
        state = store.save("st01-demo", state)
        assert len(store.list_backups("st01-demo")) == 1

    def test_pruned_to_limit(self, store):
        state = _saved(store)
        for _ in range(6):
            state = store.save("st01-demo", state)
        assert len(store.list_backups("st01-demo")) == 3

    def test_corrupt_copies_not_listed_or_pruned(self, store):
        state = _saved(store)
        store.state_path("st01-demo").write_text("garbage")
        state, _ = store.load_or_recover("st01-demo")
        for _ in range(5):
            state = store.save("st01-demo", state)
        assert all("corrupt" not in p.name for p in store.list_backups("st01-demo"))
        assert len(list(store.backups_dir("st01-demo").glob("state.corrupt.*"))) == 1

    def test_restore_latest_backup(self, store):
        state = _saved(store)
        state = store.save("st01-demo", state)
        store.save("st01-demo", state)

        restored = store.restore_latest_backup("st01-demo")
        assert restored.version == 2

    def test_restore_skips_invalid(self, store):
        state = _saved(store)
        state = store.save("st01-demo", state)
        store.save("st01-demo", state)
        store.list_backups("st01-demo")[-1].write_text("{}")

        assert store.restore_latest_backup("st01-demo").version == 1

    def test_restore_without_backups(self, store):
        with pytest.raises(PhaseNotFound):
            store.restore_latest_backup("st01-demo")


class TestRegistry:
    """Tests for the derived registry index."""

    def test_updated_on_save(self, store):
        state = create_initial_state("st01-demo")
        StageFSM(state, Stage.SPEC).start()
        store.save("st01-demo", state)

        entry = store.load_registry()["st01-demo"]
        assert entry.stage == Stage.SPEC
        assert entry.status == StageStatus.IN_PROGRESS
        assert entry.version == 1

    def test_update_failure_is_not_fatal(self, store, caplog):
        """A registry that cannot be written does not fail the save."""
        with caplog.at_level(logging.WARNING):
            with registry_lock(store.root):
                saved = _saved(store)
        assert saved.version == 1
        assert store.load_registry() == {}
        assert "Registry not updated" in caplog.text

    def test_reconcile_adds_missing_entry(self, store):
        _saved(store)
        store.registry_path.unlink()
        entries = store.reconcile_registry()
        assert entries["st01-demo"].version == 1
        assert "st01-demo" in json.loads(store.registry_path.read_text())["phases"]

    def test_reconcile_repairs_stale_entry(self, store):
        state = _saved(store)
        registry_before = store.registry_path.read_text()

        StageFSM(state, Stage.SPEC).start()
        store.save("st01-demo", state)
        store.registry_path.write_text(registry_before)

        entries = store.reconcile_registry()
        assert entries["st01-demo"].version == 2
        assert entries["st01-demo"].status == StageStatus.IN_PROGRESS

    def test_reconcile_after_lost_registry_update(self, store):
        """A missed update stays visible even after other phases save later."""
        state = _saved(store)
        StageFSM(state, Stage.SPEC).start()
        with patch.object(store, "update_registry", return_value=False):
            store.save("st01-demo", state)
        _saved(store, "st02-later")

        assert store.load_registry()["st01-demo"].version == 1
        entries = store.reconcile_registry()
        assert entries["st01-demo"].version == 2
        assert entries["st01-demo"].status == StageStatus.IN_PROGRESS
        assert store.load_registry()["st01-demo"].version == 2

    def test_reconcile_keeps_entry_of_corrupt_phase(self, store):
        _saved(store)
        store.state_path("st01-demo").write_text("garbage")
        assert store.reconcile_registry()["st01-demo"].version == 1

    def test_reconcile_drops_deleted_phase(self, store):
        _saved(store)
        _saved(store, "st02-gone")
        for path in store.phase_dir("st02-gone").iterdir():
            path.unlink()
        store.phase_dir("st02-gone").rmdir()

        assert set(store.reconcile_registry()) == {"st01-demo"}

    def test_corrupt_registry_rebuilt(self, store):
        _saved(store)
        store.registry_path.write_text("not json")
        entries = store.reconcile_registry()
        assert "st01-demo" in entries

    def test_rebuild_skips_corrupt_phase(self, store):
        _saved(store)
        _saved(store, "st02-broken")
        store.state_path("st02-broken").write_text("garbage")
        assert set(store.rebuild_registry()) == {"st01-demo"}


class TestMemory:
    """Tests for the memory log through the store."""

    def test_append_and_load(self, store):
        store.append_memory("Use OAuth2")
        store.append_memory("Prefer Postgres")
        assert store.load_memory() == ["Use OAuth2", "Prefer Postgres"]

    def test_append_refuses_corrupt_log(self, store):
        store.root.mkdir(parents=True)
        (store.root / "memory.json").write_text("{oops")
        with pytest.raises(StateCorruption):
            store.append_memory("Use OAuth2")
        assert (store.root / "memory.json").read_text() == "{oops"
