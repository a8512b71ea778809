"""Tests for synchronizer state persistence."""

from datetime import datetime
from pathlib import Path

from agentplan.state import STATE_FILE, PendingTask, SyncState


class TestSyncStatePersistence:
    """Tests for SyncState.save() and SyncState.load()."""

    def test_save_creates_directory(self, tmp_path: Path):
        state_dir = tmp_path / "nested" / "state"
        SyncState().save(state_dir)
        assert (state_dir / STATE_FILE).exists()

    def test_save_and_load_preserves_entries(self, tmp_path: Path):
        started = datetime(2026, 1, 2, 3, 4, 5)
        state = SyncState(
            pending={"12": PendingTask("12", task_id="1-3", slot_id=2, started_at=started)},
            imported={"12": "1-3", "15": "1-4"},
        )

        state.save(tmp_path)
        loaded = SyncState.load(tmp_path)

        assert loaded.pending["12"] == state.pending["12"]
        assert loaded.imported == {"12": "1-3", "15": "1-4"}

    def test_load_missing_file(self, tmp_path: Path):
        state = SyncState.load(tmp_path)
        assert state.pending == {}
        assert state.imported == {}

    def test_load_corrupt_file(self, tmp_path: Path):
        (tmp_path / STATE_FILE).write_text("{not json")
        state = SyncState.load(tmp_path)
        assert state.pending == {}

    def test_load_entry_missing_fields(self, tmp_path: Path):
        (tmp_path / STATE_FILE).write_text('{"pending": {"1": {"task_id": "1-1"}}}')
        assert SyncState.load(tmp_path).pending == {}


class TestPendingEntries:
    """Tests for add_pending() and remove_pending()."""

    def test_add_replaces_existing(self):
        state = SyncState()
        state.add_pending("3", task_id="1-1")
        state.add_pending("3", task_id="1-2", slot_id=1)

        assert len(state.pending) == 1
        assert state.pending["3"].task_id == "1-2"

    def test_remove_returns_entry(self):
        state = SyncState()
        state.add_pending("3")

        entry = state.remove_pending("3")

        assert entry is not None and entry.issue_id == "3"
        assert state.remove_pending("3") is None
