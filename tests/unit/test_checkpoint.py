"""
Tests for the checkpoint module.

Tests save/load round-trip, schema compatibility, parameter checks and the
interval manager.
"""

import gzip
import json
import tempfile
from pathlib import Path

import pytest

from slot_search.checkpoint import (
    CHECKPOINT_SCHEMA_VERSION,
    Checkpoint,
    CheckpointManager,
    CheckpointMetadata,
    CheckpointProgress,
    CheckpointStore,
    create_checkpoint_from_state,
    load_checkpoint,
    restore_state_from_checkpoint,
    save_checkpoint,
)
from slot_search.errors import ConfigurationError, PersistenceError
from slot_search.indexer import CombinationIndexer
from slot_search.types import DriverState


@pytest.fixture
def params(fruit_vocabulary, fruit_template):
    return CombinationIndexer(fruit_vocabulary, fruit_template).parameters()


@pytest.fixture
def state():
    s = DriverState(total_attempts=12, search_started_at="2026-01-26T12:00:00Z", oracle_failures=2)
    s.add_match("apple banana cherry date")
    return s


class TestCheckpointMetadata:
    """Test CheckpointMetadata dataclass."""

    def test_default_timestamp(self):
        """Metadata should auto-populate timestamp."""
        meta = CheckpointMetadata()
        assert meta.timestamp != ""
        assert "T" in meta.timestamp  # ISO format

    def test_custom_values(self):
        meta = CheckpointMetadata(version="2.0.0", schema_version=1,
                                  timestamp="2026-01-26T12:00:00Z", description="test")
        assert meta.timestamp == "2026-01-26T12:00:00Z"
        assert meta.description == "test"


class TestCheckpointProgress:
    """Test progress serialisation."""

    def test_total_attempts_is_text(self):
        prog = CheckpointProgress(total_attempts=2 ** 70)
        data = prog.to_dict()
        assert data["total_attempts"] == str(2 ** 70)
        assert CheckpointProgress.from_dict(data).total_attempts == 2 ** 70

    def test_valid_count_defaults_to_found(self):
        prog = CheckpointProgress.from_dict({"found_candidates": ["a b", "c d"]})
        assert prog.valid_count == 2

    def test_camel_case_fields(self):
        prog = CheckpointProgress.from_dict({
            "totalAttempts": "17",
            "validCount": 1,
            "foundCandidates": ["apple elder cherry apple"],
            "searchStartedAt": "2026-01-26T12:00:00Z",
            "checkpointedAt": "2026-01-26T12:05:00Z",
            "oracleFailures": 3,
        })
        assert prog.total_attempts == 17
        assert prog.valid_count == 1
        assert prog.found_candidates == ["apple elder cherry apple"]
        assert prog.search_started_at == "2026-01-26T12:00:00Z"
        assert prog.checkpointed_at == "2026-01-26T12:05:00Z"
        assert prog.oracle_failures == 3

    def test_snake_case_wins_over_camel_case(self):
        prog = CheckpointProgress.from_dict({"total_attempts": "5", "totalAttempts": "9"})
        assert prog.total_attempts == 5


class TestSaveLoad:
    """Test save/load round-trip."""

    def test_json_round_trip(self, params, state):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "checkpoint.json"
            save_checkpoint(create_checkpoint_from_state(state, params, "periodic"), path)

            with open(path) as f:
                raw = json.load(f)
            assert set(raw) == {"metadata", "parameters", "progress"}
            assert raw["progress"]["total_attempts"] == "12"

            loaded = load_checkpoint(path)
            assert loaded.parameters == params
            assert loaded.progress.found_candidates == ["apple banana cherry date"]
            assert loaded.metadata.description == "periodic"

    def test_gzip_round_trip(self, params, state):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "checkpoint.json.gz"
            save_checkpoint(create_checkpoint_from_state(state, params), path)

            with gzip.open(path, "rt") as f:
                assert json.load(f)["progress"]["total_attempts"] == "12"
            assert load_checkpoint(path).progress.total_attempts == 12

    def test_atomic_replace_leaves_no_temp(self, tmp_path, params, state):
        path = tmp_path / "checkpoint.json"
        save_checkpoint(create_checkpoint_from_state(state, params), path)
        state.total_attempts = 20
        save_checkpoint(create_checkpoint_from_state(state, params), path)
        assert load_checkpoint(path).progress.total_attempts == 20
        assert list(tmp_path.iterdir()) == [path]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_checkpoint(tmp_path / "nope.json")

    def test_newer_schema_rejected(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        path.write_text(json.dumps({
            "metadata": {"schema_version": CHECKPOINT_SCHEMA_VERSION + 1},
            "progress": {},
        }))
        with pytest.raises(ValueError, match="newer"):
            load_checkpoint(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(ValueError):
            load_checkpoint(path)


class TestRestore:
    """Test rebuilding driver state."""

    def test_restore(self, params, state):
        restored = restore_state_from_checkpoint(create_checkpoint_from_state(state, params), params)
        assert restored.total_attempts == 12
        assert restored.valid_count == 1
        assert restored.oracle_failures == 2
        assert restored.search_started_at == "2026-01-26T12:00:00Z"
        assert restored.validated_count == 0

    def test_parameter_mismatch(self, params, state):
        checkpoint = create_checkpoint_from_state(state, params)
        with pytest.raises(ConfigurationError, match="different search"):
            restore_state_from_checkpoint(checkpoint, params.for_shard(0, 5))

    def test_found_candidates_deduplicated(self, params):
        checkpoint = Checkpoint()
        checkpoint.parameters = params
        checkpoint.progress = CheckpointProgress(found_candidates=["a", "a", "b"])
        assert restore_state_from_checkpoint(checkpoint, params).found_candidates == ["a", "b"]


class TestCheckpointStore:
    """Test the store wrapper."""

    def test_absent_returns_none(self, tmp_path, params):
        assert CheckpointStore(tmp_path / "c.json", params).load() is None

    def test_save_then_load(self, tmp_path, params, state):
        store = CheckpointStore(tmp_path / "c.json", params)
        store.save(state, "match")
        assert store.load().found_candidates == state.found_candidates

    def test_corrupt_file_is_configuration_error(self, tmp_path, params):
        path = tmp_path / "c.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            CheckpointStore(path, params).load()

    def test_loads_camel_case_progress(self, tmp_path, params):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({
            "metadata": {"schema_version": CHECKPOINT_SCHEMA_VERSION},
            "parameters": params.to_dict(),
            "progress": {
                "totalAttempts": "12",
                "validCount": 1,
                "foundCandidates": ["apple banana cherry date"],
            },
        }))
        state = CheckpointStore(path, params).load()
        assert state.total_attempts == 12
        assert state.found_candidates == ["apple banana cherry date"]

    def test_save_failure_is_persistence_error(self, tmp_path, params, state):
        blocker = tmp_path / "file"
        blocker.write_text("")
        store = CheckpointStore(blocker / "c.json", params)
        with pytest.raises(PersistenceError):
            store.save(state)


class TestCheckpointManager:
    """Test CheckpointManager scheduling."""

    def test_not_due_immediately(self):
        now = [100.0]
        manager = CheckpointManager(interval_seconds=300, clock=lambda: now[0])
        assert not manager.should_checkpoint()

    def test_due_after_interval(self):
        now = [100.0]
        manager = CheckpointManager(interval_seconds=300, clock=lambda: now[0])
        now[0] = 400.0
        assert manager.should_checkpoint()
        manager.mark()
        assert not manager.should_checkpoint()
        assert manager.checkpoint_count == 1
