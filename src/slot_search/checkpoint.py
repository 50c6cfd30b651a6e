"""
Checkpointing for long-running searches.

A checkpoint is a single, overwritten snapshot of aggregate progress. It is
independent of the attempt ledger: if the ledger is lost, the driver can
still resume from ``total_attempts``; if the checkpoint is lost, the ledger
alone is enough to skip completed work.
"""

import gzip
import json
import logging
import os
import time
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import ConfigurationError, PersistenceError
from .types import DriverState, SearchParameters, utc_timestamp

logger = logging.getLogger(__name__)

# Schema version for compatibility checking
CHECKPOINT_SCHEMA_VERSION = 1

DEFAULT_CHECKPOINT_INTERVAL = 5 * 60.0  # seconds


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class CheckpointMetadata:
    """Metadata about the checkpoint."""
    version: str = "1.0.0"
    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    timestamp: str = ""
    description: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = utc_timestamp()


@dataclass
class CheckpointProgress:
    """Progress counters at checkpoint time.

    ``total_attempts`` is stored as a decimal string so that values beyond
    2**53 survive JSON readers that parse numbers as doubles.
    """
    total_attempts: int = 0
    valid_count: int = 0
    found_candidates: List[str] = field(default_factory=list)
    search_started_at: str = ""
    checkpointed_at: str = ""
    skipped_count: int = 0
    malformed_count: int = 0
    oracle_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["total_attempts"] = str(self.total_attempts)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointProgress":
        """Read progress written with snake_case or camelCase field names."""
        def get(name, default):
            if name in data:
                return data[name]
            return data.get(_camel_case(name), default)

        found = list(get("found_candidates", []))
        return cls(
            total_attempts=int(get("total_attempts", "0")),
            valid_count=int(get("valid_count", len(found))),
            found_candidates=found,
            search_started_at=get("search_started_at", ""),
            checkpointed_at=get("checkpointed_at", ""),
            skipped_count=int(get("skipped_count", 0)),
            malformed_count=int(get("malformed_count", 0)),
            oracle_failures=int(get("oracle_failures", 0)),
        )


class Checkpoint:
    """
    Complete checkpoint state for resuming a search.

    Holds the parameters the progress belongs to, so a checkpoint from a
    different search is rejected instead of silently reused.
    """

    def __init__(self):
        self.metadata = CheckpointMetadata()
        self.parameters: Optional[SearchParameters] = None
        self.progress = CheckpointProgress()

    def to_dict(self) -> Dict:
        """Convert checkpoint to JSON-serializable dictionary."""
        return {
            "metadata": asdict(self.metadata),
            "parameters": self.parameters.to_dict() if self.parameters else None,
            "progress": self.progress.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Checkpoint":
        """Reconstruct checkpoint from dictionary."""
        checkpoint = cls()

        meta = data.get("metadata", {})
        checkpoint.metadata = CheckpointMetadata(
            version=meta.get("version", "1.0.0"),
            schema_version=meta.get("schema_version", 1),
            timestamp=meta.get("timestamp", ""),
            description=meta.get("description", ""),
        )

        # Validate schema version
        if checkpoint.metadata.schema_version > CHECKPOINT_SCHEMA_VERSION:
            raise ValueError(
                f"Checkpoint schema version {checkpoint.metadata.schema_version} "
                f"is newer than supported version {CHECKPOINT_SCHEMA_VERSION}. "
                "Please update the software."
            )

        params = data.get("parameters")
        if params:
            checkpoint.parameters = SearchParameters.from_dict(params)

        checkpoint.progress = CheckpointProgress.from_dict(data.get("progress") or {})
        return checkpoint


def save_checkpoint(checkpoint: Checkpoint, path: Union[str, Path]) -> Path:
    """
    Atomically write a checkpoint to disk.

    The data goes to a sibling temp file which then replaces the target, so
    readers only ever see the previous or the new snapshot. A ``.gz`` suffix
    selects gzip compression.

    Args:
        checkpoint: The checkpoint to save.
        path: Final checkpoint path.

    Returns:
        Path to the saved checkpoint file.

    Raises:
        OSError: If the file cannot be written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = checkpoint.to_dict()
    tmp = path.with_name(path.name + ".tmp")

    if path.suffix == ".gz":
        with gzip.open(tmp, "wt", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
    else:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())

    os.replace(tmp, path)
    return path


def load_checkpoint(path: Union[str, Path]) -> Checkpoint:
    """
    Load a checkpoint from disk.

    Args:
        path: Path to the checkpoint file.

    Returns:
        Loaded Checkpoint object.

    Raises:
        FileNotFoundError: If checkpoint file doesn't exist.
        ValueError: If checkpoint is malformed or its schema is incompatible.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {path}")

    if path.suffix == ".gz":
        with gzip.open(path, "rt", encoding="utf-8") as f:
            data = json.load(f)
    else:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Checkpoint {path} is not a JSON object")
    return Checkpoint.from_dict(data)


def create_checkpoint_from_state(
    state: DriverState,
    parameters: SearchParameters,
    description: str = "",
) -> Checkpoint:
    """
    Create a checkpoint from a driver's state.

    Args:
        state: The DriverState to snapshot.
        parameters: Parameters of the search the state belongs to.
        description: Optional description for this checkpoint.

    Returns:
        Checkpoint object ready to be saved.
    """
    checkpoint = Checkpoint()
    checkpoint.metadata = CheckpointMetadata(description=description)
    checkpoint.parameters = parameters
    checkpoint.progress = CheckpointProgress(
        total_attempts=state.total_attempts,
        valid_count=state.valid_count,
        found_candidates=list(state.found_candidates),
        search_started_at=state.search_started_at,
        checkpointed_at=checkpoint.metadata.timestamp,
        skipped_count=state.skipped_count,
        malformed_count=state.malformed_count,
        oracle_failures=state.oracle_failures,
    )
    return checkpoint


def restore_state_from_checkpoint(checkpoint: Checkpoint, parameters: SearchParameters) -> DriverState:
    """
    Rebuild a DriverState from a checkpoint.

    Raises:
        ConfigurationError: If the checkpoint belongs to different parameters.
    """
    if checkpoint.parameters is not None:
        diffs = parameters.mismatches(checkpoint.parameters)
        if diffs:
            raise ConfigurationError(
                "Checkpoint belongs to a different search: " + "; ".join(diffs)
            )

    prog = checkpoint.progress
    state = DriverState(
        total_attempts=prog.total_attempts,
        search_started_at=prog.search_started_at or utc_timestamp(),
        skipped_count=prog.skipped_count,
        malformed_count=prog.malformed_count,
        oracle_failures=prog.oracle_failures,
    )
    state.merge_matches(prog.found_candidates)
    return state


# =============================================================================
# STORE AND INTERVAL MANAGER
# =============================================================================

class CheckpointStore:
    """
    The single overwritten snapshot for one search (or shard).

    Usage:
        store = CheckpointStore(Path("search.checkpoint.json"), parameters)
        state = store.load()            # None on first run
        store.save(state, "periodic")
    """

    def __init__(self, path: Union[str, Path], parameters: SearchParameters):
        self.path = Path(path)
        self.parameters = parameters

    def save(self, state: DriverState, description: str = "") -> Path:
        """
        Snapshot `state`.

        Raises:
            PersistenceError: If the snapshot could not be written.
        """
        checkpoint = create_checkpoint_from_state(state, self.parameters, description)
        try:
            saved = save_checkpoint(checkpoint, self.path)
        except OSError as e:
            raise PersistenceError(f"Checkpoint save failed for {self.path}: {e}") from e
        logger.debug(f"Checkpoint saved to {saved} ({description})")
        return saved

    def load(self) -> Optional[DriverState]:
        """
        Load the last snapshot.

        Returns:
            The restored DriverState, or None if no checkpoint exists.

        Raises:
            ConfigurationError: If the file is unreadable or belongs to
                another search.
        """
        if not self.path.exists():
            return None
        try:
            checkpoint = load_checkpoint(self.path)
        except (OSError, ValueError, KeyError) as e:
            raise ConfigurationError(f"Could not read checkpoint {self.path}: {e}") from e

        state = restore_state_from_checkpoint(checkpoint, self.parameters)
        logger.info("Checkpoint loaded successfully:")
        logger.info(f"- Resumed from attempt: {state.total_attempts:,}")
        logger.info(f"- Valid candidates found: {state.valid_count}")
        return state


class CheckpointManager:
    """
    Decides when the periodic checkpoint is due.

    Usage:
        manager = CheckpointManager(interval_seconds=300)

        # In enumeration loop:
        if manager.should_checkpoint():
            store.save(state, "periodic")
            manager.mark()
    """

    def __init__(
        self,
        interval_seconds: float = DEFAULT_CHECKPOINT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            interval_seconds: Minimum wall-clock seconds between checkpoints.
            clock: Monotonic time source (injectable for tests).
        """
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last_checkpoint_time = clock()
        self._checkpoint_count = 0

    def should_checkpoint(self) -> bool:
        """Check if a checkpoint should be saved now."""
        return self._clock() - self._last_checkpoint_time >= self.interval_seconds

    def mark(self):
        """Record that a checkpoint has just been taken."""
        self._last_checkpoint_time = self._clock()
        self._checkpoint_count += 1

    @property
    def checkpoint_count(self) -> int:
        return self._checkpoint_count


__all__ = [
    'CHECKPOINT_SCHEMA_VERSION',
    'DEFAULT_CHECKPOINT_INTERVAL',
    'CheckpointMetadata',
    'CheckpointProgress',
    'Checkpoint',
    'save_checkpoint',
    'load_checkpoint',
    'create_checkpoint_from_state',
    'restore_state_from_checkpoint',
    'CheckpointStore',
    'CheckpointManager',
]
