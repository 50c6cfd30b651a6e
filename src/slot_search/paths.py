"""
Centralized path definitions for slot-search.

Default file locations are derived from a single state directory so that
the ledger, checkpoint and shard files of one search live side by side.
"""

import os
from pathlib import Path
from typing import Union

# =============================================================================
# STATE DIRECTORY
# =============================================================================

DEFAULT_STATE_DIR = Path(".slot_search")


def get_state_dir() -> Path:
    """State directory from SLOT_SEARCH_STATE_DIR, else ./.slot_search."""
    env_path = os.environ.get("SLOT_SEARCH_STATE_DIR")
    if env_path:
        return Path(env_path)
    return DEFAULT_STATE_DIR


# =============================================================================
# DEFAULT FILES
# =============================================================================

LEDGER_FILENAME = "attempted_combinations.txt"
CHECKPOINT_FILENAME = "search_checkpoint.json"


def default_ledger_path() -> Path:
    return get_state_dir() / LEDGER_FILENAME


def default_checkpoint_path() -> Path:
    return get_state_dir() / CHECKPOINT_FILENAME


# =============================================================================
# SHARD FILES
# =============================================================================

def shard_path(path: Union[str, Path], shard_id: int) -> Path:
    """Per-shard variant of `path`: ``ledger.txt`` -> ``ledger.shard3.txt``.

    Compound suffixes such as ``.json.gz`` are kept intact.
    """
    path = Path(path)
    suffixes = "".join(path.suffixes)
    stem = path.name[: len(path.name) - len(suffixes)] if suffixes else path.name
    return path.with_name(f"{stem}.shard{shard_id}{suffixes}")
