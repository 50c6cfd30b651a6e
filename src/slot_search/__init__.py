"""
Slot Search - resumable exhaustive search over a word-slot template.

A template is a known sequence with some positions missing. Every way of
filling the missing positions from a vocabulary gets an integer index; the
search visits indices in order, records each one in an append-only ledger
before validating it, and snapshots progress to a checkpoint, so a run can
be stopped and resumed at any point without validating anything twice.

Modules:
    indexer: Mixed-radix index <-> candidate mapping
    ledger: Append-only attempt ledger
    checkpoint: Atomic progress snapshots
    validator: Local check plus fallible external oracle
    driver: The search state machine
    search.parallel: Sharded multi-process search
    cli: Command-line entry point
"""

__version__ = "1.0.0"

from .errors import (
    SlotSearchError,
    ConfigurationError,
    PersistenceError,
    ValidationTransientError,
    CancellationRequested,
)
from .types import Slot, Template, SearchParameters, DriverState, format_candidate
from .vocabulary import Vocabulary, load_vocabulary
from .indexer import CombinationIndexer, partition
from .ledger import AttemptLedger
from .checkpoint import CheckpointStore, CheckpointManager
from .validator import Validator, ValidationOutcome, build_validator
from .driver import DriverPhase, SearchDriver, SearchResult
from .config import SearchConfig

__all__ = [
    '__version__',
    # Errors
    'SlotSearchError',
    'ConfigurationError',
    'PersistenceError',
    'ValidationTransientError',
    'CancellationRequested',
    # Types
    'Slot',
    'Template',
    'SearchParameters',
    'DriverState',
    'format_candidate',
    # Components
    'Vocabulary',
    'load_vocabulary',
    'CombinationIndexer',
    'partition',
    'AttemptLedger',
    'CheckpointStore',
    'CheckpointManager',
    'Validator',
    'ValidationOutcome',
    'build_validator',
    'DriverPhase',
    'SearchDriver',
    'SearchResult',
    'SearchConfig',
]
