"""
Resumable exhaustive search over a word-slot template.

The driver owns one logical search (or one shard of it) and moves through:

    INITIALIZING -> RESUMING -> ENUMERATING <-> CHECKPOINTING -> COMPLETED
                                     |
                                     +-> STOPPED   (graceful stop, resumable)

ABORTED is entered from any non-terminal phase on ConfigurationError, before
a single ledger line is written.

Durability model:
    - Every index is appended to the ledger *before* its candidate is
      validated, so a crash never re-validates a processed index.
    - A match is written to the ledger and a checkpoint is saved at once.
    - Periodic checkpoints bound the work lost when the ledger is missing.
    - I/O failures on either store are logged and reported; enumeration
      continues with the in-memory state.

Usage:
    driver = SearchDriver(
        template=Template.parse("camp ? jazz ?"),
        vocabulary=functools.partial(load_vocabulary, "words.txt"),
        validator=lambda vocab: build_validator(vocab, oracle="oracle.py"),
        ledger_path="attempted.txt",
        checkpoint_path="checkpoint.json",
    )
    driver.install_signal_handlers()
    result = driver.run()
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from .checkpoint import DEFAULT_CHECKPOINT_INTERVAL, CheckpointManager, CheckpointStore
from .config import DEFAULT_PROGRESS_INTERVAL
from .errors import CancellationRequested, ConfigurationError, PersistenceError
from .indexer import CombinationIndexer, check_fixed_tokens
from .ledger import AttemptLedger
from .sentry_config import capture_message, tag_search
from .types import Candidate, DriverState, SearchParameters, Template, format_candidate
from .validator import ValidationOutcome, Validator
from .vocabulary import Vocabulary, as_vocabulary

logger = logging.getLogger(__name__)

VocabularySource = Union[Callable[[], Sequence[str]], Sequence[str]]
ValidatorSource = Union[Validator, Callable[[Vocabulary], Validator]]


class DriverPhase(Enum):
    INITIALIZING = "initializing"
    RESUMING = "resuming"
    ENUMERATING = "enumerating"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ABORTED = "aborted"


# Reasons a run ends
REASON_EXHAUSTED = "exhausted"
REASON_FIRST_MATCH = "first_match"
REASON_STOPPED = "stopped"
REASON_CONFIGURATION_ERROR = "configuration_error"


@dataclass
class SearchResult:
    """Outcome of one SearchDriver.run() call.

    Attributes:
        phase: Final phase (COMPLETED, STOPPED or ABORTED).
        reason: Why the run ended.
        total_attempts: Next index to visit (equals the shard end when exhausted).
        valid_count: Matches known for the logical search, across resumes.
        found_candidates: Matching candidates in discovery order.
        validated_count: Candidates validated during this run.
        skipped_count: Indices skipped because the ledger already had them.
        malformed_count: Candidates rejected by the local check.
        oracle_failures: Oracle calls counted as non-match after failing.
        persistence_failures: Ledger/checkpoint writes that failed this run.
        parameters: Identity of the search (None if aborted before it was known).
        duration_seconds: Wall-clock duration of this run.
        error: Diagnostic for ABORTED runs.
    """
    phase: DriverPhase
    reason: str
    total_attempts: int = 0
    valid_count: int = 0
    found_candidates: List[str] = field(default_factory=list)
    validated_count: int = 0
    skipped_count: int = 0
    malformed_count: int = 0
    oracle_failures: int = 0
    persistence_failures: int = 0
    parameters: Optional[SearchParameters] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        """True when the logical search needs no further runs."""
        return self.phase is DriverPhase.COMPLETED


class SearchDriver:
    """
    Enumerates one index range of a template in strictly increasing order.

    Attributes:
        phase: Current DriverPhase.
        state: Progress counters (None until RESUMING finishes).
        indexer: CombinationIndexer (None until INITIALIZING finishes).
    """

    def __init__(
        self,
        template: Template,
        vocabulary: VocabularySource,
        validator: ValidatorSource,
        ledger_path: Union[str, Path],
        checkpoint_path: Union[str, Path],
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        checkpoint_interval: float = DEFAULT_CHECKPOINT_INTERVAL,
        stop_on_first_match: bool = False,
        shard: Optional[Tuple[int, int]] = None,
        fsync: bool = False,
        clock: Callable[[], float] = time.monotonic,
        stop_event=None,
        on_match: Optional[Callable[[int, Candidate], None]] = None,
        already_attempted: Iterable[Tuple[int, int]] = (),
    ):
        """
        Args:
            template: Fixed and free slot layout.
            vocabulary: Token sequence, or a zero-argument loader returning one.
            validator: A Validator, or a factory taking the loaded Vocabulary.
            ledger_path: Attempt ledger file.
            checkpoint_path: Checkpoint file (``.gz`` for gzip).
            progress_interval: Attempts between progress log lines.
            checkpoint_interval: Seconds between periodic checkpoints.
            stop_on_first_match: End the run (COMPLETED) at the first match.
            shard: ``(start, stop)`` index range to own; the full space if None.
            fsync: fsync every ledger append.
            clock: Monotonic time source for checkpoint scheduling.
            stop_event: Optional shared event (threading or multiprocessing)
                that requests a graceful stop when set.
            on_match: Callback invoked with ``(index, candidate)`` per new match.
            already_attempted: ``(start, stop)`` index runs processed by an
                earlier run under another ledger; skipped without validation.
        """
        if progress_interval < 1:
            raise ValueError(f"progress_interval must be >= 1, got {progress_interval}")

        self.template = template
        self.ledger_path = Path(ledger_path)
        self.checkpoint_path = Path(checkpoint_path)
        self.progress_interval = progress_interval
        self.checkpoint_interval = checkpoint_interval
        self.stop_on_first_match = stop_on_first_match
        self.shard = shard
        self.fsync = fsync
        self.on_match = on_match
        self.already_attempted = list(already_attempted)

        self._vocabulary_source = vocabulary
        self._validator_source = validator
        self._clock = clock
        self._stop_event = stop_event
        self._stop_requested = False

        self.phase = DriverPhase.INITIALIZING
        self.vocabulary: Optional[Vocabulary] = None
        self.indexer: Optional[CombinationIndexer] = None
        self.parameters: Optional[SearchParameters] = None
        self.validator: Optional[Validator] = None
        self.ledger: Optional[AttemptLedger] = None
        self.checkpoints: Optional[CheckpointStore] = None
        self.checkpoint_manager: Optional[CheckpointManager] = None
        self.state: Optional[DriverState] = None
        self.persistence_failures = 0
        self._run_started = 0.0

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def request_stop(self):
        """Ask the run to stop after the in-flight candidate."""
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        if self._stop_requested:
            return True
        return self._stop_event is not None and self._stop_event.is_set()

    def _check_cancel(self):
        if self.stop_requested:
            raise CancellationRequested("Stop requested")

    def _handle_signal(self, signum, frame):
        """First signal: graceful stop. Second signal: immediate KeyboardInterrupt."""
        if not self._stop_requested:
            logger.warning("Shutdown requested - finishing current candidate and saving progress...")
            self._stop_requested = True
        else:
            logger.warning("Force quit - the in-flight candidate will be skipped on resume.")
            raise KeyboardInterrupt

    def install_signal_handlers(self) -> bool:
        """
        Route SIGINT/SIGTERM to a graceful stop.

        Returns:
            False when not on the main thread (handlers cannot be installed).
        """
        if threading.current_thread() is not threading.main_thread():
            return False
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)
        return True

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self) -> SearchResult:
        """
        Run until the range is exhausted, a stop is requested, or (with
        stop_on_first_match) a match is found.

        ConfigurationError never escapes: it ends the run in ABORTED.
        """
        self._run_started = time.monotonic()
        self.phase = DriverPhase.INITIALIZING
        try:
            self._initialize()
            self._resume()
            reason = self._enumerate()
        except ConfigurationError as e:
            self.phase = DriverPhase.ABORTED
            logger.error(f"Search aborted: {e}")
            return self._result(REASON_CONFIGURATION_ERROR, error=str(e))
        except BaseException:
            # Forced quit or unexpected failure: keep what can be kept
            if self.state is not None and self.checkpoints is not None:
                self._save_checkpoint("interrupted")
            raise
        finally:
            if self.ledger is not None:
                self.ledger.close()
            if self.validator is not None:
                self.validator.close()

        result = self._result(reason)
        self._log_summary(result)
        return result

    def _initialize(self):
        source = self._vocabulary_source
        try:
            tokens = source() if callable(source) else source
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Vocabulary load failed: {e}") from e
        self.vocabulary = as_vocabulary(tokens)
        check_fixed_tokens(self.vocabulary, self.template)

        self.indexer = CombinationIndexer(self.vocabulary, self.template)
        params = self.indexer.parameters()
        if self.shard is not None:
            start, stop = self.shard
            if not 0 <= start <= stop <= params.search_space_size:
                raise ConfigurationError(
                    f"Shard {start}-{stop} outside search space [0, {params.search_space_size})"
                )
            params = params.for_shard(start, stop)
        self.parameters = params
        tag_search(params)

        if isinstance(self._validator_source, Validator):
            self.validator = self._validator_source
        else:
            self.validator = self._validator_source(self.vocabulary)

        logger.info(f"Template: {self.template}")
        logger.info(
            f"Vocabulary: {len(self.vocabulary):,} tokens, {self.indexer.free_count} free slots, "
            f"{params.search_space_size:,} possible combinations"
        )
        if params.is_sharded:
            logger.info(f"Shard: indices {params.shard_start:,} to {params.shard_stop:,}")

    def _resume(self):
        self.phase = DriverPhase.RESUMING
        params = self.parameters

        # Both stores are checked before the ledger is created or appended to
        self.checkpoints = CheckpointStore(self.checkpoint_path, params)
        state = self.checkpoints.load()

        self.ledger = AttemptLedger(self.ledger_path, params, fsync=self.fsync)
        try:
            replay = self.ledger.load_all()
        except PersistenceError as e:
            self._persistence_failed(e)
            replay = self.ledger.replay

        for lo, hi in self.already_attempted:
            replay.attempted.add_range(max(lo, params.shard_start), min(hi, params.shard_stop))

        if state is None:
            state = DriverState(total_attempts=params.shard_start)
            if replay.started_at:
                state.search_started_at = replay.started_at

        recovered = state.merge_matches(text for _, text in replay.matches)
        if recovered:
            logger.info(f"Recovered {recovered} match(es) from the ledger")

        start = max(state.total_attempts, replay.resume_from_index, params.shard_start)
        if start != state.total_attempts:
            logger.info(f"Ledger is ahead of checkpoint; resuming at index {start:,}")
        state.total_attempts = start
        state.validated_count = 0
        self.state = state
        self.checkpoint_manager = CheckpointManager(self.checkpoint_interval, clock=self._clock)

        if start > params.shard_start:
            logger.info(f"Resuming from index {start:,} with {state.valid_count} match(es) so far")

    def _enumerate(self) -> str:
        self.phase = DriverPhase.ENUMERATING
        state = self.state
        params = self.parameters
        start = state.total_attempts

        if start >= params.shard_stop:
            logger.info("Nothing left to enumerate")
            return self._finish(DriverPhase.COMPLETED, REASON_EXHAUSTED)

        logger.info(f"Enumerating indices {start:,} to {params.shard_stop:,}")
        try:
            for index in range(start, params.shard_stop):
                self._check_cancel()
                matched = self._process(index)

                if matched and self.stop_on_first_match:
                    logger.info("Stopping at first match")
                    return self._finish(DriverPhase.COMPLETED, REASON_FIRST_MATCH)

                if (index + 1 - params.shard_start) % self.progress_interval == 0:
                    self._log_progress()
                if self.checkpoint_manager.should_checkpoint():
                    self._save_checkpoint("periodic")
        except CancellationRequested:
            logger.info(f"Search stopped at index {state.total_attempts:,}; rerun to resume")
            return self._finish(DriverPhase.STOPPED, REASON_STOPPED)

        return self._finish(DriverPhase.COMPLETED, REASON_EXHAUSTED)

    def _process(self, index: int) -> bool:
        """Handle one index; returns True on a new match."""
        state = self.state
        if self.ledger.has_attempted(index):
            state.skipped_count += 1
            state.total_attempts = index + 1
            return False

        try:
            self.ledger.record_attempt(index)
        except PersistenceError as e:
            self._persistence_failed(e)

        candidate = self.indexer.encode(index)
        outcome = self.validator.validate(candidate)
        state.validated_count += 1
        state.total_attempts = index + 1

        if outcome is ValidationOutcome.MALFORMED:
            state.malformed_count += 1
        elif outcome is ValidationOutcome.ORACLE_ERROR:
            state.oracle_failures += 1
        elif outcome is ValidationOutcome.MATCH:
            return self._on_match(index, candidate)
        return False

    def _on_match(self, index: int, candidate: Candidate) -> bool:
        text = format_candidate(candidate)
        if not self.state.add_match(text):
            return False

        logger.info(f"MATCH FOUND at index {index:,}: {text}")
        try:
            self.ledger.record_match(index, text)
        except PersistenceError as e:
            self._persistence_failed(e)
        self._save_checkpoint("match")

        if self.on_match is not None:
            self.on_match(index, candidate)
        return True

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _save_checkpoint(self, description: str):
        previous = self.phase
        self.phase = DriverPhase.CHECKPOINTING
        try:
            self.checkpoints.save(self.state, description)
        except PersistenceError as e:
            self._persistence_failed(e)
        finally:
            if self.checkpoint_manager is not None:
                self.checkpoint_manager.mark()
            self.phase = previous

    def _persistence_failed(self, error: PersistenceError):
        self.persistence_failures += 1
        logger.warning(f"{error} - continuing with in-memory state")
        capture_message(str(error), level="warning")

    def _finish(self, phase: DriverPhase, reason: str) -> str:
        self._save_checkpoint(reason)
        self.phase = phase
        return reason

    # =========================================================================
    # REPORTING
    # =========================================================================

    def progress_fraction(self) -> float:
        params = self.parameters
        span = params.shard_stop - params.shard_start
        if span <= 0:
            return 1.0
        return (self.state.total_attempts - params.shard_start) / span

    def _log_progress(self):
        state = self.state
        elapsed = time.monotonic() - self._run_started
        rate = state.validated_count / elapsed if elapsed > 0 else 0.0
        logger.info(
            f"Progress: {100 * self.progress_fraction():.6f}% - "
            f"Attempts: {state.total_attempts:,} - "
            f"Elapsed: {elapsed:.1f}s - "
            f"Rate: {rate:.1f}/sec - "
            f"Matches: {state.valid_count}"
        )

    def _result(self, reason: str, error: Optional[str] = None) -> SearchResult:
        result = SearchResult(
            phase=self.phase,
            reason=reason,
            persistence_failures=self.persistence_failures,
            parameters=self.parameters,
            duration_seconds=time.monotonic() - self._run_started,
            error=error,
        )
        state = self.state
        if state is not None:
            result.total_attempts = state.total_attempts
            result.valid_count = state.valid_count
            result.found_candidates = list(state.found_candidates)
            result.validated_count = state.validated_count
            result.skipped_count = state.skipped_count
            result.malformed_count = state.malformed_count
            result.oracle_failures = state.oracle_failures
        return result

    def _log_summary(self, result: SearchResult):
        logger.info(f"Search {result.phase.value} ({result.reason}) in {result.duration_seconds:.1f}s")
        logger.info(f"- Total attempts: {result.total_attempts:,}")
        logger.info(f"- Validated this run: {result.validated_count:,}")
        logger.info(f"- Skipped (already attempted): {result.skipped_count:,}")
        logger.info(f"- Oracle failures: {result.oracle_failures:,}")
        logger.info(f"- Valid candidates found: {result.valid_count}")
        for text in result.found_candidates:
            logger.info(f"  {text}")


__all__ = [
    'DriverPhase',
    'SearchResult',
    'SearchDriver',
    'REASON_EXHAUSTED',
    'REASON_FIRST_MATCH',
    'REASON_STOPPED',
    'REASON_CONFIGURATION_ERROR',
]
