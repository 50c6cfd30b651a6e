"""
Sharded search across worker processes.

The index space [0, V**M) is cut into W contiguous shards. Each worker runs
an ordinary SearchDriver over its shard with its own ledger and checkpoint
files, so workers share no mutable state and a stopped parallel search
resumes shard by shard.

Usage:
    from slot_search.search.parallel import ParallelConfig, parallel_search

    config = ParallelConfig(
        template=Template.parse("camp ? jazz ?"),
        vocabulary=load_vocabulary("words.txt"),
        ledger_path=Path("attempted.txt"),
        checkpoint_path=Path("checkpoint.json"),
        num_workers=8,
        validator_settings={"oracle": "oracle.py"},
    )
    result = parallel_search(config)

Architecture:
    Main Process:
        - Validates the setup once (vocabulary, template, plugins)
        - Partitions the space and checks every existing ledger and
          checkpoint against it
        - Starts one task per shard, handing it the indices the base
          ledger and checkpoint already cover
        - Forwards SIGINT/SIGTERM to workers through a shared event
        - Merges shard ledgers and writes an aggregate checkpoint

    Worker Process:
        - Builds its own Validator from picklable settings
        - Runs SearchDriver over its shard and returns a ShardResult
"""

import logging
import multiprocessing as mp
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..checkpoint import DEFAULT_CHECKPOINT_INTERVAL, CheckpointStore
from ..config import DEFAULT_PROGRESS_INTERVAL
from ..driver import (
    DriverPhase,
    REASON_CONFIGURATION_ERROR,
    REASON_EXHAUSTED,
    REASON_FIRST_MATCH,
    REASON_STOPPED,
    SearchDriver,
)
from ..errors import ConfigurationError, PersistenceError
from ..indexer import CombinationIndexer, check_fixed_tokens, partition
from ..ledger import read_ledger
from ..paths import shard_path
from ..sentry_config import capture_message
from ..types import DriverState, SearchParameters, Template
from ..validator import build_validator
from .attempts import AttemptSet

logger = logging.getLogger(__name__)

WORKER_LOG_FORMAT = '%(asctime)s [%(processName)s] %(levelname)s: %(message)s'

# A shard raised something other than a configuration error
REASON_WORKER_ERROR = "worker_error"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ParallelConfig:
    """Configuration for a sharded search.

    Attributes:
        template: Fixed and free slot layout.
        vocabulary: Token sequence (sent to every worker).
        ledger_path: Base ledger path; shard i writes ``<stem>.shard<i><suffix>``.
        checkpoint_path: Base checkpoint path; also receives the aggregate.
        num_workers: Number of shards and processes (default: CPU count).
        validator_settings: Keyword arguments for build_validator.
        progress_interval: Attempts between progress lines, per worker.
        checkpoint_interval: Seconds between checkpoints, per worker.
        stop_on_first_match: Stop every worker once any worker finds a match.
        fsync: fsync every ledger append.
        start_method: multiprocessing start method (default: platform default).
    """
    template: Template
    vocabulary: Sequence[str]
    ledger_path: Path
    checkpoint_path: Path
    num_workers: Optional[int] = None
    validator_settings: Dict[str, Any] = field(default_factory=dict)
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL
    checkpoint_interval: float = DEFAULT_CHECKPOINT_INTERVAL
    stop_on_first_match: bool = False
    fsync: bool = False
    start_method: Optional[str] = None

    def __post_init__(self):
        if self.num_workers is None:
            self.num_workers = mp.cpu_count()
        if self.num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {self.num_workers}")
        self.vocabulary = tuple(self.vocabulary)
        self.ledger_path = Path(self.ledger_path)
        self.checkpoint_path = Path(self.checkpoint_path)

    def shard_ledger_path(self, shard_id: int) -> Path:
        return shard_path(self.ledger_path, shard_id)

    def shard_checkpoint_path(self, shard_id: int) -> Path:
        return shard_path(self.checkpoint_path, shard_id)


@dataclass
class ShardResult:
    """Outcome of one shard, as returned by a worker.

    Attributes:
        shard_id: Position of the shard in the partition.
        start: First index of the shard.
        stop: End of the shard (exclusive).
        phase: Final DriverPhase value.
        reason: Why the shard run ended.
        total_attempts: Next index the shard would visit.
        found_candidates: Matches known for this shard.
        validated_count: Candidates validated during this run.
        skipped_count: Indices skipped via the shard ledger.
        malformed_count: Candidates rejected by the local check.
        oracle_failures: Oracle calls counted as non-match.
        persistence_failures: Failed ledger/checkpoint writes.
        duration_seconds: Wall-clock time in the worker.
        error: Diagnostic when the shard aborted.
    """
    shard_id: int
    start: int
    stop: int
    phase: str
    reason: str
    total_attempts: int = 0
    found_candidates: List[str] = field(default_factory=list)
    validated_count: int = 0
    skipped_count: int = 0
    malformed_count: int = 0
    oracle_failures: int = 0
    persistence_failures: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def processed(self) -> int:
        """Indices of this shard below total_attempts."""
        return max(0, min(self.total_attempts, self.stop) - self.start)


@dataclass
class ParallelResult:
    """Aggregated outcome of a sharded search.

    Attributes:
        phase: COMPLETED when every shard finished (or any found the first
            match with stop_on_first_match), ABORTED if any shard aborted,
            otherwise STOPPED.
        reason: Why the search ended.
        search_space_size: V ** M.
        total_attempts: Sum of indices processed across shards.
        valid_count: Distinct matches across shards.
        found_candidates: Matches from earlier runs, then shard order.
        attempted: Union of every shard ledger and the base files.
        shard_results: Per-shard outcomes in shard order.
        duration_seconds: Total wall-clock time.
        worker_stats: Per-shard counters keyed by shard id.
    """
    phase: DriverPhase
    reason: str
    search_space_size: int
    total_attempts: int
    valid_count: int
    found_candidates: List[str]
    attempted: AttemptSet
    shard_results: List[ShardResult]
    duration_seconds: float
    worker_stats: Dict[int, Dict[str, Any]] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.phase is DriverPhase.COMPLETED


# =============================================================================
# WORKER FUNCTION
# =============================================================================

# Global worker state (initialized per-process)
_worker_template: Optional[Template] = None
_worker_vocabulary: Tuple[str, ...] = ()
_worker_validator_settings: Dict[str, Any] = {}
_worker_options: Dict[str, Any] = {}
_worker_stop_event = None


def _worker_init(
    template: Template,
    vocabulary: Tuple[str, ...],
    validator_settings: Dict[str, Any],
    options: Dict[str, Any],
    stop_event,
):
    """Initialize worker process with shared configuration.

    Called once per worker at pool creation time. SIGINT is ignored so that
    Ctrl-C reaches only the parent, which stops workers through stop_event.
    SIGTERM keeps its default action: Pool.terminate() relies on it.
    """
    global _worker_template, _worker_vocabulary, _worker_validator_settings
    global _worker_options, _worker_stop_event

    signal.signal(signal.SIGINT, signal.SIG_IGN)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    logging.basicConfig(level=options.get("log_level", logging.INFO), format=WORKER_LOG_FORMAT)

    _worker_template = template
    _worker_vocabulary = vocabulary
    _worker_validator_settings = validator_settings
    _worker_options = options
    _worker_stop_event = stop_event


def _stop_all_on_match(index, candidate):
    _worker_stop_event.set()


def _run_shard(task: Tuple[int, int, int, str, str, List[Tuple[int, int]]]) -> ShardResult:
    """Run one shard to completion (or until stopped).

    Args:
        task: ``(shard_id, start, stop, ledger_path, checkpoint_path,
            already_attempted)``; the last item holds index runs inside the
            shard that an earlier unsharded run already processed.

    Returns:
        ShardResult for the shard; unexpected errors are reported in it
        rather than raised, so one bad shard does not discard the others.
    """
    shard_id, start, stop, ledger_path, checkpoint_path, already_attempted = task
    options = _worker_options
    started = time.perf_counter()

    driver = SearchDriver(
        template=_worker_template,
        vocabulary=_worker_vocabulary,
        validator=lambda vocab: build_validator(vocab, **_worker_validator_settings),
        ledger_path=ledger_path,
        checkpoint_path=checkpoint_path,
        progress_interval=options.get("progress_interval", DEFAULT_PROGRESS_INTERVAL),
        checkpoint_interval=options.get("checkpoint_interval", DEFAULT_CHECKPOINT_INTERVAL),
        stop_on_first_match=options.get("stop_on_first_match", False),
        shard=(start, stop),
        fsync=options.get("fsync", False),
        stop_event=_worker_stop_event,
        on_match=_stop_all_on_match if options.get("stop_on_first_match") else None,
        already_attempted=already_attempted,
    )

    try:
        result = driver.run()
    except Exception as e:
        logger.warning(f"Shard {shard_id} failed: {e}")
        return ShardResult(
            shard_id=shard_id,
            start=start,
            stop=stop,
            phase=DriverPhase.ABORTED.value,
            reason=REASON_WORKER_ERROR,
            total_attempts=driver.state.total_attempts if driver.state else start,
            duration_seconds=time.perf_counter() - started,
            error=f"{type(e).__name__}: {e}",
        )

    return ShardResult(
        shard_id=shard_id,
        start=start,
        stop=stop,
        phase=result.phase.value,
        reason=result.reason,
        total_attempts=max(result.total_attempts, start),
        found_candidates=result.found_candidates,
        validated_count=result.validated_count,
        skipped_count=result.skipped_count,
        malformed_count=result.malformed_count,
        oracle_failures=result.oracle_failures,
        persistence_failures=result.persistence_failures,
        duration_seconds=time.perf_counter() - started,
        error=result.error,
    )


# =============================================================================
# MERGING
# =============================================================================

def merge_shard_ledgers(paths: Iterable[Path]) -> Tuple[AttemptSet, List[str]]:
    """Union the attempt sets and concatenate the matches of shard ledgers.

    Missing files are skipped (a shard that never started has no ledger).

    Returns:
        ``(attempted, match_texts)`` with duplicate matches removed.
    """
    attempted = AttemptSet()
    matches: List[str] = []
    for path in paths:
        path = Path(path)
        if not path.exists():
            continue
        replay = read_ledger(path)
        attempted.update(replay.attempted)
        for _, text in replay.matches:
            if text not in matches:
                matches.append(text)
    return attempted, matches


def contiguous_progress(shard_results: Sequence[ShardResult]) -> int:
    """Highest index below which every index of the space is processed."""
    progress = 0
    for shard in sorted(shard_results, key=lambda s: s.start):
        if shard.start > progress:
            break
        progress = max(progress, shard.start + shard.processed)
        if shard.total_attempts < shard.stop:
            break
    return progress


def _overall_outcome(shard_results: Sequence[ShardResult], stop_on_first_match: bool) -> Tuple[DriverPhase, str]:
    phases = [s.phase for s in shard_results]
    if DriverPhase.ABORTED.value in phases:
        reasons = {s.reason for s in shard_results if s.phase == DriverPhase.ABORTED.value}
        if REASON_CONFIGURATION_ERROR in reasons:
            return DriverPhase.ABORTED, REASON_CONFIGURATION_ERROR
        return DriverPhase.ABORTED, REASON_WORKER_ERROR
    if stop_on_first_match and any(s.reason == REASON_FIRST_MATCH for s in shard_results):
        return DriverPhase.COMPLETED, REASON_FIRST_MATCH
    if all(p == DriverPhase.COMPLETED.value for p in phases):
        return DriverPhase.COMPLETED, REASON_EXHAUSTED
    return DriverPhase.STOPPED, REASON_STOPPED


def write_aggregate_checkpoint(
    config: ParallelConfig,
    indexer: CombinationIndexer,
    shard_results: Sequence[ShardResult],
    found: Sequence[str],
    search_started_at: Optional[str] = None,
    previous_total: int = 0,
):
    """Save a whole-space checkpoint summarising every shard.

    ``total_attempts`` is the contiguous prefix processed across shards,
    so a later single-process run resumed from it never skips work. It
    never drops below ``previous_total``, the prefix of the checkpoint
    being replaced.
    """
    state = DriverState(
        total_attempts=max(contiguous_progress(shard_results), previous_total),
        skipped_count=sum(s.skipped_count for s in shard_results),
        malformed_count=sum(s.malformed_count for s in shard_results),
        oracle_failures=sum(s.oracle_failures for s in shard_results),
    )
    if search_started_at:
        state.search_started_at = search_started_at
    state.merge_matches(found)
    store = CheckpointStore(config.checkpoint_path, indexer.parameters())
    try:
        store.save(state, "parallel aggregate")
    except PersistenceError as e:
        logger.warning(f"{e} - aggregate checkpoint not written")
        capture_message(str(e), level="warning")


# =============================================================================
# PRIOR PROGRESS
# =============================================================================

@dataclass
class PriorProgress:
    """Work recorded under the base ledger and checkpoint paths.

    Attributes:
        attempted: Indices already processed, by an unsharded run or by
            earlier sharded runs (through the aggregate checkpoint).
        found_candidates: Matches recovered from the base files.
        state: The base checkpoint, if one exists.
    """
    attempted: AttemptSet = field(default_factory=AttemptSet)
    found_candidates: List[str] = field(default_factory=list)
    state: Optional[DriverState] = None

    def runs_within(self, start: int, stop: int) -> List[Tuple[int, int]]:
        """Attempted runs clipped to [start, stop)."""
        return [
            (max(lo, start), min(hi, stop))
            for lo, hi in self.attempted.ranges()
            if lo < stop and hi > start
        ]


def load_prior_progress(config: ParallelConfig, parameters: SearchParameters) -> PriorProgress:
    """Read the base ledger and checkpoint without modifying either.

    Raises:
        ConfigurationError: If either file belongs to a different search.
    """
    prior = PriorProgress()
    if config.ledger_path.exists():
        replay = read_ledger(config.ledger_path)
        diffs = parameters.mismatches(replay.parameters)
        if diffs:
            raise ConfigurationError(
                f"Ledger {config.ledger_path} belongs to a different search: " + "; ".join(diffs)
            )
        prior.attempted = replay.attempted
        for _, text in replay.matches:
            if text not in prior.found_candidates:
                prior.found_candidates.append(text)

    prior.state = CheckpointStore(config.checkpoint_path, parameters).load()
    if prior.state is not None:
        prior.attempted.add_range(0, prior.state.total_attempts)
        for text in prior.state.found_candidates:
            if text not in prior.found_candidates:
                prior.found_candidates.append(text)
    return prior


def check_shard_files(config: ParallelConfig, parameters: SearchParameters, shards: Sequence[Tuple[int, int]]):
    """Reject shard ledgers and checkpoints left by a different partition.

    Every file is checked before any worker starts, so a changed worker
    count fails without a single index being processed.

    Raises:
        ConfigurationError: On the first mismatching or unreadable file.
    """
    for shard_id, (lo, hi) in enumerate(shards):
        shard_params = parameters.for_shard(lo, hi)
        ledger_path = config.shard_ledger_path(shard_id)
        if ledger_path.exists():
            diffs = shard_params.mismatches(read_ledger(ledger_path).parameters)
            if diffs:
                raise ConfigurationError(
                    f"Shard ledger {ledger_path} was written for another partition "
                    f"(was the worker count changed?): " + "; ".join(diffs)
                )
        CheckpointStore(config.shard_checkpoint_path(shard_id), shard_params).load()

    extra = config.shard_ledger_path(len(shards))
    if extra.exists():
        raise ConfigurationError(
            f"Shard ledger {extra} has no shard in a {len(shards)}-way partition "
            f"(was the worker count changed?)"
        )


# =============================================================================
# MAIN PARALLEL SEARCH
# =============================================================================

def parallel_search(config: ParallelConfig) -> ParallelResult:
    """Run the search over all shards in a process pool.

    Args:
        config: ParallelConfig with template, vocabulary, paths and workers.

    Returns:
        ParallelResult with merged matches and per-shard statistics.

    Raises:
        ConfigurationError: If the template, vocabulary or plugins are
            invalid, or an existing ledger or checkpoint belongs to another
            search or partition (checked once, before any worker starts).
    """
    start_time = time.perf_counter()

    check_fixed_tokens(config.vocabulary, config.template)
    indexer = CombinationIndexer(config.vocabulary, config.template)
    build_validator(indexer.vocabulary, **config.validator_settings).close()
    total = indexer.search_space_size
    params = indexer.parameters()

    shards = partition(total, config.num_workers)
    prior = load_prior_progress(config, params)
    check_shard_files(config, params, shards)
    if prior.attempted:
        logger.info(f"Skipping {prior.attempted.count:,} combinations attempted by earlier runs")

    tasks = [
        (
            i, lo, hi,
            str(config.shard_ledger_path(i)),
            str(config.shard_checkpoint_path(i)),
            prior.runs_within(lo, hi),
        )
        for i, (lo, hi) in enumerate(shards)
    ]
    logger.info(f"Search space: {total:,} combinations in {len(tasks)} shard(s)")

    ctx = mp.get_context(config.start_method)
    stop_event = ctx.Event()
    options = {
        "progress_interval": config.progress_interval,
        "checkpoint_interval": config.checkpoint_interval,
        "stop_on_first_match": config.stop_on_first_match,
        "fsync": config.fsync,
        "log_level": logging.getLogger().getEffectiveLevel(),
    }

    def _handle_signal(signum, frame):
        if not stop_event.is_set():
            logger.warning("Shutdown requested - waiting for workers to save progress...")
            stop_event.set()
        else:
            logger.warning("Force quit - terminating workers.")
            raise KeyboardInterrupt

    shard_results: List[ShardResult] = []
    logger.info(f"Starting {len(tasks)} worker processes")
    pool = ctx.Pool(
        processes=max(1, len(tasks)),
        initializer=_worker_init,
        initargs=(config.template, config.vocabulary, config.validator_settings, options, stop_event),
    )

    # Installed only once the workers exist, so they never inherit it
    previous_handlers = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(signum, _handle_signal)

    try:
        async_results = [pool.apply_async(_run_shard, (task,)) for task in tasks]
        for async_result in async_results:
            shard = async_result.get()  # Blocks until shard complete
            shard_results.append(shard)
            logger.info(
                f"Shard {shard.shard_id} {shard.phase} ({shard.reason}): "
                f"{shard.processed:,}/{shard.stop - shard.start:,} indices, "
                f"{len(shard.found_candidates)} match(es)"
            )
        pool.close()
    except BaseException:
        pool.terminate()
        raise
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        pool.join()

    attempted, ledger_matches = merge_shard_ledgers(config.shard_ledger_path(i) for i, *_ in tasks)
    attempted.update(prior.attempted)
    found: List[str] = []
    for text in prior.found_candidates + [t for s in shard_results for t in s.found_candidates] + ledger_matches:
        if text not in found:
            found.append(text)

    phase, reason = _overall_outcome(shard_results, config.stop_on_first_match)
    if phase is DriverPhase.ABORTED:
        logger.warning("A shard aborted; aggregate checkpoint left unchanged")
    else:
        write_aggregate_checkpoint(
            config, indexer, shard_results, found,
            search_started_at=prior.state.search_started_at if prior.state else None,
            previous_total=prior.state.total_attempts if prior.state else 0,
        )

    duration = time.perf_counter() - start_time
    worker_stats = {
        s.shard_id: {
            "validated": s.validated_count,
            "skipped": s.skipped_count,
            "oracle_failures": s.oracle_failures,
            "persistence_failures": s.persistence_failures,
            "duration_seconds": s.duration_seconds,
        }
        for s in shard_results
    }

    result = ParallelResult(
        phase=phase,
        reason=reason,
        search_space_size=total,
        total_attempts=sum(s.processed for s in shard_results),
        valid_count=len(found),
        found_candidates=found,
        attempted=attempted,
        shard_results=shard_results,
        duration_seconds=duration,
        worker_stats=worker_stats,
    )

    logger.info(f"Parallel search {phase.value} ({reason}) in {duration:.1f}s")
    logger.info(f"- Total attempts: {result.total_attempts:,} of {total:,}")
    logger.info(f"- Valid candidates found: {result.valid_count}")
    for text in found:
        logger.info(f"  {text}")
    return result


# =============================================================================
# ESTIMATES
# =============================================================================

def estimate_runtime(
    search_space_size: int,
    num_workers: int = 1,
    attempts_per_second: float = 1000.0,
) -> Dict[str, Any]:
    """Estimate runtime for an exhaustive search.

    Args:
        search_space_size: V ** M.
        num_workers: Number of parallel workers.
        attempts_per_second: Validation rate of a single worker.

    Returns:
        Dict with estimated seconds, minutes, hours, days and combined rate.
    """
    rate = attempts_per_second * num_workers
    seconds = search_space_size / rate if rate > 0 else float("inf")
    return {
        "search_space_size": search_space_size,
        "estimated_seconds": seconds,
        "estimated_minutes": seconds / 60,
        "estimated_hours": seconds / 3600,
        "estimated_days": seconds / 86400,
        "attempts_per_second": rate,
    }


__all__ = [
    'ParallelConfig',
    'ShardResult',
    'ParallelResult',
    'PriorProgress',
    'REASON_WORKER_ERROR',
    'parallel_search',
    'merge_shard_ledgers',
    'contiguous_progress',
    'load_prior_progress',
    'check_shard_files',
    'write_aggregate_checkpoint',
    'estimate_runtime',
]
