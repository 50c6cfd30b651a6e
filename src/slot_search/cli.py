#!/usr/bin/env python3
"""
Command-line interface for slot search.

Usage:
    python -m slot_search.cli run --vocabulary words.txt --template "camp ? jazz ?" \\
        --oracle oracle.py --ledger attempted.txt --checkpoint checkpoint.json
    python -m slot_search.cli run --vocabulary bip39.txt --known "w1 w2 ... w10" \\
        --free-positions 10,12 --well-formed bip39 --workers 8
    python -m slot_search.cli estimate --vocabulary words.txt --template "? ? ?" --rate 5000
    python -m slot_search.cli status --ledger attempted.txt --checkpoint checkpoint.json
    python -m slot_search.cli locate --vocabulary words.txt --template "x ? y ?" --candidate "x a y b"
"""

import argparse
import functools
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .checkpoint import load_checkpoint
from .config import SearchConfig
from .driver import REASON_CONFIGURATION_ERROR, DriverPhase, SearchDriver
from .errors import ConfigurationError
from .indexer import CombinationIndexer
from .ledger import read_ledger
from .paths import shard_path
from .sentry_config import capture_exception, init_sentry
from .types import format_candidate
from .validator import build_validator
from .vocabulary import load_vocabulary

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
PARALLEL_LOG_FORMAT = '%(asctime)s [%(processName)s] %(levelname)s: %(message)s'

EXIT_OK = 0
EXIT_WORKER_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def _positions(value: str) -> List[int]:
    try:
        return [int(p) for p in value.replace(" ", "").split(",") if p]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated integers, got {value!r}")


def _add_template_args(parser: argparse.ArgumentParser):
    parser.add_argument("--vocabulary", type=Path, help="Newline-separated token file")
    parser.add_argument("--template", type=str, help='Pattern with ? for free slots, e.g. "camp ? jazz ?"')
    parser.add_argument("--known", type=str, help="Known tokens in order, space-separated")
    parser.add_argument("--free-positions", type=_positions,
                        help="1-based positions of the missing tokens, e.g. 10,12")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slot-search",
        description="Resumable exhaustive search over a word-slot template",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Enumerate (or resume) the search")
    _add_template_args(run)
    run.add_argument("--ledger", type=Path, help="Attempt ledger file")
    run.add_argument("--checkpoint", type=Path, help="Checkpoint file (.gz for gzip)")
    run.add_argument("--oracle", type=str,
                     help="Oracle plugin: file.py[:func] or module:func (default func: external_check)")
    run.add_argument("--well-formed", type=str,
                     help='Local check: "vocabulary", "bip39" or a plugin spec (default: vocabulary)')
    run.add_argument("--workers", "-w", type=int, help="Worker processes (default: 1)")
    run.add_argument("--progress-interval", type=int, help="Attempts between progress lines")
    run.add_argument("--checkpoint-interval", type=float, help="Seconds between checkpoints")
    run.add_argument("--timeout", type=float, help="Seconds allowed per oracle call")
    run.add_argument("--retries", type=int, help="Extra attempts per failed oracle call")
    run.add_argument("--retry-delay", type=float, help="Seconds between oracle attempts")
    run.add_argument("--stop-on-first-match", action="store_true", default=None,
                     help="Stop as soon as one match is confirmed")
    run.add_argument("--fsync", action="store_true", default=None,
                     help="fsync every ledger append")

    estimate = sub.add_parser("estimate", help="Print search-space size and runtime estimate")
    _add_template_args(estimate)
    estimate.add_argument("--rate", type=float, default=1000.0,
                          help="Attempts per second per worker (default: 1000)")
    estimate.add_argument("--workers", "-w", type=int, default=1, help="Worker processes")

    status = sub.add_parser("status", help="Summarise checkpoint and ledger files")
    status.add_argument("--ledger", type=Path, help="Attempt ledger file")
    status.add_argument("--checkpoint", type=Path, help="Checkpoint file")

    locate = sub.add_parser("locate", help="Map a candidate to its index, or an index to its candidate")
    _add_template_args(locate)
    group = locate.add_mutually_exclusive_group(required=True)
    group.add_argument("--candidate", type=str, help="Full candidate, space-separated")
    group.add_argument("--index", type=int, help="Search-space index")

    return parser


def load_config(args: argparse.Namespace) -> SearchConfig:
    """Environment-backed config with CLI flags applied on top."""
    config = SearchConfig.from_env()
    return config.with_overrides(
        vocabulary_path=getattr(args, "vocabulary", None),
        template=getattr(args, "template", None),
        known_tokens=args.known.split() if getattr(args, "known", None) else None,
        free_positions=getattr(args, "free_positions", None),
        ledger_path=getattr(args, "ledger", None),
        checkpoint_path=getattr(args, "checkpoint", None),
        oracle=getattr(args, "oracle", None),
        well_formed=getattr(args, "well_formed", None),
        num_workers=getattr(args, "workers", None),
        progress_interval=getattr(args, "progress_interval", None),
        checkpoint_interval=getattr(args, "checkpoint_interval", None),
        oracle_timeout=getattr(args, "timeout", None),
        oracle_retries=getattr(args, "retries", None),
        retry_delay=getattr(args, "retry_delay", None),
        stop_on_first_match=getattr(args, "stop_on_first_match", None),
        fsync=getattr(args, "fsync", None),
    )


def _require_vocabulary(config: SearchConfig) -> Path:
    if config.vocabulary_path is None:
        raise ConfigurationError("No vocabulary file: pass --vocabulary or set SLOT_SEARCH_VOCABULARY")
    return config.vocabulary_path


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_run(config: SearchConfig) -> int:
    template = config.build_template()
    vocabulary_path = _require_vocabulary(config)
    if not config.oracle:
        logger.warning("No oracle configured; every well-formed candidate counts as a match")

    if config.num_workers > 1:
        from .search.parallel import ParallelConfig, parallel_search

        result = parallel_search(ParallelConfig(
            template=template,
            vocabulary=load_vocabulary(vocabulary_path),
            ledger_path=config.ledger_path,
            checkpoint_path=config.checkpoint_path,
            num_workers=config.num_workers,
            validator_settings=config.validator_settings(),
            progress_interval=config.progress_interval,
            checkpoint_interval=config.checkpoint_interval,
            stop_on_first_match=config.stop_on_first_match,
            fsync=config.fsync,
        ))
        attempts = result.total_attempts
        failures = sum(s.persistence_failures for s in result.shard_results)
    else:
        driver = SearchDriver(
            template=template,
            vocabulary=functools.partial(load_vocabulary, vocabulary_path),
            validator=functools.partial(build_validator, **config.validator_settings()),
            ledger_path=config.ledger_path,
            checkpoint_path=config.checkpoint_path,
            progress_interval=config.progress_interval,
            checkpoint_interval=config.checkpoint_interval,
            stop_on_first_match=config.stop_on_first_match,
            fsync=config.fsync,
        )
        driver.install_signal_handlers()
        result = driver.run()
        if result.phase is DriverPhase.ABORTED:
            print(f"Configuration error: {result.error}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        attempts = result.total_attempts
        failures = result.persistence_failures

    if result.phase is DriverPhase.ABORTED:
        if result.reason == REASON_CONFIGURATION_ERROR:
            print("Configuration error in one or more shards; see log", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        print("One or more shards failed unexpectedly; see log", file=sys.stderr)
        return EXIT_WORKER_ERROR

    print(f"\n{'='*60}")
    print(f"SEARCH {result.phase.value.upper()} ({result.reason})")
    print(f"{'='*60}")
    print(f"Total attempts:     {attempts:,}")
    print(f"Valid candidates:   {result.valid_count}")
    print(f"Duration:           {result.duration_seconds:.1f}s")
    if failures:
        print(f"Persistence errors: {failures}")
    for text in result.found_candidates:
        print(f"  {text}")
    if result.phase is DriverPhase.STOPPED:
        print("\nRerun the same command to resume.")
    return EXIT_OK


def cmd_estimate(config: SearchConfig, rate: float, workers: int) -> int:
    from .search.parallel import estimate_runtime

    indexer = CombinationIndexer(load_vocabulary(_require_vocabulary(config)), config.build_template())
    estimate = estimate_runtime(indexer.search_space_size, num_workers=workers, attempts_per_second=rate)
    print(f"\nRuntime Estimate:")
    print(f"  Template:           {indexer.template}")
    print(f"  Vocabulary size:    {indexer.radix:,}")
    print(f"  Free slots:         {indexer.free_count}")
    print(f"  Total combinations: {estimate['search_space_size']:,}")
    print(f"  Workers:            {workers}")
    print(f"  Attempts/second:    {estimate['attempts_per_second']:,.1f}")
    print(f"  Estimated time:     {estimate['estimated_hours']:,.2f} hours "
          f"({estimate['estimated_days']:,.2f} days)")
    return EXIT_OK


def _print_ledger(path: Path):
    replay = read_ledger(path)
    params = replay.parameters
    stats = replay.attempted.stats()
    span = params.shard_stop - params.shard_start
    print(f"Ledger {path}:")
    print(f"  Started at:         {replay.started_at}")
    print(f"  Shard:              {params.shard_start:,}-{params.shard_stop:,} of {params.search_space_size:,}")
    print(f"  Attempted:          {stats['count']:,} ({stats['runs']} runs)")
    if span:
        print(f"  Coverage:           {100 * stats['count'] / span:.6f}%")
    print(f"  Resume index:       {replay.resume_from_index:,}")
    print(f"  Matches:            {len(replay.matches)}")
    for index, text in replay.matches:
        print(f"    {index}: {text}")
    if replay.truncated_tail is not None:
        print(f"  Truncated tail at byte {replay.truncated_tail} (repaired on next run)")


def _print_checkpoint(path: Path):
    checkpoint = load_checkpoint(path)
    prog = checkpoint.progress
    print(f"Checkpoint {path}:")
    print(f"  Saved at:           {checkpoint.metadata.timestamp} ({checkpoint.metadata.description})")
    print(f"  Search started at:  {prog.search_started_at}")
    print(f"  Total attempts:     {prog.total_attempts:,}")
    print(f"  Valid candidates:   {prog.valid_count}")
    for text in prog.found_candidates:
        print(f"    {text}")


def _existing_with_shards(path: Path) -> List[Path]:
    found = [path] if path.exists() else []
    shard_id = 0
    while shard_path(path, shard_id).exists():
        found.append(shard_path(path, shard_id))
        shard_id += 1
    return found


def cmd_status(ledger: Optional[Path], checkpoint: Optional[Path], config: SearchConfig) -> int:
    ledger = ledger or config.ledger_path
    checkpoint = checkpoint or config.checkpoint_path
    shown = 0
    for path in _existing_with_shards(checkpoint):
        try:
            _print_checkpoint(path)
        except (OSError, ValueError, KeyError) as e:
            raise ConfigurationError(f"Could not read checkpoint {path}: {e}") from e
        shown += 1
    for path in _existing_with_shards(ledger):
        _print_ledger(path)
        shown += 1
    if not shown:
        print(f"No checkpoint at {checkpoint} and no ledger at {ledger}")
    return EXIT_OK


def cmd_locate(config: SearchConfig, candidate: Optional[str], index: Optional[int]) -> int:
    indexer = CombinationIndexer(load_vocabulary(_require_vocabulary(config)), config.build_template())
    if candidate is not None:
        try:
            print(indexer.decode(candidate.split()))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
    else:
        try:
            print(format_candidate(indexer.encode(index)))
        except IndexError as e:
            raise ConfigurationError(str(e)) from e
    return EXIT_OK


# =============================================================================
# ENTRY POINT
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the slot-search CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    workers = getattr(args, "workers", None) or 1
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=PARALLEL_LOG_FORMAT if args.command == "run" and workers > 1 else LOG_FORMAT,
    )

    try:
        config = load_config(args)
        init_sentry(config.sentry_dsn)

        if args.command == "run":
            return cmd_run(config)
        if args.command == "estimate":
            return cmd_estimate(config, args.rate, args.workers)
        if args.command == "status":
            return cmd_status(args.ledger, args.checkpoint, config)
        return cmd_locate(config, args.candidate, args.index)
    except ConfigurationError as e:
        capture_exception(e)
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("\nForce quit - progress since the last checkpoint may be replayed.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        capture_exception(e)
        raise


if __name__ == "__main__":
    sys.exit(main())
