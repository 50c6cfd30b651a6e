"""
Append-only attempt ledger.

The ledger is the fine-grained durable record of which indices a logical
search has already processed. Layout:

    Slot Search Attempt Ledger
    Started at: 2026-01-26T12:00:00Z
    Known Tokens: ["camp", "jazz", ...]
    Free Positions: 10, 12
    Template Length: 12
    Vocabulary Size: 2048
    Total Possible Combinations: 4194304
    Shard: 0-4194304
    -------------------------------------------
    # ATTEMPTED_COMBINATIONS_START
    0
    1
    # MATCH 2 camp jazz ... sea
    2
    ...

Each index is appended (and flushed) *before* its candidate is validated, so
a crash can at worst skip the one index that was in flight. Match lines are
written as comments so the index section stays a plain list of integers
while a match survives even if the checkpoint is lost.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, List, Optional, Tuple, Union

from .errors import ConfigurationError, PersistenceError
from .search.attempts import AttemptSet
from .types import SearchParameters, utc_timestamp

logger = logging.getLogger(__name__)

LEDGER_TITLE = "Slot Search Attempt Ledger"
HEADER_SEPARATOR = "-" * 43
ATTEMPTS_MARKER = "# ATTEMPTED_COMBINATIONS_START"
MATCH_PREFIX = "# MATCH "


# =============================================================================
# HEADER FORMAT
# =============================================================================

def format_header(parameters: SearchParameters, started_at: Optional[str] = None) -> str:
    """Render the ledger header block, ending with the attempts marker line."""
    lines = [
        LEDGER_TITLE,
        f"Started at: {started_at or utc_timestamp()}",
        f"Known Tokens: {json.dumps(list(parameters.known_tokens))}",
        f"Free Positions: {', '.join(str(p) for p in parameters.free_positions)}",
        f"Template Length: {parameters.template_length}",
        f"Vocabulary Size: {parameters.vocabulary_size}",
        f"Total Possible Combinations: {parameters.search_space_size}",
        f"Shard: {parameters.shard_start}-{parameters.shard_stop}",
        HEADER_SEPARATOR,
        ATTEMPTS_MARKER,
    ]
    return "\n".join(lines) + "\n"


def parse_header(fields: dict) -> SearchParameters:
    """
    Build SearchParameters from ``Key: value`` header fields.

    Raises:
        ValueError: If a required field is missing or malformed.
    """
    try:
        positions = fields["Free Positions"].strip()
        shard_start, shard_stop = fields["Shard"].split("-", 1)
        return SearchParameters(
            known_tokens=tuple(json.loads(fields["Known Tokens"])),
            free_positions=tuple(int(p) for p in positions.split(",")) if positions else (),
            template_length=int(fields["Template Length"]),
            vocabulary_size=int(fields["Vocabulary Size"]),
            search_space_size=int(fields["Total Possible Combinations"]),
            shard_start=int(shard_start),
            shard_stop=int(shard_stop),
        )
    except (KeyError, ValueError, TypeError) as e:
        raise ValueError(f"Malformed ledger header: {e}") from e


# =============================================================================
# REPLAY
# =============================================================================

@dataclass
class LedgerReplay:
    """
    Everything reconstructed from an existing ledger file.

    Attributes:
        parameters: Search parameters from the header.
        started_at: Header start timestamp.
        attempted: All replayed attempt indices.
        matches: ``(index, candidate_text)`` pairs in file order.
        bad_lines: Unparseable lines skipped during replay.
        truncated_tail: Byte offset of a partial final line, if one was found.
    """
    parameters: SearchParameters
    started_at: str
    attempted: AttemptSet = field(default_factory=AttemptSet)
    matches: List[Tuple[int, str]] = field(default_factory=list)
    bad_lines: int = 0
    truncated_tail: Optional[int] = None

    @property
    def resume_from_index(self) -> int:
        """Lowest unattempted index in the shard."""
        return self.attempted.first_gap(self.parameters.shard_start)


def read_ledger(path: Union[str, Path]) -> LedgerReplay:
    """
    Replay a ledger file into memory.

    A final line without a trailing newline is the residue of an interrupted
    append: it is never trusted (a cut-off "123" would read as 12) and its
    offset is reported so the writer can truncate it away.

    Raises:
        FileNotFoundError: If the ledger does not exist.
        ConfigurationError: If the header cannot be read.
    """
    path = Path(path)
    fields = {}
    replay: Optional[LedgerReplay] = None
    offset = 0

    with open(path, "rb") as f:
        for raw in f:
            line_offset = offset
            offset += len(raw)

            if replay is None:
                text = raw.decode("utf-8", errors="replace").strip()
                if text == ATTEMPTS_MARKER:
                    try:
                        params = parse_header(fields)
                    except ValueError as e:
                        raise ConfigurationError(f"Unreadable ledger header in {path}: {e}") from e
                    replay = LedgerReplay(parameters=params, started_at=fields.get("Started at", ""))
                elif ": " in text:
                    key, value = text.split(": ", 1)
                    fields[key] = value
                continue

            if not raw.endswith(b"\n"):
                replay.truncated_tail = line_offset
                logger.warning(f"Ignoring truncated final ledger line at byte {line_offset} in {path}")
                break

            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if text.startswith(MATCH_PREFIX):
                parts = text[len(MATCH_PREFIX):].split(" ", 1)
                try:
                    replay.matches.append((int(parts[0]), parts[1] if len(parts) > 1 else ""))
                except ValueError:
                    replay.bad_lines += 1
                continue
            if text.startswith("#"):
                continue
            try:
                replay.attempted.add(int(text))
            except ValueError:
                replay.bad_lines += 1

    if replay is None:
        raise ConfigurationError(
            f"Ledger {path} has no '{ATTEMPTS_MARKER}' marker; header is missing or corrupt"
        )
    if replay.bad_lines:
        logger.warning(f"Skipped {replay.bad_lines} unparseable lines in ledger {path}")
    return replay


# =============================================================================
# LEDGER
# =============================================================================

class AttemptLedger:
    """
    Durable attempt record for one search (or one shard of it).

    Usage:
        ledger = AttemptLedger(path, indexer.parameters())
        replay = ledger.load_all()        # creates the file if absent
        if not ledger.has_attempted(i):
            ledger.record_attempt(i)      # durable before validation
        ...
        ledger.close()
    """

    def __init__(self, path: Union[str, Path], parameters: SearchParameters, fsync: bool = False):
        """
        Args:
            path: Ledger file location.
            parameters: Live search parameters; compared against the header.
            fsync: fsync after every append (slower, survives power loss).
        """
        self.path = Path(path)
        self.parameters = parameters
        self.fsync = fsync
        self.attempted = AttemptSet()
        self.started_at: Optional[str] = None
        self.replay: Optional[LedgerReplay] = None
        self._handle: Optional[IO[str]] = None
        self._write_failures = 0

    def load_all(self) -> LedgerReplay:
        """
        Replay the existing ledger, or create a fresh one.

        Returns:
            The replay (empty for a fresh ledger).

        Raises:
            ConfigurationError: On header mismatch or an unreadable header.
                Nothing is written to the file in that case.
            PersistenceError: If the ledger cannot be created, repaired or
                opened. ``replay`` and ``attempted`` are still populated, so
                the caller can carry on in memory; appends then fail.
        """
        fresh = not self.path.exists()
        if not fresh:
            replay = read_ledger(self.path)
            diffs = self.parameters.mismatches(replay.parameters)
            if diffs:
                raise ConfigurationError(
                    f"Ledger {self.path} belongs to a different search: " + "; ".join(diffs)
                )
            logger.info(
                f"Loaded {replay.attempted.count:,} previously attempted combinations "
                f"({replay.attempted.stats()['runs']} runs, {len(replay.matches)} matches)"
            )
        else:
            replay = LedgerReplay(parameters=self.parameters, started_at=utc_timestamp())

        self.replay = replay
        self.attempted = replay.attempted
        self.started_at = replay.started_at

        if fresh:
            self._create(replay.started_at)
        elif replay.truncated_tail is not None:
            self._truncate(replay.truncated_tail)
        self._open()
        return replay

    def _create(self, started_at: str):
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8", newline="\n") as f:
                f.write(format_header(self.parameters, started_at))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"Could not create ledger {self.path}: {e}") from e

    def _truncate(self, offset: int):
        try:
            with open(self.path, "r+b") as f:
                f.truncate(offset)
        except OSError as e:
            raise PersistenceError(f"Could not repair truncated ledger {self.path}: {e}") from e

    def _open(self):
        try:
            self._handle = open(self.path, "a", encoding="utf-8", newline="\n")
        except OSError as e:
            raise PersistenceError(f"Could not open ledger {self.path} for append: {e}") from e

    def has_attempted(self, index: int) -> bool:
        return self.attempted.lookup(index)

    def record_attempt(self, index: int) -> None:
        """
        Record `index` as attempted.

        The in-memory set is updated first, so even when the append fails the
        index is not revisited during this run.

        Raises:
            PersistenceError: If the append could not be written.
        """
        self.attempted.add(index)
        self._append(f"{index}\n")

    def record_match(self, index: int, candidate_text: str) -> None:
        """Append a match comment line. Raises PersistenceError on I/O failure."""
        self._append(f"{MATCH_PREFIX}{index} {candidate_text}\n")

    def _append(self, line: str):
        if self._handle is None:
            raise PersistenceError(f"Ledger {self.path} is not open; call load_all() first")
        try:
            self._handle.write(line)
            self._handle.flush()
            if self.fsync:
                os.fsync(self._handle.fileno())
        except (OSError, ValueError) as e:  # ValueError: handle already closed
            self._write_failures += 1
            raise PersistenceError(f"Ledger append failed for {self.path}: {e}") from e

    @property
    def write_failures(self) -> int:
        return self._write_failures

    def close(self):
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError as e:
                logger.warning(f"Error closing ledger {self.path}: {e}")
            self._handle = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


__all__ = [
    'AttemptLedger',
    'LedgerReplay',
    'read_ledger',
    'format_header',
    'parse_header',
    'ATTEMPTS_MARKER',
    'MATCH_PREFIX',
]
