"""
Shared type definitions for slot search.

This module contains the dataclasses used across the indexer, ledger,
checkpoint store and driver, kept together to avoid circular imports.

Types:
    Slot: A single template position, fixed to a token or free
    Template: Ordered sequence of slots
    SearchParameters: The identity of a logical search (persisted in headers)
    DriverState: All mutable counters owned by the search driver
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ConfigurationError

Candidate = Tuple[str, ...]

FREE_MARKER = "?"


def utc_timestamp() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def format_candidate(candidate: Sequence[str]) -> str:
    """Render a candidate the way it is persisted (single-space joined)."""
    return " ".join(candidate)


# =============================================================================
# TEMPLATE
# =============================================================================

@dataclass(frozen=True)
class Slot:
    """A template position: fixed to `token`, or free when token is None."""
    token: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.token is None

    @classmethod
    def fixed(cls, token: str) -> "Slot":
        return cls(token=token)

    @classmethod
    def free(cls) -> "Slot":
        return cls(token=None)


@dataclass(frozen=True)
class Template:
    """
    Known sequence structure with fixed and free slots.

    Attributes:
        slots: The L slots in order.
    """
    slots: Tuple[Slot, ...]

    def __post_init__(self):
        object.__setattr__(self, "slots", tuple(self.slots))

    @property
    def length(self) -> int:
        return len(self.slots)

    @property
    def free_positions(self) -> Tuple[int, ...]:
        """1-based positions of the free slots, ascending."""
        return tuple(i for i, slot in enumerate(self.slots, start=1) if slot.is_free)

    @property
    def fixed_tokens(self) -> Tuple[str, ...]:
        """Fixed tokens in template order."""
        return tuple(slot.token for slot in self.slots if not slot.is_free)

    @property
    def free_count(self) -> int:
        return len(self.free_positions)

    @classmethod
    def from_known(cls, known_tokens: Sequence[str], free_positions: Iterable[int]) -> "Template":
        """
        Build a template from known tokens plus the positions they are missing at.

        Free positions are 1-based within the full length
        ``len(known_tokens) + len(free_positions)``; the known tokens fill
        the remaining positions in order.

        Raises:
            ConfigurationError: If positions repeat or fall outside the sequence.
        """
        positions = list(free_positions)
        length = len(known_tokens) + len(positions)

        if len(set(positions)) != len(positions):
            raise ConfigurationError(f"Duplicate free positions: {positions}")
        out_of_range = [p for p in positions if not 1 <= p <= length]
        if out_of_range:
            raise ConfigurationError(
                f"Free positions {out_of_range} outside 1..{length} "
                f"({len(known_tokens)} known tokens + {len(positions)} free)"
            )

        free = set(positions)
        known = iter(known_tokens)
        slots = [Slot.free() if pos in free else Slot.fixed(next(known))
                 for pos in range(1, length + 1)]
        return cls(slots=tuple(slots))

    @classmethod
    def parse(cls, pattern: str, free_marker: str = FREE_MARKER) -> "Template":
        """Parse a whitespace-separated pattern such as ``"camp ? jazz ?"``."""
        tokens = pattern.split()
        if not tokens:
            raise ConfigurationError("Template pattern is empty")
        return cls(slots=tuple(
            Slot.free() if tok == free_marker else Slot.fixed(tok) for tok in tokens
        ))

    def __str__(self) -> str:
        return " ".join(FREE_MARKER if s.is_free else s.token for s in self.slots)


# =============================================================================
# SEARCH PARAMETERS
# =============================================================================

@dataclass(frozen=True)
class SearchParameters:
    """
    Identity of a logical search, written into ledger and checkpoint headers.

    Resuming with different parameters would silently reuse stale indices,
    so persisted parameters are compared against the live ones on load.

    Attributes:
        known_tokens: Fixed tokens in template order.
        free_positions: 1-based free slot positions.
        template_length: Total slot count L.
        vocabulary_size: V.
        search_space_size: V ** M.
        shard_start: First index owned by this run (inclusive).
        shard_stop: End of the owned range (exclusive).
    """
    known_tokens: Tuple[str, ...]
    free_positions: Tuple[int, ...]
    template_length: int
    vocabulary_size: int
    search_space_size: int
    shard_start: int = 0
    shard_stop: Optional[int] = None

    def __post_init__(self):
        if self.shard_stop is None:
            object.__setattr__(self, "shard_stop", self.search_space_size)

    @property
    def is_sharded(self) -> bool:
        return self.shard_start != 0 or self.shard_stop != self.search_space_size

    def for_shard(self, start: int, stop: int) -> "SearchParameters":
        return SearchParameters(
            known_tokens=self.known_tokens,
            free_positions=self.free_positions,
            template_length=self.template_length,
            vocabulary_size=self.vocabulary_size,
            search_space_size=self.search_space_size,
            shard_start=start,
            shard_stop=stop,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form; big integers are written as decimal strings."""
        return {
            "known_tokens": list(self.known_tokens),
            "free_positions": list(self.free_positions),
            "template_length": self.template_length,
            "vocabulary_size": self.vocabulary_size,
            "search_space_size": str(self.search_space_size),
            "shard_start": str(self.shard_start),
            "shard_stop": str(self.shard_stop),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchParameters":
        size = int(data["search_space_size"])
        return cls(
            known_tokens=tuple(data.get("known_tokens", [])),
            free_positions=tuple(int(p) for p in data.get("free_positions", [])),
            template_length=int(data.get("template_length", 0)),
            vocabulary_size=int(data.get("vocabulary_size", 0)),
            search_space_size=size,
            shard_start=int(data.get("shard_start", 0)),
            shard_stop=int(data.get("shard_stop", size)),
        )

    def mismatches(self, other: "SearchParameters") -> List[str]:
        """Names of the fields that differ, formatted as ``name: ours != theirs``."""
        diffs = []
        for name in ("known_tokens", "free_positions", "template_length",
                     "vocabulary_size", "search_space_size", "shard_start", "shard_stop"):
            mine, theirs = getattr(self, name), getattr(other, name)
            if mine != theirs:
                diffs.append(f"{name}: {theirs!r} != {mine!r}")
        return diffs


# =============================================================================
# DRIVER STATE
# =============================================================================

@dataclass
class DriverState:
    """
    Mutable progress counters, owned solely by one SearchDriver.

    Attributes:
        total_attempts: Next index to visit; every lower index in the
            owned range has been attempted or skipped.
        valid_count: Matches found so far (across resumes).
        found_candidates: Matching candidates in discovery order.
        search_started_at: When the logical search first started.
        skipped_count: Indices skipped because the ledger already had them.
        malformed_count: Candidates rejected by the local check.
        oracle_failures: Oracle calls that failed and were counted as non-match.
        validated_count: Candidates validated during this run only.
    """
    total_attempts: int = 0
    valid_count: int = 0
    found_candidates: List[str] = field(default_factory=list)
    search_started_at: str = field(default_factory=utc_timestamp)
    skipped_count: int = 0
    malformed_count: int = 0
    oracle_failures: int = 0
    validated_count: int = 0

    def add_match(self, candidate_text: str) -> bool:
        """Record a match; returns False if it was already known."""
        if candidate_text in self.found_candidates:
            return False
        self.found_candidates.append(candidate_text)
        self.valid_count = len(self.found_candidates)
        return True

    def merge_matches(self, candidates: Iterable[str]) -> int:
        """Fold in matches recovered from persisted state; returns how many were new."""
        return sum(1 for c in candidates if self.add_match(c))


__all__ = [
    'Candidate',
    'FREE_MARKER',
    'Slot',
    'Template',
    'SearchParameters',
    'DriverState',
    'format_candidate',
    'utc_timestamp',
]
