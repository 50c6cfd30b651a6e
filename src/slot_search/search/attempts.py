"""
Range-compressed set of attempted indices.

Enumeration is monotonic, so the attempted indices of a search are almost
always one contiguous run plus a few stragglers around crash points. Storing
them as sorted disjoint half-open intervals keeps memory proportional to the
number of gaps rather than the number of attempts, which is what makes
replaying a ledger of billions of lines feasible.
"""

from bisect import bisect_right
from typing import Iterable, Iterator, List, Tuple


class AttemptSet:
    """
    Set of non-negative integers stored as disjoint [start, stop) runs.

    Adjacent runs are always merged, so ``ranges()`` is canonical and two
    sets are equal exactly when their runs are equal.

    Attributes:
        hits: Lookups that found the index (via ``lookup``).
        misses: Lookups that did not.
    """

    def __init__(self, indices: Iterable[int] = ()):
        self._starts: List[int] = []
        self._stops: List[int] = []
        self._count = 0
        self.hits = 0
        self.misses = 0
        for index in indices:
            self.add(index)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add(self, index: int) -> bool:
        """
        Add an index.

        Returns:
            True if the index was new, False if it was already present.
        """
        if index < 0:
            raise ValueError(f"Attempt index must be non-negative, got {index}")

        # Fast path: extending the last run (the monotonic common case)
        if self._stops and index == self._stops[-1]:
            self._stops[-1] += 1
            self._count += 1
            return True

        pos = bisect_right(self._starts, index)
        if pos > 0 and index < self._stops[pos - 1]:
            return False

        joins_left = pos > 0 and self._stops[pos - 1] == index
        joins_right = pos < len(self._starts) and self._starts[pos] == index + 1

        if joins_left and joins_right:
            self._stops[pos - 1] = self._stops[pos]
            del self._starts[pos]
            del self._stops[pos]
        elif joins_left:
            self._stops[pos - 1] = index + 1
        elif joins_right:
            self._starts[pos] = index
        else:
            self._starts.insert(pos, index)
            self._stops.insert(pos, index + 1)

        self._count += 1
        return True

    def add_range(self, start: int, stop: int) -> None:
        """Add every index in [start, stop)."""
        if stop <= start:
            return
        self._rebuild(list(self.ranges()) + [(start, stop)])

    def update(self, other: "AttemptSet") -> None:
        """In-place union with another AttemptSet."""
        self._rebuild(list(self.ranges()) + list(other.ranges()))

    def _rebuild(self, runs: List[Tuple[int, int]]):
        runs.sort()
        starts: List[int] = []
        stops: List[int] = []
        for start, stop in runs:
            if starts and start <= stops[-1]:
                stops[-1] = max(stops[-1], stop)
            else:
                starts.append(start)
                stops.append(stop)
        self._starts, self._stops = starts, stops
        self._count = sum(b - a for a, b in zip(starts, stops))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def __contains__(self, index: int) -> bool:
        """Membership test without touching hit/miss statistics."""
        pos = bisect_right(self._starts, index) - 1
        return pos >= 0 and index < self._stops[pos]

    def lookup(self, index: int) -> bool:
        """Membership test that records a hit or miss."""
        found = index in self
        if found:
            self.hits += 1
        else:
            self.misses += 1
        return found

    @property
    def count(self) -> int:
        """Number of indices in the set (may exceed sys.maxsize)."""
        return self._count

    def __len__(self) -> int:
        return self._count

    def __bool__(self) -> bool:
        return self._count > 0

    def __eq__(self, other) -> bool:
        if isinstance(other, AttemptSet):
            return self._starts == other._starts and self._stops == other._stops
        return NotImplemented

    def __iter__(self) -> Iterator[int]:
        for start, stop in self.ranges():
            yield from range(start, stop)

    def __repr__(self) -> str:
        return f"AttemptSet(count={self._count}, runs={len(self._starts)})"

    def ranges(self) -> Iterator[Tuple[int, int]]:
        """Disjoint, non-adjacent [start, stop) runs in ascending order."""
        return zip(self._starts, self._stops)

    def first_gap(self, start: int = 0) -> int:
        """Lowest index >= start that is not in the set."""
        pos = bisect_right(self._starts, start) - 1
        if pos >= 0 and start < self._stops[pos]:
            return self._stops[pos]
        return start

    def stats(self) -> dict:
        """
        Return set statistics.

        Returns:
            Dictionary with count, runs, hits, misses and hit_rate.
        """
        total = self.hits + self.misses
        return {
            "count": self._count,
            "runs": len(self._starts),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0.0,
        }


__all__ = ['AttemptSet']
