"""
Mixed-radix mapping between search-space indices and candidates.

The M free slots of a template are read as the digits of a base-V number,
most significant digit at the leftmost free slot. Index 0 therefore fills
every free slot with vocabulary[0] and index V**M - 1 with vocabulary[-1].

Example:
    vocabulary = [a, b, c], template = [x, ?, y, ?]
    size = 9
    encode(0) = (x, a, y, a)
    encode(4) = (x, b, y, b)
    encode(8) = (x, c, y, c)

All arithmetic uses Python ints, so spaces far beyond 2**64 are handled
without special casing.
"""

from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError
from .types import Candidate, SearchParameters, Template
from .vocabulary import Vocabulary, as_vocabulary


class CombinationIndexer:
    """
    Pure encoder/decoder for one (vocabulary, template) pair.

    Fixed tokens are copied verbatim and need not belong to the vocabulary;
    callers that require it use check_fixed_tokens().

    Attributes:
        vocabulary: Token sequence defining the radix.
        template: Fixed and free slot layout.
        search_space_size: V ** M.
    """

    def __init__(self, vocabulary: Union[Vocabulary, Sequence[str]], template: Template):
        self.vocabulary = as_vocabulary(vocabulary)
        self.template = template

        self.radix = len(self.vocabulary)
        self.free_positions = template.free_positions
        self.free_count = len(self.free_positions)
        self.search_space_size = self.radix ** self.free_count

        # Place values, most significant first: V**(M-1), ..., V**0
        self._place_values = [self.radix ** (self.free_count - 1 - i)
                              for i in range(self.free_count)]
        self._free_offsets = [p - 1 for p in self.free_positions]
        self._base = [slot.token for slot in template.slots]

    def parameters(self) -> SearchParameters:
        """Search identity for ledger/checkpoint headers."""
        return SearchParameters(
            known_tokens=self.template.fixed_tokens,
            free_positions=self.free_positions,
            template_length=self.template.length,
            vocabulary_size=self.radix,
            search_space_size=self.search_space_size,
        )

    def digits(self, index: int) -> List[int]:
        """Base-V digits of `index`, one per free slot, most significant first."""
        if index < 0 or index >= self.search_space_size:
            raise IndexError(
                f"Index {index} outside search space [0, {self.search_space_size})"
            )
        return [(index // place) % self.radix for place in self._place_values]

    def encode(self, index: int) -> Candidate:
        """
        Build the candidate for `index`.

        Raises:
            IndexError: If index is negative or >= search_space_size.
        """
        candidate = list(self._base)
        for offset, digit in zip(self._free_offsets, self.digits(index)):
            candidate[offset] = self.vocabulary[digit]
        return tuple(candidate)

    def decode(self, candidate: Sequence[str]) -> int:
        """
        Reference inverse of encode.

        Raises:
            ValueError: If the candidate does not fit this template/vocabulary.
        """
        if len(candidate) != self.template.length:
            raise ValueError(
                f"Candidate has {len(candidate)} tokens, template has {self.template.length}"
            )
        for offset, slot in enumerate(self.template.slots):
            if not slot.is_free and candidate[offset] != slot.token:
                raise ValueError(
                    f"Fixed slot {offset + 1} is {slot.token!r}, got {candidate[offset]!r}"
                )

        index = 0
        for offset in self._free_offsets:
            token = candidate[offset]
            if token not in self.vocabulary:
                raise ValueError(f"Token {token!r} at slot {offset + 1} not in vocabulary")
            index = index * self.radix + self.vocabulary.position(token)
        return index

    def iter_range(self, start: int = 0, stop: Optional[int] = None) -> Iterator[Tuple[int, Candidate]]:
        """Yield ``(index, candidate)`` for indices in [start, stop)."""
        if stop is None:
            stop = self.search_space_size
        stop = min(stop, self.search_space_size)
        index = max(start, 0)
        while index < stop:
            yield index, self.encode(index)
            index += 1


def check_fixed_tokens(vocabulary: Union[Vocabulary, Sequence[str]], template: Template) -> None:
    """
    Raises:
        ConfigurationError: Listing every fixed token missing from the vocabulary.
    """
    missing = as_vocabulary(vocabulary).missing(template.fixed_tokens)
    if missing:
        raise ConfigurationError(
            f"Invalid tokens in template (not in vocabulary): {', '.join(missing)}"
        )


def partition(total: int, parts: int) -> List[Tuple[int, int]]:
    """
    Split [0, total) into `parts` contiguous half-open ranges.

    Sizes differ by at most one; the earlier ranges take the remainder.
    Empty ranges are dropped when total < parts.
    """
    if parts < 1:
        raise ValueError(f"parts must be >= 1, got {parts}")
    base, extra = divmod(total, parts)
    ranges = []
    start = 0
    for i in range(parts):
        size = base + (1 if i < extra else 0)
        if size:
            ranges.append((start, start + size))
        start += size
    return ranges


__all__ = ['CombinationIndexer', 'check_fixed_tokens', 'partition']
