"""
Vocabulary loading.

The vocabulary is the ordered token list that fills free slots. Its order
defines the digit-to-token mapping of the search space, so it is loaded in
full before any candidate is encoded and never modified afterwards.
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Sequence, Union

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Vocabulary(Sequence[str]):
    """Immutable ordered token sequence with O(1) token -> position lookup."""

    def __init__(self, tokens: Iterable[str]):
        self._tokens = tuple(tokens)
        if not self._tokens:
            raise ConfigurationError("Vocabulary is empty")

        duplicates = [tok for tok, n in Counter(self._tokens).items() if n > 1]
        if duplicates:
            # First occurrence wins in the reverse map; encoding stays total
            # but two indices can now produce the same candidate.
            logger.warning(
                f"Vocabulary has {len(duplicates)} duplicate tokens "
                f"(e.g. {', '.join(duplicates[:5])}); candidates may repeat"
            )

        self._positions: Dict[str, int] = {}
        for i, tok in enumerate(self._tokens):
            self._positions.setdefault(tok, i)

    def __len__(self) -> int:
        return len(self._tokens)

    def __getitem__(self, index):
        return self._tokens[index]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tokens)

    def __contains__(self, token) -> bool:
        return token in self._positions

    def __eq__(self, other) -> bool:
        if isinstance(other, Vocabulary):
            return self._tokens == other._tokens
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._tokens)

    def __repr__(self) -> str:
        return f"Vocabulary(size={len(self._tokens)})"

    @property
    def tokens(self):
        return self._tokens

    def position(self, token: str) -> int:
        """Index of `token`; raises KeyError if absent."""
        return self._positions[token]

    def missing(self, tokens: Iterable[str]) -> List[str]:
        """Tokens not present in the vocabulary, in input order."""
        return [tok for tok in tokens if tok not in self._positions]


def load_vocabulary(path: Union[str, Path]) -> Vocabulary:
    """
    Load a newline-separated vocabulary file.

    Surrounding whitespace is stripped and blank lines are ignored.

    Args:
        path: Path to the vocabulary file.

    Returns:
        Loaded Vocabulary.

    Raises:
        ConfigurationError: If the file cannot be read or holds no tokens.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            tokens = [line.strip() for line in f if line.strip()]
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Failed to load vocabulary from {path}: {e}") from e

    if not tokens:
        raise ConfigurationError(f"Vocabulary file {path} contains no tokens")

    logger.info(f"Loaded {len(tokens)} vocabulary tokens from {path}")
    return Vocabulary(tokens)


def as_vocabulary(tokens: Union[Vocabulary, Sequence[str]]) -> Vocabulary:
    """Wrap a plain token sequence; existing Vocabulary objects pass through."""
    if isinstance(tokens, Vocabulary):
        return tokens
    return Vocabulary(tokens)


__all__ = ['Vocabulary', 'load_vocabulary', 'as_vocabulary']
