"""
Local well-formedness predicates.

These are the cheap, pure first stage of validation: they reject candidates
that cannot possibly satisfy the oracle before any I/O happens. Both are
plain callables ``predicate(candidate) -> bool`` and picklable, so they can
be shipped to worker processes.
"""

import hashlib
from typing import Callable, Dict, Sequence, Union

from .errors import ConfigurationError
from .vocabulary import Vocabulary, as_vocabulary

BIP39_WORDLIST_SIZE = 2048
BIP39_BITS_PER_WORD = 11
BIP39_PHRASE_LENGTHS = (12, 15, 18, 21, 24)


class VocabularyMembership:
    """Every token of the candidate belongs to the vocabulary."""

    def __init__(self, vocabulary: Union[Vocabulary, Sequence[str]]):
        self.vocabulary = as_vocabulary(vocabulary)

    def __call__(self, candidate: Sequence[str]) -> bool:
        return all(tok in self.vocabulary for tok in candidate)


class Bip39Checksum:
    """
    BIP-39 mnemonic checksum.

    A phrase of n words carries 11n bits: the entropy followed by n/3
    checksum bits, which must equal the leading bits of SHA-256(entropy).
    Only one candidate in 2**(n/3) passes, which prunes most of the space
    before the oracle is consulted.
    """

    def __init__(self, vocabulary: Union[Vocabulary, Sequence[str]]):
        self.vocabulary = as_vocabulary(vocabulary)
        if len(self.vocabulary) != BIP39_WORDLIST_SIZE:
            raise ConfigurationError(
                f"BIP-39 checksum needs a {BIP39_WORDLIST_SIZE}-word list, "
                f"vocabulary has {len(self.vocabulary)}"
            )

    def __call__(self, candidate: Sequence[str]) -> bool:
        words = len(candidate)
        if words not in BIP39_PHRASE_LENGTHS:
            return False

        value = 0
        for tok in candidate:
            if tok not in self.vocabulary:
                return False
            value = (value << BIP39_BITS_PER_WORD) | self.vocabulary.position(tok)

        checksum_bits = words // 3
        entropy_bits = words * BIP39_BITS_PER_WORD - checksum_bits
        entropy = value >> checksum_bits
        checksum = value & ((1 << checksum_bits) - 1)

        digest = hashlib.sha256(entropy.to_bytes(entropy_bits // 8, "big")).digest()
        return digest[0] >> (8 - checksum_bits) == checksum


WELL_FORMED_CHOICES: Dict[str, Callable] = {
    "vocabulary": VocabularyMembership,
    "bip39": Bip39Checksum,
}


def make_well_formed(name: str, vocabulary: Union[Vocabulary, Sequence[str]]) -> Callable[[Sequence[str]], bool]:
    """Instantiate a stock predicate by name ("vocabulary" or "bip39")."""
    try:
        factory = WELL_FORMED_CHOICES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown well-formedness check {name!r}; "
            f"choose from {', '.join(sorted(WELL_FORMED_CHOICES))}"
        ) from None
    return factory(vocabulary)


__all__ = [
    'VocabularyMembership',
    'Bip39Checksum',
    'WELL_FORMED_CHOICES',
    'make_well_formed',
]
