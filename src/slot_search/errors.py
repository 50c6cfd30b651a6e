"""
Error taxonomy for slot search.

Every failure the search engine can surface derives from SlotSearchError.
Only ConfigurationError is fatal; the others are handled inside the
enumeration loop according to a fixed per-kind policy:

    ConfigurationError        fatal, raised before any index is processed
    PersistenceError          logged + reported, enumeration continues in memory
    ValidationTransientError  counted as a non-match, index stays recorded
    CancellationRequested     triggers the orderly shutdown path
"""


class SlotSearchError(Exception):
    """Base class for all slot search errors."""
    pass


class ConfigurationError(SlotSearchError):
    """Raised when the search cannot start or resume with the given setup.

    Covers fixed tokens missing from the vocabulary, vocabulary load
    failures, unreadable persisted state and resumed-parameter mismatches.
    """
    pass


class PersistenceError(SlotSearchError):
    """Raised when a ledger append or checkpoint save fails on I/O."""
    pass


class ValidationTransientError(SlotSearchError):
    """Raised when the external oracle fails (network, timeout, bad reply)."""
    pass


class CancellationRequested(SlotSearchError):
    """Raised inside the enumeration loop once a stop has been requested."""
    pass


__all__ = [
    'SlotSearchError',
    'ConfigurationError',
    'PersistenceError',
    'ValidationTransientError',
    'CancellationRequested',
]
