"""
validator.py - Two-stage candidate validation.

Stage one is a pure, local well-formedness predicate. Stage two is the
external oracle, which may block, may be a coroutine and may fail. A
candidate is a match only when both stages pass; any oracle failure
(exception, timeout, bad reply) is a non-match, never fatal.

Usage:
    from slot_search.validator import Validator, ValidationOutcome

    validator = Validator(is_well_formed, external_check, timeout=10.0, retries=2)
    outcome = validator.validate(candidate)
    if outcome is ValidationOutcome.MATCH:
        ...
"""

import asyncio
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Union

from .errors import ValidationTransientError
from .vocabulary import Vocabulary, as_vocabulary

logger = logging.getLogger(__name__)

WELL_FORMED_FUNC_NAME = "is_well_formed"


class ValidationOutcome(Enum):
    """Result of validating one candidate."""
    MATCH = "match"
    NO_MATCH = "no_match"
    MALFORMED = "malformed"
    ORACLE_ERROR = "oracle_error"

    @property
    def is_match(self) -> bool:
        return self is ValidationOutcome.MATCH


def accept_all(candidate: Sequence[str]) -> bool:
    """Oracle used when only the local check matters."""
    return True


class Validator:
    """Runs the local check, then the oracle with timeout and retries.

    Attributes:
        is_well_formed: Pure predicate, called first.
        external_check: Oracle callable; returns bool or an awaitable of bool.
        timeout: Seconds allowed per oracle call (None = unlimited).
        retries: Extra attempts after a failed oracle call.
        retry_delay: Seconds to sleep between attempts.
    """

    def __init__(
        self,
        is_well_formed: Callable[[Sequence[str]], bool],
        external_check: Callable[[Sequence[str]], Any],
        timeout: Optional[float] = None,
        retries: int = 0,
        retry_delay: float = 0.0,
    ):
        if retries < 0:
            raise ValueError(f"retries must be >= 0, got {retries}")
        self.is_well_formed = is_well_formed
        self.external_check = external_check
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay

        self._executor: Optional[ThreadPoolExecutor] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stats = {
            "validated": 0,
            "malformed": 0,
            "oracle_calls": 0,
            "oracle_failures": 0,
            "matches": 0,
        }

    def validate(self, candidate: Sequence[str]) -> ValidationOutcome:
        """
        Validate one candidate.

        Returns:
            MALFORMED if the local check rejects it, ORACLE_ERROR if every
            oracle attempt failed, otherwise MATCH or NO_MATCH.
        """
        self._stats["validated"] += 1
        if not self.is_well_formed(candidate):
            self._stats["malformed"] += 1
            return ValidationOutcome.MALFORMED

        try:
            confirmed = self._check_with_retries(candidate)
        except ValidationTransientError as e:
            self._stats["oracle_failures"] += 1
            logger.debug(f"Oracle failed for candidate, counted as non-match: {e}")
            return ValidationOutcome.ORACLE_ERROR

        if confirmed:
            self._stats["matches"] += 1
            return ValidationOutcome.MATCH
        return ValidationOutcome.NO_MATCH

    def is_match(self, candidate: Sequence[str]) -> bool:
        return self.validate(candidate).is_match

    def _check_with_retries(self, candidate: Sequence[str]) -> bool:
        last_error: Optional[ValidationTransientError] = None
        for attempt in range(self.retries + 1):
            if attempt and self.retry_delay:
                time.sleep(self.retry_delay)
            try:
                return self._call_oracle(candidate)
            except ValidationTransientError as e:
                last_error = e
        raise last_error

    def _call_oracle(self, candidate: Sequence[str]) -> bool:
        """Single oracle call; every failure is raised as ValidationTransientError."""
        self._stats["oracle_calls"] += 1
        candidate = tuple(candidate)
        try:
            if self.timeout is None or inspect.iscoroutinefunction(self.external_check):
                result = self.external_check(candidate)
            else:
                future = self._get_executor().submit(self.external_check, candidate)
                result = future.result(timeout=self.timeout)

            if inspect.isawaitable(result):
                result = self._run_awaitable(result)
        except ValidationTransientError:
            raise
        except Exception as e:
            raise ValidationTransientError(f"{type(e).__name__}: {e}") from e

        return bool(result)

    def _run_awaitable(self, awaitable) -> Any:
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        if self.timeout is not None:
            awaitable = asyncio.wait_for(awaitable, self.timeout)
        return self._loop.run_until_complete(awaitable)

    def _get_executor(self) -> ThreadPoolExecutor:
        # A timed-out call keeps its thread busy, so allow a few in flight
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="oracle")
        return self._executor

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def close(self):
        """Release the oracle thread pool and event loop."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        if self._loop is not None:
            self._loop.close()
            self._loop = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# =============================================================================
# FACTORY
# =============================================================================

def build_validator(
    vocabulary: Union[Vocabulary, Sequence[str]],
    oracle: Optional[str] = None,
    well_formed: str = "vocabulary",
    timeout: Optional[float] = None,
    retries: int = 0,
    retry_delay: float = 0.0,
) -> Validator:
    """Build a Validator from plain, picklable settings.

    Worker processes call this with the same arguments as the parent, so
    oracles are passed as plugin specs rather than function objects.

    Args:
        vocabulary: Tokens the stock predicates check against.
        oracle: Plugin spec for ``external_check``; None accepts every
            well-formed candidate.
        well_formed: "vocabulary", "bip39", or a plugin spec for
            ``is_well_formed``.
        timeout: Seconds per oracle call.
        retries: Extra oracle attempts after a failure.
        retry_delay: Seconds between attempts.

    Raises:
        ConfigurationError: If a plugin or predicate cannot be set up.
    """
    from .plugins import load_check_fn
    from .wellformed import WELL_FORMED_CHOICES, make_well_formed

    vocabulary = as_vocabulary(vocabulary)
    if well_formed in WELL_FORMED_CHOICES:
        predicate = make_well_formed(well_formed, vocabulary)
    else:
        predicate = load_check_fn(well_formed, default_name=WELL_FORMED_FUNC_NAME)

    check = load_check_fn(oracle) if oracle else accept_all
    return Validator(predicate, check, timeout=timeout, retries=retries, retry_delay=retry_delay)


__all__ = [
    'ValidationOutcome',
    'Validator',
    'accept_all',
    'build_validator',
    'WELL_FORMED_FUNC_NAME',
]
