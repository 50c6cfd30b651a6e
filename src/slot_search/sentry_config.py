"""Sentry error monitoring for search runs.

Reporting is opt-in: nothing is sent unless a DSN is passed to init_sentry()
or found in SENTRY_DSN (a ``.env`` file is read first). Until then every
helper here is a no-op, so library code can report unconditionally.
"""

import os
from typing import Optional

import sentry_sdk
from dotenv import load_dotenv

from .types import SearchParameters

_initialized = False


def init_sentry(dsn: Optional[str] = None) -> bool:
    """Start error monitoring for this process.

    Args:
        dsn: Sentry DSN; SENTRY_DSN from the environment when omitted.

    Returns:
        Whether monitoring is active.
    """
    global _initialized
    load_dotenv()

    dsn = dsn or os.getenv("SENTRY_DSN")
    if not dsn:
        return False

    # Candidates may be secrets, so no PII and no request bodies
    sentry_sdk.init(
        dsn=dsn,
        environment=os.getenv("SLOT_SEARCH_ENVIRONMENT", "development"),
        send_default_pii=False,
        traces_sample_rate=0.0,
        attach_stacktrace=True,
    )
    _initialized = True
    return True


def is_enabled() -> bool:
    return _initialized


def tag_search(parameters: SearchParameters):
    """Attach the search identity (never the tokens) to later events."""
    if not _initialized:
        return
    sentry_sdk.set_tag("search_space_size", str(parameters.search_space_size))
    sentry_sdk.set_tag("free_slots", str(len(parameters.free_positions)))
    if parameters.is_sharded:
        sentry_sdk.set_tag("shard", f"{parameters.shard_start}-{parameters.shard_stop}")


def capture_exception(exception: Optional[BaseException] = None):
    """Report an exception (the one being handled when None)."""
    if _initialized:
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info"):
    """Report a degraded-but-running condition, e.g. a failed ledger append.

    Args:
        message: Event text.
        level: Sentry level name (debug, info, warning, error, fatal).
    """
    if _initialized:
        sentry_sdk.capture_message(message, level=level)
