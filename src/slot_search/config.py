"""
Search configuration.

Precedence, lowest to highest: dataclass defaults, ``SLOT_SEARCH_*``
environment variables (a ``.env`` file is read first), CLI flags.

Environment variables:
    SLOT_SEARCH_VOCABULARY          vocabulary file
    SLOT_SEARCH_TEMPLATE            pattern such as "camp ? jazz ?"
    SLOT_SEARCH_LEDGER              ledger path
    SLOT_SEARCH_CHECKPOINT          checkpoint path
    SLOT_SEARCH_ORACLE              oracle plugin spec
    SLOT_SEARCH_WELL_FORMED         "vocabulary", "bip39" or plugin spec
    SLOT_SEARCH_PROGRESS_INTERVAL   attempts between progress lines
    SLOT_SEARCH_CHECKPOINT_INTERVAL seconds between checkpoints
    SLOT_SEARCH_ORACLE_TIMEOUT      seconds per oracle call
    SLOT_SEARCH_ORACLE_RETRIES      extra attempts per oracle call
    SLOT_SEARCH_RETRY_DELAY         seconds between attempts
    SLOT_SEARCH_WORKERS             worker processes
    SLOT_SEARCH_STOP_ON_FIRST_MATCH 1/true/yes
    SLOT_SEARCH_FSYNC               1/true/yes
    SENTRY_DSN                      error monitoring
    SLOT_SEARCH_ENVIRONMENT         Sentry environment name (default: development)
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .paths import default_checkpoint_path, default_ledger_path
from .types import Template

ENV_PREFIX = "SLOT_SEARCH_"

DEFAULT_PROGRESS_INTERVAL = 100_000


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_optional_float(value: str) -> Optional[float]:
    return None if value.strip().lower() in ("", "none") else float(value)


# env suffix -> (field name, parser)
_ENV_FIELDS: Dict[str, Any] = {
    "VOCABULARY": ("vocabulary_path", Path),
    "TEMPLATE": ("template", str),
    "LEDGER": ("ledger_path", Path),
    "CHECKPOINT": ("checkpoint_path", Path),
    "ORACLE": ("oracle", str),
    "WELL_FORMED": ("well_formed", str),
    "PROGRESS_INTERVAL": ("progress_interval", int),
    "CHECKPOINT_INTERVAL": ("checkpoint_interval", float),
    "ORACLE_TIMEOUT": ("oracle_timeout", _parse_optional_float),
    "ORACLE_RETRIES": ("oracle_retries", int),
    "RETRY_DELAY": ("retry_delay", float),
    "WORKERS": ("num_workers", int),
    "STOP_ON_FIRST_MATCH": ("stop_on_first_match", _parse_bool),
    "FSYNC": ("fsync", _parse_bool),
}


@dataclass
class SearchConfig:
    """Every tunable of a search run.

    The template comes from ``template`` (a pattern) or from
    ``known_tokens`` plus 1-based ``free_positions``.
    """
    vocabulary_path: Optional[Path] = None
    template: Optional[str] = None
    known_tokens: List[str] = field(default_factory=list)
    free_positions: List[int] = field(default_factory=list)
    ledger_path: Path = field(default_factory=default_ledger_path)
    checkpoint_path: Path = field(default_factory=default_checkpoint_path)
    oracle: Optional[str] = None
    well_formed: str = "vocabulary"
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL
    checkpoint_interval: float = 300.0
    oracle_timeout: Optional[float] = None
    oracle_retries: int = 0
    retry_delay: float = 0.0
    num_workers: int = 1
    stop_on_first_match: bool = False
    fsync: bool = False
    sentry_dsn: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SearchConfig":
        """Defaults overlaid with SLOT_SEARCH_* variables.

        Raises:
            ConfigurationError: If a variable cannot be parsed.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        values: Dict[str, Any] = {}
        for suffix, (name, parser) in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is None:
                continue
            try:
                values[name] = parser(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid {ENV_PREFIX}{suffix}={raw!r}: {e}") from e

        values["sentry_dsn"] = environ.get("SENTRY_DSN") or None
        config = cls(**values)
        config.validate()
        return config

    def with_overrides(self, **overrides) -> "SearchConfig":
        """Copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        config = dataclasses.replace(self, **changes)
        config.validate()
        return config

    def validate(self):
        """Raises ConfigurationError on out-of-range settings."""
        if self.progress_interval < 1:
            raise ConfigurationError(f"progress_interval must be >= 1, got {self.progress_interval}")
        if self.checkpoint_interval <= 0:
            raise ConfigurationError(f"checkpoint_interval must be > 0, got {self.checkpoint_interval}")
        if self.oracle_timeout is not None and self.oracle_timeout <= 0:
            raise ConfigurationError(f"oracle_timeout must be > 0, got {self.oracle_timeout}")
        if self.oracle_retries < 0:
            raise ConfigurationError(f"oracle_retries must be >= 0, got {self.oracle_retries}")
        if self.num_workers < 1:
            raise ConfigurationError(f"num_workers must be >= 1, got {self.num_workers}")

    def build_template(self) -> Template:
        """
        Raises:
            ConfigurationError: If no template was given, or both forms were.
        """
        if self.template and (self.known_tokens or self.free_positions):
            raise ConfigurationError("Give either a template pattern or known tokens, not both")
        if self.template:
            return Template.parse(self.template)
        if not self.free_positions:
            raise ConfigurationError("No template: set a pattern or known tokens with free positions")
        return Template.from_known(self.known_tokens, self.free_positions)

    def validator_settings(self) -> Dict[str, Any]:
        """Keyword arguments for validator.build_validator (all picklable)."""
        return {
            "oracle": self.oracle,
            "well_formed": self.well_formed,
            "timeout": self.oracle_timeout,
            "retries": self.oracle_retries,
            "retry_delay": self.retry_delay,
        }


__all__ = ['SearchConfig', 'ENV_PREFIX', 'DEFAULT_PROGRESS_INTERVAL']
