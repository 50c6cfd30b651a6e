"""Shared pytest fixtures for slot-search tests."""

import textwrap
from pathlib import Path
from typing import Callable, List, Sequence

import pytest

from slot_search.driver import SearchDriver
from slot_search.types import Template
from slot_search.validator import Validator
from slot_search.vocabulary import Vocabulary


ABC = ["a", "b", "c"]
FRUIT = ["apple", "banana", "cherry", "date", "elder"]


class RecordingOracle:
    """Oracle that records every candidate it sees and matches a fixed set."""

    def __init__(self, matches: Sequence[str] = (), fail_on: Sequence[str] = ()):
        self.matches = set(matches)
        self.fail_on = set(fail_on)
        self.calls: List[str] = []

    def __call__(self, candidate) -> bool:
        text = " ".join(candidate)
        self.calls.append(text)
        if text in self.fail_on:
            raise ConnectionError(f"oracle unavailable for {text}")
        return text in self.matches


@pytest.fixture
def abc_vocabulary():
    """Three-token vocabulary [a, b, c]."""
    return Vocabulary(ABC)


@pytest.fixture
def xy_template():
    """Template [x, ?, y, ?]."""
    return Template.parse("x ? y ?")


@pytest.fixture
def fruit_vocabulary():
    return Vocabulary(FRUIT)


@pytest.fixture
def fruit_template():
    """Template whose fixed tokens belong to the fruit vocabulary (25 candidates)."""
    return Template.parse("apple ? cherry ?")


@pytest.fixture
def vocabulary_file(tmp_path) -> Path:
    """Fruit vocabulary on disk, with blank lines and stray whitespace."""
    path = tmp_path / "words.txt"
    path.write_text("apple\n\n  banana  \ncherry\n\t\ndate\nelder\n", encoding="utf-8")
    return path


@pytest.fixture
def oracle_plugin(tmp_path) -> Path:
    """Oracle plugin file matching two fruit candidates."""
    path = tmp_path / "oracle.py"
    path.write_text(textwrap.dedent('''
        TARGETS = {"apple banana cherry date", "apple elder cherry apple"}


        def external_check(candidate):
            return " ".join(candidate) in TARGETS
    '''), encoding="utf-8")
    return path


@pytest.fixture
def recording_oracle() -> Callable[..., RecordingOracle]:
    """Factory for RecordingOracle instances."""
    return RecordingOracle


@pytest.fixture
def make_driver(tmp_path, fruit_vocabulary, fruit_template):
    """Factory building a SearchDriver over the fruit template in tmp_path.

    Keyword arguments override the defaults; ``oracle`` may be passed
    instead of ``validator``.
    """
    def _make(oracle=None, **overrides):
        if oracle is None:
            oracle = RecordingOracle()
        kwargs = dict(
            template=fruit_template,
            vocabulary=fruit_vocabulary,
            validator=Validator(lambda c: True, oracle),
            ledger_path=tmp_path / "ledger.txt",
            checkpoint_path=tmp_path / "checkpoint.json",
            progress_interval=10,
            checkpoint_interval=3600.0,
        )
        kwargs.update(overrides)
        return SearchDriver(**kwargs)

    return _make
