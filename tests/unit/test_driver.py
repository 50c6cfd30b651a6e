"""
Tests for the search driver state machine.

The fruit template "apple ? cherry ?" over five tokens has 25 candidates;
index i fills the free slots with tokens (i // 5, i % 5).
"""

import logging
import threading

import pytest

from slot_search.checkpoint import load_checkpoint
from slot_search.driver import DriverPhase, REASON_FIRST_MATCH, SearchDriver
from slot_search.errors import ConfigurationError
from slot_search.ledger import ATTEMPTS_MARKER, read_ledger
from slot_search.types import Template
from slot_search.validator import Validator

TARGET = "apple banana cherry date"      # index 8
SECOND = "apple elder cherry apple"      # index 20


def stop_after(oracle, count, holder):
    """Wrap `oracle` so the driver in holder["driver"] is asked to stop after `count` calls."""
    def check(candidate):
        result = oracle(candidate)
        if len(oracle.calls) == count:
            holder["driver"].request_stop()
        return result
    return check


class TestFullRun:
    """Test an uninterrupted search."""

    def test_completes_and_finds_matches(self, make_driver, recording_oracle, tmp_path):
        oracle = recording_oracle(matches=[TARGET, SECOND])
        result = make_driver(oracle=oracle).run()

        assert result.phase is DriverPhase.COMPLETED
        assert result.finished
        assert result.total_attempts == 25
        assert result.validated_count == 25
        assert result.found_candidates == [TARGET, SECOND]
        assert result.valid_count == 2
        assert len(set(oracle.calls)) == 25

        replay = read_ledger(tmp_path / "ledger.txt")
        assert list(replay.attempted) == list(range(25))
        assert [text for _, text in replay.matches] == [TARGET, SECOND]

        checkpoint = load_checkpoint(tmp_path / "checkpoint.json")
        assert checkpoint.progress.total_attempts == 25
        assert checkpoint.progress.found_candidates == [TARGET, SECOND]

    def test_strictly_increasing_order(self, make_driver, recording_oracle):
        oracle = recording_oracle()
        driver = make_driver(oracle=oracle)
        driver.run()
        indices = [driver.indexer.decode(text.split()) for text in oracle.calls]
        assert indices == list(range(25))

    def test_oracle_failing_everywhere(self, make_driver, recording_oracle):
        everything = [f"apple {a} cherry {b}" for a in
                      ("apple", "banana", "cherry", "date", "elder") for b in
                      ("apple", "banana", "cherry", "date", "elder")]
        oracle = recording_oracle(matches=everything, fail_on=everything)
        result = make_driver(oracle=oracle).run()

        assert result.phase is DriverPhase.COMPLETED
        assert result.valid_count == 0
        assert result.oracle_failures == 25

    def test_malformed_counted(self, make_driver, recording_oracle, fruit_template):
        oracle = recording_oracle(matches=[TARGET])
        driver = make_driver(validator=Validator(lambda c: "elder" not in c, oracle))
        result = driver.run()
        assert result.malformed_count == 9
        assert len(oracle.calls) == 16
        assert result.found_candidates == [TARGET]

    def test_progress_logged(self, make_driver, caplog):
        with caplog.at_level(logging.INFO, logger="slot_search.driver"):
            make_driver(progress_interval=10).run()
        progress = [r for r in caplog.records if r.getMessage().startswith("Progress:")]
        assert len(progress) == 2
        assert any("Valid candidates found: 0" in r.getMessage() for r in caplog.records)

    def test_on_match_sees_persisted_checkpoint(self, make_driver, recording_oracle, tmp_path):
        seen = []

        def on_match(index, candidate):
            seen.append((index, load_checkpoint(tmp_path / "checkpoint.json").progress.found_candidates))

        make_driver(oracle=recording_oracle(matches=[TARGET]), on_match=on_match).run()
        assert seen == [(8, [TARGET])]


class TestStopOnFirstMatch:

    def test_stops_after_match(self, make_driver, recording_oracle):
        oracle = recording_oracle(matches=[TARGET, SECOND])
        result = make_driver(oracle=oracle, stop_on_first_match=True).run()

        assert result.phase is DriverPhase.COMPLETED
        assert result.reason == REASON_FIRST_MATCH
        assert result.total_attempts == 9
        assert result.found_candidates == [TARGET]
        assert len(oracle.calls) == 9


class TestConfigurationErrors:
    """Fatal errors abort before any ledger write."""

    def test_fixed_token_not_in_vocabulary(self, make_driver, tmp_path):
        driver = make_driver(template=Template.parse("apple ? kiwi ? mango"))
        result = driver.run()

        assert result.phase is DriverPhase.ABORTED
        assert "kiwi, mango" in result.error
        assert not (tmp_path / "ledger.txt").exists()
        assert not (tmp_path / "checkpoint.json").exists()

    def test_vocabulary_load_failure(self, make_driver, tmp_path):
        def broken():
            raise OSError("disk gone")

        result = make_driver(vocabulary=broken).run()
        assert result.phase is DriverPhase.ABORTED
        assert "disk gone" in result.error
        assert not (tmp_path / "ledger.txt").exists()

    def test_ledger_header_mismatch(self, make_driver, tmp_path):
        make_driver().run()
        before = (tmp_path / "ledger.txt").read_bytes()

        result = make_driver(
            template=Template.parse("apple ? ? cherry"),
            checkpoint_path=tmp_path / "other.json",
        ).run()
        assert result.phase is DriverPhase.ABORTED
        assert (tmp_path / "ledger.txt").read_bytes() == before

    def test_checkpoint_mismatch(self, make_driver, tmp_path):
        make_driver().run()
        result = make_driver(
            template=Template.parse("? cherry ?"),
            ledger_path=tmp_path / "other.txt",
        ).run()
        assert result.phase is DriverPhase.ABORTED
        assert not (tmp_path / "other.txt").exists()

    def test_bad_shard(self, make_driver):
        assert make_driver(shard=(10, 99)).run().phase is DriverPhase.ABORTED


class TestResume:
    """Test stopping and resuming."""

    def test_graceful_stop_then_resume(self, make_driver, recording_oracle, tmp_path):
        first = recording_oracle(matches=[TARGET])
        holder = {}
        driver = make_driver(oracle=stop_after(first, 5, holder))
        holder["driver"] = driver
        result = driver.run()

        assert result.phase is DriverPhase.STOPPED
        assert not result.finished
        assert result.total_attempts == 5
        assert load_checkpoint(tmp_path / "checkpoint.json").progress.total_attempts == 5

        second = recording_oracle(matches=[TARGET])
        result = make_driver(oracle=second).run()
        assert result.phase is DriverPhase.COMPLETED
        assert len(second.calls) == 20
        assert set(first.calls).isdisjoint(second.calls)
        assert result.found_candidates == [TARGET]

    def test_ledger_skips_processed_indices(self, make_driver, recording_oracle, tmp_path):
        """Ledger {0..9} plus 15: nothing there is validated again."""
        # Build the ledger through a stopped run, then add a straggler
        holder = {}
        warmup = recording_oracle()
        first = make_driver(oracle=stop_after(warmup, 10, holder))
        holder["driver"] = first
        first.run()
        (tmp_path / "checkpoint.json").unlink()
        with open(tmp_path / "ledger.txt", "a", encoding="utf-8") as f:
            f.write("15\n")

        oracle = recording_oracle()
        driver = make_driver(oracle=oracle)
        result = driver.run()
        indices = sorted(driver.indexer.decode(t.split()) for t in oracle.calls)
        assert indices == [i for i in range(10, 25) if i != 15]
        assert result.skipped_count == 1

    def test_checkpoint_only_resume(self, make_driver, recording_oracle, tmp_path):
        """With the ledger lost, the checkpoint alone sets the start index."""
        holder = {}
        first = recording_oracle()
        driver = make_driver(oracle=stop_after(first, 7, holder))
        holder["driver"] = driver
        driver.run()
        (tmp_path / "ledger.txt").unlink()

        second = recording_oracle()
        driver = make_driver(oracle=second)
        driver.run()
        assert driver.indexer.decode(second.calls[0].split()) == 7
        assert len(second.calls) == 18

    def test_ledger_ahead_of_checkpoint(self, make_driver, recording_oracle, tmp_path):
        holder = {}
        first = recording_oracle()
        driver = make_driver(oracle=stop_after(first, 3, holder))
        holder["driver"] = driver
        driver.run()
        with open(tmp_path / "ledger.txt", "a", encoding="utf-8") as f:
            f.write("3\n4\n5\n")

        second = recording_oracle()
        driver = make_driver(oracle=second)
        driver.run()
        assert driver.indexer.decode(second.calls[0].split()) == 6

    def test_matches_recovered_from_ledger(self, make_driver, recording_oracle, tmp_path):
        make_driver(oracle=recording_oracle(matches=[TARGET])).run()
        (tmp_path / "checkpoint.json").unlink()

        result = make_driver(oracle=recording_oracle()).run()
        assert result.found_candidates == [TARGET]
        assert result.validated_count == 0

    def test_completed_search_rerun_is_noop(self, make_driver, recording_oracle):
        make_driver().run()
        oracle = recording_oracle()
        result = make_driver(oracle=oracle).run()
        assert result.phase is DriverPhase.COMPLETED
        assert oracle.calls == []


class TestCancellation:

    def test_stop_event(self, make_driver, recording_oracle, tmp_path):
        event = threading.Event()
        event.set()
        oracle = recording_oracle()
        result = make_driver(oracle=oracle, stop_event=event).run()
        assert result.phase is DriverPhase.STOPPED
        assert oracle.calls == []
        assert load_checkpoint(tmp_path / "checkpoint.json").progress.total_attempts == 0

    def test_second_signal_forces_quit(self, make_driver):
        driver = make_driver()
        driver._handle_signal(2, None)
        assert driver.stop_requested
        with pytest.raises(KeyboardInterrupt):
            driver._handle_signal(2, None)

    def test_forced_quit_saves_checkpoint(self, make_driver, tmp_path):
        calls = []

        def interrupting(candidate):
            calls.append(candidate)
            if len(calls) == 4:
                raise KeyboardInterrupt
            return False

        with pytest.raises(KeyboardInterrupt):
            make_driver(oracle=interrupting).run()
        assert load_checkpoint(tmp_path / "checkpoint.json").progress.total_attempts == 3


class TestPersistenceFailures:

    def test_checkpoint_failure_does_not_stop_search(self, make_driver, recording_oracle, tmp_path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        oracle = recording_oracle(matches=[TARGET])
        with caplog.at_level(logging.WARNING):
            result = make_driver(oracle=oracle, checkpoint_path=blocker / "c.json").run()

        assert result.phase is DriverPhase.COMPLETED
        assert result.found_candidates == [TARGET]
        assert result.persistence_failures >= 2
        assert any("continuing with in-memory state" in r.getMessage() for r in caplog.records)

    def test_ledger_failure_does_not_stop_search(self, make_driver, recording_oracle, tmp_path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        oracle = recording_oracle(matches=[TARGET])
        with caplog.at_level(logging.WARNING):
            result = make_driver(oracle=oracle, ledger_path=blocker / "ledger.txt").run()

        assert result.phase is DriverPhase.COMPLETED
        assert result.total_attempts == 25
        assert result.found_candidates == [TARGET]
        assert result.persistence_failures > 0
        assert len(oracle.calls) == 25
        assert any("Could not create ledger" in r.getMessage() for r in caplog.records)
        assert load_checkpoint(tmp_path / "checkpoint.json").progress.total_attempts == 25


class TestAlreadyAttempted:

    def test_runs_from_another_ledger_are_skipped(self, make_driver, recording_oracle):
        oracle = recording_oracle()
        result = make_driver(oracle=oracle, already_attempted=[(0, 10), (20, 22)]).run()
        assert result.finished
        assert len(oracle.calls) == 13
        assert result.skipped_count == 2  # 0-9 lie below the resume point

    def test_runs_are_clipped_to_the_shard(self, make_driver, recording_oracle):
        oracle = recording_oracle()
        result = make_driver(oracle=oracle, shard=(10, 15), already_attempted=[(0, 12)]).run()
        assert result.total_attempts == 15
        assert len(oracle.calls) == 3


class TestPeriodicCheckpoint:

    def test_interval_uses_injected_clock(self, make_driver, tmp_path):
        ticks = iter(range(10_000))
        driver = make_driver(checkpoint_interval=5, clock=lambda: next(ticks))
        driver.run()
        assert driver.checkpoint_manager.checkpoint_count > 2


class TestShard:

    def test_shard_range_only(self, make_driver, recording_oracle, tmp_path):
        oracle = recording_oracle()
        driver = make_driver(oracle=oracle, shard=(10, 15))
        result = driver.run()
        assert result.total_attempts == 15
        assert sorted(driver.indexer.decode(t.split()) for t in oracle.calls) == [10, 11, 12, 13, 14]
        header = (tmp_path / "ledger.txt").read_text(encoding="utf-8")
        assert "Shard: 10-15" in header
        assert ATTEMPTS_MARKER in header
