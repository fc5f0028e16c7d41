"""Tests for the per-camera, per-class debounce ledger."""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from mvwatch.schemas.camera_event import EventClass
from mvwatch.services.debounce_ledger import DebounceLedger

T0 = datetime(2019, 11, 1, 0, 23, 55, 359000, tzinfo=timezone.utc)


class TestAccept:
    """Tests for the check-and-set decision."""

    def test_first_event_accepted_and_recorded(self):
        ledger = DebounceLedger()
        assert ledger.accept("ABC123", EventClass.PERSON, T0) is True
        assert ledger.last_accepted("ABC123", EventClass.PERSON) == T0
        assert len(ledger) == 1

    def test_event_inside_window_rejected_without_update(self):
        ledger = DebounceLedger()
        ledger.accept("ABC123", EventClass.PERSON, T0)

        assert ledger.accept("ABC123", EventClass.PERSON, T0 + timedelta(milliseconds=200)) is False
        assert ledger.last_accepted("ABC123", EventClass.PERSON) == T0

    def test_event_one_ms_short_of_window_rejected(self):
        ledger = DebounceLedger()
        ledger.accept("ABC123", EventClass.VEHICLE, T0)
        assert ledger.accept("ABC123", EventClass.VEHICLE, T0 + timedelta(milliseconds=499)) is False

    def test_event_exactly_at_window_accepted(self):
        ledger = DebounceLedger()
        ledger.accept("ABC123", EventClass.VEHICLE, T0)
        later = T0 + timedelta(milliseconds=500)

        assert ledger.accept("ABC123", EventClass.VEHICLE, later) is True
        assert ledger.last_accepted("ABC123", EventClass.VEHICLE) == later

    def test_rejected_events_do_not_extend_window(self):
        """A burst of suppressed events must not keep pushing the window forward."""
        ledger = DebounceLedger()
        ledger.accept("ABC123", EventClass.PERSON, T0)
        for ms in (100, 200, 300, 400):
            ledger.accept("ABC123", EventClass.PERSON, T0 + timedelta(milliseconds=ms))

        assert ledger.accept("ABC123", EventClass.PERSON, T0 + timedelta(milliseconds=500)) is True

    def test_out_of_order_older_event_rejected(self):
        ledger = DebounceLedger()
        ledger.accept("ABC123", EventClass.PERSON, T0)
        assert ledger.accept("ABC123", EventClass.PERSON, T0 - timedelta(seconds=5)) is False

    def test_keys_are_independent(self):
        ledger = DebounceLedger()
        ledger.accept("ABC123", EventClass.PERSON, T0)

        soon = T0 + timedelta(milliseconds=10)
        assert ledger.accept("ABC123", EventClass.VEHICLE, soon) is True
        assert ledger.accept("XYZ789", EventClass.PERSON, soon) is True
        assert len(ledger) == 3

    def test_custom_window(self):
        ledger = DebounceLedger(window_ms=2000)
        ledger.accept("ABC123", EventClass.PERSON, T0)
        assert ledger.accept("ABC123", EventClass.PERSON, T0 + timedelta(milliseconds=1500)) is False
        assert ledger.window == timedelta(seconds=2)

    def test_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            DebounceLedger(window_ms=0)

    def test_unknown_key_has_no_entry(self):
        assert DebounceLedger().last_accepted("ABC123", EventClass.PERSON) is None


class TestConcurrency:
    """accept() is atomic for the same key."""

    def test_only_one_concurrent_duplicate_passes(self):
        ledger = DebounceLedger()
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            accepted = ledger.accept("ABC123", EventClass.PERSON, T0)
            with results_lock:
                results.append(accepted)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7
