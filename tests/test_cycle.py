"""
Unit tests for the WSPR cycle calculator.

Covers boundary alignment, filename derivation and the interruptible wait.
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestNextBoundary:
    """Test next_boundary() alignment to even UTC minutes."""

    def test_exact_boundary_returns_same_instant(self):
        from kiwi_wspr.timing.cycle import next_boundary
        t = utc(2025, 12, 27, 10, 0, 0)
        assert next_boundary(t) == t

    def test_half_second_past_boundary_skips_to_next_cycle(self):
        from kiwi_wspr.timing.cycle import next_boundary
        t = utc(2025, 12, 27, 10, 0, 0, 500000)
        assert next_boundary(t) == utc(2025, 12, 27, 10, 2, 0)

    def test_odd_minute_rounds_up(self):
        from kiwi_wspr.timing.cycle import next_boundary
        assert next_boundary(utc(2025, 12, 27, 10, 1, 59)) == utc(2025, 12, 27, 10, 2, 0)
        assert next_boundary(utc(2025, 12, 27, 10, 1, 0)) == utc(2025, 12, 27, 10, 2, 0)

    def test_even_minute_mid_cycle(self):
        from kiwi_wspr.timing.cycle import next_boundary
        assert next_boundary(utc(2025, 12, 27, 10, 0, 30)) == utc(2025, 12, 27, 10, 2, 0)

    def test_crosses_midnight(self):
        from kiwi_wspr.timing.cycle import next_boundary
        assert next_boundary(utc(2025, 12, 31, 23, 59, 30)) == utc(2026, 1, 1, 0, 0, 0)

    def test_result_is_always_a_boundary(self):
        """Sweep a whole cycle in 7-second steps."""
        from kiwi_wspr.timing.cycle import next_boundary, is_boundary
        start = utc(2025, 12, 27, 10, 0, 0)
        for step in range(0, 240, 7):
            now = start + timedelta(seconds=step, microseconds=1234)
            boundary = next_boundary(now)
            assert is_boundary(boundary)
            assert boundary >= now
            assert boundary - now <= timedelta(seconds=120)


class TestFilenames:
    """Test recording and decoder filename derivation."""

    def test_recording_filename_uses_boundary_and_floor_frequency(self):
        from kiwi_wspr.timing.cycle import recording_filename
        name = recording_filename(utc(2025, 12, 27, 10, 0, 0), 14095.6)
        assert name == "20251227_100000_14095_wspr.wav"

    def test_decoder_filename(self):
        from kiwi_wspr.timing.cycle import decoder_filename
        assert decoder_filename(utc(2025, 12, 27, 10, 0, 0)) == "251227_1000.wav"

    def test_rfc3339_roundtrip(self):
        from kiwi_wspr.timing.cycle import format_rfc3339, parse_rfc3339
        t = utc(2025, 12, 27, 10, 0, 0)
        assert format_rfc3339(t) == "2025-12-27T10:00:00Z"
        assert parse_rfc3339("2025-12-27T10:00:00Z") == t


class TestUtcClock:
    """Test the interruptible wait."""

    def test_wait_until_past_target_returns_immediately(self):
        from kiwi_wspr.timing.cycle import UtcClock, utc_now
        clock = UtcClock()
        start = time.monotonic()
        assert clock.wait_until(utc_now() - timedelta(seconds=5), threading.Event())
        assert time.monotonic() - start < 0.5

    def test_wait_until_returns_false_when_stopped(self):
        from kiwi_wspr.timing.cycle import UtcClock, utc_now
        clock = UtcClock()
        stop = threading.Event()
        threading.Timer(0.05, stop.set).start()

        start = time.monotonic()
        assert clock.wait_until(utc_now() + timedelta(seconds=30), stop) is False
        assert time.monotonic() - start < 5.0

    def test_module_wait_until_short_delay(self):
        from kiwi_wspr.timing.cycle import wait_until, utc_now
        assert wait_until(utc_now() + timedelta(milliseconds=50)) is True
