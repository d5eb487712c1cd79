"""
WSPR Cycle Calculator

WSPR transmissions begin exactly on even UTC minutes and last ~110.6 s.
Every job in the fleet aligns to the same 2-minute boundaries, so all
timing decisions go through these helpers.

Cycle boundary:
    A UTC instant whose minute is even and whose second (and sub-second)
    part is zero.

Filenames:
    Recording:  YYYYMMDD_HHMMSS_<freq_kHz>_wspr.wav   (e.g. 20251227_100000_14097_wspr.wav)
    Decoder:    YYMMDD_HHMM.wav                        (e.g. 251227_1000.wav)

wsprd extracts its time label from the decoder filename, so that name is
derived from the boundary that started the cycle, never from wall time.

Usage:
    clock = UtcClock()
    boundary = next_boundary(clock.now())
    if clock.wait_until(boundary, stop_event):
        ...  # record
"""

import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

WSPR_CYCLE_SECONDS = 120
WSPR_TRANSMISSION_SECONDS = 110.6

# 115 s captures the full transmission and leaves ~5 s before the next
# boundary for recorder teardown and reconnect.
RECORDING_SECONDS = 115.0


def utc_now() -> datetime:
    """Current UTC wall time (timezone-aware)."""
    return datetime.now(timezone.utc)


def is_boundary(t: datetime) -> bool:
    """True if t falls exactly on a WSPR cycle boundary."""
    return t.minute % 2 == 0 and t.second == 0 and t.microsecond == 0


def next_boundary(now: datetime) -> datetime:
    """
    Return the next WSPR cycle boundary at or after `now`.

    - odd minute              -> minute + 1
    - even minute, past :00   -> minute + 2
    - exactly on a boundary   -> now

    Examples:
        10:00:00.000 -> 10:00:00
        10:00:00.500 -> 10:02:00
        10:01:59     -> 10:02:00
        23:59:30     -> 00:00:00 (next day)
    """
    if is_boundary(now):
        return now

    minute_start = now.replace(second=0, microsecond=0)
    if now.minute % 2 == 1:
        return minute_start + timedelta(minutes=1)
    return minute_start + timedelta(minutes=2)


def seconds_until(target: datetime, now: datetime) -> float:
    """Seconds from now to target, clamped at zero."""
    return max(0.0, (target - now).total_seconds())


class UtcClock:
    """
    Wall-clock source used by jobs.

    Isolated behind a class so tests can substitute a clock that jumps
    straight to the boundary instead of sleeping for up to two minutes.
    """

    def now(self) -> datetime:
        return utc_now()

    def wait_until(self, target: datetime, stop_event: Optional[threading.Event] = None) -> bool:
        """
        Sleep until `target`.

        Returns:
            True when the target was reached, False if stop_event fired first
        """
        delay = seconds_until(target, self.now())
        if stop_event is None:
            if delay > 0:
                threading.Event().wait(delay)
            return True
        return not stop_event.wait(delay)


def wait_until(target: datetime, stop_event: Optional[threading.Event] = None,
               clock: Optional[UtcClock] = None) -> bool:
    """Module-level convenience wrapper around UtcClock.wait_until()."""
    return (clock or UtcClock()).wait_until(target, stop_event)


def recording_filename(boundary: datetime, frequency_khz: float) -> str:
    """Base filename for the raw recording of one cycle."""
    return f"{boundary.strftime('%Y%m%d_%H%M%S')}_{int(math.floor(frequency_khz))}_wspr.wav"


def decoder_filename(boundary: datetime) -> str:
    """Filename wsprd expects: YYMMDD_HHMM.wav"""
    return f"{boundary.strftime('%y%m%d_%H%M')}.wav"


def format_rfc3339(t: datetime) -> str:
    """Format a UTC datetime as RFC3339 with a trailing Z (second precision)."""
    return t.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_rfc3339(value: str) -> datetime:
    """Inverse of format_rfc3339()."""
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value).astimezone(timezone.utc)
