"""
WSPR timing helpers for kiwi-wspr.

Cycle boundary arithmetic and amateur band labelling.
"""

from .cycle import (
    UtcClock,
    next_boundary,
    wait_until,
    utc_now,
    recording_filename,
    decoder_filename,
    RECORDING_SECONDS,
    WSPR_CYCLE_SECONDS,
)
from .bands import frequency_to_band

__all__ = [
    'UtcClock',
    'next_boundary',
    'wait_until',
    'utc_now',
    'recording_filename',
    'decoder_filename',
    'frequency_to_band',
    'RECORDING_SECONDS',
    'WSPR_CYCLE_SECONDS',
]
