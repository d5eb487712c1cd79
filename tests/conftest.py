"""
Pytest configuration and fixtures for kiwi-wspr tests.

Jobs are exercised with real threads, a stub recorder that writes a short
12 kHz WAV instead of talking to a KiwiSDR, a shell-script stand-in for
wsprd and clocks that skip straight to the next cycle boundary.
"""

import pytest
import stat
import sys
import threading
import time
import wave
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from kiwi_wspr.timing.cycle import UtcClock

# 2025-12-27 09:59:30 UTC, so the first boundary is 10:00:00
CLOCK_START = datetime(2025, 12, 27, 9, 59, 30, tzinfo=timezone.utc)

SPOT_LINE = "251227 1000  1 -15  0.5  14.097100  W1ABC FN42 30"

CTY_SAMPLE = """\
United States:            05:  08:  NA:   37.53:    91.67:     5.0:  K:
    AA,AB,AC,K,N,W,
    =W1AW(4)[7];
Canada:                   05:  09:  NA:   44.35:    78.75:     5.0:  VE:
    CF,CG,VA,VE,VO,VY,=VE2XYZ(2)[4]<46.8/71.2>~4.0~;
Sov Mil Order of Malta:   15:  28:  EU:   41.90:   -12.43:    -1.0:  *1A:
    1A;
"""


def write_test_wav(path, sample_rate=12000, seconds=1.0, channels=1):
    """Write a short 16-bit WAV containing a 1500 Hz tone."""
    n = int(sample_rate * seconds)
    t = np.arange(n) / sample_rate
    tone = (8000 * np.sin(2 * np.pi * 1500 * t)).astype('<i2')
    if channels > 1:
        tone = np.repeat(tone, channels)
    with wave.open(str(path), 'wb') as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(tone.tobytes())
    return Path(path)


def wait_for(condition, timeout=5.0, interval=0.02):
    """Poll condition() until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return bool(condition())


class FakeClock(UtcClock):
    """Clock that jumps to each target instead of sleeping."""

    def __init__(self, start=CLOCK_START):
        self._now = start
        self._lock = threading.Lock()

    def now(self):
        with self._lock:
            return self._now

    def wait_until(self, target, stop_event=None):
        # Short real pause so a running job does not spin
        if stop_event is not None and stop_event.wait(0.01):
            return False
        with self._lock:
            if target > self._now:
                self._now = target
        return True


class ParkedClock(UtcClock):
    """Clock frozen a minute before a boundary; wait_until blocks for real."""

    def __init__(self, now=CLOCK_START - timedelta(seconds=30)):
        self._fixed = now

    def now(self):
        return self._fixed


class StubHandle:
    def __init__(self, request):
        self.request = request
        self.close_count = 0

    @property
    def output_path(self):
        return self.request.output_path

    def close(self):
        self.close_count += 1


class StubRecorder:
    """Recorder factory that writes a canned WAV (or nothing) per request."""

    def __init__(self, write=True, sample_rate=12000, seconds=1.0):
        self.write = write
        self.sample_rate = sample_rate
        self.seconds = seconds
        self.requests = []
        self.call_times = []
        self.handles = []
        self._lock = threading.Lock()

    def __call__(self, request):
        if self.write:
            Path(request.output_dir).mkdir(parents=True, exist_ok=True)
            write_test_wav(request.output_path, self.sample_rate, self.seconds)
        handle = StubHandle(request)
        with self._lock:
            self.requests.append(request)
            self.call_times.append(time.monotonic())
            self.handles.append(handle)
        return handle

    @property
    def call_count(self):
        with self._lock:
            return len(self.requests)


def _write_script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def work_root(tmp_path):
    """Root under which every job creates its work directory."""
    root = tmp_path / 'wspr_work'
    root.mkdir()
    return root


@pytest.fixture
def stub_decoder(tmp_path):
    """wsprd stand-in: records its argv and writes one spot."""
    return _write_script(
        tmp_path / 'wsprd',
        'echo "$@" > decoder_args.txt\n'
        f'echo "{SPOT_LINE}" > wspr_spots.txt\n'
        'echo "<DecodeFinished>" >> wspr_spots.txt\n'
        'exit 0\n'
    )


@pytest.fixture
def failing_decoder(tmp_path):
    """wsprd stand-in that crashes without writing spots."""
    return _write_script(tmp_path / 'wsprd_crash', 'echo "segfault" >&2\nexit 1\n')


@pytest.fixture
def cty_path(tmp_path):
    path = tmp_path / 'cty.dat'
    path.write_text(CTY_SAMPLE, encoding='latin-1')
    return path


@pytest.fixture
def cty(cty_path):
    from kiwi_wspr.decoding.cty import CtyDatabase
    return CtyDatabase.load(cty_path)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def parked_clock():
    return ParkedClock()


@pytest.fixture
def stub_recorder():
    return StubRecorder()


@pytest.fixture
def silent_recorder():
    """Recorder that connects but never produces a file."""
    return StubRecorder(write=False)


@pytest.fixture
def config_dict(work_root, stub_decoder, cty_path):
    """A valid configuration document with one receiver and one band."""
    return {
        'publisher': {
            'enabled': False,
            'host': 'broker.example.org',
            'port': 1883,
            'topic_prefix': 'kiwi',
        },
        'receivers': [
            {'name': 'r1', 'host': 'kiwi1.example.org', 'port': 8073, 'enabled': True},
        ],
        'bands': [
            {'name': 'b20', 'frequency_khz': 14097.0, 'receiver_name': 'r1', 'enabled': True},
        ],
        'decoder': {
            'decoder_path': str(stub_decoder),
            'work_dir': str(work_root),
            'cty_path': str(cty_path),
            'keep_audio': False,
        },
        'logging': {'level': 'info', 'quiet': True},
    }


@pytest.fixture
def make_config(config_dict):
    """Build a FleetConfig from the base document plus section overrides."""
    from kiwi_wspr.config import FleetConfig

    def build(**sections):
        data = dict(config_dict)
        data.update(sections)
        return FleetConfig.from_dict(data)

    return build


@pytest.fixture
def wait():
    return wait_for


@pytest.fixture
def wav_writer():
    return write_test_wav


@pytest.fixture
def clock_factory():
    """Build a fresh FakeClock per job."""
    return FakeClock
