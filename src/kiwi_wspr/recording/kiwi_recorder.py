"""
KiwiSDR recorder adapter.

Wraps the kiwirecorder.py client from kiwiclient as a subprocess. One
RecordingHandle is one running recorder; it writes a single WAV file
(<output_dir>/<filename>) and is closed when the recording window ends.

kiwirecorder appends ".wav" to the name passed via --filename, so the
adapter passes the stem and reports the full path.

Usage:
    recorder = KiwiRecorder(recorder_path="kiwirecorder.py")
    handle = recorder(RecordingRequest(
        host="kiwi.example.org", port=8073,
        frequency_khz=14097.0, duration_s=115,
        output_dir=Path("/var/lib/kiwi_wspr/r1_14097"),
        filename="20251227_100000_14097_wspr.wav",
    ))
    ...
    handle.close()
"""

import logging
import os
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_RECORDER_PATH = "kiwirecorder.py"
DEFAULT_USER = "kiwi_wspr"

# Grace period between SIGTERM and SIGKILL on close()
TERMINATE_GRACE_S = 2.0


class RecorderError(RuntimeError):
    """The recorder process could not be launched."""


@dataclass(frozen=True)
class RecordingRequest:
    """Everything needed to record one audio window from one receiver."""
    host: str
    port: int
    frequency_khz: float
    duration_s: float
    output_dir: Path
    filename: str                        # Final filename including .wav
    user: str = DEFAULT_USER
    password: str = ""
    modulation: str = "usb"
    low_cut_hz: int = 300
    high_cut_hz: int = 2700
    agc_gain: int = -1                   # -1 = AGC on with default settings
    compression: bool = False
    quiet: bool = True

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir) / self.filename

    @property
    def stem(self) -> str:
        name = self.filename
        return name[:-4] if name.lower().endswith('.wav') else name


def build_command(request: RecordingRequest, recorder_path: str = DEFAULT_RECORDER_PATH) -> List[str]:
    """Build the kiwirecorder.py argv for a request."""
    if recorder_path.endswith('.py'):
        cmd = [sys.executable, recorder_path]
    else:
        cmd = [recorder_path]

    cmd += [
        '-s', request.host,
        '-p', str(request.port),
        '-f', f"{request.frequency_khz:g}",
        '-m', request.modulation,
        '-L', str(request.low_cut_hz),
        '-H', str(request.high_cut_hz),
        '--tlimit', f"{request.duration_s:g}",
        '-d', str(request.output_dir),
        '--filename', request.stem,
    ]
    if request.user:
        cmd += ['-u', request.user]
    if request.password:
        cmd += ['--pw', request.password]
    if request.compression:
        cmd.append('--ncomp')
    if request.agc_gain >= 0:
        cmd += ['-g', str(request.agc_gain)]
    if request.quiet:
        cmd.append('-q')
    return cmd


def resolve_recorder_path(recorder_path: str) -> str:
    """Resolve a bare recorder name against PATH; explicit paths pass through."""
    if os.sep in recorder_path or Path(recorder_path).exists():
        return recorder_path
    found = shutil.which(recorder_path)
    return found or recorder_path


class RecordingHandle:
    """A running recorder subprocess. close() is idempotent."""

    def __init__(self, request: RecordingRequest, process: subprocess.Popen):
        self.request = request
        self.process = process
        self._closed = False
        self._lock = threading.Lock()

    @property
    def output_path(self) -> Path:
        return self.request.output_path

    def is_running(self) -> bool:
        return self.process.poll() is None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the recorder to exit on its own; None on timeout."""
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def close(self) -> None:
        """Stop the recorder so it flushes and closes its WAV file."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        if self.process.poll() is not None:
            return

        try:
            self.process.send_signal(signal.SIGTERM)
            self.process.wait(timeout=TERMINATE_GRACE_S)
        except subprocess.TimeoutExpired:
            logger.warning(f"Recorder pid {self.process.pid} ignored SIGTERM, killing")
            self.process.kill()
            self.process.wait()
        except ProcessLookupError:
            pass


class KiwiRecorder:
    """
    Recorder factory: call with a RecordingRequest to start a recording.

    Jobs take any callable with this signature, which lets tests swap in a
    stub that writes a canned WAV file.
    """

    def __init__(self, recorder_path: str = DEFAULT_RECORDER_PATH, quiet: bool = True):
        self.recorder_path = resolve_recorder_path(recorder_path)
        self.quiet = quiet

    def __call__(self, request: RecordingRequest) -> RecordingHandle:
        Path(request.output_dir).mkdir(parents=True, exist_ok=True)
        cmd = build_command(request, self.recorder_path)
        logger.debug(f"Recording: {' '.join(cmd)}")

        output = subprocess.DEVNULL if self.quiet else None
        try:
            process = subprocess.Popen(cmd, stdout=output, stderr=output)
        except OSError as e:
            raise RecorderError(f"Cannot launch recorder {self.recorder_path}: {e}") from e

        return RecordingHandle(request, process)
