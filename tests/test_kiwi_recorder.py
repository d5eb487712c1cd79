"""
Unit tests for the kiwirecorder subprocess adapter.
"""

import subprocess
import sys
import time
from pathlib import Path

import pytest


def make_request(tmp_path, **overrides):
    from kiwi_wspr.recording.kiwi_recorder import RecordingRequest
    fields = dict(
        host="kiwi.example.org",
        port=8073,
        frequency_khz=14097.0,
        duration_s=115,
        output_dir=tmp_path,
        filename="20251227_100000_14097_wspr.wav",
    )
    fields.update(overrides)
    return RecordingRequest(**fields)


class TestBuildCommand:
    """Test the kiwirecorder argv."""

    def test_default_flags(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import build_command

        cmd = build_command(make_request(tmp_path), "/opt/kiwiclient/kiwirecorder.py")

        assert cmd[:2] == [sys.executable, "/opt/kiwiclient/kiwirecorder.py"]
        args = cmd[2:]
        assert args[args.index('-s') + 1] == "kiwi.example.org"
        assert args[args.index('-p') + 1] == "8073"
        assert args[args.index('-f') + 1] == "14097"
        assert args[args.index('-m') + 1] == "usb"
        assert args[args.index('-L') + 1] == "300"
        assert args[args.index('-H') + 1] == "2700"
        assert args[args.index('--tlimit') + 1] == "115"
        assert args[args.index('-d') + 1] == str(tmp_path)
        # kiwirecorder adds the .wav itself
        assert args[args.index('--filename') + 1] == "20251227_100000_14097_wspr"
        assert args[args.index('-u') + 1] == "kiwi_wspr"
        assert '-q' in args
        assert '--pw' not in args
        assert '--ncomp' not in args
        assert '-g' not in args

    def test_optional_flags(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import build_command

        request = make_request(tmp_path, frequency_khz=14095.6, password="secret",
                               compression=True, agc_gain=40, quiet=False)
        cmd = build_command(request, "/usr/local/bin/kiwirecorder")

        assert cmd[0] == "/usr/local/bin/kiwirecorder"
        assert cmd[cmd.index('-f') + 1] == "14095.6"
        assert cmd[cmd.index('--pw') + 1] == "secret"
        assert '--ncomp' in cmd
        assert cmd[cmd.index('-g') + 1] == "40"
        assert '-q' not in cmd

    def test_output_path(self, tmp_path):
        request = make_request(tmp_path)
        assert request.output_path == tmp_path / "20251227_100000_14097_wspr.wav"
        assert request.stem == "20251227_100000_14097_wspr"


class TestRecordingHandle:
    """Test closing a running recorder process."""

    def test_close_terminates_and_is_idempotent(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import RecordingHandle

        process = subprocess.Popen(["sleep", "30"])
        handle = RecordingHandle(make_request(tmp_path), process)
        assert handle.is_running()

        start = time.monotonic()
        handle.close()
        handle.close()

        assert not handle.is_running()
        assert time.monotonic() - start < 5.0

    def test_wait_timeout(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import RecordingHandle

        handle = RecordingHandle(make_request(tmp_path), subprocess.Popen(["sleep", "30"]))
        try:
            assert handle.wait(timeout=0.05) is None
        finally:
            handle.close()

    def test_close_after_exit(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import RecordingHandle

        process = subprocess.Popen(["true"])
        process.wait()
        handle = RecordingHandle(make_request(tmp_path), process)
        handle.close()
        assert not handle.is_running()


class TestKiwiRecorder:
    """Test launching the recorder."""

    def test_launch_failure(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import KiwiRecorder, RecorderError

        recorder = KiwiRecorder(str(tmp_path / "no" / "such" / "recorder"))
        with pytest.raises(RecorderError):
            recorder(make_request(tmp_path / "out"))

    def test_launch_creates_output_dir(self, tmp_path):
        from kiwi_wspr.recording.kiwi_recorder import KiwiRecorder

        script = tmp_path / "fake_recorder"
        script.write_text("#!/bin/sh\nexit 0\n")
        script.chmod(0o755)

        out_dir = tmp_path / "out" / "r1_14097"
        handle = KiwiRecorder(str(script))(make_request(out_dir))
        try:
            assert handle.wait(timeout=5) == 0
        finally:
            handle.close()
        assert out_dir.is_dir()
