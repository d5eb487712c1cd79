#!/usr/bin/env python3
"""
WSPR Job Runner - one (receiver, band) record/decode/publish pipeline.

Each job owns a work directory <work_root>/<receiver>_<freq_kHz> and runs
two threads:

    CYCLE LOOP
        align to the next even-minute boundary
        record 115 s with kiwirecorder, then close it and let it flush
        verify the WAV exists (FAILED + 10 s cooldown if not)
        hand the file to the decode worker and go round again

    DECODE WORKER
        resample to 12 kHz -> rename YYMMDD_HHMM.wav -> wsprd
        parse wspr_spots.txt -> CTY enrich -> publish
        delete this cycle's audio (unless one-shot or keep_audio)

Decoding cycle N overlaps recording cycle N+1. wsprd always writes
wspr_spots.txt in its working directory, so decodes of one job are
serialized through a queue holding at most one pending cycle; if a new
cycle arrives while one is already pending, the older pending cycle is
dropped (its audio is cleaned up like a decoded cycle's).

Recording states:
    WAITING  started, no recording finished yet
    SUCCESS  last recording produced a file
    FAILED   last recording produced no file (see last_error)

Usage:
    job = WsprJob(band, receiver, config.decoder, publisher=publisher, cty=cty)
    job.start()
    ...
    job.stop()
"""

import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ..config import BandConfig, DecoderSettings, ReceiverConfig, work_dir_name
from ..decoding.cty import CtyDatabase, enrich
from ..decoding.resampler import resample_wav, WSPRD_SAMPLE_RATE
from ..decoding.spot_parser import parse_spot_file, SPOTS_FILENAME
from ..interfaces.spot import Spot
from ..output.mqtt_publisher import PublishError
from ..recording.kiwi_recorder import KiwiRecorder, RecorderError, RecordingRequest
from ..timing.bands import frequency_to_band
from ..timing.cycle import (
    RECORDING_SECONDS,
    WSPR_CYCLE_SECONDS,
    UtcClock,
    decoder_filename,
    format_rfc3339,
    next_boundary,
    recording_filename,
    utc_now,
)

logger = logging.getLogger(__name__)

FAILURE_COOLDOWN_S = 10.0
FLUSH_DELAY_S = 0.1
DECODER_CYCLES = "10000"
STALE_AUDIO_PATTERN = "*_wspr.wav"


class RecordingState(str, Enum):
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"


class RecordingFailed(RuntimeError):
    """The recorder ran but left no audio file behind."""


@dataclass(frozen=True)
class JobStatus:
    """Atomic snapshot of a job's health."""
    last_decode_time: Optional[datetime]
    last_decode_count: int
    recording_state: RecordingState
    last_error: str
    cycles_recorded: int = 0
    spots_published: int = 0
    decodes_dropped: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_decode_time': format_rfc3339(self.last_decode_time) if self.last_decode_time else None,
            'last_decode_count': self.last_decode_count,
            'recording_state': self.recording_state.value,
            'last_error': self.last_error,
            'cycles_recorded': self.cycles_recorded,
            'spots_published': self.spots_published,
            'decodes_dropped': self.decodes_dropped,
        }


@dataclass
class DecodeTask:
    """One recorded cycle waiting to be decoded."""
    audio_path: Path
    boundary: datetime
    files: Set[Path] = field(default_factory=set)   # Every file this cycle created


def job_unique_id(band: BandConfig, receiver_name: Optional[str] = None) -> str:
    """<receiver>_<floor(freq_kHz)>, also the work directory name."""
    return work_dir_name(receiver_name or band.receiver_name, band.frequency_khz)


class WsprJob:
    """
    Record/decode/publish loop for one band on one receiver.

    All mutable state is guarded by self._lock. Threads are never joined
    while the lock is held.
    """

    def __init__(
        self,
        band: BandConfig,
        receiver: ReceiverConfig,
        decoder: DecoderSettings,
        publisher: Optional[Any] = None,
        topic_prefix_override: str = "",
        cty: Optional[CtyDatabase] = None,
        one_shot: bool = False,
        quiet: bool = False,
        recorder_factory: Optional[Callable[[RecordingRequest], Any]] = None,
        clock: Optional[UtcClock] = None,
        on_one_shot_complete: Optional[Callable[[], None]] = None,
        recording_seconds: float = RECORDING_SECONDS,
        failure_cooldown: float = FAILURE_COOLDOWN_S,
        flush_delay: float = FLUSH_DELAY_S,
    ):
        self.band = band
        self.receiver = receiver
        self.decoder = decoder
        self.cty = cty
        self.one_shot = one_shot
        self.quiet = quiet
        self.clock = clock or UtcClock()
        self.recorder_factory = recorder_factory or KiwiRecorder(decoder.recorder_path, quiet=quiet)
        self.on_one_shot_complete = on_one_shot_complete
        self.recording_seconds = recording_seconds
        self.failure_cooldown = failure_cooldown
        self.flush_delay = flush_delay

        self.unique_id = job_unique_id(band, receiver.name)
        self.work_dir = Path(decoder.work_dir) / self.unique_id
        self.band_label = frequency_to_band(band.frequency_khz)
        self.dial_frequency_hz = int(round(band.frequency_khz * 1000))

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._decode_queue: "queue.Queue[DecodeTask]" = queue.Queue(maxsize=1)
        self._owned_files: Set[Path] = set()

        self._publisher = publisher
        self._topic_prefix_override = topic_prefix_override
        self._recorder = None
        self._state = RecordingState.WAITING
        self._last_error = ""
        self._last_decode_time: Optional[datetime] = None
        self._last_decode_count = 0
        self._last_boundary: Optional[datetime] = None
        self._cycles_recorded = 0
        self._spots_published = 0
        self._decodes_dropped = 0

        self._started = False
        self._stopped = False
        self.cycle_thread: Optional[threading.Thread] = None
        self.decode_thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return f"WsprJob({self.band.name}, {self.unique_id})"

    # === Lifecycle ===

    def start(self) -> None:
        """
        Create the work directory and launch the job threads.

        Raises:
            OSError: if the work directory cannot be created
        """
        with self._lock:
            if self._started:
                logger.warning(f"{self.band.name}: job already started")
                return
            self._started = True

        self.work_dir.mkdir(parents=True, exist_ok=True)
        self._remove_stale_audio()

        logger.info(f"{self.band.name}: starting on {self.receiver.name} "
                    f"at {self.band.frequency_khz} kHz ({self.band_label})")
        logger.info(f"{self.band.name}: work directory {self.work_dir}")

        self.cycle_thread = threading.Thread(
            target=self._cycle_loop,
            name=f"Cycle-{self.unique_id}",
            daemon=True,
        )
        self.decode_thread = threading.Thread(
            target=self._decode_loop,
            name=f"Decode-{self.unique_id}",
            daemon=True,
        )
        self.cycle_thread.start()
        self.decode_thread.start()

    def stop(self) -> None:
        """
        Stop the job. Safe to call more than once.

        The active recorder is closed immediately; a decode already in
        progress (or pending) is allowed to finish and clean up after itself.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            recorder = self._recorder

        logger.info(f"{self.band.name}: stopping")
        self._stop_event.set()

        if recorder is not None:
            recorder.close()

        if not self.one_shot:
            self._remove_stale_audio()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the job threads to exit."""
        for thread in (self.cycle_thread, self.decode_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def is_alive(self) -> bool:
        return any(t is not None and t.is_alive() for t in (self.cycle_thread, self.decode_thread))

    def status(self) -> JobStatus:
        with self._lock:
            return JobStatus(
                last_decode_time=self._last_decode_time,
                last_decode_count=self._last_decode_count,
                recording_state=self._state,
                last_error=self._last_error,
                cycles_recorded=self._cycles_recorded,
                spots_published=self._spots_published,
                decodes_dropped=self._decodes_dropped,
            )

    def update_publisher(self, publisher: Optional[Any], topic_prefix_override: str = "") -> None:
        """Swap the publisher used by subsequent publishes."""
        with self._lock:
            self._publisher = publisher
            self._topic_prefix_override = topic_prefix_override
        logger.debug(f"{self.band.name}: publisher updated")

    # === Cycle loop ===

    def _next_cycle_boundary(self) -> datetime:
        boundary = next_boundary(self.clock.now())
        if self._last_boundary is not None and boundary <= self._last_boundary:
            boundary = self._last_boundary + timedelta(seconds=WSPR_CYCLE_SECONDS)
        return boundary

    def _cycle_loop(self) -> None:
        logger.info(f"{self.band.name}: cycle loop started")

        while not self._stop_event.is_set():
            try:
                boundary = self._next_cycle_boundary()
                logger.debug(f"{self.band.name}: waiting for cycle {boundary.strftime('%H:%M:%S')}")

                if not self.clock.wait_until(boundary, self._stop_event):
                    break
                self._last_boundary = boundary

                try:
                    audio_path = self._record_cycle(boundary)
                except (RecorderError, RecordingFailed) as e:
                    logger.warning(f"{self.band.name}: recording failed: {e}")
                    self._set_state(RecordingState.FAILED, str(e))
                    self._stop_event.wait(self.failure_cooldown)
                    continue

                if audio_path is None:
                    # Stopped mid-recording
                    break

                self._set_state(RecordingState.SUCCESS, "")
                self._enqueue_decode(DecodeTask(audio_path=audio_path, boundary=boundary,
                                                files={audio_path}))

                if self.one_shot:
                    logger.info(f"{self.band.name}: one-shot recording complete")
                    break

            except Exception as e:
                logger.exception(f"{self.band.name}: cycle loop error: {e}")
                self._stop_event.wait(1.0)

        logger.info(f"{self.band.name}: cycle loop stopped")

    def _recording_request(self, filename: str) -> RecordingRequest:
        return RecordingRequest(
            host=self.receiver.host,
            port=self.receiver.port,
            frequency_khz=self.band.frequency_khz,
            duration_s=self.recording_seconds,
            output_dir=self.work_dir,
            filename=filename,
            user=self.receiver.user,
            password=self.receiver.password,
            compression=self.decoder.compression,
            quiet=self.quiet,
        )

    def _record_cycle(self, boundary: datetime) -> Optional[Path]:
        """
        Record one cycle.

        Returns:
            Path of the finished WAV, or None if the job was stopped meanwhile

        Raises:
            RecorderError: recorder could not be launched
            RecordingFailed: recorder finished without producing a file
        """
        filename = recording_filename(boundary, self.band.frequency_khz)
        audio_path = self.work_dir / filename
        logger.info(f"{self.band.name}: recording {filename}")

        handle = self.recorder_factory(self._recording_request(filename))
        with self._lock:
            self._recorder = handle
            # Owned files are left alone by stop()'s stale-audio sweep
            self._owned_files.add(audio_path)
            stopped = self._stopped

        try:
            interrupted = stopped or self._stop_event.wait(self.recording_seconds)
        finally:
            handle.close()
            with self._lock:
                self._recorder = None

        if interrupted:
            self._disown(audio_path, delete=not self.one_shot)
            return None

        time.sleep(self.flush_delay)

        if not audio_path.exists():
            self._disown(audio_path)
            raise RecordingFailed(f"WAV file was not created: {audio_path}")

        with self._lock:
            self._cycles_recorded += 1
        return audio_path

    def _set_state(self, state: RecordingState, error: str) -> None:
        with self._lock:
            self._state = state
            self._last_error = error

    def _enqueue_decode(self, task: DecodeTask) -> None:
        with self._lock:
            self._owned_files.update(task.files)

        try:
            self._decode_queue.put_nowait(task)
            return
        except queue.Full:
            pass

        try:
            dropped = self._decode_queue.get_nowait()
        except queue.Empty:
            dropped = None

        if dropped is not None:
            logger.warning(f"{self.band.name}: decoder busy, dropping cycle "
                           f"{dropped.boundary.strftime('%H:%M')}")
            with self._lock:
                self._decodes_dropped += 1
            self._cleanup_task_files(dropped)

        # Only the cycle thread produces, so there is room now
        self._decode_queue.put_nowait(task)

    # === Decode worker ===

    def _decode_loop(self) -> None:
        logger.debug(f"{self.band.name}: decode worker started")

        while True:
            try:
                task = self._decode_queue.get(timeout=0.2)
            except queue.Empty:
                cycle_done = self.cycle_thread is None or not self.cycle_thread.is_alive()
                if self._stop_event.is_set() and cycle_done:
                    break
                continue

            try:
                self._run_decode(task)
            except Exception as e:
                logger.exception(f"{self.band.name}: decode error: {e}")

        logger.debug(f"{self.band.name}: decode worker stopped")

    def _run_decode(self, task: DecodeTask) -> List[Spot]:
        spots: List[Spot] = []
        try:
            spots = self._decode(task)
            with self._lock:
                self._last_decode_time = utc_now()
                self._last_decode_count = len(spots)

            if spots:
                logger.info(f"{self.band.name}: decoded {len(spots)} spots from "
                            f"{task.boundary.strftime('%H:%M')}")
                self._publish_spots(spots)
            else:
                logger.info(f"{self.band.name}: no spots decoded from {task.boundary.strftime('%H:%M')}")
        finally:
            self._cleanup_task_files(task)
            if self.one_shot and self.on_one_shot_complete is not None:
                self.on_one_shot_complete()
        return spots

    def _decode(self, task: DecodeTask) -> List[Spot]:
        """Resample, run wsprd and parse its output. Failures yield no spots."""
        audio_path = task.audio_path
        try:
            size = audio_path.stat().st_size
        except OSError as e:
            logger.warning(f"{self.band.name}: audio file missing: {e}")
            return []
        if size == 0:
            logger.warning(f"{self.band.name}: {audio_path.name} is empty")
            return []
        logger.info(f"{self.band.name}: decoding {audio_path.name} ({size / (1024 * 1024):.2f} MB)")

        try:
            resampled = resample_wav(audio_path, WSPRD_SAMPLE_RATE)
        except Exception as e:
            logger.warning(f"{self.band.name}: resampling {audio_path.name} failed: {e}")
            return []
        task.files.add(resampled)
        self._own(resampled)

        decoder_path = self.work_dir / decoder_filename(task.boundary)
        try:
            resampled.replace(decoder_path)
        except OSError as e:
            logger.warning(f"{self.band.name}: rename to {decoder_path.name} failed: {e}")
            return []
        task.files.add(decoder_path)
        self._own(decoder_path)

        if not self._run_decoder(decoder_path.name):
            return []
        return parse_spot_file(self.work_dir / SPOTS_FILENAME)

    def _decoder_command(self, wav_name: str) -> List[str]:
        decoder = self.decoder.decoder_path
        if '/' in decoder:
            decoder = str(Path(decoder).resolve())
        freq_mhz = f"{self.band.frequency_khz / 1000.0:.6f}"
        return [decoder, "-f", freq_mhz, "-C", DECODER_CYCLES, "-w", wav_name]

    def _run_decoder(self, wav_name: str) -> bool:
        """Run wsprd in the work directory. Returns True on exit status 0."""
        spots_file = self.work_dir / SPOTS_FILENAME
        self._remove_file(spots_file)

        cmd = self._decoder_command(wav_name)
        logger.info(f"{self.band.name}: running {' '.join(cmd[1:])}")
        start = time.monotonic()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.work_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.decoder.decoder_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.band.name}: wsprd timed out after {self.decoder.decoder_timeout:.0f}s")
            return False
        except OSError as e:
            logger.error(f"{self.band.name}: cannot run wsprd: {e}")
            return False

        elapsed = time.monotonic() - start
        if result.returncode != 0:
            stderr = result.stderr.decode(errors='replace').strip()
            logger.warning(f"{self.band.name}: wsprd exited with status {result.returncode}"
                           + (f": {stderr[:200]}" if stderr else ""))
            return False

        logger.info(f"{self.band.name}: wsprd completed in {elapsed:.1f}s")
        return True

    def _publish_spots(self, spots: List[Spot]) -> None:
        with self._lock:
            publisher = self._publisher
            prefix = self._topic_prefix_override

        published = 0
        for spot in spots:
            enriched = enrich(spot, self.cty)
            if not self.quiet:
                logger.info(f"{self.band.name}: {spot.callsign} {spot.grid_locator} {spot.reported_power_dbm}dBm "
                            f"SNR {spot.snr_db} {enriched.info.country}")
            if publisher is None:
                continue
            try:
                publisher.publish_spot(enriched, self.band_label, self.dial_frequency_hz, prefix)
                published += 1
            except PublishError as e:
                logger.warning(f"{self.band.name}: publish failed: {e}")

        with self._lock:
            self._spots_published += published

    # === Files ===

    def _own(self, path: Path) -> None:
        with self._lock:
            self._owned_files.add(path)

    def _disown(self, path: Path, delete: bool = False) -> None:
        if delete:
            self._remove_file(path)
        with self._lock:
            self._owned_files.discard(path)

    def _keep_audio(self) -> bool:
        return self.one_shot or self.decoder.keep_audio

    def _cleanup_task_files(self, task: DecodeTask) -> None:
        """Release a task's files, deleting them unless audio is kept."""
        if not self._keep_audio():
            for path in task.files:
                self._remove_file(path)
        with self._lock:
            self._owned_files.difference_update(task.files)

    def _remove_stale_audio(self) -> None:
        """Delete *_wspr.wav files not owned by a pending or running decode."""
        with self._lock:
            owned = set(self._owned_files)
        for path in self.work_dir.glob(STALE_AUDIO_PATTERN):
            if path in owned:
                continue
            if self._remove_file(path):
                logger.info(f"{self.band.name}: removed old WAV file {path.name}")

    def _remove_file(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"{self.band.name}: cannot remove {path}: {e}")
            return False
