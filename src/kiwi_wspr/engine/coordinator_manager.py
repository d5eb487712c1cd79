"""
Coordinator Manager - owns every WsprJob and the shared publisher.

Jobs are keyed by band name. A reload compares the old and new enabled
band sets:

    band gone, or (frequency_kHz, receiver) changed  -> stop its job
    band new, or (frequency_kHz, receiver) changed   -> start a fresh job
    otherwise                                        -> keep the same job

Publisher settings are compared separately; when they change, the old
publisher is disconnected and the new one is pushed into every surviving
job with update_publisher(). Jobs are never restarted for a publisher
change.

Every job owns <work_root>/<receiver>_<floor(freq_kHz)>. A job is not
started while another live job holds that directory; a stopped job that
still holds it (decode in flight) is waited for first.

One-shot mode records one cycle per band. The barrier tracks the bands
still owing a decode: stopping a band drops it, starting one adds it,
and wait_for_one_shot() returns once none are left.

Usage:
    manager = CoordinatorManager(config, publisher, cty)
    manager.start_all()
    ...
    manager.reload(new_config)
    ...
    manager.shutdown()
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..config import BandConfig, FleetConfig, PublisherSettings
from ..decoding.cty import CtyDatabase
from ..output.mqtt_publisher import create_publisher
from ..timing.cycle import format_rfc3339
from .job_runner import RecordingState, WsprJob

logger = logging.getLogger(__name__)

STAGGER_S = 0.1
PUBLISHER_GRACE_S = 0.25
JOIN_TIMEOUT_S = 5.0

BAND_STATE_NAMES = {
    RecordingState.WAITING: "waiting",
    RecordingState.SUCCESS: "connected",
    RecordingState.FAILED: "failed",
}
DISABLED_STATE = "disabled"


class CoordinatorManager:
    """Fleet supervisor. All public methods are thread-safe."""

    def __init__(
        self,
        config: FleetConfig,
        publisher: Optional[Any] = None,
        cty: Optional[CtyDatabase] = None,
        one_shot: bool = False,
        recorder_factory: Optional[Callable] = None,
        job_factory: Callable[..., WsprJob] = WsprJob,
        publisher_factory: Callable[[PublisherSettings], Optional[Any]] = create_publisher,
        stagger_seconds: float = STAGGER_S,
        join_timeout: float = JOIN_TIMEOUT_S,
    ):
        self.config = config
        self.publisher = publisher
        self.cty = cty
        self.one_shot = one_shot
        self.recorder_factory = recorder_factory
        self.job_factory = job_factory
        self.publisher_factory = publisher_factory
        self.stagger_seconds = stagger_seconds
        self.join_timeout = join_timeout

        # Python has no reader/writer lock; reentrant so stop/start helpers
        # can be shared by start_all, stop_all and reload.
        self._lock = threading.RLock()
        self.jobs: Dict[str, WsprJob] = {}
        # Stopped jobs whose threads may still be using their work directory
        self._retired: List[WsprJob] = []

        # Jobs call back from their decode threads; never take self._lock here
        self._barrier_lock = threading.Lock()
        self._one_shot_pending: Dict[str, int] = {}     # band name -> job serial
        self._one_shot_serial = 0
        self._one_shot_holding = False
        self._one_shot_done = threading.Event()

    # === Job lifecycle ===

    def _topic_prefix_for(self, config: FleetConfig, band: BandConfig) -> str:
        receiver = config.get_receiver(band.receiver_name)
        return receiver.topic_prefix_override if receiver else ""

    def _work_dir_free(self, band: BandConfig) -> bool:
        """Check no other job uses the band's work directory. Caller holds the lock."""
        unique_id = band.work_dir_name
        for name, job in self.jobs.items():
            if job.unique_id == unique_id:
                logger.error(f"Cannot start {band.name}: work directory {unique_id} "
                             f"is in use by {name}")
                return False

        self._retired = [job for job in self._retired if job.is_alive()]
        for job in self._retired:
            if job.unique_id != unique_id:
                continue
            logger.info(f"Waiting for stopped {job!r} to release {unique_id}")
            job.join(self.join_timeout)
            if job.is_alive():
                logger.error(f"Cannot start {band.name}: stopped job still holds {unique_id}")
                return False
        return True

    def _start_job(self, band: BandConfig) -> Optional[WsprJob]:
        """Create and start the job for one band. Caller holds the lock."""
        if band.name in self.jobs:
            logger.warning(f"Job for {band.name} is already running")
            return None

        receiver = self.config.get_receiver(band.receiver_name)
        if receiver is None:
            logger.error(f"Band {band.name} references unknown receiver {band.receiver_name}")
            return None
        if not receiver.enabled:
            logger.info(f"Receiver {receiver.name} is disabled, not starting {band.name}")
            return None
        if not self._work_dir_free(band):
            return None

        on_complete = self._expect_one_shot(band.name) if self.one_shot else None

        kwargs: Dict[str, Any] = dict(
            band=band,
            receiver=receiver,
            decoder=self.config.decoder,
            publisher=self.publisher,
            topic_prefix_override=receiver.topic_prefix_override,
            cty=self.cty,
            one_shot=self.one_shot,
            quiet=self.config.logging.quiet,
            on_one_shot_complete=on_complete,
        )
        if self.recorder_factory is not None:
            kwargs['recorder_factory'] = self.recorder_factory

        job = self.job_factory(**kwargs)
        try:
            job.start()
        except OSError as e:
            logger.error(f"Failed to start job for {band.name}: {e}")
            self._forget_one_shot(band.name)
            return None

        self.jobs[band.name] = job
        logger.info(f"Started job for {band.name} ({band.frequency_khz} kHz on {receiver.name})")
        return job

    def _stop_job(self, name: str) -> None:
        job = self.jobs.pop(name, None)
        if job is not None:
            job.stop()
            self._retired.append(job)
            logger.info(f"Stopped job for {name}")
        self._forget_one_shot(name)

    def _start_bands(self, bands: List[BandConfig]) -> int:
        started = 0
        last_receiver = None
        for band in bands:
            if last_receiver is not None and band.receiver_name == last_receiver:
                time.sleep(self.stagger_seconds)
            if self._start_job(band) is not None:
                started += 1
            last_receiver = band.receiver_name
        return started

    def start_all(self) -> int:
        """
        Start a job for every enabled band, in configuration order.

        Returns:
            Number of jobs started
        """
        with self._lock:
            bands = self.config.enabled_bands()
            if not bands:
                logger.info("No enabled bands configured")
            else:
                logger.info(f"Starting jobs for {len(bands)} bands...")

            self._hold_barrier(reset=True)
            try:
                return self._start_bands(bands)
            finally:
                self._release_barrier()

    def stop_all(self) -> None:
        with self._lock:
            logger.info("Stopping all jobs...")
            for name in list(self.jobs):
                self._stop_job(name)
            self.jobs = {}

    def join_all(self, timeout: Optional[float] = None) -> None:
        """Wait for the threads of every job, running or stopped, to finish."""
        with self._lock:
            jobs = list(self.jobs.values()) + list(self._retired)
        for job in jobs:
            job.join(timeout)

    def shutdown(self, grace_s: float = PUBLISHER_GRACE_S, join_timeout: Optional[float] = None) -> None:
        """Stop every job, let in-flight decodes finish, then disconnect the publisher."""
        self.stop_all()
        self.join_all(self.join_timeout if join_timeout is None else join_timeout)
        with self._lock:
            self._retired = []
            publisher = self.publisher
            self.publisher = None
        if publisher is not None:
            publisher.disconnect(grace_s)

    def get_job(self, name: str) -> Optional[WsprJob]:
        with self._lock:
            return self.jobs.get(name)

    # === Reload ===

    def reload(self, new_config: FleetConfig) -> None:
        """Apply a new configuration snapshot with minimal disruption."""
        with self._lock:
            logger.info("Reloading configuration...")
            old_config = self.config

            old_bands = {b.name: b for b in old_config.enabled_bands()}
            new_bands = {b.name: b for b in new_config.enabled_bands()}

            def changed(name: str) -> bool:
                return old_bands[name].change_key != new_bands[name].change_key

            self._hold_barrier()
            try:
                for name in old_bands:
                    if name not in new_bands or changed(name):
                        if name in self.jobs:
                            logger.info(f"Stopping job for {name} (disabled or changed)")
                        self._stop_job(name)

                self.config = new_config

                publisher_changed = old_config.publisher != new_config.publisher
                if publisher_changed:
                    self._swap_publisher(new_config.publisher)

                # Surviving jobs pick up the new publisher and any receiver prefix change
                for name, job in self.jobs.items():
                    band = new_bands.get(name)
                    if band is None:
                        continue
                    new_prefix = self._topic_prefix_for(new_config, band)
                    old_prefix = self._topic_prefix_for(old_config, old_bands[name]) if name in old_bands else ""
                    if publisher_changed or new_prefix != old_prefix:
                        job.update_publisher(self.publisher, new_prefix)
                        logger.info(f"Updated publisher for {name} with prefix '{new_prefix}'")

                to_start = [b for name, b in new_bands.items()
                            if name not in old_bands or changed(name)]
                self._start_bands(to_start)
            finally:
                self._release_barrier()

            logger.info(f"Reload complete. Running jobs: {len(self.jobs)}")

    def _swap_publisher(self, settings: PublisherSettings) -> None:
        logger.info("Publisher configuration changed, reconnecting...")
        if self.publisher is not None:
            self.publisher.disconnect(PUBLISHER_GRACE_S)
        self.publisher = self.publisher_factory(settings)
        if self.publisher is None:
            logger.info("Publisher disabled")
        else:
            logger.info("Publisher updated")

    # === One-shot barrier ===

    def _hold_barrier(self, reset: bool = False) -> None:
        """Keep the barrier closed while the job set is being changed."""
        with self._barrier_lock:
            if reset:
                self._one_shot_pending = {}
                self._one_shot_done.clear()
            self._one_shot_holding = True

    def _release_barrier(self) -> None:
        with self._barrier_lock:
            self._one_shot_holding = False
            self._check_barrier()

    def _check_barrier(self) -> None:
        """Caller holds self._barrier_lock."""
        if not self.one_shot or self._one_shot_holding or self._one_shot_done.is_set():
            return
        if not self._one_shot_pending:
            logger.info("One-shot: every band has completed")
            self._one_shot_done.set()

    def _expect_one_shot(self, name: str) -> Callable[[], None]:
        """Register a band as owing a decode; returns the job's completion callback."""
        with self._barrier_lock:
            self._one_shot_serial += 1
            serial = self._one_shot_serial
            self._one_shot_pending[name] = serial
        return lambda: self.notify_one_shot_complete(name, serial)

    def _forget_one_shot(self, name: str) -> None:
        with self._barrier_lock:
            if self._one_shot_pending.pop(name, None) is not None:
                logger.info(f"One-shot: no longer waiting for {name}")
            self._check_barrier()

    def notify_one_shot_complete(self, name: Optional[str] = None, serial: Optional[int] = None) -> None:
        """
        Record that a band finished its one-shot decode.

        A notification from a job that has since been replaced, or a repeat
        for a band already completed, is ignored. Without a name, the
        earliest band still pending is marked complete.
        """
        with self._barrier_lock:
            if name is None:
                name = next(iter(self._one_shot_pending), None)
                if name is None:
                    return
            current = self._one_shot_pending.get(name)
            if current is None or (serial is not None and serial != current):
                return
            del self._one_shot_pending[name]
            logger.info(f"One-shot progress: {name} completed, "
                        f"{len(self._one_shot_pending)} bands remaining")
            self._check_barrier()

    def one_shot_pending(self) -> List[str]:
        with self._barrier_lock:
            return list(self._one_shot_pending)

    def wait_for_one_shot(self, timeout: Optional[float] = None) -> bool:
        """Block until every one-shot job has decoded once. False on timeout."""
        return self._one_shot_done.wait(timeout)

    # === Status ===

    def detailed_status(self) -> Dict[str, Any]:
        with self._lock:
            config = self.config
            publisher = self.publisher
            jobs = dict(self.jobs)

        connected = False
        if publisher is not None and config.publisher.enabled:
            connected = publisher.is_connected()

        bands = []
        for band in config.bands:
            entry = {
                'name': band.name,
                'frequency': band.frequency_khz,
                'instance': band.receiver_name,
                'enabled': band.enabled,
                'state': DISABLED_STATE,
                'last_decode_time': None,
                'last_decode_count': 0,
                'error': "",
            }
            job = jobs.get(band.name)
            if job is not None:
                status = job.status()
                entry['state'] = BAND_STATE_NAMES[status.recording_state]
                if status.recording_state == RecordingState.FAILED:
                    entry['error'] = status.last_error
                if status.last_decode_time is not None:
                    entry['last_decode_time'] = format_rfc3339(status.last_decode_time)
                entry['last_decode_count'] = status.last_decode_count
            bands.append(entry)

        return {
            'publisher': {
                'enabled': config.publisher.enabled,
                'connected': connected,
            },
            'bands': bands,
        }

    def get_status(self) -> Dict[str, Any]:
        """Short summary: running job count and band names."""
        with self._lock:
            return {
                'running_jobs': len(self.jobs),
                'active_bands': sorted(self.jobs),
                'one_shot': self.one_shot,
            }

    def job_statuses(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            jobs = dict(self.jobs)
        return {name: job.status().to_dict() for name, job in jobs.items()}
