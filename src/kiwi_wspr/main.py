#!/usr/bin/env python3
"""
kiwi-wspr: Multi-Receiver WSPR Spot Ingestion Daemon

Main entry point. Two modes:

Decoder mode (default):
1. Loads the fleet configuration (receivers, bands, decoder, publisher)
2. Starts one record/decode/publish job per enabled band
3. Aligns every job to the 2-minute WSPR cycle
4. Enriches decoded spots with CTY.DAT country data
5. Publishes spots to MQTT and serves status/configuration over HTTP

Standalone mode (--server HOST):
    Records a single audio file from one KiwiSDR and exits.

Usage:
    # Run the daemon
    python -m kiwi_wspr --config config.yaml

    # Record one cycle on every band, keep the audio and exit
    python -m kiwi_wspr --config config.yaml --one-shot

    # Single recording
    python -m kiwi_wspr -s kiwi.example.org -f 14097.0 -d 120 --dir /tmp

Architecture:

    ┌──────────────────────────────────────────────────────────────┐
    │                          kiwi-wspr                            │
    │                                                               │
    │  ┌──────────┐   ┌────────────┐   ┌───────┐   ┌────────────┐  │
    │  │ KiwiSDR  │──▶│  WsprJob   │──▶│ wsprd │──▶│ CTY enrich │  │
    │  │ (N x M)  │   │ per band   │   └───────┘   └─────┬──────┘  │
    │  └──────────┘   └────────────┘                     │         │
    │                       ▲                            ▼         │
    │            CoordinatorManager ◀── StatusServer   MQTT        │
    └──────────────────────────────────────────────────────────────┘
"""

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

# Set up logging before imports that use it
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger('kiwi-wspr')

from . import __version__
from .config import ConfigError, DEFAULT_CONFIG_PATH, FleetConfig, load_config
from .decoding.cty import CtyDatabase
from .engine.coordinator_manager import CoordinatorManager
from .output.mqtt_publisher import create_publisher
from .recording.kiwi_recorder import (
    DEFAULT_RECORDER_PATH,
    DEFAULT_USER,
    KiwiRecorder,
    RecorderError,
    RecordingRequest,
)
from .web.status_server import StatusServer

DEFAULT_WEB_PORT = 8080
STANDALONE_DEFAULT_PORT = 8073
STANDALONE_DEFAULT_FREQ_KHZ = 14097.0
STANDALONE_DEFAULT_DURATION_S = 120


def _log_banner(config: FleetConfig, config_path: str, one_shot: bool):
    bands = config.enabled_bands()
    logger.info("=" * 60)
    logger.info(f"kiwi-wspr {__version__}")
    logger.info(f"  Config: {config_path}")
    logger.info(f"  Receivers: {len(config.receivers)}")
    for receiver in config.receivers:
        state = "" if receiver.enabled else " (disabled)"
        logger.info(f"    {receiver.name}: {receiver.host}:{receiver.port}{state}")
    logger.info(f"  Enabled bands: {len(bands)}")
    for band in bands:
        logger.info(f"    {band.name}: {band.frequency_khz} kHz on {band.receiver_name}")
    logger.info(f"  Decoder: {config.decoder.decoder_path}")
    logger.info(f"  Work root: {config.decoder.work_dir}")
    if config.publisher.enabled:
        logger.info(f"  MQTT: {config.publisher.host}:{config.publisher.port} "
                    f"prefix '{config.publisher.topic_prefix}'")
    else:
        logger.info("  MQTT: disabled")
    if one_shot:
        logger.info("  One-shot: record one cycle per band and exit (keeping WAV files)")
    logger.info("=" * 60)


def run_standalone(args) -> int:
    """Record one file from one receiver. Returns the process exit code."""
    output_dir = Path(args.dir)
    filename = args.filename or f"kiwi_{args.freq:g}_{time.strftime('%Y%m%d_%H%M%S', time.gmtime())}.wav"
    if not filename.lower().endswith('.wav'):
        filename += '.wav'

    request = RecordingRequest(
        host=args.server,
        port=args.port,
        frequency_khz=args.freq,
        duration_s=args.duration,
        output_dir=output_dir,
        filename=filename,
        user=args.user,
        password=args.password,
        modulation=args.mode,
        low_cut_hz=args.lp_cut,
        high_cut_hz=args.hp_cut,
        agc_gain=args.agc_gain,
        compression=args.compression,
        quiet=args.quiet,
    )

    logger.info(f"Recording {args.freq:g} kHz ({args.mode}) from {args.server}:{args.port} "
                f"for {args.duration}s -> {request.output_path}")

    recorder = KiwiRecorder(args.recorder, quiet=args.quiet)
    try:
        handle = recorder(request)
    except RecorderError as e:
        logger.error(f"Failed to start recorder: {e}")
        return 1

    interrupted = []

    def on_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        interrupted.append(signum)
        handle.close()

    signal.signal(signal.SIGTERM, on_signal)
    signal.signal(signal.SIGINT, on_signal)

    # kiwirecorder stops itself at --tlimit; allow some slack for connect and flush
    returncode = handle.wait(timeout=args.duration + 30)
    if returncode is None:
        logger.warning("Recorder overran its time limit, stopping it")
    handle.close()

    if interrupted:
        return 0
    if not request.output_path.exists():
        logger.error(f"Recording error: no file written at {request.output_path}")
        return 1
    logger.info("Recording completed successfully")
    return 0


def run_decoder(args) -> int:
    """Run the multi-band WSPR daemon. Returns the process exit code."""
    logger.info(f"WSPR decoder mode: loading config from {args.config}")

    try:
        config = load_config(args.config, check_decoder=not args.web_only)
    except ConfigError as e:
        logger.error(f"Failed to load config: {e}")
        return 1

    if not args.debug:
        logging.getLogger().setLevel(config.logging.log_level)

    _log_banner(config, args.config, args.one_shot)

    if args.web_only:
        server = StatusServer(config, args.config, port=args.web_port)
        try:
            server.start()
        except OSError:
            return 1
        logger.info("Running in web-only mode (no decoding)")
        return _wait_for_signal(server=server)

    logger.info("Loading CTY database...")
    try:
        cty = CtyDatabase.load(config.decoder.cty_path)
    except OSError as e:
        logger.error(f"Failed to load CTY database: {e}")
        return 1

    work_root = Path(config.decoder.work_dir)
    try:
        work_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create work directory {work_root}: {e}")
        return 1

    publisher = create_publisher(config.publisher)
    manager = CoordinatorManager(config, publisher=publisher, cty=cty, one_shot=args.one_shot)

    server = None
    if args.web_port > 0:
        server = StatusServer(config, args.config, port=args.web_port)
        server.set_manager(manager)
        try:
            server.start()
        except OSError:
            manager.shutdown()
            return 1

    try:
        started = manager.start_all()
        if started == 0:
            logger.info("No bands running, waiting for configuration via the status server...")

        if args.one_shot:
            logger.info("Waiting for one-shot cycle to complete...")
            manager.wait_for_one_shot()
            logger.info("One-shot cycle complete, exiting...")
            return 0

        return _wait_for_signal(server=None)
    finally:
        manager.shutdown()
        if server:
            server.stop()
        logger.info("Shutdown complete")


def _wait_for_signal(server=None) -> int:
    """Block until SIGINT/SIGTERM."""
    running = [True]

    def on_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        running[0] = False

    signal.signal(signal.SIGTERM, on_signal)
    signal.signal(signal.SIGINT, on_signal)

    try:
        while running[0]:
            time.sleep(1)
    finally:
        if server:
            server.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='kiwi-wspr',
        description='kiwi-wspr: Multi-Receiver WSPR Spot Ingestion Daemon',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the daemon with the status server on port 8080
    kiwi-wspr --config config.yaml

    # Status/configuration server only
    kiwi-wspr --config config.yaml --web-only

    # One cycle on every enabled band, keep the WAV files, then exit
    kiwi-wspr --config config.yaml --one-shot

    # Standalone: record 2 minutes of 20m WSPR into /tmp
    kiwi-wspr -s kiwi.example.org -f 14097.0 -d 120 --dir /tmp
        """
    )

    parser.add_argument(
        '-v', '--version',
        action='store_true',
        help='Print version and exit'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    decoder = parser.add_argument_group('decoder mode')
    decoder.add_argument(
        '--config', '-c',
        default=DEFAULT_CONFIG_PATH,
        help=f'Path to YAML or TOML configuration file (default: {DEFAULT_CONFIG_PATH})'
    )
    decoder.add_argument(
        '--web-port',
        type=int,
        default=DEFAULT_WEB_PORT,
        help=f'HTTP port for the status server (default: {DEFAULT_WEB_PORT}, 0 to disable)'
    )
    decoder.add_argument(
        '--web-only',
        action='store_true',
        help='Run only the status/configuration server, no decoding'
    )
    decoder.add_argument(
        '--one-shot',
        action='store_true',
        help='Record and decode one cycle per band, keep the WAV files, then exit'
    )

    standalone = parser.add_argument_group('standalone recording mode')
    standalone.add_argument(
        '-s', '--server',
        help='KiwiSDR host; selects standalone recording mode'
    )
    standalone.add_argument(
        '-p', '--port',
        type=int,
        default=STANDALONE_DEFAULT_PORT,
        help=f'KiwiSDR port (default: {STANDALONE_DEFAULT_PORT})'
    )
    standalone.add_argument(
        '-f', '--freq',
        type=float,
        default=STANDALONE_DEFAULT_FREQ_KHZ,
        help=f'Dial frequency in kHz (default: {STANDALONE_DEFAULT_FREQ_KHZ})'
    )
    standalone.add_argument(
        '-m', '--mode',
        default='usb',
        help='Modulation (default: usb)'
    )
    standalone.add_argument(
        '-u', '--user',
        default=DEFAULT_USER,
        help=f'User name shown on the KiwiSDR (default: {DEFAULT_USER})'
    )
    standalone.add_argument(
        '-w', '--password',
        default='',
        help='KiwiSDR password'
    )
    standalone.add_argument(
        '-d', '--duration',
        type=int,
        default=STANDALONE_DEFAULT_DURATION_S,
        help=f'Recording duration in seconds (default: {STANDALONE_DEFAULT_DURATION_S})'
    )
    standalone.add_argument(
        '--dir',
        default='.',
        help='Output directory (default: current directory)'
    )
    standalone.add_argument(
        '--filename',
        help='Output filename (default: derived from frequency and time)'
    )
    standalone.add_argument(
        '-L', '--lp-cut',
        type=int,
        default=300,
        help='Passband low cut in Hz (default: 300)'
    )
    standalone.add_argument(
        '-H', '--hp-cut',
        type=int,
        default=2700,
        help='Passband high cut in Hz (default: 2700)'
    )
    standalone.add_argument(
        '-g', '--agc-gain',
        type=int,
        default=-1,
        help='Manual gain in dB; -1 keeps AGC on (default: -1)'
    )
    standalone.add_argument(
        '--compression',
        action='store_true',
        help='Request ADPCM compression from the KiwiSDR'
    )
    standalone.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Suppress recorder output'
    )
    standalone.add_argument(
        '--recorder',
        default=DEFAULT_RECORDER_PATH,
        help=f'Path to kiwirecorder.py (default: {DEFAULT_RECORDER_PATH})'
    )

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"kiwi_wspr {__version__}")
        return

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.server:
        sys.exit(run_standalone(args))

    sys.exit(run_decoder(args))


if __name__ == '__main__':
    main()
