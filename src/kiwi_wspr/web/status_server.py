"""
Status and Configuration HTTP Server for kiwi-wspr.

Exposes the fleet status, the configuration document and a receiver
health cache, and drives live reloads when a new configuration is saved.

Endpoints:
    GET  /health                 - Basic health check (200 OK if running)
    GET  /metrics                - Prometheus-compatible metrics
    GET  /api/status             - Publisher and per-band status
    GET  /api/config             - Current configuration document
    GET  /api/receivers          - Configured receivers
    GET  /api/bands              - Configured bands
    GET  /api/receivers/status   - Cached KiwiSDR /status of each receiver
    POST /api/config/save        - Validate, persist and apply a configuration
    POST /api/publisher/test     - Try a one-off MQTT connection

The older /api/instances, /api/kiwi/status and /api/mqtt/test paths are
served as aliases.

Usage:
    from kiwi_wspr.web import StatusServer

    server = StatusServer(config, "config.yaml", port=8080)
    server.set_manager(manager)
    server.start()
"""

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, asdict
from http.server import HTTPServer, BaseHTTPRequestHandler
from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from ..config import ConfigError, FleetConfig, PublisherSettings, ReceiverConfig, save_config
from ..output.mqtt_publisher import MqttPublisher
from ..timing.cycle import format_rfc3339, utc_now

logger = logging.getLogger(__name__)

RECEIVER_POLL_INTERVAL_S = 10.0
RECEIVER_HTTP_TIMEOUT_S = 5.0
MAX_BODY_BYTES = 1024 * 1024

RECEIVER_STATUS_KEYS = ('status', 'offline', 'name', 'users', 'users_max', 'loc', 'sw_version', 'antenna')

BAND_STATE_VALUES = {'disabled': 0, 'waiting': 1, 'connected': 2, 'failed': 3}


@dataclass
class ReceiverStatus:
    """Parsed KiwiSDR /status page."""
    status: str = ""
    offline: str = ""
    name: str = ""
    users: str = ""
    users_max: str = ""
    loc: str = ""
    sw_version: str = ""
    antenna: str = ""
    last_update: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not data['error']:
            del data['error']
        return data


def parse_receiver_status(text: str) -> ReceiverStatus:
    """Parse the key=value lines served by a KiwiSDR at /status."""
    status = ReceiverStatus(last_update=format_rfc3339(utc_now()))
    for line in text.splitlines():
        key, sep, value = line.partition('=')
        if not sep:
            continue
        key = key.strip()
        if key in RECEIVER_STATUS_KEYS:
            setattr(status, key, value.strip())
    return status


def fetch_receiver_status(host: str, port: int, timeout: float = RECEIVER_HTTP_TIMEOUT_S) -> ReceiverStatus:
    url = f"http://{host}:{port}/status"
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            body = response.read().decode('utf-8', errors='replace')
    except urllib.error.HTTPError as e:
        return ReceiverStatus(error=f"HTTP {e.code}", last_update=format_rfc3339(utc_now()))
    except (urllib.error.URLError, OSError) as e:
        return ReceiverStatus(error=f"Connection failed: {e}", last_update=format_rfc3339(utc_now()))
    return parse_receiver_status(body)


class ReceiverStatusPoller:
    """Background poller that keeps a cache of every enabled receiver's status."""

    def __init__(
        self,
        get_receivers: Callable[[], List[ReceiverConfig]],
        interval: float = RECEIVER_POLL_INTERVAL_S,
        timeout: float = RECEIVER_HTTP_TIMEOUT_S,
        fetch: Callable[[str, int, float], ReceiverStatus] = fetch_receiver_status,
    ):
        self.get_receivers = get_receivers
        self.interval = interval
        self.timeout = timeout
        self.fetch = fetch
        self._cache: Dict[str, ReceiverStatus] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.thread is not None:
            return
        self.thread = threading.Thread(target=self._run, name="ReceiverPoller", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout=self.timeout + 1.0)
            self.thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.exception(f"Receiver status poll failed: {e}")
            self._stop_event.wait(self.interval)

    def poll_once(self) -> None:
        """Poll every enabled receiver concurrently and update the cache."""
        receivers = [r for r in self.get_receivers() if r.enabled]
        threads = []
        for receiver in receivers:
            thread = threading.Thread(
                target=self._poll_receiver,
                args=(receiver,),
                name=f"Poll-{receiver.name}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        for thread in threads:
            thread.join(timeout=self.timeout + 1.0)

    def _poll_receiver(self, receiver: ReceiverConfig) -> None:
        status = self.fetch(receiver.host, receiver.port, self.timeout)
        with self._lock:
            self._cache[receiver.name] = status

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: status.to_dict() for name, status in self._cache.items()}


class StatusRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler; the owning StatusServer is reached via self.server.app."""

    def log_message(self, format, *args):
        """Suppress default HTTP logging for cleaner output."""
        pass

    @property
    def app(self) -> "StatusServer":
        return self.server.app

    def do_GET(self):
        """Handle GET requests."""
        path = urlparse(self.path).path.rstrip('/') or '/'

        if path == '/':
            self._send_json({'service': 'kiwi-wspr', 'endpoints': ENDPOINTS})
        elif path == '/health':
            self._handle_health()
        elif path == '/metrics':
            self._handle_metrics()
        elif path == '/api/status':
            self._send_json(self.app.get_status())
        elif path == '/api/config':
            self._send_json(self.app.config.to_dict())
        elif path in ('/api/receivers', '/api/instances'):
            self._send_json([r.to_dict() for r in self.app.config.receivers])
        elif path == '/api/bands':
            self._send_json([b.to_dict() for b in self.app.config.bands])
        elif path in ('/api/receivers/status', '/api/kiwi/status'):
            self._send_json(self.app.poller.snapshot() if self.app.poller else {})
        elif path in POST_ROUTES:
            self.send_error(405, "Method Not Allowed")
        else:
            self.send_error(404, "Not Found")

    def do_POST(self):
        """Handle POST requests."""
        path = urlparse(self.path).path.rstrip('/')
        handler = POST_ROUTES.get(path)
        if handler is None:
            self.send_error(404, "Not Found")
            return

        body = self._read_json()
        if body is None:
            return
        getattr(self, handler)(body)

    def _read_json(self) -> Optional[Dict[str, Any]]:
        try:
            length = int(self.headers.get('Content-Length', 0))
        except ValueError:
            length = 0
        if length > MAX_BODY_BYTES:
            self._send_json({'status': 'error', 'message': 'Request body too large'}, 413)
            return None
        raw = self.rfile.read(length) if length else b''
        try:
            data = json.loads(raw or b'{}')
        except ValueError as e:
            self._send_json({'status': 'error', 'message': f'Invalid JSON: {e}'}, 400)
            return None
        if not isinstance(data, dict):
            self._send_json({'status': 'error', 'message': 'Expected a JSON object'}, 400)
            return None
        return data

    def _send_json(self, data: Any, status: int = 200):
        """Send JSON response."""
        payload = json.dumps(data, indent=2).encode()
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _handle_health(self):
        """Basic health check - returns 200 if server is running."""
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain')
        self.end_headers()
        self.wfile.write(b'OK\n')

    def _handle_metrics(self):
        """Return Prometheus-compatible metrics."""
        try:
            metrics = format_prometheus_metrics(self.app.get_status(), self.app.uptime_seconds())
        except Exception as e:
            logger.exception(f"Metrics error: {e}")
            self.send_response(500)
            self.send_header('Content-Type', 'text/plain')
            self.end_headers()
            self.wfile.write(f'# Error: {e}\n'.encode())
            return
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain; version=0.0.4')
        self.end_headers()
        self.wfile.write(metrics.encode())

    def _handle_save_config(self, body: Dict[str, Any]):
        try:
            new_config = FleetConfig.from_dict(body)
            # Web-only hosts may have no wsprd installed
            new_config.validate(check_decoder=self.app.manager is not None)
        except ConfigError as e:
            self._send_json({'status': 'error', 'message': f'Invalid configuration: {e}'}, 400)
            return

        result = self.app.apply_config(new_config)
        if not result['persisted']:
            self._send_json(result, 500)
        else:
            self._send_json(result)

    def _handle_publisher_test(self, body: Dict[str, Any]):
        try:
            settings = PublisherSettings.from_dict({**body, 'enabled': True})
        except ConfigError as e:
            self._send_json({'success': False, 'message': str(e)}, 400)
            return
        logger.info(f"Testing MQTT connection to {settings.host}:{settings.port}")
        result = self.app.publisher_tester(settings)
        logger.info(f"MQTT test {'succeeded' if result.get('success') else 'failed'}: {result.get('message')}")
        self._send_json(result)


POST_ROUTES = {
    '/api/config/save': '_handle_save_config',
    '/api/publisher/test': '_handle_publisher_test',
    '/api/mqtt/test': '_handle_publisher_test',
}

ENDPOINTS = [
    'GET /health',
    'GET /metrics',
    'GET /api/status',
    'GET /api/config',
    'GET /api/receivers',
    'GET /api/bands',
    'GET /api/receivers/status',
    'POST /api/config/save',
    'POST /api/publisher/test',
]


def format_prometheus_metrics(status: Dict[str, Any], uptime_seconds: float = 0.0) -> str:
    """Format detailed status as Prometheus metrics."""
    publisher = status.get('publisher', {})
    bands = status.get('bands', [])
    if not isinstance(bands, list):
        bands = []

    lines = [
        '# HELP kiwi_wspr_publisher_connected 1 if the MQTT publisher is connected',
        '# TYPE kiwi_wspr_publisher_connected gauge',
        f'kiwi_wspr_publisher_connected {1 if publisher.get("connected") else 0}',
        '',
        '# HELP kiwi_wspr_bands_active Number of bands with a running job',
        '# TYPE kiwi_wspr_bands_active gauge',
        f'kiwi_wspr_bands_active {sum(1 for b in bands if b.get("state") != "disabled")}',
        '',
        '# HELP kiwi_wspr_uptime_seconds Status server uptime in seconds',
        '# TYPE kiwi_wspr_uptime_seconds gauge',
        f'kiwi_wspr_uptime_seconds {uptime_seconds:.1f}',
    ]

    if bands:
        lines.extend([
            '',
            '# HELP kiwi_wspr_band_state Band state (0=disabled, 1=waiting, 2=connected, 3=failed)',
            '# TYPE kiwi_wspr_band_state gauge',
        ])
        for band in bands:
            value = BAND_STATE_VALUES.get(band.get('state', 'disabled'), 0)
            lines.append(f'kiwi_wspr_band_state{{band="{_label(band.get("name", ""))}"}} {value}')
        lines.extend([
            '',
            '# HELP kiwi_wspr_band_last_decode_count Spots decoded in the last cycle',
            '# TYPE kiwi_wspr_band_last_decode_count gauge',
        ])
        for band in bands:
            lines.append(f'kiwi_wspr_band_last_decode_count{{band="{_label(band.get("name", ""))}"}} '
                         f'{band.get("last_decode_count", 0)}')

    lines.append('')
    return '\n'.join(lines)


def _label(value: str) -> str:
    return str(value).replace('\\', '\\\\').replace('"', '\\"')


class StatusServer:
    """
    HTTP server for status and configuration.

    Runs in a background thread. A bind failure is raised from start()
    so the daemon can exit instead of running blind.
    """

    def __init__(
        self,
        config: FleetConfig,
        config_path: Optional[str] = None,
        port: int = 8080,
        bind_address: str = '0.0.0.0',
        poll_receivers: bool = True,
        publisher_tester: Callable[[PublisherSettings], Dict[str, Any]] = MqttPublisher.test_connection,
    ):
        self.config = config
        self.config_path = config_path
        self.port = port
        self.bind_address = bind_address
        self.publisher_tester = publisher_tester
        self.manager = None
        self.server: Optional[HTTPServer] = None
        self.thread: Optional[threading.Thread] = None
        self.poller: Optional[ReceiverStatusPoller] = None
        if poll_receivers:
            self.poller = ReceiverStatusPoller(lambda: list(self.config.receivers))
        self._lock = threading.Lock()
        self._running = False
        self._start_time = time.time()

    def set_manager(self, manager) -> None:
        """Connect to a CoordinatorManager for status and reloads."""
        self.manager = manager

    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def get_status(self) -> Dict[str, Any]:
        if self.manager is not None:
            return self.manager.detailed_status()
        config = self.config
        return {
            'running': True,
            'receivers': len(config.receivers),
            'bands': len(config.enabled_bands()),
        }

    def apply_config(self, new_config: FleetConfig) -> Dict[str, Any]:
        """
        Persist a validated configuration, then hand it to the manager.

        A reload failure is reported but does not undo the save.
        """
        with self._lock:
            if self.config_path:
                try:
                    save_config(new_config, self.config_path)
                except OSError as e:
                    logger.error(f"Failed to write config: {e}")
                    return {'status': 'error', 'persisted': False, 'reloaded': False,
                            'message': f'Failed to write config: {e}'}
            self.config = new_config

            reloaded = False
            message = 'Configuration saved'
            if self.manager is not None:
                logger.info("Applying configuration changes to running jobs...")
                try:
                    self.manager.reload(new_config)
                    reloaded = True
                    message = 'Configuration saved and applied'
                    logger.info("Configuration changes applied")
                except Exception as e:
                    logger.exception(f"Failed to apply configuration: {e}")
                    message = f'Configuration saved, reload failed: {e}'

        return {'status': 'success', 'persisted': True, 'reloaded': reloaded, 'message': message}

    def start(self) -> None:
        """
        Start the server in a background thread.

        Raises:
            OSError: if the port cannot be bound
        """
        if self._running:
            logger.warning("Status server already running")
            return

        class ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
            daemon_threads = True

        try:
            self.server = ThreadedHTTPServer((self.bind_address, self.port), StatusRequestHandler)
        except OSError as e:
            logger.error(f"Failed to start status server on port {self.port}: {e}")
            raise
        self.server.app = self
        self.port = self.server.server_address[1]
        self._running = True

        self.thread = threading.Thread(
            target=self.server.serve_forever,
            name="StatusServer",
            daemon=True,
        )
        self.thread.start()

        if self.poller is not None:
            self.poller.start()

        logger.info(f"Status server started on http://{self.bind_address}:{self.port}")
        logger.info(f"  GET  /api/status       - Band and publisher status")
        logger.info(f"  GET  /api/config       - Configuration")
        logger.info(f"  POST /api/config/save  - Save and apply configuration")
        logger.info(f"  GET  /metrics          - Prometheus metrics")

    def stop(self) -> None:
        self._running = False
        if self.poller is not None:
            self.poller.stop()
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None
        logger.info("Status server stopped")
