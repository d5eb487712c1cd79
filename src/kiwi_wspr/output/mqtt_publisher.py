"""
MQTT Spot Publisher for kiwi-wspr.

Publishes enriched WSPR spots as JSON on

    <prefix>/digital_modes/WSPR/<band>

where <prefix> is the receiver's override when set, else the configured
topic prefix.

The client connects in the background and keeps reconnecting (10 s rising
to 60 s) for the lifetime of the publisher, so construction never blocks
on the broker. Publishing while disconnected raises PublishError, which
jobs log and ignore.

Usage:
    publisher = MqttPublisher(settings)
    publisher.start()
    publisher.publish_spot(enriched, "20m", 14097000)
    publisher.disconnect()
"""

import logging
import secrets
import threading
from typing import Any, Dict, List, Optional

import paho.mqtt.client as mqtt

from ..config import PublisherSettings
from ..interfaces.spot import EnrichedSpot, SpotMessage, topic_for

logger = logging.getLogger(__name__)

CLIENT_ID_PREFIX = "kiwi_wspr"
KEEPALIVE_S = 60
CONNECT_TIMEOUT_S = 5.0
RECONNECT_MIN_DELAY_S = 10
RECONNECT_MAX_DELAY_S = 60
CONNECTION_TEST_TIMEOUT_S = 6.0


class PublishError(RuntimeError):
    """A spot could not be handed to the broker."""


def generate_client_id() -> str:
    return f"{CLIENT_ID_PREFIX}_{secrets.token_hex(8)}"


def _create_client(settings: PublisherSettings) -> mqtt.Client:
    client = mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=generate_client_id(),
        protocol=mqtt.MQTTv311,
    )
    if settings.username:
        client.username_pw_set(settings.username, settings.password or None)
    if settings.use_tls:
        client.tls_set()
    client.connect_timeout = CONNECT_TIMEOUT_S
    return client


class MqttPublisher:
    """Shared, thread-safe publisher used by every job."""

    def __init__(self, settings: PublisherSettings):
        self.settings = settings
        self._connected = threading.Event()
        self._lock = threading.Lock()
        self._inflight: List[mqtt.MQTTMessageInfo] = []
        self._started = False
        self._closed = False

        self.published_count = 0
        self.failed_count = 0

        self._client = _create_client(settings)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY_S,
                                         max_delay=RECONNECT_MAX_DELAY_S)

    @property
    def broker(self) -> str:
        scheme = "tls" if self.settings.use_tls else "tcp"
        return f"{scheme}://{self.settings.host}:{self.settings.port}"

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            logger.info(f"MQTT connected to {self.broker}")
            self._connected.set()
        else:
            logger.error(f"MQTT connection refused by {self.broker}: {reason_code}")
            self._connected.clear()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        if reason_code == 0:
            logger.info("MQTT disconnected")
        else:
            logger.warning(f"MQTT connection lost ({reason_code}), will reconnect")

    def start(self) -> None:
        """Begin connecting in the background; returns immediately."""
        with self._lock:
            if self._started:
                return
            self._started = True

        logger.info(f"MQTT connecting to {self.broker}")
        try:
            self._client.connect_async(self.settings.host, self.settings.port, keepalive=KEEPALIVE_S)
        except (OSError, ValueError) as e:
            logger.warning(f"MQTT initial connect to {self.broker} failed: {e} (will retry)")
        self._client.loop_start()

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def publish_spot(self, enriched: EnrichedSpot, band: str, dial_frequency_hz: int,
                     topic_prefix_override: str = "") -> mqtt.MQTTMessageInfo:
        """
        Publish one spot.

        Raises:
            PublishError: if disconnected or the client rejects the message
        """
        message = SpotMessage.from_enriched(enriched, band, dial_frequency_hz)
        prefix = topic_prefix_override or self.settings.topic_prefix
        return self.publish(topic_for(prefix, band), message.to_json())

    def publish(self, topic: str, payload: str) -> mqtt.MQTTMessageInfo:
        if self._closed or not self.is_connected():
            self._count_failure()
            raise PublishError("MQTT not connected")

        info = self._client.publish(topic, payload, qos=self.settings.qos, retain=self.settings.retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._count_failure()
            raise PublishError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")

        with self._lock:
            self._inflight = [i for i in self._inflight if not i.is_published()]
            self._inflight.append(info)
            self.published_count += 1
        logger.debug(f"PUB {topic} {payload[:120]}")
        return info

    def _count_failure(self) -> None:
        with self._lock:
            self.failed_count += 1

    def disconnect(self, grace_s: float = 0.25) -> None:
        """Flush in-flight messages for up to grace_s, then disconnect."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = list(self._inflight)
            self._inflight = []

        for info in pending:
            if info.is_published():
                continue
            try:
                info.wait_for_publish(timeout=grace_s)
            except (RuntimeError, ValueError):
                # Message was never queued on a live connection
                pass

        self._client.disconnect()
        self._client.loop_stop()
        self._connected.clear()
        logger.info(f"MQTT publisher for {self.broker} closed")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            published, failed = self.published_count, self.failed_count
        return {
            'enabled': True,
            'connected': self.is_connected(),
            'broker': self.broker,
            'published': published,
            'failed': failed,
        }

    @classmethod
    def test_connection(cls, settings: PublisherSettings,
                        timeout: float = CONNECTION_TEST_TIMEOUT_S) -> Dict[str, Any]:
        """
        Try a one-off connection (no retry) and report the outcome.

        Returns:
            {'success': bool, 'message': str}
        """
        if not settings.host:
            return {'success': False, 'message': 'Host is required'}

        connected = threading.Event()
        result: Dict[str, Any] = {}

        def on_connect(client, userdata, flags, reason_code, properties):
            if reason_code == 0:
                connected.set()
            else:
                result['error'] = str(reason_code)
                connected.set()

        client = _create_client(settings)
        client.on_connect = on_connect
        broker = f"{settings.host}:{settings.port}"

        try:
            client.connect(settings.host, settings.port, keepalive=KEEPALIVE_S)
        except (OSError, ValueError) as e:
            logger.info(f"MQTT test to {broker} failed: {e}")
            return {'success': False, 'message': f'Connection failed: {e}'}

        client.loop_start()
        try:
            if not connected.wait(timeout):
                return {'success': False, 'message': f'Connection to {broker} timed out'}
            if 'error' in result:
                return {'success': False, 'message': f"Broker refused connection: {result['error']}"}
            return {'success': True, 'message': f'Connected to {broker}'}
        finally:
            client.disconnect()
            client.loop_stop()


def create_publisher(settings: PublisherSettings) -> Optional[MqttPublisher]:
    """Build and start a publisher, or None when publishing is disabled."""
    if not settings.enabled:
        return None
    publisher = MqttPublisher(settings)
    publisher.start()
    return publisher
