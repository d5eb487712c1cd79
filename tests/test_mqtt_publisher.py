"""
Unit tests for the MQTT spot publisher.

The paho client is replaced by a MagicMock; no broker is needed.
"""

import json
import re
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest


@pytest.fixture
def settings():
    from kiwi_wspr.config import PublisherSettings
    return PublisherSettings(enabled=True, host="broker.example.org", port=1883,
                             topic_prefix="kiwi", qos=1)


@pytest.fixture
def mock_client():
    with patch('kiwi_wspr.output.mqtt_publisher.mqtt.Client') as client_cls:
        client = MagicMock()
        client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
        client.publish.return_value.is_published.return_value = True
        client_cls.return_value = client
        yield client


@pytest.fixture
def enriched(cty):
    from kiwi_wspr.decoding.cty import enrich
    from kiwi_wspr.decoding.spot_parser import parse_spot_line
    return enrich(parse_spot_line("251227 1000  1 -15  0.5  14.097100  W1ABC FN42 30"), cty)


class TestClientId:

    def test_format(self):
        from kiwi_wspr.output.mqtt_publisher import generate_client_id
        assert re.fullmatch(r'kiwi_wspr_[0-9a-f]{16}', generate_client_id())

    def test_random(self):
        from kiwi_wspr.output.mqtt_publisher import generate_client_id
        assert generate_client_id() != generate_client_id()


class TestMqttPublisher:
    """Test publishing through a mocked paho client."""

    def test_start_connects_in_background(self, settings, mock_client):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        publisher = MqttPublisher(settings)
        publisher.start()
        publisher.start()

        mock_client.connect_async.assert_called_once_with("broker.example.org", 1883, keepalive=60)
        mock_client.loop_start.assert_called_once()
        mock_client.reconnect_delay_set.assert_called_once_with(min_delay=10, max_delay=60)
        assert publisher.is_connected() is False

    def test_publish_while_disconnected_raises(self, settings, mock_client, enriched):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher, PublishError

        publisher = MqttPublisher(settings)
        with pytest.raises(PublishError):
            publisher.publish_spot(enriched, "20m", 14097000)
        mock_client.publish.assert_not_called()
        assert publisher.failed_count == 1

    def test_publish_spot(self, settings, mock_client, enriched):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        publisher = MqttPublisher(settings)
        publisher._on_connect(mock_client, None, None, 0, None)
        assert publisher.is_connected()

        publisher.publish_spot(enriched, "20m", 14097000)

        args, kwargs = mock_client.publish.call_args
        topic, payload = args
        assert topic == "kiwi/digital_modes/WSPR/20m"
        assert kwargs == {'qos': 1, 'retain': False}
        data = json.loads(payload)
        assert data['callsign'] == "W1ABC"
        assert data['country'] == "United States"
        assert publisher.published_count == 1

    def test_topic_prefix_override(self, settings, mock_client, enriched):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        publisher = MqttPublisher(settings)
        publisher._on_connect(mock_client, None, None, 0, None)
        publisher.publish_spot(enriched, "20m", 14097000, topic_prefix_override="site2")

        assert mock_client.publish.call_args[0][0] == "site2/digital_modes/WSPR/20m"

    def test_rejected_publish_raises(self, settings, mock_client, enriched):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher, PublishError

        mock_client.publish.return_value.rc = mqtt.MQTT_ERR_NO_CONN
        publisher = MqttPublisher(settings)
        publisher._on_connect(mock_client, None, None, 0, None)

        with pytest.raises(PublishError):
            publisher.publish_spot(enriched, "20m", 14097000)

    def test_connection_lost(self, settings, mock_client):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        publisher = MqttPublisher(settings)
        publisher._on_connect(mock_client, None, None, 0, None)
        publisher._on_disconnect(mock_client, None, None, 7, None)

        assert publisher.is_connected() is False

    def test_disconnect_is_idempotent(self, settings, mock_client, enriched):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher, PublishError

        publisher = MqttPublisher(settings)
        publisher._on_connect(mock_client, None, None, 0, None)
        publisher.publish_spot(enriched, "20m", 14097000)

        publisher.disconnect()
        publisher.disconnect()

        mock_client.disconnect.assert_called_once()
        mock_client.loop_stop.assert_called_once()
        with pytest.raises(PublishError):
            publisher.publish_spot(enriched, "20m", 14097000)

    def test_stats(self, settings, mock_client):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        stats = MqttPublisher(settings).get_stats()
        assert stats['broker'] == "tcp://broker.example.org:1883"
        assert stats['connected'] is False

    def test_stats_from_many_threads(self, settings, mock_client):
        """Every job thread publishes through one publisher; no count is lost."""
        import threading
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher, PublishError

        publisher = MqttPublisher(settings)
        publisher._on_connect(mock_client, None, None, 0, None)
        closed = MqttPublisher(settings)

        def worker():
            for _ in range(500):
                publisher.publish("kiwi/t", "{}")
                try:
                    closed.publish("kiwi/t", "{}")
                except PublishError:
                    pass

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert publisher.get_stats()['published'] == 4000
        assert closed.get_stats()['failed'] == 4000


class TestCreatePublisher:

    def test_disabled_returns_none(self):
        from kiwi_wspr.config import PublisherSettings
        from kiwi_wspr.output.mqtt_publisher import create_publisher
        assert create_publisher(PublisherSettings(enabled=False)) is None

    def test_enabled_starts(self, settings, mock_client):
        from kiwi_wspr.output.mqtt_publisher import create_publisher
        publisher = create_publisher(settings)
        assert publisher is not None
        mock_client.loop_start.assert_called_once()


class TestConnectionTest:
    """Test the one-off connection check."""

    def test_requires_host(self):
        from kiwi_wspr.config import PublisherSettings
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        result = MqttPublisher.test_connection(PublisherSettings(enabled=True))
        assert result == {'success': False, 'message': 'Host is required'}

    def test_connect_error(self, settings, mock_client):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        mock_client.connect.side_effect = ConnectionRefusedError("refused")
        result = MqttPublisher.test_connection(settings)

        assert result['success'] is False
        assert 'refused' in result['message']

    def test_success(self, settings, mock_client):
        from kiwi_wspr.output.mqtt_publisher import MqttPublisher

        def fire_on_connect(*args, **kwargs):
            mock_client.on_connect(mock_client, None, None, 0, None)

        mock_client.loop_start.side_effect = fire_on_connect
        result = MqttPublisher.test_connection(settings, timeout=1.0)

        assert result['success'] is True
        mock_client.disconnect.assert_called_once()
