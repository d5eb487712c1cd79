"""Output adapters - MQTT spot publisher."""

from .mqtt_publisher import MqttPublisher, PublishError, create_publisher

__all__ = ['MqttPublisher', 'PublishError', 'create_publisher']
