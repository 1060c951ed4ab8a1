"""MQTT broadcasting of index queue events.

Workers announce each processed batch and every search engine outage on one
topic, so dashboards can follow queue progress across worker processes.

Payload:
    {"event_type": "batch_processed", "timestamp": <epoch ms>,
     "data": {"class_names": [...], "size": 10, "processed": 9}}
"""

import json
import logging
import time
from collections.abc import Sequence
from typing import Any, Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

BATCH_PROCESSED = "batch_processed"
ENGINE_UNAVAILABLE = "engine_unavailable"


class QueueEventBroadcaster:
    """Queue events layered over a transport specific publish_event."""

    def connect(self) -> bool:
        raise NotImplementedError

    def disconnect(self) -> None:
        raise NotImplementedError

    def publish_event(self, event_type: str, data: dict[str, Any]) -> bool:
        raise NotImplementedError

    def publish_batch_processed(
        self, class_names: Sequence[str], size: int, processed: int
    ) -> bool:
        """Announce a finished batch of size claimed entries."""
        return self.publish_event(
            BATCH_PROCESSED,
            {"class_names": list(class_names), "size": size, "processed": processed},
        )

    def publish_engine_unavailable(
        self, class_names: Sequence[str], processed: int, error: BaseException
    ) -> bool:
        """Announce that processing stopped because the search engine is down."""
        return self.publish_event(
            ENGINE_UNAVAILABLE,
            {"class_names": list(class_names), "processed": processed, "error": str(error)},
        )


class MQTTBroadcaster(QueueEventBroadcaster):
    """Publishes queue events to an MQTT topic with QoS 1."""

    def __init__(self, broker: str, port: int, topic: str, keepalive: int = 60):
        self.broker = broker
        self.port = port
        self.topic = topic
        self.keepalive = keepalive
        self.client: Optional[mqtt.Client] = None
        self.connected = False

    def connect(self) -> bool:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        try:
            client.connect(self.broker, self.port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            logger.warning(f"MQTT broker {self.broker}:{self.port} unreachable: {e}")
            return False
        client.loop_start()
        self.client = client
        self.connected = True
        return True

    def disconnect(self) -> None:
        if self.client is None:
            return
        self.client.loop_stop()
        self.client.disconnect()
        self.client = None
        self.connected = False

    def publish_event(self, event_type: str, data: dict[str, Any]) -> bool:
        if not self.connected or self.client is None:
            logger.debug(f"Not connected, dropping {event_type} event")
            return False
        message = {
            "event_type": event_type,
            "timestamp": int(time.time() * 1000),
            "data": data,
        }
        try:
            info = self.client.publish(self.topic, json.dumps(message), qos=1)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to publish {event_type} event: {e}")
            return False
        return info.rc == mqtt.MQTT_ERR_SUCCESS

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self.connected = not reason_code.is_failure
        if not self.connected:
            logger.warning(f"MQTT connection refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False


class NoOpBroadcaster(QueueEventBroadcaster):
    """Accepts and discards events when broadcasting is disabled."""

    def connect(self) -> bool:
        return True

    def disconnect(self) -> None:
        pass

    def publish_event(self, event_type: str, data: dict[str, Any]) -> bool:
        return True


_broadcaster: Optional[QueueEventBroadcaster] = None


def get_broadcaster(
    broadcast_type: str, broker: str, port: int, topic: str
) -> QueueEventBroadcaster:
    """Get or create the process wide broadcaster.

    Args:
        broadcast_type: "mqtt" publishes to the broker; anything else disables events
    """
    global _broadcaster
    if _broadcaster is None:
        if broadcast_type == "mqtt":
            _broadcaster = MQTTBroadcaster(broker, port, topic)
        else:
            _broadcaster = NoOpBroadcaster()
        _ = _broadcaster.connect()
    return _broadcaster


def shutdown_broadcaster() -> None:
    global _broadcaster
    if _broadcaster is not None:
        _broadcaster.disconnect()
        _broadcaster = None
