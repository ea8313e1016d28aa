"""MQTT transport for line snapshots, with a pause/resume control topic."""

import json
import logging
import threading
import time
from dataclasses import dataclass
from queue import Queue, Empty
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from .config import MQTTConfig, UNSConfig

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10.0
FLUSH_TIMEOUT_S = 2.0


@dataclass
class Message:
    """MQTT message to be published."""

    topic: str
    payload: Dict[str, Any]
    retain: bool = False
    qos: int = 1


class MQTTClient:
    """Queues snapshot messages for a background sender thread.

    Messages are only accepted while connected (or in dry-run mode). On
    disconnect the sender drains what is already queued before stopping, so
    a final status update is not lost.
    """

    # Outside the UNS tree so one subscription controls any line
    CONTROL_ROOT = "prodline-sim"
    RUN_CONTROL_TOPIC = f"{CONTROL_ROOT}/settings/running"
    STATUS_TOPIC = f"{CONTROL_ROOT}/status"

    def __init__(
        self,
        mqtt_config: MQTTConfig,
        uns_config: UNSConfig,
        on_run_toggle: Optional[Callable[[bool], None]] = None,
    ):
        self.mqtt_config = mqtt_config
        self.uns_config = uns_config
        self.on_run_toggle = on_run_toggle

        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._connected_event = threading.Event()
        self._dry_run = False

        self._queue: Queue[Message] = Queue()
        self._sender: Optional[threading.Thread] = None
        self._sending = False

        self._messages_published = 0
        self._messages_dropped = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def messages_published(self) -> int:
        return self._messages_published

    @property
    def messages_dropped(self) -> int:
        return self._messages_dropped

    @property
    def base_topic(self) -> str:
        """UNS path of the line: ``prefix/enterprise/site/line``."""
        uns = self.uns_config
        return f"{uns.topic_prefix}/{uns.enterprise}/{uns.site}/{uns.line}"

    # =========================================================================
    # Connection
    # =========================================================================

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the broker, or pretend to in dry-run mode."""
        self._dry_run = dry_run

        if dry_run:
            logger.info("Dry run mode - messages are logged, not sent")
            self._connected = True
            self._start_sender()
            return True

        cfg = self.mqtt_config
        client = mqtt.Client(
            client_id=cfg.client_id,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        if cfg.username:
            client.username_pw_set(cfg.username, cfg.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._client = client

        logger.info(f"Connecting to MQTT broker {cfg.broker}:{cfg.port}")
        try:
            client.connect(cfg.broker, cfg.port)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

        client.loop_start()
        if not self._connected_event.wait(CONNECT_TIMEOUT_S):
            logger.error(f"No CONNACK from {cfg.broker}:{cfg.port} within {CONNECT_TIMEOUT_S:.0f}s")
            client.loop_stop()
            return False

        client.subscribe(self.RUN_CONTROL_TOPIC, qos=1)
        logger.info(f"Subscribed to control topic: {self.RUN_CONTROL_TOPIC}")
        self._start_sender()
        return True

    def disconnect(self) -> None:
        """Flush queued messages, stop the sender and close the connection."""
        self._sending = False
        if self._sender:
            self._sender.join(timeout=FLUSH_TIMEOUT_S)
            self._sender = None

        if self._client and not self._dry_run:
            self._client.loop_stop()
            self._client.disconnect()

        self._connected = False
        self._connected_event.clear()
        logger.info(
            f"Disconnected from MQTT broker "
            f"({self._messages_published} published, {self._messages_dropped} dropped)"
        )

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(self, topic: str, payload: Dict[str, Any], retain: bool = False) -> bool:
        """Queue a message under the line's base topic."""
        return self._enqueue(f"{self.base_topic}/{topic}", payload, retain)

    def publish_simulator_status(self, running: bool, global_time_ms: float, tick_count: int) -> bool:
        """Queue driver status on the root-level status topic (retained)."""
        status = {
            "running": running,
            "line": self.uns_config.line,
            "global_time_ms": global_time_ms,
            "tick_count": tick_count,
            "messages_published": self._messages_published,
            "messages_dropped": self._messages_dropped,
            "timestamp_ms": int(time.time() * 1000),
        }
        return self._enqueue(self.STATUS_TOPIC, status, retain=True)

    def _enqueue(self, topic: str, payload: Dict[str, Any], retain: bool) -> bool:
        if not self._connected:
            return False
        self._queue.put(Message(topic=topic, payload=payload, retain=retain, qos=self.mqtt_config.qos))
        return True

    def _start_sender(self) -> None:
        self._sending = True
        self._sender = threading.Thread(target=self._send_loop, daemon=True)
        self._sender.start()

    def _send_loop(self) -> None:
        """Send queued messages; after a stop request, drain then exit."""
        while self._sending or not self._queue.empty():
            try:
                msg = self._queue.get(timeout=0.1)
            except Empty:
                continue
            if self._send(msg):
                self._messages_published += 1
            else:
                self._messages_dropped += 1

    def _send(self, msg: Message) -> bool:
        """Hand one message to paho. Returns False if it was not accepted."""
        payload_str = json.dumps(msg.payload)

        if self._dry_run:
            logger.debug(f"[DRY RUN] {msg.topic}: {payload_str[:100]}")
            return True

        if not (self._client and self._connected):
            return False

        try:
            result = self._client.publish(msg.topic, payload_str, qos=msg.qos, retain=msg.retain)
        except (OSError, ValueError) as e:
            logger.error(f"Error publishing to {msg.topic}: {e}")
            return False

        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"Failed to publish to {msg.topic}: {mqtt.error_string(result.rc)}")
            return False
        return True

    # =========================================================================
    # Callbacks
    # =========================================================================

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code == 0:
            self._connected = True
            self._connected_event.set()
            logger.info("Connected to MQTT broker")
        else:
            logger.error(f"Connection refused: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connected = False
        self._connected_event.clear()
        if reason_code != 0:
            logger.warning(f"Unexpected disconnection ({reason_code})")

    def _on_message(self, client, userdata, msg) -> None:
        """Handle run control messages: {"running": true|false}."""
        if msg.topic != self.RUN_CONTROL_TOPIC:
            return
        try:
            payload = json.loads(msg.payload.decode())
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Unreadable control message: {e}")
            return

        running = payload.get("running") if isinstance(payload, dict) else None
        if not isinstance(running, bool):
            logger.warning(f"Ignoring control message without boolean 'running': {payload}")
            return

        logger.info(f"Run control received: running={running}")
        if self.on_run_toggle:
            self.on_run_toggle(running)
