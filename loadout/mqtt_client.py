"""MQTT change notifications for synchronization spaces."""

import asyncio
import json
import logging
from typing import Any

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .sync.remote import ChangeCallback, Subscription

logger = logging.getLogger(__name__)


class MQTTNotifier:
    """Publishes pushed snapshots and delivers them to subscribers.

    Each space maps to the topic ``<topic_prefix>/<space>``. Messages arrive
    on paho's network thread and are handed to the asyncio loop before any
    callback runs.
    """

    def __init__(self, config: MQTTConfig):
        self.config = config

        # Callbacks per topic
        self._callbacks: dict[str, list[ChangeCallback]] = {}

        # Paho MQTT client
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect

        # Connection state
        self._connected = False
        self._started = False
        self._loop: asyncio.AbstractEventLoop | None = None

    def topic_for(self, space: str) -> str:
        return f"{self.config.topic_prefix.rstrip('/')}/{space}"

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")

            # Resubscribe after reconnects
            for topic in self._callbacks:
                client.subscribe(topic, qos=1)
                logger.debug(f"Subscribed to topic: {topic}")
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Handle incoming message on the network thread."""
        try:
            payload = json.loads(msg.payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.debug(f"Ignoring undecodable message on {msg.topic}")
            payload = None

        if not isinstance(payload, dict):
            payload = None

        if self._loop and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._dispatch, msg.topic, payload)

    def _dispatch(self, topic: str, payload: dict[str, Any] | None) -> None:
        """Run callbacks for topic on the event loop."""
        for callback in list(self._callbacks.get(topic, [])):
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Change callback failed for {topic}: {e}", exc_info=True)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def connect(self) -> bool:
        """Connect to the MQTT broker.

        Returns:
            True if connection successful.
        """
        if self._connected:
            return True

        self._loop = asyncio.get_running_loop()

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            if not self._started:
                self._client.loop_start()
                self._started = True

            # Wait for connection
            for _ in range(50):  # 5 second timeout
                if self._connected:
                    return True
                await asyncio.sleep(0.1)

            logger.error("Timeout waiting for MQTT connection")
            return False

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    async def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        if self._started:
            self._client.loop_stop()
            self._started = False
        self._client.disconnect()
        self._connected = False
        self._callbacks.clear()

    async def publish(self, space: str, payload: dict[str, Any]) -> bool:
        """Publish a snapshot document for space.

        Never connects inline; until subscribe() has connected, nothing is
        published.

        Returns:
            True if the message was handed to the broker connection.
        """
        if not self._connected:
            return False

        result = self._client.publish(self.topic_for(space), json.dumps(payload), qos=1)
        return result.rc == mqtt.MQTT_ERR_SUCCESS

    async def subscribe(self, space: str, on_change: ChangeCallback) -> Subscription:
        """Subscribe to snapshot notifications for space.

        Raises:
            ConnectionError: If the broker cannot be reached.
        """
        if not await self.connect():
            raise ConnectionError(
                f"MQTT broker {self.config.broker}:{self.config.port} unreachable"
            )

        topic = self.topic_for(space)
        callbacks = self._callbacks.setdefault(topic, [])
        if not callbacks:
            self._client.subscribe(topic, qos=1)
            logger.info(f"Subscribed to topic: {topic}")
        callbacks.append(on_change)

        def release() -> None:
            if on_change in callbacks:
                callbacks.remove(on_change)
            if not callbacks:
                self._callbacks.pop(topic, None)
                if self._connected:
                    self._client.unsubscribe(topic)

        return Subscription(release)
