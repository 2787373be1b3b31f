"""Tests for MQTT change notifications."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from loadout.config import MQTTConfig
from loadout.mqtt_client import MQTTNotifier


def make_message(topic: str, payload: bytes) -> MagicMock:
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload
    return msg


@pytest.fixture
def notifier():
    return MQTTNotifier(MQTTConfig(enabled=True, topic_prefix="shop/sync/"))


class TestMQTTNotifier:
    """Tests for MQTTNotifier without a broker."""

    def test_topic_for(self, notifier):
        """Test the per-space topic."""
        assert notifier.topic_for("default") == "shop/sync/default"

    def test_dispatch_runs_callbacks(self, notifier):
        """Test that callbacks for a topic receive the payload."""
        received = []
        notifier._callbacks["shop/sync/default"] = [received.append]

        notifier._dispatch("shop/sync/default", {"updatedAt": 1})
        notifier._dispatch("shop/sync/other", {"updatedAt": 2})

        assert received == [{"updatedAt": 1}]

    def test_dispatch_survives_callback_error(self, notifier):
        """Test that a failing callback does not stop the others."""
        received = []

        def broken(payload):
            raise RuntimeError("boom")

        notifier._callbacks["shop/sync/default"] = [broken, received.append]

        notifier._dispatch("shop/sync/default", None)

        assert received == [None]

    @pytest.mark.asyncio
    async def test_handle_message_hands_off_to_loop(self, notifier):
        """Test that network-thread messages are delivered on the loop."""
        received = []
        notifier._callbacks["shop/sync/default"] = [received.append]
        notifier._loop = asyncio.get_running_loop()

        payload = {"updatedAt": 5, "values": {}}
        notifier._handle_message(
            None, None, make_message("shop/sync/default", json.dumps(payload).encode())
        )
        assert received == []

        await asyncio.sleep(0.01)
        assert received == [payload]

    @pytest.mark.asyncio
    async def test_undecodable_message_delivers_none(self, notifier):
        """Test that garbage payloads arrive as None so the engine pulls."""
        received = []
        notifier._callbacks["shop/sync/default"] = [received.append]
        notifier._loop = asyncio.get_running_loop()

        notifier._handle_message(None, None, make_message("shop/sync/default", b"\xff"))
        notifier._handle_message(None, None, make_message("shop/sync/default", b"[1, 2]"))
        await asyncio.sleep(0.01)

        assert received == [None, None]

    @pytest.mark.asyncio
    async def test_subscribe_unreachable_broker(self, notifier):
        """Test that subscribe raises when the broker is down."""
        with patch.object(notifier, "connect", new=AsyncMock(return_value=False)):
            with pytest.raises(ConnectionError):
                await notifier.subscribe("default", lambda payload: None)

    @pytest.mark.asyncio
    async def test_subscribe_and_release(self, notifier):
        """Test topic subscription bookkeeping."""
        notifier._client = MagicMock()
        notifier._connected = True

        first = await notifier.subscribe("default", lambda payload: None)
        second = await notifier.subscribe("default", lambda payload: None)

        notifier._client.subscribe.assert_called_once_with("shop/sync/default", qos=1)

        first.close()
        notifier._client.unsubscribe.assert_not_called()
        second.close()
        notifier._client.unsubscribe.assert_called_once_with("shop/sync/default")

    @pytest.mark.asyncio
    async def test_publish(self, notifier):
        """Test that pushed payloads are published as JSON."""
        notifier._client = MagicMock()
        notifier._client.publish.return_value = MagicMock(rc=0)
        notifier._connected = True

        assert await notifier.publish("default", {"updatedAt": 1}) is True

        notifier._client.publish.assert_called_once_with(
            "shop/sync/default", json.dumps({"updatedAt": 1}), qos=1
        )

    @pytest.mark.asyncio
    async def test_publish_without_broker(self, notifier):
        """Test that publishing offline reports failure without connecting."""
        with patch.object(notifier, "connect", new=AsyncMock(return_value=True)) as connect:
            assert await notifier.publish("default", {}) is False

        connect.assert_not_awaited()
