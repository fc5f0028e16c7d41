"""
Tests for the MQTT subscriber.

paho's network thread is never started: callbacks are invoked directly with
mocked clients and reason codes.
"""
import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mvwatch.services.mqtt_service import MQTTService
from tests.conftest import make_settings

TOPICS = ["/merakimv/ABC123/0", "/merakimv/XYZ789/0"]


def reason(value: int = 0, failure: bool = False) -> MagicMock:
    code = MagicMock()
    code.value = value
    code.is_failure = failure
    code.__str__.return_value = "Success" if value == 0 else "Not authorized"
    return code


def message(topic: str, payload: bytes) -> MagicMock:
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload
    return msg


@pytest.fixture
def service():
    return MQTTService(make_settings(MQTT_USERNAME="user", MQTT_PASSWORD="pass"))


class TestInit:
    """Construction."""

    def test_topics_from_settings(self, service):
        assert service.topics == TOPICS
        assert service.is_connected is False
        assert service.broker == "127.0.0.1:1883"


class TestCallbacks:
    """paho callbacks."""

    def test_on_connect_subscribes_every_topic(self, service):
        client = MagicMock()

        service._on_connect(client, None, {}, reason(0), None)

        assert service.is_connected is True
        assert [c.args[0] for c in client.subscribe.call_args_list] == TOPICS

    def test_on_connect_refused(self, service):
        client = MagicMock()

        service._on_connect(client, None, {}, reason(5), None)

        assert service.is_connected is False
        assert "Connection refused" in service.get_status().last_error
        client.subscribe.assert_not_called()

    def test_on_subscribe_logs_rejection(self, service, caplog):
        with caplog.at_level(logging.ERROR, logger="mvwatch.services.mqtt_service"):
            service._on_subscribe(MagicMock(), None, 1, [reason(0), reason(135, failure=True)], None)
        assert len([r for r in caplog.records if "rejected" in r.getMessage()]) == 1

    @pytest.mark.asyncio
    async def test_on_message_runs_handler_on_loop(self, service):
        handler = MagicMock()
        service._message_handler = handler
        service._loop = asyncio.get_running_loop()

        service._on_message(MagicMock(), None, message(TOPICS[0], b'{"ts":1}'))
        handler.assert_not_called()
        await asyncio.sleep(0)

        handler.assert_called_once_with(TOPICS[0], b'{"ts":1}')
        assert service.get_status().messages_received == 1

    def test_on_message_without_handler_dropped(self, service):
        service._on_message(MagicMock(), None, message(TOPICS[0], b"{}"))
        assert service.get_status().messages_received == 1

    def test_handler_exception_contained(self, service, caplog):
        service._message_handler = MagicMock(side_effect=RuntimeError("boom"))

        with caplog.at_level(logging.ERROR, logger="mvwatch.services.mqtt_service"):
            service._dispatch(TOPICS[0], b"{}")

        assert any("Message handler failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_on_disconnect_schedules_reconnect(self, service):
        service._loop = asyncio.get_running_loop()
        service._connected = True

        with patch.object(service, "_start_reconnect_loop") as start_reconnect:
            service._on_disconnect(MagicMock(), None, MagicMock(), reason(7), None)
            await asyncio.sleep(0)

        assert service.is_connected is False
        assert service.get_status().last_error.startswith("Disconnected")
        start_reconnect.assert_called_once()

    def test_on_disconnect_when_not_connected_does_not_reconnect(self, service):
        service._loop = MagicMock()
        service._on_disconnect(MagicMock(), None, MagicMock(), reason(7), None)
        service._loop.call_soon_threadsafe.assert_not_called()


class TestConnect:
    """Connection lifecycle with a mocked paho client."""

    @pytest.mark.asyncio
    async def test_connect_configures_client(self):
        service = MQTTService(make_settings(MQTT_USERNAME="user", MQTT_PASSWORD="pass", MQTT_USE_TLS=True))

        with patch("mvwatch.services.mqtt_service.mqtt.Client") as client_cls:
            client = client_cls.return_value
            client.connect_async.side_effect = lambda *a, **kw: setattr(service, "_connected", True)

            assert await service.connect() is True

        client.username_pw_set.assert_called_once_with("user", "pass")
        client.tls_set.assert_called_once()
        client.loop_start.assert_called_once()
        client.connect_async.assert_called_once_with("127.0.0.1", 1883, keepalive=60)
        assert client.on_message == service._on_message

    @pytest.mark.asyncio
    async def test_connect_timeout_cleans_up(self, service):
        with patch("mvwatch.services.mqtt_service.mqtt.Client") as client_cls, \
                patch("mvwatch.services.mqtt_service.CONNECTION_TIMEOUT", 0.05):
            client = client_cls.return_value
            with pytest.raises(ConnectionError):
                await service.connect()

        client.loop_stop.assert_called_once()
        assert service._client is None
        assert service.get_status().last_error == "Connection timeout"

    @pytest.mark.asyncio
    async def test_start_falls_back_to_reconnect_loop(self, service):
        with patch.object(service, "connect", AsyncMock(side_effect=ConnectionError("refused"))), \
                patch.object(service, "_start_reconnect_loop") as start_reconnect:
            assert await service.start() is False
        start_reconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_reconnect_loop_retries_until_connected(self, service):
        service._loop = asyncio.get_running_loop()
        attempts = []

        async def connect():
            attempts.append(len(attempts) + 1)
            if len(attempts) < 3:
                raise ConnectionError("refused")
            service._connected = True
            return True

        with patch.object(service, "connect", side_effect=connect), \
                patch("mvwatch.services.mqtt_service.MQTT_RECONNECT_BACKOFF", lambda attempt: 0):
            await service._reconnect_loop()

        assert attempts == [1, 2, 3]
        assert service._reconnect_task is None

    @pytest.mark.asyncio
    async def test_disconnect_stops_client(self, service):
        client = MagicMock()
        service._client = client
        service._connected = True

        await service.disconnect()

        client.loop_stop.assert_called_once()
        client.disconnect.assert_called_once()
        assert service.is_connected is False


class TestStatus:
    """Status snapshot."""

    def test_get_status_before_connect(self, service):
        status = service.get_status()
        assert status.connected is False
        assert status.broker == "127.0.0.1:1883"
        assert status.messages_received == 0
        assert status.last_connected_at is None

    def test_get_status_after_connect(self, service):
        service._reconnect_attempt = 2
        service._on_connect(MagicMock(), None, {}, reason(0), None)

        status = service.get_status()

        assert status.connected is True
        assert status.reconnect_attempt == 0
        assert status.last_error is None
        assert status.last_connected_at is not None
