"""
MQTT Subscriber for MV Sense counts

Provides MQTT client management with:
- Connection to the broker with optional username/password and TLS
- Subscription to every configured camera topic on (re)connect
- Hand-off of each received message to the asyncio loop
- Auto-reconnect with exponential backoff (1s → 60s max)
- Connection status tracking and metrics

Threading:
    paho network thread            asyncio loop thread
    _on_message(topic, payload) ──call_soon_threadsafe──> message_handler(topic, payload)

Uses paho-mqtt 2.0+ with CallbackAPIVersion.VERSION2.
"""
import asyncio
import logging
import ssl
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import paho.mqtt.client as mqtt

from mvwatch.core.config import Settings, settings as default_settings
from mvwatch.core.metrics import record_mqtt_reconnect_attempt, update_mqtt_connection_status
from mvwatch.core.retry import MQTT_RECONNECT_BACKOFF
from mvwatch.schemas.status import BrokerStatus

logger = logging.getLogger(__name__)

# Connection timeout in seconds
CONNECTION_TIMEOUT = 10.0

# Keep-alive interval in seconds
KEEPALIVE_SECONDS = 60

# Counts are published continuously; losing one is harmless
SUBSCRIBE_QOS = 0

MessageHandler = Callable[[str, bytes], Any]


class MQTTService:
    """
    MQTT connection manager for the camera counts feed.

    Attributes:
        topics: Topics subscribed on every connect
        _client: Paho MQTT client instance
        _connected: Connection status flag
        _should_reconnect: Whether auto-reconnect is enabled
        _reconnect_attempt: Current reconnect attempt number
        _loop: Event loop that receives messages
        _lock: Thread lock for status updates
    """

    def __init__(self, config: Optional[Settings] = None, message_handler: Optional[MessageHandler] = None):
        """Initialize without connecting."""
        self._config = config or default_settings
        self.topics: List[str] = self._config.mqtt_camera_topics
        self._message_handler = message_handler
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._should_reconnect = True
        self._reconnect_attempt = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self._messages_received = 0
        self._last_error: Optional[str] = None
        self._last_connected_at: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def broker(self) -> str:
        return f"{self._config.MQTT_BROKER_HOST}:{self._config.MQTT_BROKER_PORT}"

    async def start(self) -> bool:
        """
        Connect and subscribe; on failure keep retrying in the background.

        Returns:
            True if the first connection attempt succeeded
        """
        self._loop = asyncio.get_running_loop()
        self._should_reconnect = True

        logger.info(
            f"Connecting to MQTT broker {self.broker}",
            extra={"event_type": "mqtt_init_start", "broker": self.broker, "topics": self.topics}
        )

        try:
            await self.connect()
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(
                f"MQTT initial connection failed, will retry: {e}",
                extra={"event_type": "mqtt_init_failed", "error": str(e)}
            )
            self._start_reconnect_loop()
            return False

    async def connect(self) -> bool:
        """
        Establish connection to the broker.

        Raises:
            ConnectionError: If the broker does not accept the connection in time
            OSError: If the socket cannot be opened
        """
        if self._connected:
            logger.debug("MQTT already connected")
            return True

        client_id = f"mvwatch-{uuid.uuid4().hex[:8]}"
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311
        )

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_subscribe = self._on_subscribe
        self._client.on_message = self._on_message

        if self._config.MQTT_USERNAME:
            self._client.username_pw_set(self._config.MQTT_USERNAME, self._config.MQTT_PASSWORD or None)
            logger.debug("MQTT authentication configured")

        if self._config.MQTT_USE_TLS:
            self._client.tls_set(cert_reqs=ssl.CERT_REQUIRED)
            logger.debug("MQTT TLS enabled")

        self._client.loop_start()

        try:
            self._client.connect_async(
                self._config.MQTT_BROKER_HOST,
                self._config.MQTT_BROKER_PORT,
                keepalive=KEEPALIVE_SECONDS
            )

            if not await self._wait_for_connection(CONNECTION_TIMEOUT):
                raise ConnectionError("Connection timeout")

            self._reconnect_attempt = 0
            logger.info(
                "MQTT connected successfully",
                extra={"event_type": "mqtt_connected", "broker": self.broker, "client_id": client_id}
            )
            return True

        except (ConnectionError, OSError) as e:
            self._last_error = str(e)
            logger.warning(
                f"MQTT connection failed: {e}",
                extra={"event_type": "mqtt_connection_failed", "broker": self.broker, "error": str(e)}
            )
            self._cleanup_client()
            raise

    async def _wait_for_connection(self, timeout: float) -> bool:
        """Wait for connection to establish with timeout."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        while not self._connected:
            if loop.time() - start > timeout:
                return False
            await asyncio.sleep(0.1)
        return True

    def _cleanup_client(self) -> None:
        """Stop the network thread and drop the client."""
        if self._client:
            client, self._client = self._client, None
            client.loop_stop()
            client.disconnect()

    async def disconnect(self) -> None:
        """
        Gracefully disconnect from the broker.

        Stops auto-reconnect and closes the connection cleanly.
        """
        self._should_reconnect = False

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self._client:
            logger.info("Disconnecting MQTT", extra={"event_type": "mqtt_disconnecting"})
            self._cleanup_client()

        with self._lock:
            self._connected = False
        update_mqtt_connection_status(False)
        logger.info("MQTT disconnected", extra={"event_type": "mqtt_disconnected"})

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: dict,
        reason_code: mqtt.ReasonCode,
        properties: Any
    ) -> None:
        """
        Callback when connection is established; (re)subscribes every topic.

        Args:
            client: MQTT client instance
            userdata: User data (unused)
            flags: Connection flags
            reason_code: Connection result code
            properties: MQTT 5.0 properties (unused)
        """
        if reason_code == mqtt.CONNACK_ACCEPTED or reason_code.value == 0:
            with self._lock:
                self._connected = True
                self._last_connected_at = datetime.now(timezone.utc)
                self._last_error = None
                self._reconnect_attempt = 0

            update_mqtt_connection_status(True)

            for topic in self.topics:
                client.subscribe(topic, qos=SUBSCRIBE_QOS)
                logger.info(
                    f"MQTT subscribed to {topic}",
                    extra={"event_type": "mqtt_subscribe", "topic": topic}
                )
        else:
            error_msg = f"Connection refused: {reason_code}"
            with self._lock:
                self._connected = False
                self._last_error = error_msg

            update_mqtt_connection_status(False)

            logger.warning(
                "MQTT connection refused",
                extra={"event_type": "mqtt_connection_refused", "reason_code": str(reason_code)}
            )

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: mqtt.DisconnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: Any
    ) -> None:
        """
        Callback when disconnected from broker (network thread).

        Args:
            client: MQTT client instance
            userdata: User data (unused)
            disconnect_flags: Disconnect flags
            reason_code: Disconnect reason code
            properties: MQTT 5.0 properties (unused)
        """
        was_connected = self._connected

        with self._lock:
            self._connected = False
            if reason_code != mqtt.MQTT_ERR_SUCCESS and reason_code.value != 0:
                self._last_error = f"Disconnected: {reason_code}"

        update_mqtt_connection_status(False)

        logger.info(
            "MQTT disconnected",
            extra={
                "event_type": "mqtt_on_disconnect",
                "reason_code": str(reason_code),
                "was_connected": was_connected
            }
        )

        if was_connected and self._should_reconnect and self._loop:
            self._loop.call_soon_threadsafe(self._start_reconnect_loop)

    def _on_subscribe(
        self,
        client: mqtt.Client,
        userdata: Any,
        mid: int,
        reason_code_list: List[mqtt.ReasonCode],
        properties: Any
    ) -> None:
        """Callback when the broker acknowledges a subscription."""
        for reason_code in reason_code_list:
            if reason_code.is_failure:
                logger.error(
                    f"MQTT subscription rejected: {reason_code}",
                    extra={"event_type": "mqtt_subscribe_rejected", "message_id": mid}
                )

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        """Callback for every received message (network thread)."""
        with self._lock:
            self._messages_received += 1

        if self._message_handler is None or self._loop is None:
            logger.debug(
                f"Dropping message on {message.topic}: no handler registered",
                extra={"event_type": "mqtt_message_dropped", "topic": message.topic}
            )
            return

        self._loop.call_soon_threadsafe(self._dispatch, message.topic, bytes(message.payload))

    def _dispatch(self, topic: str, payload: bytes) -> None:
        """Run the message handler on the event loop; errors stay local to the message."""
        try:
            self._message_handler(topic, payload)
        except Exception as e:
            logger.error(
                f"Message handler failed for topic {topic}: {e}",
                extra={"event_type": "mqtt_handler_error", "topic": topic},
                exc_info=True
            )

    def _start_reconnect_loop(self) -> None:
        """Start background reconnect loop."""
        if self._loop and not self._reconnect_task:
            self._reconnect_task = self._loop.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """
        Background reconnect loop with exponential backoff.

        Attempts to reconnect until successful or stopped.
        Backoff: 1s, 2s, 4s, 8s, 16s, 32s, 60s (max)
        """
        while self._should_reconnect and not self._connected:
            delay = MQTT_RECONNECT_BACKOFF(self._reconnect_attempt + 1)

            logger.info(
                f"MQTT reconnect attempt {self._reconnect_attempt + 1} in {delay}s",
                extra={
                    "event_type": "mqtt_reconnect_scheduled",
                    "attempt": self._reconnect_attempt + 1,
                    "delay_seconds": delay
                }
            )

            await asyncio.sleep(delay)

            if not self._should_reconnect:
                break

            self._reconnect_attempt += 1
            record_mqtt_reconnect_attempt()

            try:
                self._cleanup_client()
                await self.connect()
                logger.info(
                    "MQTT reconnected successfully",
                    extra={"event_type": "mqtt_reconnected", "attempts": self._reconnect_attempt}
                )
                break

            except (ConnectionError, OSError) as e:
                logger.warning(
                    f"MQTT reconnect attempt {self._reconnect_attempt} failed: {e}",
                    extra={
                        "event_type": "mqtt_reconnect_failed",
                        "attempt": self._reconnect_attempt,
                        "error": str(e)
                    }
                )

        self._reconnect_task = None

    def get_status(self) -> BrokerStatus:
        """Connection state for the status API."""
        with self._lock:
            return BrokerStatus(
                connected=self._connected,
                broker=self.broker,
                messages_received=self._messages_received,
                reconnect_attempt=self._reconnect_attempt,
                last_error=self._last_error,
                last_connected_at=self._last_connected_at,
            )
