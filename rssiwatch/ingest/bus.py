"""paho-mqtt subscriber that hands raw payloads to the window controller."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Tuple
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from rssiwatch.util.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PORT = 1883

PayloadHandler = Callable[[bytes], None]


class TransportError(RuntimeError):
    """The broker could not be reached, refused the connection, or rejected the subscription."""


def parse_broker_url(url: str) -> Tuple[str, int]:
    """Accept ``mqtt://host:port``, ``tcp://host:port``, ``host:port`` or a bare host."""

    text = (url or "").strip()
    if not text:
        raise TransportError("Broker URL is empty")
    if "://" not in text:
        text = f"mqtt://{text}"
    parsed = urlparse(text)
    if parsed.scheme not in ("mqtt", "tcp"):
        raise TransportError(f"Unsupported broker scheme '{parsed.scheme}' in {url}")
    try:
        port = parsed.port or DEFAULT_PORT
    except ValueError as exc:
        raise TransportError(f"Invalid broker port in {url}") from exc
    if not parsed.hostname:
        raise TransportError(f"Missing broker host in {url}")
    return parsed.hostname, port


class BusClient:
    """Thin convenience wrapper around paho.mqtt.client.Client."""

    def __init__(
        self,
        broker_url: str,
        *,
        topic: str = "#",
        client_id: Optional[str] = None,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self.broker_url = broker_url
        self.host, self.port = parse_broker_url(broker_url)
        self.topic = topic
        self.client_id = client_id or f"rssiwatch-{int(time.time() * 1000)}"
        self.connect_timeout_s = float(connect_timeout_s)
        self.client: Optional[mqtt.Client] = None
        self._on_payload: Optional[PayloadHandler] = None
        self._connected = threading.Event()
        self._connect_error: Optional[str] = None

    def start(self, on_payload: PayloadHandler) -> None:
        self._on_payload = on_payload
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_message = self._handle_message
        client.enable_logger(get_logger(f"{__name__}.paho"))
        self.client = client
        try:
            client.connect(self.host, self.port, keepalive=60)
        except (OSError, ValueError) as exc:
            self.client = None
            raise TransportError(f"Cannot connect to MQTT broker {self.broker_url}: {exc}") from exc
        client.loop_start()
        if not self._connected.wait(self.connect_timeout_s) or self._connect_error:
            detail = self._connect_error or f"no CONNACK within {self.connect_timeout_s:.0f}s"
            self.stop()
            raise TransportError(f"MQTT broker {self.broker_url} rejected the connection: {detail}")
        logger.info("Connected to MQTT broker %s", self.broker_url)

    def stop(self) -> None:
        client = self.client
        self.client = None
        if client is None:
            return
        try:
            client.loop_stop()
        finally:
            client.disconnect()

    # -----------------
    # paho callbacks
    # -----------------

    def _handle_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self._connect_error = str(reason_code)
            self._connected.set()
            return
        result, _mid = client.subscribe(self.topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._connect_error = f"subscribe to '{self.topic}' failed ({mqtt.error_string(result)})"
        else:
            logger.info("Subscribed to '%s'", self.topic)
        self._connected.set()

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.warning("Disconnected from MQTT broker (%s); paho will reconnect", reason_code)

    def _handle_message(self, client, userdata, message) -> None:
        handler = self._on_payload
        if handler is not None:
            handler(message.payload)
