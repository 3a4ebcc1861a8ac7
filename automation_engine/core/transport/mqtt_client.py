"""Cliente MQTT: recepción de telemetría y publicación de comandos."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from ...errors import TransportError, TransportTimeout

logger = logging.getLogger(__name__)


class MQTTClient:
    """Un único cliente paho para ambos sentidos: recibe la telemetría
    (`subscribe_topic`, re-suscrito en cada reconexión) y publica los
    comandos de control de actuadores."""

    def __init__(
        self,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "automation-engine",
        subscribe_topic: str = "Invernadero/#",
        keepalive: int = 60,
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.username = username
        self.password = password
        # Sufijo para que dos instancias del motor no se expulsen mutuamente
        self.client_id = f"{client_id}-{int(time.time())}"
        self.subscribe_topic = subscribe_topic
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._online = threading.Event()
        self._sessions = 0
        self._message_handler: Optional[Callable[[str, bytes], None]] = None

    def set_message_handler(self, handler: Callable[[str, bytes], None]):
        self._message_handler = handler

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        if self.username:
            client.username_pw_set(self.username, self.password)
        return client

    def connect(self, wait_seconds: float = 5.0) -> bool:
        """Arranca el loop de red y espera el CONNACK hasta `wait_seconds`."""
        self._client = self._build_client()
        logger.info("[MQTT] Connecting to %s:%d as %s", self.broker_host, self.broker_port, self.client_id)
        try:
            self._client.connect(self.broker_host, self.broker_port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            logger.error("[MQTT] Broker %s:%d unreachable: %s", self.broker_host, self.broker_port, e)
            return False

        self._client.loop_start()
        if self._online.wait(wait_seconds):
            return True
        logger.error("[MQTT] No CONNACK within %.1fs", wait_seconds)
        return False

    def disconnect(self):
        client, self._client = self._client, None
        self._online.clear()
        if client is None:
            return
        client.disconnect()
        client.loop_stop()
        logger.info("[MQTT] Disconnected from %s:%d", self.broker_host, self.broker_port)

    def publish(self, topic: str, payload: dict, qos: int = 1, timeout: float = 5.0) -> None:
        """Publica un comando JSON y espera la confirmación del broker.

        Raises:
            TransportTimeout: si no se confirma dentro de `timeout`
            TransportError: cliente desconectado o publicación rechazada
        """
        if self._client is None or not self._online.is_set():
            raise TransportError("MQTT client not connected")

        info = self._client.publish(topic, json.dumps(payload), qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportError(f"MQTT publish rejected rc={info.rc} topic={topic}")

        try:
            info.wait_for_publish(timeout=timeout)
        except (RuntimeError, ValueError) as e:
            raise TransportError(f"MQTT publish failed topic={topic}: {e}") from e

        if not info.is_published():
            raise TransportTimeout(f"MQTT publish not confirmed after {timeout:.1f}s topic={topic}")

    # Callbacks del hilo de red de paho

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        if rc != 0:
            self._online.clear()
            logger.error("[MQTT] Broker refused connection: %s", rc)
            return
        self._sessions += 1
        client.subscribe(self.subscribe_topic, qos=1)
        self._online.set()
        logger.info("[MQTT] Session %d up, telemetry topic %s", self._sessions, self.subscribe_topic)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        self._online.clear()
        logger.warning("[MQTT] Connection lost (rc=%s), paho will reconnect", rc)

    def _on_message(self, client, userdata, msg):
        if self._message_handler is not None:
            self._message_handler(msg.topic, msg.payload)

    @property
    def is_connected(self) -> bool:
        return self._online.is_set()

    @property
    def reconnect_count(self) -> int:
        return max(0, self._sessions - 1)
