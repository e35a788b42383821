# control/mqtt_transport.py

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from shared_libs.config_models.inventory_models import BrokerConfig
from shared_libs.config_models.secrets import BrokerSecrets
from shared_libs.hardware_core.errors import TransportError

logger = logging.getLogger(__name__)


def command_topic(prefix: str, controller_id: str) -> str:
    return f"{prefix}{controller_id}/commands"


def response_topic(prefix: str, controller_id: str) -> str:
    return f"{prefix}{controller_id}/responses"


def create_client(broker: BrokerConfig, secrets: Optional[BrokerSecrets], client_suffix: str = "") -> mqtt.Client:
    client = mqtt.Client(
        client_id=f"{broker.client_id}{client_suffix}",
        callback_api_version=CallbackAPIVersion.VERSION2,
    )
    if secrets is not None:
        client.username_pw_set(secrets.username, secrets.password)
    return client


class MQTTTransport:
    """Controller transport over MQTT.

    Commands are published to <prefix><controller>/commands; controllers answer
    on <prefix><controller>/responses echoing the packet id. Paho runs its own
    network thread, so responses are handed back to the event loop with
    call_soon_threadsafe.
    """

    def __init__(self, broker: BrokerConfig, topic_prefix: str, secrets: Optional[BrokerSecrets] = None):
        self.address = secrets.broker_address if secrets and secrets.broker_address else broker.address
        self.port = secrets.broker_port if secrets and secrets.broker_port else broker.port
        self.topic_prefix = topic_prefix
        self.client = create_client(broker, secrets, client_suffix="-transport")
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message
        self.client.on_disconnect = self._on_disconnect
        self._pending: Dict[str, asyncio.Future] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        logger.info(f"MQTTTransport initialized for broker {self.address}:{self.port}")

    # --- Paho callbacks (network thread) ---

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        if rc == 0:
            topic = response_topic(self.topic_prefix, "+")
            client.subscribe(topic)
            self._connected = True
            logger.info(f"MQTTTransport: connected to {self.address}, subscribed to {topic}")
        else:
            logger.error(f"MQTTTransport: failed to connect to broker, code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        self._connected = False
        logger.warning(f"MQTTTransport: disconnected from broker, code {rc}")

    def _on_message(self, client, userdata, message):
        try:
            response = json.loads(message.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"MQTTTransport: undecodable response on '{message.topic}': {e}")
            return
        packet_id = response.get("id") if isinstance(response, dict) else None
        future = self._pending.get(packet_id) if packet_id else None
        if future is None or self._loop is None:
            logger.debug(f"MQTTTransport: unsolicited response on '{message.topic}': {response}")
            return
        self._loop.call_soon_threadsafe(self._resolve, packet_id, response)

    def _resolve(self, packet_id: str, response: Dict[str, Any]) -> None:
        future = self._pending.pop(packet_id, None)
        if future is not None and not future.done():
            future.set_result(response)

    # --- Lifecycle ---

    async def connect(self, timeout_s: float = 5.0) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self.client.connect(self.address, self.port, keepalive=60)
        except OSError as e:
            raise TransportError("broker", f"cannot reach {self.address}:{self.port}: {e}") from e
        self.client.loop_start()
        deadline = self._loop.time() + timeout_s
        while not self._connected:
            if self._loop.time() > deadline:
                self.client.loop_stop()
                raise TransportError("broker", f"timed out connecting to {self.address}:{self.port}")
            await asyncio.sleep(0.1)

    def disconnect(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()

    # --- Transport ---

    async def send(self, controller_id: str, packet: Dict[str, Any]) -> Dict[str, Any]:
        if not self._connected:
            raise TransportError(controller_id, "MQTT transport is not connected")
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending[packet["id"]] = future
        try:
            info = self.client.publish(command_topic(self.topic_prefix, controller_id), json.dumps(packet, separators=(",", ":")), qos=1)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(controller_id, f"publish failed with code {info.rc}")
            return await future
        finally:
            self._pending.pop(packet["id"], None)
