"""Bambu Lab MQTT telemetry subscription."""

import json
import ssl
import logging
from typing import Callable

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


class BambuMQTTClient:
    """MQTT client subscribed to the report topic of one Bambu Lab printer."""

    MQTT_PORT = 8883
    MQTT_USERNAME = "bblp"

    def __init__(
        self,
        ip_address: str,
        serial_number: str,
        access_code: str,
        on_connection_change: Callable[[bool], None] | None = None,
        on_report: Callable[[dict], None] | None = None,
    ):
        self.ip_address = ip_address
        self.serial_number = serial_number
        self.access_code = access_code
        self.on_connection_change = on_connection_change
        self.on_report = on_report

        self.connected = False
        self._client: mqtt.Client | None = None
        self._sequence_id: int = 0

    @property
    def topic_subscribe(self) -> str:
        return f"device/{self.serial_number}/report"

    @property
    def topic_publish(self) -> str:
        return f"device/{self.serial_number}/request"

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        if rc == 0:
            self.connected = True
            client.subscribe(self.topic_subscribe)
            logger.info("[%s] MQTT connected, subscribed to %s", self.serial_number, self.topic_subscribe)
            # Ask for a full report so the AMS section arrives without waiting for a change
            self._request_push_all()
        else:
            logger.warning("[%s] MQTT connection refused: rc=%s", self.serial_number, rc)
            self.connected = False
        if self.on_connection_change:
            self.on_connection_change(self.connected)

    def _on_disconnect(self, client, userdata, disconnect_flags=None, rc=None, properties=None):
        logger.warning("[%s] MQTT connection closed: rc=%s", self.serial_number, rc)
        self.connected = False
        if self.on_connection_change:
            self.on_connection_change(False)

    def _on_message(self, client, userdata, msg):
        try:
            payload = json.loads(msg.payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.debug("[%s] Ignoring undecodable MQTT payload", self.serial_number)
            return
        if isinstance(payload, dict) and "print" in payload and self.on_report:
            self.on_report(payload)

    def _request_push_all(self):
        """Request a full status report from the printer."""
        self._sequence_id += 1
        self.send_command({"pushing": {"sequence_id": str(self._sequence_id), "command": "pushall"}})

    def connect(self):
        """Connect to the printer MQTT broker.

        The paho network loop runs in its own thread; callbacks fire on that thread.
        """
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"spoolsync_{self.serial_number}",
            protocol=mqtt.MQTTv311,
        )

        self._client.username_pw_set(self.MQTT_USERNAME, self.access_code)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        # TLS setup - Bambu uses self-signed certs
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        self._client.tls_set_context(ssl_context)

        self._client.connect_async(self.ip_address, self.MQTT_PORT, keepalive=60)
        self._client.loop_start()

    def disconnect(self):
        """Disconnect from the printer."""
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None
            self.connected = False

    def send_command(self, command: dict):
        """Send a command to the printer."""
        if self._client and self.connected:
            self._client.publish(self.topic_publish, json.dumps(command), qos=1)
