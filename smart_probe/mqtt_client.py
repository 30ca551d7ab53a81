from __future__ import annotations

import json
import logging
import re
import ssl
from typing import Any, Callable

import paho.mqtt.client as mqtt

from smart_probe.config import MqttConfig
from smart_probe.device import StorageDevice

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def device_slug(device: StorageDevice) -> str:
    """Topic-safe identifier: serial number when known, else the device path."""
    source = device.serial_number or device.device or device.virtual_filename or "virtual"
    return _SLUG_RE.sub("_", source.lower()).strip("_") or "device"


class MqttPublisher:
    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False
        self._unsubscribers: list[Callable[[], None]] = []

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(
                ca_certs=config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )

        self.client.will_set(
            self._availability_topic,
            payload="offline",
            qos=1,
            retain=True,
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def _availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def connected(self) -> bool:
        return self._connected

    def device_topic(self, device: StorageDevice) -> str:
        return f"{self.config.base_topic}/{device_slug(device)}"

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if not reason_code.is_failure:
            self._connected = True
            self.logger.info(
                "Connected to MQTT broker %s:%s", self.config.host, self.config.port
            )
            self.client.publish(
                self._availability_topic,
                payload="online",
                qos=1,
                retain=True,
            )
        else:
            self._connected = False
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected = False
        if not reason_code.is_failure:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Unexpectedly disconnected from MQTT broker: %s. Will attempt to reconnect.",
                reason_code,
            )

    def connect(self) -> None:
        self.logger.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )
        self.client.connect(
            self.config.host,
            self.config.port,
            keepalive=self.config.keepalive,
        )
        self.client.loop_start()

    def disconnect(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        if self._connected:
            self.client.publish(
                self._availability_topic,
                payload="offline",
                qos=1,
                retain=True,
            )
        self.client.loop_stop()
        self.client.disconnect()
        self.logger.info("Disconnected from MQTT broker")

    def attach(self, device: StorageDevice) -> None:
        """Republish the device snapshot every time the device reports a change."""
        self._unsubscribers.append(device.subscribe(self.publish_device))

    def publish_device(self, device: StorageDevice) -> bool:
        if not self._connected:
            self.logger.warning("Not connected to MQTT broker, message may be queued")
        topic = self.device_topic(device)
        self.logger.debug("Publishing snapshot of %s to %s", device.get_device_with_type(), topic)
        result = self.client.publish(
            topic,
            payload=json.dumps(device.to_dict()),
            qos=self.config.qos,
            retain=self.config.retain,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish message, error code: %s", result.rc)
            return False
        return True

    def publish_discovery(self, device: StorageDevice) -> None:
        """Announce the drive health as a Home Assistant "problem" binary sensor."""
        slug = device_slug(device)
        state_topic = self.device_topic(device)
        name = device.model_name or device.get_device_with_type()
        discovery_payload = {
            "name": f"{name} SMART Health",
            "unique_id": f"{self.config.client_id}_{slug}_health",
            "device_class": "problem",
            "state_topic": state_topic,
            # problem sensor: ON means the drive failed its self-assessment
            "value_template": "{{ 'OFF' if value_json.health_passed else 'ON' }}",
            "json_attributes_topic": state_topic,
            "availability_topic": self._availability_topic,
            "payload_available": "online",
            "payload_not_available": "offline",
            "device": {
                "identifiers": [f"{self.config.client_id}_{slug}"],
                "name": name,
                "model": device.model_name or None,
                "manufacturer": device.family_name or None,
                "serial_number": device.serial_number or None,
            },
        }
        topic = f"{self.config.discovery_topic}/binary_sensor/{slug}/health/config"
        self.logger.debug("Publishing Home Assistant discovery to %s", topic)
        self.client.publish(
            topic,
            payload=json.dumps(discovery_payload),
            qos=self.config.qos,
            retain=True,
        )
