"""MQTT ingestion front-end.

Subscribes to the configured sensor topics and hands every message to the matching
raw-insert handler. The paho network loop runs in its own thread; handlers share the
database connection with the maintenance jobs through the database lock.
"""

from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt
from loguru import logger
from pydantic import Field

from energylogger.config.configabc import SettingsBaseModel
from energylogger.core.database import Database
from energylogger.ingest.handlers import handle_solar, handle_tasmota, handle_wattwaechter

HandlerT = Callable[..., bool]


class MqttCommonSettings(SettingsBaseModel):
    """MQTT broker and subscription configuration."""

    enabled: bool = Field(
        default=True,
        json_schema_extra={"description": "Connect to the broker and ingest sensor data."},
    )
    host: str = Field(
        default="localhost",
        json_schema_extra={"description": "Broker host name.", "examples": ["localhost"]},
    )
    port: int = Field(
        default=1883,
        ge=1,
        le=65535,
        json_schema_extra={"description": "Broker port.", "examples": [1883]},
    )
    username: Optional[str] = Field(
        default=None, json_schema_extra={"description": "Broker user name."}
    )
    password: Optional[str] = Field(
        default=None, json_schema_extra={"description": "Broker password."}
    )
    client_id: str = Field(
        default="energylogger",
        json_schema_extra={"description": "MQTT client identifier."},
    )
    qos: int = Field(
        default=0,
        ge=0,
        le=2,
        json_schema_extra={"description": "Subscription quality of service."},
    )
    keepalive: int = Field(
        default=60,
        ge=1,
        json_schema_extra={"description": "Keep-alive interval [seconds]."},
    )
    topic_wattwaechter: str = Field(
        default="tele/WattWaechter/SENSOR",
        json_schema_extra={"description": "Topic of the WattWächter meter reader."},
    )
    tasmota_enabled: bool = Field(
        default=False,
        json_schema_extra={"description": "Ingest Tasmota smart plug power readings."},
    )
    topic_tasmota: str = Field(
        default="tele/+/SENSOR",
        json_schema_extra={"description": "Topic filter of the Tasmota plugs (device id is segment 2)."},
    )
    solar_enabled: bool = Field(
        default=False,
        json_schema_extra={"description": "Ingest inverter values."},
    )
    topic_solar: str = Field(
        default="solar/#",
        json_schema_extra={"description": "Topic filter of the inverter values."},
    )


class MqttIngestor:
    """Bridge from the broker to the raw tables.

    Args:
        database: Open database handle.
        settings: MQTT settings section.
        timezone: Timezone for naive sensor timestamps; None is the host timezone.
    """

    def __init__(
        self,
        database: Database,
        settings: MqttCommonSettings,
        *,
        timezone: Optional[str] = None,
    ) -> None:
        self.database = database
        self.settings = settings
        self.timezone = timezone
        self.client: Optional[mqtt.Client] = None

    def subscriptions(self) -> list[tuple[str, HandlerT]]:
        """Topic filters and their handlers, as enabled by the settings."""
        subs: list[tuple[str, HandlerT]] = [(self.settings.topic_wattwaechter, handle_wattwaechter)]
        if self.settings.tasmota_enabled:
            subs.append((self.settings.topic_tasmota, handle_tasmota))
        if self.settings.solar_enabled:
            subs.append((self.settings.topic_solar, handle_solar))
        return subs

    def _make_callback(self, handler: HandlerT) -> Callable[[mqtt.Client, Any, mqtt.MQTTMessage], None]:
        def on_message(client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
            handler(self.database, message.topic, message.payload, timezone=self.timezone)

        return on_message

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connect to {} failed: {}", self.settings.host, reason_code)
            return
        # Subscribe here so that subscriptions are restored after a reconnect
        for topic, _ in self.subscriptions():
            client.subscribe(topic, qos=self.settings.qos)
            logger.info("MQTT subscribed to {}", topic)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT disconnected from {}: {}", self.settings.host, reason_code)
        else:
            logger.info("MQTT disconnected from {}", self.settings.host)

    def start(self) -> None:
        """Connect to the broker and start the network loop thread."""
        if self.client is not None:
            return
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.settings.client_id,
        )
        if self.settings.username:
            client.username_pw_set(self.settings.username, self.settings.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        for topic, handler in self.subscriptions():
            client.message_callback_add(topic, self._make_callback(handler))

        logger.info("MQTT connecting to {}:{}", self.settings.host, self.settings.port)
        # Asynchronous connect; the loop thread keeps retrying while the broker is down
        client.connect_async(self.settings.host, self.settings.port, keepalive=self.settings.keepalive)
        client.loop_start()
        self.client = client

    def stop(self) -> None:
        """Disconnect and stop the network loop thread."""
        if self.client is None:
            return
        self.client.disconnect()
        self.client.loop_stop()
        self.client = None
