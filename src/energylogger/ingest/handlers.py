"""Raw-insert path for the sensor families.

Each handler decodes one MQTT message and appends one row to the raw store. Handlers
never raise: a malformed message is logged and dropped, so a single bad publisher can
not stop ingestion.

Timestamps are stored twice, as epoch seconds and as an offset-aware RFC 3339 string,
both derived from the same instant.
"""

import sqlite3
from typing import Optional, Union

from loguru import logger
from pendulum import DateTime
from pydantic import ConfigDict, Field, ValidationError

from energylogger.core.database import Database
from energylogger.core.pydantic import PydanticBaseModel
from energylogger.utils.datetimeutil import to_datetime

PayloadT = Union[bytes, str]

# Channel stored for solar topics that carry no channel segment
SOLAR_DEFAULT_CHANNEL = -1


class E320Reading(PydanticBaseModel):
    """Meter block of a WattWächter message."""

    model_config = ConfigDict(populate_by_name=True)

    e_in: float = Field(default=0.0, alias="E_in")
    e_out: float = Field(default=0.0, alias="E_out")
    power: float = Field(default=0.0, alias="Power")


class WattwaechterMessage(PydanticBaseModel):
    """WattWächter SENSOR message, e.g. ``{"Time": "...", "E320": {"E_in": 1.2, ...}}``."""

    model_config = ConfigDict(populate_by_name=True)

    time: Optional[str] = Field(default=None, alias="Time")
    e320: E320Reading = Field(alias="E320")


class TasmotaEnergy(PydanticBaseModel):
    model_config = ConfigDict(populate_by_name=True)

    power: float = Field(default=0.0, alias="Power")


class TasmotaMessage(PydanticBaseModel):
    """Tasmota SENSOR message, e.g. ``{"Time": "...", "ENERGY": {"Power": 42}}``."""

    model_config = ConfigDict(populate_by_name=True)

    time: Optional[str] = Field(default=None, alias="Time")
    energy: TasmotaEnergy = Field(alias="ENERGY")


def parse_timestamp(value: Optional[str], timezone: Optional[str] = None) -> DateTime:
    """Parse a sensor timestamp.

    RFC 3339 strings keep their offset; naive strings (Tasmota sends local time without
    offset) are interpreted in `timezone`. Missing or unparsable values fall back to now.

    Args:
        value: Timestamp string from the message.
        timezone: Timezone name for naive timestamps; None is the host timezone.

    Returns:
        DateTime: The instant, represented in `timezone`.
    """
    if value:
        try:
            return to_datetime(value, in_timezone=timezone)
        except ValueError as e:
            logger.warning("Unparsable sensor time '{}', using now: {}", value, e)
    return to_datetime(None, in_timezone=timezone)


def _stamp(dt: DateTime) -> tuple[int, str]:
    return dt.int_timestamp, dt.to_rfc3339_string()


def _decode(payload: PayloadT) -> str:
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return payload


def handle_wattwaechter(
    database: Database, topic: str, payload: PayloadT, *, timezone: Optional[str] = None
) -> bool:
    """Store a WattWächter meter reading into `energy_data`.

    Returns:
        bool: True if a row was written.
    """
    try:
        message = WattwaechterMessage.model_validate_json(_decode(payload))
    except ValidationError as e:
        logger.warning("[Wattwaechter] {}: invalid message: {}", topic, e)
        return False

    ts_unix, ts_rfc3339 = _stamp(parse_timestamp(message.time, timezone))
    try:
        database.execute(
            "INSERT INTO energy_data (timestamp_unix, timestamp_rfc3339, e_in, e_out, power) "
            "VALUES (?, ?, ?, ?, ?)",
            (ts_unix, ts_rfc3339, message.e320.e_in, message.e320.e_out, message.e320.power),
        )
    except sqlite3.Error as e:
        logger.error("[Wattwaechter] {}: insert failed: {}", topic, e)
        return False

    logger.debug(
        "[Wattwaechter] stored ts={} e_in={} e_out={} power={}",
        ts_rfc3339,
        message.e320.e_in,
        message.e320.e_out,
        message.e320.power,
    )
    return True


def handle_tasmota(
    database: Database, topic: str, payload: PayloadT, *, timezone: Optional[str] = None
) -> bool:
    """Store a Tasmota smart plug power reading into `tasmota_data`.

    The device id is the second topic segment (``tele/<device>/SENSOR``).

    Returns:
        bool: True if a row was written.
    """
    segments = topic.split("/")
    if len(segments) < 2 or not segments[1]:
        logger.warning("[Tasmota] invalid topic: {}", topic)
        return False
    device_id = segments[1]

    try:
        message = TasmotaMessage.model_validate_json(_decode(payload))
    except ValidationError as e:
        # SENSOR messages of devices without energy monitoring carry no ENERGY block
        logger.debug("[Tasmota] {}: no power reading: {}", topic, e)
        return False

    ts_unix, ts_rfc3339 = _stamp(parse_timestamp(message.time, timezone))
    try:
        database.execute(
            "INSERT INTO tasmota_data (device_id, timestamp_unix, timestamp_rfc3339, power) "
            "VALUES (?, ?, ?, ?)",
            (device_id, ts_unix, ts_rfc3339, message.energy.power),
        )
    except sqlite3.Error as e:
        logger.error("[Tasmota] {}: insert failed: {}", topic, e)
        return False

    logger.debug("[Tasmota] stored {} ts={} power={}", device_id, ts_rfc3339, message.energy.power)
    return True


def handle_solar(
    database: Database,
    topic: str,
    payload: PayloadT,
    *,
    timezone: Optional[str] = None,
    now: Optional[DateTime] = None,
) -> bool:
    """Store an inverter value (``solar/<device>/<metric...>``).

    Numeric payloads are appended to `solar_data`, stamped with the receive time. Other
    payloads (firmware versions, names, ...) are upserted into `solar_meta`.

    Returns:
        bool: True if a row was written.
    """
    segments = topic.split("/")
    if len(segments) < 2 or not segments[1]:
        logger.warning("[Solar] invalid topic: {}", topic)
        return False
    device_id = segments[1]
    metric = "/".join(segments[2:])
    text = _decode(payload).strip()

    try:
        value: Optional[float] = float(text)
    except ValueError:
        value = None

    try:
        if value is not None:
            ts_unix, ts_rfc3339 = _stamp(now or to_datetime(None, in_timezone=timezone))
            database.execute(
                "INSERT INTO solar_data "
                "(timestamp_unix, timestamp_rfc3339, device_id, channel, metric, value) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (ts_unix, ts_rfc3339, device_id, SOLAR_DEFAULT_CHANNEL, metric, value),
            )
            logger.debug("[Solar] {}/{} = {}", device_id, metric, value)
        else:
            database.execute(
                "INSERT INTO solar_meta (device_id, channel, key, value) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(device_id, channel, key) DO UPDATE SET value = excluded.value",
                (device_id, SOLAR_DEFAULT_CHANNEL, metric, text),
            )
            logger.debug("[Solar] meta {}/{} = {}", device_id, metric, text)
    except sqlite3.Error as e:
        logger.error("[Solar] {}: insert failed: {}", topic, e)
        return False
    return True
