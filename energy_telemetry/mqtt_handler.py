# energy_telemetry/mqtt_handler.py
import json, time, logging
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as dtparser
import paho.mqtt.client as mqtt

from .errors import TelemetryError, ValidationError
from .ingest import IngestionCoordinator
from .schemas import parse_meter_reading, parse_vehicle_reading
from .settings import Settings

log = logging.getLogger("mqtt")

TIMESTAMP_KEYS = ("timestamp", "ts", "at")

def _parse_ts(ts: Any) -> datetime:
    if not ts:
        return datetime.now(timezone.utc)
    if isinstance(ts, datetime):
        return ts
    try:
        return dtparser.isoparse(str(ts))
    except (ValueError, OverflowError) as e:
        raise ValidationError(f"unparseable timestamp {ts!r}") from e

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def _split_topic(topic_base: str, topic: str) -> tuple[str, str] | None:
    """`<base>/<meter|vehicle>/<id>/telemetry` -> (kind, id)."""
    prefix = topic_base.rstrip("/") + "/"
    if not topic.startswith(prefix):
        return None
    parts = topic[len(prefix):].split("/")
    if len(parts) != 3 or parts[2] != "telemetry" or not parts[1]:
        return None
    kind, dev_id, _ = parts
    if kind not in ("meter", "vehicle"):
        return None
    return kind, dev_id

def handle_message(coordinator: IngestionCoordinator, topic_base: str, topic: str, payload: bytes) -> str | None:
    """Ingest one MQTT telemetry message; returns the device kind, or None when the topic is not ours.

    Raises ValidationError for bad payloads and StorageError when the write fails.
    """
    route = _split_topic(topic_base, topic)
    if route is None:
        return None
    kind, dev_id = route

    try:
        data = json.loads(payload.decode("utf-8")) if payload else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"payload on {topic} is not JSON") from e
    if not isinstance(data, dict):
        raise ValidationError(f"payload on {topic} is not an object")

    raw_ts = next((data[k] for k in TIMESTAMP_KEYS if data.get(k)), None)
    data["timestamp"] = _parse_ts(raw_ts)

    # the topic names the device
    if kind == "meter":
        data["meterId"] = dev_id
        coordinator.ingest_meter(parse_meter_reading(data))
    else:
        data["vehicleId"] = dev_id
        coordinator.ingest_vehicle(parse_vehicle_reading(data))
    return kind

def consume_message(coordinator: IngestionCoordinator, topic_base: str, topic: str, payload: bytes,
                    stats: dict[str, int]) -> None:
    """Callback body: never raises, since paho would re-raise inside its network loop."""
    stats["rx_total"] += 1
    try:
        if handle_message(coordinator, topic_base, topic, payload):
            stats["ingested"] += 1
    except ValidationError as e:
        stats["rejected"] += 1
        log.warning("Rejected message on %s: %s", topic, e)
    except TelemetryError as e:
        # storage failure; already logged by the coordinator, nothing to reply to
        stats["rejected"] += 1
        log.debug("Dropped message on %s: %s", topic, e)
    except Exception:
        stats["rejected"] += 1
        log.exception("on_message error on %s", topic)

    if stats["rx_total"] % 100 == 1:
        log.info("msg counts: total=%d ingested=%d rejected=%d",
                 stats["rx_total"], stats["ingested"], stats["rejected"])

def start_mqtt(coordinator: IngestionCoordinator, settings: Settings) -> mqtt.Client:
    client = mqtt.Client(
        client_id=f"telemetry-ingest-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)

    stats = {"rx_total": 0, "ingested": 0, "rejected": 0}

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("Connect failed rc=%s (5=Not authorized). Retrying…", rc)
            return
        for kind in ("meter", "vehicle"):
            topic = f"{settings.mqtt_topic_base}/{kind}/+/telemetry"
            res, mid = client.subscribe(topic, qos=1)
            log.info("Connected. SUB %s res=%s mid=%s", topic, res, mid)

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.warning("Disconnected rc=%s. Reconnecting…", _rc_int(reason_code))

    def on_message(client, userdata, msg):
        consume_message(coordinator, settings.mqtt_topic_base, msg.topic, msg.payload, stats)

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "Bootstrapping host=%s port=%s user=%s base=%s",
        settings.mqtt_host, settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>", settings.mqtt_topic_base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client

def stop_mqtt(client: mqtt.Client) -> None:
    client.loop_stop()
    client.disconnect()
