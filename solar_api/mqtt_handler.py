# solar_api/mqtt_handler.py
import json, time, logging
from datetime import datetime
from typing import Callable, Optional, Tuple

import paho.mqtt.client as mqtt
from pydantic import ValidationError

from .access_store import AccessStore
from .errors import DecodeError, DispatchFailed
from .pairing import PairingRegistry
from .settings import settings
from .status_cache import LiveStatusCache, StatusPatch, utcnow

log = logging.getLogger("solar_api.mqtt")

STATUS = "status"
ONLINE = "online"

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except Exception:
        return -1

def _rc_str(rc) -> str:
    name = getattr(rc, "getName", None)
    if callable(name):
        try:
            return f"{getattr(rc, 'value', rc)}:{name()}"
        except Exception:
            pass
    return str(getattr(rc, "value", rc))


class TelemetryIngestor:
    """Turns ``<ns>/<deviceId>/<kind>`` messages into cache, pairing and history updates.

    ``handle_message`` never raises: a bad message is logged and dropped so the
    next one on any topic is processed normally.
    """

    def __init__(
        self,
        cache: LiveStatusCache,
        pairing: PairingRegistry,
        store: AccessStore,
        topic_base: str = settings.mqtt_topic_base,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.pairing = pairing
        self.store = store
        self.topic_base = topic_base
        self.clock = clock
        self.stats = {"rx_total": 0, "rx_status": 0, "rx_online": 0, "rx_dropped": 0}

    def parse_topic(self, topic: str) -> Optional[Tuple[str, str]]:
        # the base itself may contain slashes, e.g. "site/solar"
        parts = topic.rsplit("/", 2)
        if len(parts) != 3 or parts[0] != self.topic_base or not parts[1]:
            return None
        _, device_id, kind = parts
        if kind not in (STATUS, ONLINE):
            return None
        return device_id, kind

    @staticmethod
    def decode_status(payload: bytes | str) -> StatusPatch:
        try:
            raw = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
            body = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(f"status payload is not JSON: {e}") from e
        if not isinstance(body, dict):
            raise DecodeError(f"status payload must be an object, got {type(body).__name__}")
        try:
            return StatusPatch.model_validate(body)
        except ValidationError as e:
            raise DecodeError(f"status payload has bad fields: {e.error_count()} error(s)") from e

    @staticmethod
    def decode_online(payload: bytes | str) -> bool:
        try:
            raw = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        except UnicodeDecodeError as e:
            raise DecodeError(f"online payload is not text: {e}") from e
        return raw == "true"

    def handle_message(self, topic: str, payload: bytes | str) -> None:
        self.stats["rx_total"] += 1
        try:
            parsed = self.parse_topic(topic)
            if parsed is None:
                log.debug("ignoring topic | topic=%s", topic)
                return
            device_id, kind = parsed
            if kind == STATUS:
                self.stats["rx_status"] += 1
                self.apply_status(device_id, self.decode_status(payload))
            else:
                self.stats["rx_online"] += 1
                self.apply_online(device_id, self.decode_online(payload))
        except DecodeError as e:
            self.stats["rx_dropped"] += 1
            log.warning("dropping malformed message | topic=%s | error=%s", topic, e.message)
        except Exception:
            self.stats["rx_dropped"] += 1
            log.exception("on_message error | topic=%s", topic)

        # Occasionally print counters so you know it's alive
        if self.stats["rx_total"] % 100 == 1:
            log.info(
                "msg counts | total=%s | status=%s | online=%s | dropped=%s",
                self.stats["rx_total"], self.stats["rx_status"],
                self.stats["rx_online"], self.stats["rx_dropped"],
            )

    def apply_status(self, device_id: str, patch: StatusPatch) -> None:
        if patch.confirmation_code:
            self.pairing.record(device_id, patch.confirmation_code)
            log.info("confirmation code received | device_id=%s", device_id)

        now = self.clock()
        self.cache.upsert(device_id, patch.model_copy(update={"online": True, "last_seen": now}))

        # history only for claimed devices, so spoofed ids cannot grow the table
        try:
            if self.store.device_exists(device_id):
                self.store.save_sample(device_id, patch)
        except Exception:
            log.exception("saving device status failed | device_id=%s", device_id)

    def apply_online(self, device_id: str, online: bool) -> None:
        self.cache.upsert(device_id, StatusPatch(online=online, last_seen=self.clock()))
        log.info("device online flag | device_id=%s | online=%s", device_id, online)


class MqttCommandPublisher:
    """Publishes ``{"command", "state"}`` to ``<ns>/<deviceId>/command``.

    Returns once the client has handed the message to the broker; it does not
    wait for the device to act on it. One attempt, no retry.
    """

    def __init__(self, client: mqtt.Client, topic_base: str = settings.mqtt_topic_base,
                 timeout: float = settings.mqtt_publish_timeout):
        self.client = client
        self.topic_base = topic_base
        self.timeout = timeout

    def command_topic(self, device_id: str) -> str:
        return f"{self.topic_base}/{device_id}/command"

    def publish_command(self, device_id: str, command: str, state) -> None:
        topic = self.command_topic(device_id)
        payload = json.dumps({"command": command, "state": state})
        try:
            info = self.client.publish(topic, payload, qos=0, retain=False)
            # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise DispatchFailed(f"MQTT publish failed: rc={info.rc}")
            info.wait_for_publish(timeout=self.timeout)
            if not info.is_published():
                raise DispatchFailed("MQTT publish failed: not acknowledged in time")
        except DispatchFailed:
            raise
        except Exception as e:
            raise DispatchFailed(f"MQTT publish failed: {e}") from e
        log.info("command sent | device_id=%s | command=%s | state=%s", device_id, command, state)


def start_mqtt(ingestor: TelemetryIngestor) -> mqtt.Client:
    client = mqtt.Client(
        client_id=f"solar-api-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)
    base = ingestor.topic_base

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("connect failed | rc=%s | retrying", _rc_str(reason_code))
            return
        for kind in (STATUS, ONLINE):
            topic = f"{base}/+/{kind}"
            res, mid = client.subscribe(topic, qos=0)
            log.info("subscribed | topic=%s | res=%s | mid=%s", topic, res, mid)

    def on_subscribe(client, userdata, mid, reason_codes, properties):
        if any(_rc_int(rc) >= 0x80 for rc in reason_codes):
            log.warning("subscription rejected by broker ACL | mid=%s", mid)

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.warning("disconnected | rc=%s | reconnecting", _rc_str(reason_code))

    def on_message(client, userdata, msg):
        ingestor.handle_message(msg.topic, msg.payload)

    client.on_connect = on_connect
    client.on_subscribe = on_subscribe
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "bootstrapping | host=%s | port=%s | user=%s | base=%s",
        settings.mqtt_host, settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>", base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client
