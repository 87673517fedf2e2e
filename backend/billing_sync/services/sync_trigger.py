from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

import paho.mqtt.client as mqtt
from pydantic import BaseModel, Field, ValidationError

from billing_sync.core.config import Settings


class SyncTriggerPayload(BaseModel):
    source: str = Field(min_length=1)
    timestamp: datetime


class SyncTriggerError(RuntimeError):
    pass


def build_trigger_payload(source: str = "manual", *, now: datetime | None = None) -> SyncTriggerPayload:
    return SyncTriggerPayload(source=source, timestamp=now or datetime.now(timezone.utc))


def parse_trigger_payload(raw: bytes | str) -> SyncTriggerPayload | None:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        return SyncTriggerPayload.model_validate_json(text)
    except ValidationError:
        return None


def encode_trigger_payload(payload: SyncTriggerPayload) -> str:
    return json.dumps({"source": payload.source, "timestamp": payload.timestamp.isoformat()})


def _new_client(settings: Settings, client_id: str) -> mqtt.Client:
    client = mqtt.Client(client_id=client_id, clean_session=True)
    if settings.mqtt_username:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
    return client


class SyncTriggerPublisher:
    """Publishes one manual-trigger message per call; used by the API process."""

    def __init__(self, *, settings: Settings, publish_timeout_seconds: float = 5.0) -> None:
        self._settings = settings
        self._publish_timeout_seconds = publish_timeout_seconds
        self._logger = logging.getLogger("billing_sync.sync_trigger")

    def trigger(self, source: str = "manual") -> SyncTriggerPayload:
        payload = build_trigger_payload(source)
        topic = self._settings.sync_trigger_topic
        client = _new_client(self._settings, f"{self._settings.mqtt_client_id}-publisher")
        self._logger.info("sending sync trigger source=%s topic=%s", source, topic)
        try:
            client.connect(self._settings.mqtt_broker_host, self._settings.mqtt_broker_port, keepalive=30)
            client.loop_start()
            info = client.publish(topic, encode_trigger_payload(payload), qos=self._settings.mqtt_qos)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise SyncTriggerError(f"publish failed rc={info.rc}")
            info.wait_for_publish(timeout=self._publish_timeout_seconds)
            if not info.is_published():
                raise SyncTriggerError("publish not acknowledged before timeout")
        except SyncTriggerError:
            self._logger.error("failed to send sync trigger source=%s topic=%s", source, topic)
            raise
        except (OSError, ValueError, RuntimeError) as exc:
            self._logger.error("failed to send sync trigger source=%s error=%s", source, exc)
            raise SyncTriggerError(str(exc)) from exc
        finally:
            client.loop_stop()
            try:
                client.disconnect()
            except Exception:
                self._logger.exception("mqtt publisher disconnect failed")
        return payload


class SyncTriggerListener:
    """Subscribes to the trigger topic and hands each valid payload to ``on_trigger``.

    ``on_trigger`` runs on the paho network thread and must return quickly.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        on_trigger: Callable[[SyncTriggerPayload], Any],
        client: mqtt.Client | None = None,
    ) -> None:
        self._settings = settings
        self._on_trigger = on_trigger
        self._topic = settings.sync_trigger_topic
        self._qos = settings.mqtt_qos
        self._logger = logging.getLogger("billing_sync.sync_trigger")
        self._lock = Lock()
        self._connected = False
        self._last_trigger: SyncTriggerPayload | None = None

        self._client = client or _new_client(settings, f"{settings.mqtt_client_id}-listener")
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)

    def start(self) -> None:
        self._logger.info(
            "starting sync trigger listener broker=%s:%s topic=%s",
            self._settings.mqtt_broker_host,
            self._settings.mqtt_broker_port,
            self._topic,
        )
        self._client.connect_async(
            host=self._settings.mqtt_broker_host,
            port=self._settings.mqtt_broker_port,
            keepalive=60,
        )
        self._client.loop_start()

    def stop(self) -> None:
        self._logger.info("stopping sync trigger listener topic=%s", self._topic)
        try:
            self._client.disconnect()
        except Exception:
            self._logger.exception("mqtt listener disconnect failed")
        self._client.loop_stop()
        with self._lock:
            self._connected = False

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            last = self._last_trigger
            return {
                "connected": self._connected,
                "topic": self._topic,
                "last_trigger_source": last.source if last else None,
                "last_trigger_ts": last.timestamp.isoformat() if last else None,
            }

    def _on_connect(self, client: mqtt.Client, _userdata: object, _flags: dict[str, int], rc: int) -> None:
        if rc != 0:
            self._logger.error("mqtt connect failed rc=%s", rc)
            return
        with self._lock:
            self._connected = True
        result, _mid = client.subscribe(self._topic, qos=self._qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.error("mqtt subscribe failed topic=%s rc=%s", self._topic, result)
        else:
            self._logger.info("listening for sync triggers topic=%s", self._topic)

    def _on_disconnect(self, _client: mqtt.Client, _userdata: object, rc: int) -> None:
        with self._lock:
            self._connected = False
        if rc != 0:
            self._logger.warning("mqtt disconnected unexpectedly rc=%s", rc)

    def _on_message(self, _client: mqtt.Client, _userdata: object, message: mqtt.MQTTMessage) -> None:
        payload = parse_trigger_payload(message.payload)
        if payload is None:
            self._logger.warning(
                "ignoring malformed sync trigger topic=%s payload=%s",
                message.topic,
                message.payload[:200],
            )
            return

        with self._lock:
            self._last_trigger = payload
        self._logger.info(
            "sync trigger received source=%s timestamp=%s",
            payload.source,
            payload.timestamp.isoformat(),
        )
        try:
            self._on_trigger(payload)
        except Exception:
            self._logger.exception("sync trigger handler failed source=%s", payload.source)
