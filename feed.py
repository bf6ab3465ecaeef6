"""
Live sensor feed over MQTT.

One SensorFeed is owned by the Flask app: it keeps the latest reading per
sensor, a connection status flag and a bounded history of snapshots. The
paho network loop runs in its own thread; every public method takes the
feed lock.
"""
from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt

log = logging.getLogger("backend.feed")

# topic suffix -> snapshot field
SENSOR_TOPICS = {
    "temperature": "temperature",
    "humidity": "humidity",
    "light": "light",
    "ph": "ph",
    "ec": "ec",
    "water_temp": "waterTemp",
}

STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_ERROR = "error"


def iso_utc(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SensorFeed:
    def __init__(
        self,
        broker: str,
        port: int = 1883,
        topic_prefix: str = "hydroponic/sensors/rose",
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 30,
        reconnect_seconds: int = 5,
        history_size: int = 1000,
        stale_seconds: float = 120.0,
        enabled: bool = True,
        client_factory: Optional[Callable[[], Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.broker = broker
        self.port = port
        self.username = username
        self.password = password
        self.keepalive = keepalive
        self.reconnect_seconds = reconnect_seconds
        self.stale_seconds = stale_seconds
        self.enabled = enabled
        self.topics = {f"{topic_prefix.rstrip('/')}/{suffix}": name for suffix, name in SENSOR_TOPICS.items()}
        self._client_factory = client_factory or self._make_client
        self._clock = clock

        self._lock = threading.RLock()
        self._client: Any = None
        self._polled = False
        self._last_message = 0.0
        self._readings: Dict[str, Optional[float]] = {name: None for name in SENSOR_TOPICS.values()}
        self._last_update: Optional[str] = None
        self._status = STATUS_CONNECTING
        self._error: Optional[str] = None
        self._history: Deque[Tuple[float, Dict[str, Any]]] = deque(maxlen=history_size)

        if not enabled:
            self._set_status(STATUS_ERROR, "MQTT feed disabled")

    # ----------------- state -----------------
    def _set_status(self, status: str, error: Optional[str] = None) -> None:
        with self._lock:
            self._status = status
            self._error = error

    @property
    def status(self) -> str:
        with self._lock:
            return self._status

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            out: Dict[str, Any] = dict(self._readings)
            out["lastUpdate"] = self._last_update
            out["status"] = self._status
            if self._error:
                out["error"] = self._error
            return out

    def is_connected(self) -> bool:
        with self._lock:
            client = self._client
        return client is not None and client.is_connected()

    # ----------------- paho client -----------------
    def _make_client(self) -> mqtt.Client:
        client_id = f"onefarmer_api_{random.getrandbits(32):08x}"
        return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)

    def start(self) -> None:
        """Begin connecting in the background; a running client is left alone."""
        if not self.enabled:
            return
        with self._lock:
            if self._client is not None:
                return
            client = self._client_factory()
            self._client = client
        log.info("[MQTT] connecting to %s:%s", self.broker, self.port)
        try:
            if self.username:
                client.username_pw_set(self.username, self.password)
            client.on_connect = self.on_connect
            client.on_disconnect = self.on_disconnect
            client.on_message = self.on_message
            client.reconnect_delay_set(min_delay=1, max_delay=self.reconnect_seconds)
            client.connect_async(self.broker, self.port, self.keepalive)
            client.loop_start()
        except Exception:
            log.exception("[MQTT] connect error")
            with self._lock:
                self._client = None
            self._set_status(STATUS_ERROR, "Failed to connect to broker")

    def stop(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        try:
            client.loop_stop()
            client.disconnect()
        except Exception:
            log.exception("[MQTT] shutdown failed")
        log.info("[MQTT] feed stopped")

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if getattr(reason_code, "is_failure", False):
            log.warning("[MQTT] connection refused: %s", reason_code)
            self._set_status(STATUS_ERROR, f"Connection refused: {reason_code}")
            return
        log.info("[MQTT] connected rc=%s", reason_code)
        with self._lock:
            self._last_message = self._clock()
        self._set_status(STATUS_CONNECTED)
        result, _ = client.subscribe([(topic, 0) for topic in self.topics])
        if result != mqtt.MQTT_ERR_SUCCESS:
            log.error("[MQTT] subscribe failed rc=%s", result)
            self._set_status(STATUS_ERROR, "Failed to subscribe to topics")
        else:
            log.info("[MQTT] subscribed to %d topics", len(self.topics))

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        log.warning("[MQTT] disconnected rc=%s", reason_code)
        self._set_status(STATUS_ERROR, "Disconnected from broker")

    def on_message(self, client, userdata, msg):
        name = self.topics.get(msg.topic)
        if name is None:
            log.info("[MQTT] message on unexpected topic %s", msg.topic)
            return
        try:
            value = float(msg.payload.decode(errors="ignore").strip())
        except ValueError as e:
            log.warning("[MQTT] non-numeric payload on %s: %.80s err: %s", msg.topic, msg.payload, e)
            return
        if not math.isfinite(value):
            log.warning("[MQTT] non-finite payload on %s: %.80s", msg.topic, msg.payload)
            return

        now = self._clock()
        with self._lock:
            self._last_message = now
            self._readings[name] = value
            self._last_update = iso_utc(now)
            self._status = STATUS_CONNECTED
            self._error = None
            entry: Dict[str, Any] = {"timestamp": self._last_update}
            entry.update(self._readings)
            self._history.append((now, entry))
        log.debug("[MQTT] %s <- %s", msg.topic, value)

    # ----------------- polling -----------------
    def check_health(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        with self._lock:
            last = self._last_message
            client = self._client
        if now - last > self.stale_seconds:
            log.warning("[MQTT] no messages for %.0fs, marking as disconnected", now - last)
            self._set_status(STATUS_ERROR, "No data received - connection may be lost")
        if client is not None and not client.is_connected():
            log.warning("[MQTT] client shows as disconnected")
            self._set_status(STATUS_ERROR, "MQTT client disconnected")

    def poll(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Latest readings for the dashboard; starts or revives the connection as a side effect."""
        now = self._clock() if now is None else now
        if self.enabled:
            with self._lock:
                first = not self._polled
                self._polled = True
            if first:
                self.start()
            self.check_health(now)
            if not self.is_connected():
                with self._lock:
                    if self._status != STATUS_CONNECTING:
                        self._status = STATUS_CONNECTING
                        self._error = "Attempting to reconnect..."
                self.start()
        out = self.snapshot()
        out["timestamp"] = iso_utc(now)
        return out

    def history(self, days: Optional[float] = None, now: Optional[float] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._history)
        if days is not None:
            now = self._clock() if now is None else now
            cutoff = now - timedelta(days=days).total_seconds()
            items = [(ts, e) for ts, e in items if ts >= cutoff]
        return [dict(e) for _, e in items]
