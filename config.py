"""Runtime settings for the OneFarmer backend, read from the environment."""
from __future__ import annotations

import os
from typing import Any, Dict


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Dict[str, Any]:
    return {
        "DATA_DIR": os.environ.get("DATA_DIR", "data"),
        "FORMULATIONS_XLSX": os.environ.get("FORMULATIONS_XLSX", "formulations.xlsx"),
        "MQTT_ENABLED": _flag(os.environ.get("MQTT_ENABLED", "1")),
        "MQTT_BROKER": os.environ.get("MQTT_BROKER", "192.168.0.8"),
        "MQTT_PORT": int(os.environ.get("MQTT_PORT", 1883)),
        "MQTT_USERNAME": os.environ.get("MQTT_USERNAME") or None,
        "MQTT_PASSWORD": os.environ.get("MQTT_PASSWORD") or None,
        "MQTT_TOPIC_PREFIX": os.environ.get("MQTT_TOPIC_PREFIX", "hydroponic/sensors/rose"),
        "MQTT_KEEPALIVE": int(os.environ.get("MQTT_KEEPALIVE", 30)),
        "MQTT_RECONNECT_SECONDS": int(os.environ.get("MQTT_RECONNECT_SECONDS", 5)),
        "FEED_HISTORY_SIZE": int(os.environ.get("FEED_HISTORY_SIZE", 1000)),
        "FEED_STALE_SECONDS": float(os.environ.get("FEED_STALE_SECONDS", 120.0)),
        "FLASK_HOST": os.environ.get("FLASK_HOST", "0.0.0.0"),
        "FLASK_PORT": int(os.environ.get("FLASK_PORT", 5000)),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
    }
