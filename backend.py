#!/usr/bin/env python3
"""
OneFarmer backend: nutrient dosing log, plant records and the MQTT sensor feed.

Run:
  pip install -e .
  python backend.py

Endpoints implemented:
  GET  /health
  GET  /api/formulations
  POST /api/nutrients/calculate
  GET|POST|DELETE /api/nutrient-entries
  GET|POST|DELETE /api/<rose|hibiscus>-plant-nutrient-entries
  GET|POST|DELETE /api/<environmental|hydroponic>-entries
  GET|POST|DELETE /api/<rose|hibiscus>-plant-entries
  GET|POST|DELETE /api/<rose|hibiscus>-plant-stem-history
  GET|POST        /api/<rose|hibiscus>-plant-parameters
  GET|POST|DELETE /api/plant-links
  GET|POST|DELETE /api/hibiscus-plant-links
  GET  /api/mqtt-data
  GET  /api/export-data
"""
from __future__ import annotations

import atexit
import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS

from config import load_settings
from feed import SensorFeed
from nutrients import FORMULATIONS, NutrientFormulation, calculate_concentrations, load_formulation_workbook
from records import (
    DoseEntry,
    PlantEntry,
    PlantLink,
    PlantParameters,
    SensorEntry,
    StemHistoryEntry,
    ValidationError,
    parse_doses,
    parse_volume,
)
from storage import Stores

log = logging.getLogger("backend")

api = Blueprint("api", __name__)

PLANTS = "any(rose, hibiscus)"
SENSOR_CATEGORIES = "any(environmental, hydroponic)"


# ----------------- app state -----------------
def _state() -> Dict[str, Any]:
    return current_app.extensions["onefarmer"]


def _stores() -> Stores:
    return _state()["stores"]


def _feed() -> SensorFeed:
    return _state()["feed"]


def _table() -> Tuple[NutrientFormulation, ...]:
    return _state()["formulations"]


def _json_body() -> Any:
    body = request.get_json(silent=True)
    if body is None:
        raise ValidationError("request body must be JSON")
    return body


def _required_arg(name: str) -> str:
    value = request.args.get(name)
    if not value:
        raise ValidationError(f"{name} is required")
    return value


# ----------------- errors -----------------
@api.app_errorhandler(ValidationError)
def handle_validation(e: ValidationError):
    log.info("[API] %s %s rejected: %s", request.method, request.path, e)
    return jsonify({"ok": False, "error": str(e)}), 400


@api.app_errorhandler(OSError)
def handle_storage(e: OSError):
    log.error("[API] %s %s storage failure: %s", request.method, request.path, e)
    return jsonify({"ok": False, "error": "Failed to access stored data"}), 500


# ----------------- health + formulations -----------------
@api.route("/health")
def health():
    feed = _feed()
    return jsonify({"ok": True, "broker": feed.broker, "feed": feed.status})


@api.route("/api/formulations")
def formulations():
    return jsonify({"formulations": [f.to_dict() for f in _table()]})


@api.route("/api/nutrients/calculate", methods=["POST"])
def calculate():
    body = _json_body()
    doses = parse_doses(body)
    volume = parse_volume(body)
    return jsonify({"calculatedElements": calculate_concentrations(doses, volume, _table()), "totalVolume": volume})


# ----------------- nutrient dose entries -----------------
@api.route("/api/nutrient-entries", methods=["GET", "POST", "DELETE"], defaults={"plant": None})
@api.route(f"/api/<{PLANTS}:plant>-plant-nutrient-entries", methods=["GET", "POST", "DELETE"])
def nutrient_entries(plant: Optional[str]):
    store = _stores().doses(plant)

    if request.method == "POST":
        entry = DoseEntry.from_dict(_json_body(), _table())
        store.append(entry)
        log.info("[API] dose entry %s %s saved (%s)", entry.date, entry.time, plant or "dashboard")
        return jsonify({"ok": True, "entry": entry.to_dict()})

    if request.method == "DELETE":
        date = request.args.get("date")
        time_ = request.args.get("time")
        if date or time_:
            if not (date and time_):
                raise ValidationError("Date and time are required")
            removed = store.remove((date, time_))
            return jsonify({"ok": True, "removed": removed})
        store.clear()
        return jsonify({"ok": True})

    return jsonify({"entries": [e.to_dict() for e in store.list()]})


# ----------------- environmental / hydroponic readings -----------------
@api.route(f"/api/<{SENSOR_CATEGORIES}:category>-entries", methods=["GET", "POST", "DELETE"])
def sensor_entries(category: str):
    store = _stores().sensors(category)

    if request.method == "POST":
        entry = SensorEntry.from_dict(_json_body())
        store.append(entry)
        return jsonify({"ok": True, "entry": entry.to_dict()})

    if request.method == "DELETE":
        store.clear()
        return jsonify({"ok": True})

    return jsonify({"entries": [e.to_dict() for e in store.list()]})


# ----------------- plant growth log -----------------
@api.route(f"/api/<{PLANTS}:plant>-plant-entries", methods=["GET", "POST", "DELETE"])
def plant_entries(plant: str):
    store = _stores().plant_entries(plant)
    stem_id = request.args.get("stemId")

    if request.method == "POST":
        entry = PlantEntry.from_dict(_json_body())
        store.append(entry)
        return jsonify({"ok": True, "entry": entry.to_dict()})

    if request.method == "DELETE":
        if stem_id:
            removed = store.remove_where(lambda e: e.stemId == stem_id)
            return jsonify({"ok": True, "removed": removed})
        store.clear()
        return jsonify({"ok": True})

    entries = store.list()
    if stem_id:
        entries = [e for e in entries if e.stemId == stem_id]
    return jsonify({"entries": [e.to_dict() for e in entries]})


@api.route(f"/api/<{PLANTS}:plant>-plant-stem-history", methods=["GET", "POST", "DELETE"])
def stem_history(plant: str):
    if request.method == "POST":
        body = _json_body()
        if not isinstance(body, Mapping) or not body.get("stemId") or not body.get("entry"):
            raise ValidationError("stemId and entry are required")
        entry = StemHistoryEntry.from_dict(body["entry"])
        _stores().stem_history(plant, str(body["stemId"])).append(entry)
        return jsonify({"ok": True, "entry": entry.to_dict()})

    store = _stores().stem_history(plant, _required_arg("stemId"))
    if request.method == "DELETE":
        store.clear()
        return jsonify({"ok": True})
    return jsonify({"history": [e.to_dict() for e in store.list()]})


@api.route(f"/api/<{PLANTS}:plant>-plant-parameters", methods=["GET", "POST"])
def plant_parameters(plant: str):
    store = _stores().parameters(plant)
    if request.method == "POST":
        params = store.save(PlantParameters.from_dict(_json_body()))
        return jsonify({"ok": True, "parameters": params.to_dict()})
    return jsonify({"parameters": store.load().to_dict()})


# ----------------- links -----------------
def _links(default_page: str):
    if request.method == "POST":
        data = request.form if request.form else _json_body()
        if not isinstance(data, Mapping):
            raise ValidationError("request body must be a JSON object")
        store = _stores().links(data.get("page") or default_page)
        link = PlantLink.from_form(data)
        store.append(link)
        log.info("[API] link %s saved", link.id)
        return jsonify({"ok": True, "link": link.to_dict()})

    store = _stores().links(request.args.get("page") or default_page)
    if request.method == "DELETE":
        link_id = _required_arg("linkId")
        if not store.remove_where(lambda link: link.id == link_id):
            return jsonify({"ok": False, "error": "Link not found"}), 404
        return jsonify({"ok": True})

    links = store.list()
    category = request.args.get("category")
    stem_id = request.args.get("stemId")
    if category:
        links = [link for link in links if link.category == category]
    if stem_id:
        links = [link for link in links if link.stemId == stem_id]
    return jsonify({"links": [link.to_dict() for link in links]})


@api.route("/api/plant-links", methods=["GET", "POST", "DELETE"])
def plant_links():
    return _links("dashboard")


@api.route("/api/hibiscus-plant-links", methods=["GET", "POST", "DELETE"])
def hibiscus_plant_links():
    return _links("hibiscus")


# ----------------- sensor feed -----------------
@api.route("/api/mqtt-data")
def mqtt_data():
    resp = jsonify(_feed().poll())
    resp.headers["Cache-Control"] = "no-cache, no-store, max-age=0"
    return resp


@api.route("/api/export-data")
def export_data():
    fmt = request.args.get("format", "json")
    if fmt != "json":
        return jsonify({"ok": False, "error": "Invalid format"}), 400
    try:
        days = int(request.args.get("days", 7))
    except ValueError:
        raise ValidationError("days must be an integer") from None
    if days <= 0:
        raise ValidationError("days must be positive")
    resp = jsonify(_feed().history(days=days))
    resp.headers["Content-Disposition"] = f'attachment; filename="onefarmer-data-{days}days.json"'
    return resp


# ----------------- app factory -----------------
def load_formulations(path: Optional[str]) -> Tuple[NutrientFormulation, ...]:
    if not path or not os.path.exists(path):
        return FORMULATIONS
    try:
        table = load_formulation_workbook(path)
        log.info("[FORMULATIONS] Loaded overrides from %s", path)
        return table
    except Exception:
        log.exception("[FORMULATIONS] Failed to load workbook %s, keeping built-in table", path)
        return FORMULATIONS


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.update(load_settings())
    if overrides:
        app.config.update(overrides)
    CORS(app)

    cfg = app.config
    feed = SensorFeed(
        broker=cfg["MQTT_BROKER"],
        port=cfg["MQTT_PORT"],
        topic_prefix=cfg["MQTT_TOPIC_PREFIX"],
        username=cfg["MQTT_USERNAME"],
        password=cfg["MQTT_PASSWORD"],
        keepalive=cfg["MQTT_KEEPALIVE"],
        reconnect_seconds=cfg["MQTT_RECONNECT_SECONDS"],
        history_size=cfg["FEED_HISTORY_SIZE"],
        stale_seconds=cfg["FEED_STALE_SECONDS"],
        enabled=cfg["MQTT_ENABLED"],
    )
    app.extensions["onefarmer"] = {
        "stores": Stores(cfg["DATA_DIR"]),
        "feed": feed,
        "formulations": load_formulations(cfg["FORMULATIONS_XLSX"]),
    }
    app.register_blueprint(api)
    return app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings["LOG_LEVEL"], format="[%(levelname)s] %(asctime)s %(message)s")

    app = create_app()
    feed = app.extensions["onefarmer"]["feed"]
    feed.start()
    atexit.register(feed.stop)

    log.info("[BACKEND] Starting Flask on http://%s:%s", settings["FLASK_HOST"], settings["FLASK_PORT"])
    app.run(host=settings["FLASK_HOST"], port=settings["FLASK_PORT"], threaded=True)


if __name__ == "__main__":
    main()
