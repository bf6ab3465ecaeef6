"""
HTTP API through the Flask test client (feed disabled, data in tmp_path).
"""
import json
import os
from types import SimpleNamespace

import pytest
from openpyxl import Workbook

from backend import create_app

WEEKLY_FEED = {
    "date": "2024-06-01",
    "time": "08:30",
    "masterblend": 2.5,
    "calciumNitrate": 1.8,
    "magnesiumSulfate": 0.6,
    "phDown": 0.2,
    "phUp": 0,
    "totalVolume": 20,
    "notes": "weekly feed",
}


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").get_json()
        assert body["ok"] is True
        assert body["feed"] == "error"

    def test_cors_header(self, client):
        resp = client.get("/health", headers={"Origin": "http://dashboard.local"})
        assert resp.headers.get("Access-Control-Allow-Origin") in ("*", "http://dashboard.local")


class TestFormulations:
    def test_lists_builtin_table(self, client):
        names = [f["name"] for f in client.get("/api/formulations").get_json()["formulations"]]
        assert names == ["Masterblend 4-18-38", "Calcium Nitrate", "Magnesium Sulfate"]

    def test_calculate_preview(self, client):
        body = client.post("/api/nutrients/calculate", json=WEEKLY_FEED).get_json()
        assert body["calculatedElements"]["N"] == pytest.approx(18.95)

    def test_calculate_zero_volume(self, client):
        body = client.post("/api/nutrients/calculate", json={"masterblend": 1, "totalVolume": 0}).get_json()
        assert body["calculatedElements"] == {}

    def test_calculate_rejects_negative_dose(self, client):
        resp = client.post("/api/nutrients/calculate", json={"masterblend": -2})
        assert resp.status_code == 400
        assert resp.get_json()["ok"] is False

    def test_workbook_overrides_loaded_at_startup(self, tmp_path):
        path = tmp_path / "formulations.xlsx"
        wb = Workbook()
        wb.active.append(["Product", "N"])
        wb.active.append(["Calcium Nitrate", 10.0])
        wb.save(path)
        app = create_app({"TESTING": True, "DATA_DIR": str(tmp_path / "d"),
                          "FORMULATIONS_XLSX": str(path), "MQTT_ENABLED": False})
        body = app.test_client().post("/api/nutrients/calculate",
                                      json={"calciumNitrate": 2, "totalVolume": 10}).get_json()
        elements = body["calculatedElements"]
        assert elements["N"] == pytest.approx(20.0)
        assert elements.get("Ca", 0.0) == 0.0

    def test_broken_workbook_keeps_builtin(self, tmp_path):
        path = tmp_path / "formulations.xlsx"
        path.write_bytes(b"not a zip")
        app = create_app({"TESTING": True, "DATA_DIR": str(tmp_path / "d"),
                          "FORMULATIONS_XLSX": str(path), "MQTT_ENABLED": False})
        formulations = app.test_client().get("/api/formulations").get_json()["formulations"]
        assert formulations[1]["elements"]["N"] == 15.5


class TestNutrientEntries:
    def test_empty_on_first_run(self, client):
        assert client.get("/api/nutrient-entries").get_json() == {"entries": []}

    def test_create_computes_concentrations(self, client, app):
        payload = dict(WEEKLY_FEED, calculatedElements={"N": 1})
        body = client.post("/api/nutrient-entries", json=payload).get_json()
        assert body["ok"] is True
        assert body["entry"]["calculatedElements"]["N"] == pytest.approx(18.95)

        path = os.path.join(app.config["DATA_DIR"], "nutrient-entries.json")
        with open(path, encoding="utf-8") as f:
            stored = json.load(f)
        assert stored[0]["notes"] == "weekly feed"
        assert stored[0]["calculatedElements"]["Ca"] == pytest.approx(17.1)

    def test_missing_date_is_400(self, client):
        resp = client.post("/api/nutrient-entries", json={"time": "08:30"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Date and time are required"

    def test_non_json_is_400(self, client):
        resp = client.post("/api/nutrient-entries", data="date=2024-06-01", content_type="text/plain")
        assert resp.status_code == 400

    def test_same_date_time_replaced(self, client):
        client.post("/api/rose-plant-nutrient-entries", json=WEEKLY_FEED)
        client.post("/api/rose-plant-nutrient-entries", json=dict(WEEKLY_FEED, masterblend=3.0))
        client.post("/api/rose-plant-nutrient-entries", json=dict(WEEKLY_FEED, date="2024-05-31"))
        entries = client.get("/api/rose-plant-nutrient-entries").get_json()["entries"]
        assert [e["date"] for e in entries] == ["2024-05-31", "2024-06-01"]
        assert entries[1]["masterblend"] == 3.0

    def test_plants_are_separate_stores(self, client):
        client.post("/api/hibiscus-plant-nutrient-entries", json=WEEKLY_FEED)
        assert client.get("/api/nutrient-entries").get_json()["entries"] == []
        assert len(client.get("/api/hibiscus-plant-nutrient-entries").get_json()["entries"]) == 1

    def test_unknown_plant_is_404(self, client):
        assert client.get("/api/tulip-plant-nutrient-entries").status_code == 404

    def test_delete_one_then_clear(self, client):
        client.post("/api/nutrient-entries", json=WEEKLY_FEED)
        client.post("/api/nutrient-entries", json=dict(WEEKLY_FEED, time="09:00"))
        body = client.delete("/api/nutrient-entries?date=2024-06-01&time=08:30").get_json()
        assert body["removed"] is True
        assert len(client.get("/api/nutrient-entries").get_json()["entries"]) == 1
        assert client.delete("/api/nutrient-entries?date=2024-06-01").status_code == 400
        client.delete("/api/nutrient-entries")
        assert client.get("/api/nutrient-entries").get_json()["entries"] == []

    def test_malformed_stored_row_skipped(self, client, app):
        os.makedirs(app.config["DATA_DIR"], exist_ok=True)
        path = os.path.join(app.config["DATA_DIR"], "nutrient-entries.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump([{"date": "6/1/2024", "time": "08:30"}], f)
        assert client.get("/api/nutrient-entries").get_json() == {"entries": []}
        assert client.post("/api/nutrient-entries", json=WEEKLY_FEED).status_code == 200
        assert len(client.get("/api/nutrient-entries").get_json()["entries"]) == 1

    def test_write_failure_is_500(self, client, app):
        # a directory where the data file should be makes the write fail
        os.makedirs(os.path.join(app.config["DATA_DIR"], "nutrient-entries.json"))
        resp = client.post("/api/nutrient-entries", json=WEEKLY_FEED)
        assert resp.status_code == 500
        assert resp.get_json()["ok"] is False


class TestSensorAndPlantEntries:
    def test_environmental_round_trip(self, client):
        client.post("/api/environmental-entries", json={"timestamp": "2024-06-01T09:00:00Z", "temperature": 22})
        client.post("/api/environmental-entries", json={"timestamp": "2024-06-01T08:00:00Z", "temperature": 21})
        entries = client.get("/api/environmental-entries").get_json()["entries"]
        assert [e["temperature"] for e in entries] == [21, 22]
        client.delete("/api/environmental-entries")
        assert client.get("/api/environmental-entries").get_json()["entries"] == []

    def test_hydroponic_requires_timestamp(self, client):
        resp = client.post("/api/hydroponic-entries", json={"ph": 6.1})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Timestamp is required"

    def test_plant_entries_by_stem(self, client):
        client.post("/api/rose-plant-entries", json={"timestamp": "2024-06-01T08:00:00Z", "stemId": "A"})
        client.post("/api/rose-plant-entries", json={"timestamp": "2024-06-01T09:00:00Z", "stemId": "B"})
        only_a = client.get("/api/rose-plant-entries?stemId=A").get_json()["entries"]
        assert [e["stemId"] for e in only_a] == ["A"]
        assert client.delete("/api/rose-plant-entries?stemId=A").get_json()["removed"] == 1
        assert [e["stemId"] for e in client.get("/api/rose-plant-entries").get_json()["entries"]] == ["B"]

    def test_stem_history(self, client):
        resp = client.post("/api/hibiscus-plant-stem-history",
                           json={"stemId": "E", "entry": {"timestamp": "2024-06-01T08:00:00Z", "height": 21}})
        assert resp.status_code == 200
        history = client.get("/api/hibiscus-plant-stem-history?stemId=E").get_json()["history"]
        assert history[0]["height"] == 21
        assert client.get("/api/hibiscus-plant-stem-history").status_code == 400
        assert client.post("/api/hibiscus-plant-stem-history", json={"stemId": "E"}).status_code == 400
        assert client.get("/api/hibiscus-plant-stem-history?stemId=../x").status_code == 400
        client.delete("/api/hibiscus-plant-stem-history?stemId=E")
        assert client.get("/api/hibiscus-plant-stem-history?stemId=E").get_json()["history"] == []

    def test_parameters(self, client):
        assert client.get("/api/rose-plant-parameters").get_json() == {"parameters": {}}
        params = {"stemA_height": 19.0, "stemA_date": "2024-06-01", "overallPlantHealth": "excellent"}
        assert client.post("/api/rose-plant-parameters", json=params).get_json()["parameters"] == params
        assert client.get("/api/rose-plant-parameters").get_json()["parameters"] == params
        assert client.post("/api/rose-plant-parameters", json={"bogus": 1}).status_code == 400


class TestLinks:
    def test_create_from_form_and_filter(self, client):
        resp = client.post("/api/plant-links", data={"title": "pH basics", "url": "https://example.org/ph",
                                                     "category": "tutorial", "stemId": "A"})
        link = resp.get_json()["link"]
        assert link["id"].startswith("A_")
        client.post("/api/plant-links", json={"title": "Supplier", "url": "https://shop.example.org",
                                              "category": "suppliers"})
        assert len(client.get("/api/plant-links").get_json()["links"]) == 2
        tutorials = client.get("/api/plant-links?category=tutorial").get_json()["links"]
        assert [t["title"] for t in tutorials] == ["pH basics"]
        assert client.get("/api/plant-links?stemId=SYSTEM").get_json()["links"][0]["title"] == "Supplier"

    def test_hibiscus_links_route(self, client):
        link = client.post("/api/hibiscus-plant-links",
                           json={"title": "Hibiscus care", "url": "https://example.org/h"}).get_json()["link"]
        assert client.get("/api/plant-links").get_json()["links"] == []
        assert client.get("/api/plant-links?page=hibiscus").get_json()["links"][0]["id"] == link["id"]
        assert client.delete(f"/api/hibiscus-plant-links?linkId={link['id']}").status_code == 200
        assert client.get("/api/hibiscus-plant-links").get_json()["links"] == []

    def test_pages_are_separate(self, client):
        client.post("/api/plant-links", json={"title": "x", "url": "https://x.org", "page": "rose"})
        assert client.get("/api/plant-links").get_json()["links"] == []
        assert len(client.get("/api/plant-links?page=rose").get_json()["links"]) == 1

    def test_validation(self, client):
        assert client.post("/api/plant-links", json={"url": "https://x.org"}).get_json()["error"] == "Title is required"
        assert client.post("/api/plant-links", json={"title": "x", "url": "x"}).get_json()["error"] == "Invalid URL format"

    def test_delete(self, client):
        link = client.post("/api/plant-links", json={"title": "x", "url": "https://x.org"}).get_json()["link"]
        assert client.delete("/api/plant-links").status_code == 400
        assert client.delete("/api/plant-links?linkId=missing").status_code == 404
        assert client.delete(f"/api/plant-links?linkId={link['id']}").status_code == 200
        assert client.get("/api/plant-links").get_json()["links"] == []


class TestFeedEndpoints:
    def test_mqtt_data_no_cache(self, client):
        resp = client.get("/api/mqtt-data")
        body = resp.get_json()
        assert resp.headers["Cache-Control"] == "no-cache, no-store, max-age=0"
        assert body["temperature"] is None
        assert body["status"] == "error"
        assert "timestamp" in body

    def test_non_finite_reading_keeps_valid_json(self, client, app):
        feed = app.extensions["onefarmer"]["feed"]
        topic = next(t for t, name in feed.topics.items() if name == "ph")
        feed.on_message(None, None, SimpleNamespace(topic=topic, payload=b"nan"))

        def reject(token):
            raise ValueError(token)

        for url in ("/api/mqtt-data", "/api/export-data"):
            body = json.loads(client.get(url).get_data(as_text=True), parse_constant=reject)
            assert body is not None
        assert client.get("/api/mqtt-data").get_json()["ph"] is None

    def test_mqtt_data_reflects_messages(self, client, app):
        feed = app.extensions["onefarmer"]["feed"]
        topic = next(t for t, name in feed.topics.items() if name == "ph")
        feed.on_message(None, None, SimpleNamespace(topic=topic, payload=b"6.3"))
        body = client.get("/api/mqtt-data").get_json()
        assert body["ph"] == 6.3
        assert body["status"] == "connected"

    def test_export_json(self, client, app):
        feed = app.extensions["onefarmer"]["feed"]
        topic = next(t for t, name in feed.topics.items() if name == "ec")
        feed.on_message(None, None, SimpleNamespace(topic=topic, payload=b"1.8"))
        resp = client.get("/api/export-data?days=3")
        assert resp.headers["Content-Disposition"] == 'attachment; filename="onefarmer-data-3days.json"'
        assert resp.get_json()[0]["ec"] == 1.8

    @pytest.mark.parametrize("query", ["format=csv", "days=abc", "days=0"])
    def test_export_bad_query(self, client, query):
        assert client.get(f"/api/export-data?{query}").status_code == 400
