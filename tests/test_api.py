from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from prayer_engine.api.server import create_app
from prayer_engine.core.task_manager import TaskManager
from prayer_engine.prayer.engine import PrayerTimeEngine
from prayer_engine.prayer.types import OffsetSet


@pytest.fixture
def engine_app(database, settings, location_service, scheduler):
    saved = []
    task_manager = TaskManager()
    app = SimpleNamespace(
        engine=PrayerTimeEngine(settings, location_service, scheduler=scheduler),
        task_manager=task_manager,
        save_offsets=saved.append,
        saved=saved,
    )
    yield app
    task_manager.stop()
    app.engine.shutdown()


@pytest.fixture
def client(engine_app):
    return TestClient(create_app(engine_app))


class TestPrayerApi:
    def test_times(self, client):
        response = client.get("/api/prayer/times")
        assert response.status_code == 200
        body = response.json()
        assert body["convention"] == "UmmAlQura"
        assert body["timezone"] == "Asia/Riyadh"
        assert body["location"] == {"latitude": 21.4225, "longitude": 39.8262}
        assert [p["name"] for p in body["prayers"]] == ["Fajr", "Dhuhr", "Asr", "Maghrib", "Isha"]
        assert all(p["time_until"] for p in body["prayers"])

    def test_refresh(self, client):
        assert client.post("/api/prayer/refresh").status_code == 200

    def test_conventions(self, client):
        body = client.get("/api/prayer/conventions").json()
        ids = [c["id"] for c in body]
        assert "UmmAlQura" in ids and "Tehran" in ids
        umm = next(c for c in body if c["id"] == "UmmAlQura")
        assert umm["isha_interval"] == 90
        assert umm["isha_angle"] is None

    def test_get_offsets(self, client):
        assert client.get("/api/prayer/offsets").json() == {"fajr": 0, "dhuhr": 0, "asr": 0, "maghrib": 0, "isha": 0}

    def test_put_offsets(self, client, engine_app):
        response = client.put("/api/prayer/offsets", json={"fajr": 10, "isha": -5})
        assert response.status_code == 200
        assert response.json()["fajr"] == 10
        assert engine_app.engine.settings.offsets == OffsetSet(fajr=10, isha=-5)
        assert engine_app.saved == [OffsetSet(fajr=10, isha=-5)]

    def test_put_invalid_offsets(self, client, engine_app):
        response = client.put("/api/prayer/offsets", json={"asr": 90})
        assert response.status_code == 422
        assert engine_app.engine.settings.offsets == OffsetSet()
        assert engine_app.saved == []

    def test_mark_completed(self, client):
        body = client.post("/api/prayer/completed/fajr").json()
        assert body["prayers"][0]["completed"] is True
        body = client.post("/api/prayer/completed/fajr", params={"completed": "false"}).json()
        assert body["prayers"][0]["completed"] is False

    def test_mark_unknown_prayer(self, client):
        assert client.post("/api/prayer/completed/sunrise").status_code == 404

    def test_alerts(self, client, transport):
        client.get("/api/prayer/times")
        alerts = client.get("/api/prayer/alerts").json()
        assert len(alerts) == len(transport.pending)
        assert all(a["handle"] in transport.pending for a in alerts)

    def test_stored(self, client):
        assert client.get("/api/prayer/stored").status_code == 404
        client.get("/api/prayer/times")
        body = client.get("/api/prayer/stored").json()
        assert body["convention"] == "UmmAlQura"
        assert set(body["data"]["times"]) == {"Fajr", "Dhuhr", "Asr", "Maghrib", "Isha"}


class TestTasksApi:
    def test_tasks(self, client, engine_app):
        engine_app.task_manager.schedule_task("later", lambda: None, 60)
        body = client.get("/api/tasks").json()
        assert body["db_schedules"] == []
        assert [t["name"] for t in body["active_timers"]] == ["later"]
