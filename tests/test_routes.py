from fastapi.testclient import TestClient

import dashboard.routes as routes_module
from dashboard.app import app
from livetrack.models import GlobalStats
from livetrack.store import StoreError


class _DummyTracker:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.heartbeats = []
        self.ended = []

    async def record_heartbeat(self, username, session_tag, channel, now=None):
        if self.fail:
            raise StoreError("database is locked")
        self.heartbeats.append((username, session_tag, channel))

    async def end_watch(self, username, session_tag, now=None):
        self.ended.append((username, session_tag))

    async def count_watching(self):
        return 3


class _DummyReporter:
    def __init__(self):
        self.calls = []

    async def build_report(self, users=None, now=None, force_refresh=False):
        self.calls.append(force_refresh)
        return GlobalStats(total_users=0, total_watch_time=0, total_sessions=0, today_active_users=0)


HEARTBEAT = {
    "sessionId": "tab-1",
    "channelId": "c1",
    "channelName": "News",
    "channelGroup": "News",
    "sourceKey": "s1",
    "sourceName": "Source One",
}


def test_heartbeat_requires_login(monkeypatch):
    monkeypatch.setattr(routes_module, "tracker", _DummyTracker())

    client = TestClient(app)
    response = client.post("/api/live/heartbeat", json=HEARTBEAT)
    assert response.status_code == 401


def test_heartbeat_recorded(monkeypatch):
    tracker = _DummyTracker()
    monkeypatch.setattr(routes_module, "tracker", tracker)

    client = TestClient(app)
    response = client.post(
        "/api/live/heartbeat", json=HEARTBEAT, headers={"X-Forwarded-User": "alice"}
    )
    assert response.status_code == 200
    assert response.json() == {"success": True}

    username, session_tag, channel = tracker.heartbeats[0]
    assert (username, session_tag) == ("alice", "tab-1")
    assert channel.channel_id == "c1"
    assert channel.source_name == "Source One"


def test_heartbeat_missing_fields(monkeypatch):
    tracker = _DummyTracker()
    monkeypatch.setattr(routes_module, "tracker", tracker)

    client = TestClient(app)
    payload = dict(HEARTBEAT, channelName="")
    response = client.post(
        "/api/live/heartbeat", json=payload, headers={"X-Forwarded-User": "alice"}
    )
    assert response.status_code == 400
    assert tracker.heartbeats == []


def test_heartbeat_storage_failure(monkeypatch):
    monkeypatch.setattr(routes_module, "tracker", _DummyTracker(fail=True))

    client = TestClient(app)
    response = client.post(
        "/api/live/heartbeat", json=HEARTBEAT, headers={"X-Forwarded-User": "alice"}
    )
    assert response.status_code == 500
    assert response.json()["details"] == "database is locked"


def test_end_watch_accepts_beacon_body(monkeypatch):
    tracker = _DummyTracker()
    monkeypatch.setattr(routes_module, "tracker", tracker)

    client = TestClient(app)
    response = client.post(
        "/api/live/heartbeat/end",
        content='{"sessionId": "tab-1"}',
        headers={"X-Forwarded-User": "alice", "Content-Type": "text/plain;charset=UTF-8"},
    )
    assert response.status_code == 200
    assert tracker.ended == [("alice", "tab-1")]


def test_end_watch_requires_session_id(monkeypatch):
    tracker = _DummyTracker()
    monkeypatch.setattr(routes_module, "tracker", tracker)

    client = TestClient(app)
    response = client.post(
        "/api/live/heartbeat/end", json={}, headers={"X-Forwarded-User": "alice"}
    )
    assert response.status_code == 400
    assert tracker.ended == []


def test_session_id_with_separator_is_rejected(monkeypatch):
    tracker = _DummyTracker()
    monkeypatch.setattr(routes_module, "tracker", tracker)

    client = TestClient(app)
    headers = {"X-Forwarded-User": "alice"}
    payload = dict(HEARTBEAT, sessionId="tab:1")
    response = client.post("/api/live/heartbeat", json=payload, headers=headers)
    assert response.status_code == 400
    response = client.post(
        "/api/live/heartbeat/end", json={"sessionId": "tab:1"}, headers=headers
    )
    assert response.status_code == 400
    assert tracker.heartbeats == []
    assert tracker.ended == []


def test_live_stats_admin_only(monkeypatch):
    reporter = _DummyReporter()
    monkeypatch.setattr(routes_module, "reporter", reporter)
    monkeypatch.setattr(routes_module.settings, "admin_users", "root")

    client = TestClient(app)
    response = client.get("/api/admin/live-stats", headers={"X-Forwarded-User": "alice"})
    assert response.status_code == 403

    response = client.get(
        "/api/admin/live-stats?refresh=true", headers={"X-Forwarded-User": "root"}
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["totalUsers"] == 0
    assert payload["dailyTrend"] == []
    assert reporter.calls == [True]


def test_health_route():
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_route(monkeypatch):
    monkeypatch.setattr(routes_module, "tracker", _DummyTracker())

    client = TestClient(app)
    response = client.post(
        "/api/live/heartbeat", json=HEARTBEAT, headers={"X-Forwarded-User": "alice"}
    )
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "livetrack_active_watchers 3.0" in response.text
    assert "livetrack_heartbeats_total" in response.text
