from __future__ import annotations

import inspect
from pathlib import Path

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from conftest import ScriptedClient
from reply_engine.client import ApiConfig, CompletionClient
from reply_engine.errors import NetworkError
from reply_engine.server import create_app


@pytest.fixture()
def serve(tmp_path: Path, clean_env, make_engine):
    """Build a TestClient around an in-memory engine; config file is absent on purpose."""

    def _serve(client=None, **overrides) -> TestClient:
        engine = make_engine(client or ScriptedClient("ok"), **overrides)
        app = create_app(config_path=str(tmp_path / "missing.yaml"), engine=engine)
        return TestClient(app)

    return _serve


def test_health_reports_api_and_catalog(serve):
    with serve() as client:
        r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "api_configured": True, "emoji_catalog": 2}


def test_config_redacts_api_key(tmp_path: Path, clean_env, monkeypatch, make_engine):
    monkeypatch.setenv("REPLY_ENGINE__API__API_KEY", "sk-secret")
    app = create_app(config_path=str(tmp_path / "missing.yaml"), engine=make_engine())
    with TestClient(app) as client:
        r = client.get("/config")
    assert r.status_code == 200
    assert r.json()["api"]["api_key"] == "***"
    assert r.json()["engine"]["debounce_seconds"] == 180


def test_send_then_reply_roundtrip(serve):
    with serve(ScriptedClient("在的\n怎么啦")) as client:
        r = client.post("/conversations/c1/messages", json={"text": "在吗"})
        assert r.status_code == 200
        body = r.json()
        assert [m["text"] for m in body["messages"]] == ["在吗"]
        assert body["state"]["debounce_armed"] is True

        r = client.post("/conversations/c1/reply")
        assert r.status_code == 200
        assert r.json()["kind"] == "normal"
        assert [m["text"] for m in r.json()["messages"]] == ["在的", "怎么啦"]

        r = client.get("/conversations/c1/messages")
        msgs = r.json()["messages"]
    assert [(m["sender"], m["text"]) for m in msgs] == [
        ("user", "在吗"),
        ("character", "在的"),
        ("character", "怎么啦"),
    ]


def test_message_polling_by_version(serve):
    with serve() as client:
        client.post("/conversations/c1/messages", json={"text": "hi"})
        first = client.get("/conversations/c1/messages").json()
        assert first["changed"] is True

        same = client.get("/conversations/c1/messages", params={"since_version": first["version"]}).json()
        assert same == {"version": first["version"], "changed": False, "messages": []}

        client.post("/conversations/c1/messages", json={"text": "again"})
        later = client.get("/conversations/c1/messages", params={"since_version": first["version"]}).json()
    assert later["changed"] is True
    assert len(later["messages"]) == 2


def test_send_validation(serve):
    with serve() as client:
        assert client.post("/conversations/c1/messages", json={"text": ""}).status_code == 422
        assert client.post("/conversations/c1/messages", json={"text": "   "}).status_code == 400
        assert client.post("/conversations/c1/messages", json={"text": "x", "kind": "video"}).status_code == 422


def test_voice_message_from_user(serve):
    with serve() as client:
        r = client.post("/conversations/c1/messages", json={"text": "到了到了", "kind": "voice"})
    msg = r.json()["messages"][0]
    assert msg["kind"] == "voice"
    assert msg["voice_duration"] == 2


def test_busy_reply_state(serve):
    with serve(ScriptedClient("[BUSY:3] 在开车")) as client:
        client.post("/conversations/c1/messages", json={"text": "hey"})
        r = client.post("/conversations/c1/reply")
        assert r.json()["kind"] == "busy"
        assert r.json()["reason"] == "在开车"
        state = client.get("/conversations/c1/state").json()
    assert state["phase"] == "busy_wait"
    assert state["busy_remaining_seconds"] == 180
    assert state["banner"] == "Busy, back in about 3 min"


def test_reply_with_nothing_pending(serve):
    with serve() as client:
        r = client.post("/conversations/c1/reply")
    assert r.status_code == 200
    assert r.json()["kind"] == "nothing_pending"


def test_missing_api_config_maps_to_428(serve):
    with serve(CompletionClient(ApiConfig())) as client:
        assert client.get("/health").json()["api_configured"] is False
        client.post("/conversations/c1/messages", json={"text": "hi"})
        r = client.post("/conversations/c1/reply")
        assert r.status_code == 428
        assert r.json()["error"] == "configure_api"
        state = client.get("/conversations/c1/state").json()
    assert state["phase"] == "idle"
    assert state["last_error"]


def test_transport_failure_maps_to_502(serve):
    with serve(ScriptedClient(NetworkError("connection reset"))) as client:
        client.post("/conversations/c1/messages", json={"text": "hi"})
        r = client.post("/conversations/c1/reply")
    assert r.status_code == 502
    assert r.json()["error"] == "transport"


def test_regenerate_replaces_last_reply(serve):
    with serve(ScriptedClient(["first", "second"])) as client:
        client.post("/conversations/c1/messages", json={"text": "q"})
        client.post("/conversations/c1/reply")
        r = client.post("/conversations/c1/regenerate")
        assert r.json()["kind"] == "normal"
        msgs = client.get("/conversations/c1/messages").json()["messages"]
    assert [m["text"] for m in msgs] == ["q", "second"]


def test_clear_history(serve):
    with serve() as client:
        client.post("/conversations/c1/messages", json={"text": "q"})
        r = client.delete("/conversations/c1/messages")
        assert r.status_code == 200
        assert r.json()["state"]["debounce_armed"] is False
        assert client.get("/conversations/c1/messages").json()["messages"] == []


def test_manual_snapshot_and_settings(serve):
    with serve() as client:
        assert client.post("/conversations/c1/snapshots").status_code == 409

        client.post("/conversations/c1/messages", json={"text": "remember this"})
        client.post("/conversations/c1/reply")
        r = client.post("/conversations/c1/snapshots")
        assert r.status_code == 200
        assert "remember this" in r.json()["summary_text"]
        assert client.post("/conversations/c1/snapshots").status_code == 409

        listed = client.get("/conversations/c1/snapshots").json()["snapshots"]
        assert len(listed) == 1

        assert client.get("/settings/summary").json() == {"enabled": True, "interval": 3}
        r = client.put("/settings/summary", json={"interval": 5})
        assert r.json() == {"enabled": True, "interval": 5}
        assert client.put("/settings/summary", json={"interval": 50}).status_code == 422


def test_open_and_close(serve):
    with serve() as client:
        assert client.post("/conversations/c1/open").json() == {"ok": True}
        assert client.post("/conversations/c1/close").json() == {"ok": True}


def test_engine_routes_run_on_the_event_loop(make_engine, tmp_path: Path, clean_env):
    app = create_app(config_path=str(tmp_path / "missing.yaml"), engine=make_engine())
    routes = [r for r in app.routes if isinstance(r, APIRoute) and r.path != "/config"]
    assert len(routes) >= 12
    blocking = [r.path for r in routes if not inspect.iscoroutinefunction(r.endpoint)]
    assert blocking == []
