from __future__ import annotations


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "version": "0.1.0", "signal_connections": 0}


def test_healthz_legacy_path(client):
    r = client.get("/api/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_healthz_counts_signal_connections(client):
    with client.websocket_connect("/api/ws/signal") as ws:
        ws.receive_json()
        assert client.get("/healthz").json()["signal_connections"] == 1
