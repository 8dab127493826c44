import time

import pytest
from fastapi.testclient import TestClient

from fakes import MockTargets, build_scheduler
from loadtester import main


@pytest.fixture
def client(monkeypatch, store, tmp_path):
    targets = MockTargets(durations={"bun.test": [10, 20, 30], "node.test": [40, 50, 60]})
    scheduler = build_scheduler(store, targets, payload_path=str(tmp_path / "payload.bin"))
    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "scheduler", scheduler)
    with TestClient(main.app) as c:
        yield c


def wait_for_terminal(client, run_id, timeout_s=5.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        body = client.get(f"/api/status/{run_id}").json()
        if body["status"] != "running":
            return body
        time.sleep(0.02)
    raise AssertionError(f"run {run_id} still running")


def test_list_tests(client):
    r = client.get("/api/tests")
    assert r.status_code == 200
    ids = [t["id"] for t in r.json()["tests"]]
    assert "full-suite" in ids
    assert len(ids) == 9


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["dashboard"] == "ok"
    assert body["services"]["bun"]["runtime"] == "bun"
    assert body["services"]["nodejs"]["runtime"] == "node"


def test_services(client):
    r = client.get("/api/services")
    assert r.status_code == 200
    assert set(r.json()) == {"bun", "nodejs"}


def test_unknown_test_type(client):
    r = client.post("/api/run", json={"testType": "nope"})
    assert r.status_code == 400


def test_missing_test_type(client):
    r = client.post("/api/run", json={"duration": "10s"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid test type"
    assert client.post("/api/run", json={}).status_code == 400


def test_invalid_concurrency(client):
    r = client.post("/api/run", json={"testType": "cpu-heavy", "concurrency": -1})
    assert r.status_code == 422


def test_run_cpu_heavy_to_completion(client):
    r = client.post("/api/run", json={"testType": "cpu-heavy", "iterations": 3})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "started"

    final = wait_for_terminal(client, body["runId"])
    assert final["status"] == "complete"
    assert final["progress"] == 100
    assert final["config"]["duration"] == "30s"
    assert final["results"]["bun"]["avg_duration_ms"] == 20
    assert final["results"]["nodejs"]["avg_duration_ms"] == 50
    assert final["summary"]["improvements"]["cpu"] == "2.50"

    reports = client.get("/api/reports").json()["reports"]
    assert reports[0]["id"] == body["runId"]

    report = client.get(f"/api/reports/{body['runId']}")
    assert report.status_code == 200
    assert report.json()["config"]["iterations"] == 3

    metrics = client.get("/metrics").text
    assert "# TYPE runs_completed_total counter" in metrics
    assert "service_up 1.0" in metrics


def test_status_not_found(client):
    r = client.get("/api/status/run-missing")
    assert r.status_code == 404


def test_report_not_found(client):
    assert client.get("/api/reports").json() == {"reports": []}
    r = client.get("/api/reports/run-missing")
    assert r.status_code == 404


def test_status_falls_back_to_disk(client, store):
    from test_store import make_run

    run = make_run(run_id="run-from-disk")
    store.save(run)
    r = client.get("/api/status/run-from-disk")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "complete"
    assert body["summary"]["improvements"]["cpu"] == "2.50"
    assert body["config"]["maxConcurrency"] == 2000
    assert body["results"]["nodejs"]["avg_duration_ms"] == 50
