"""
Tests for the enrichment job API with a stubbed provider.
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

import server


CSV_TEXT = "Name,Website\nShop,shop.example.com\nShop About,SHOP.EXAMPLE.COM/about\nIG,instagram.com/brandx\nBeta,beta.io\n"


class StubProvider:
    def __init__(self, gate=None):
        self.calls = []
        self.gate = gate

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def __call__(self, identifier, context):
        self.calls.append(identifier.value)
        if self.gate is not None:
            await self.gate()
        return {"classification": "QUALIFIED", "company_summary": f"About {identifier.value}"}


@pytest.fixture
def api(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "DATA_DIR", tmp_path)
    monkeypatch.setattr(server, "_build_notifier", lambda: None)
    server.JOB_STORE.clear()
    yield
    server.JOB_STORE.clear()


def _start(client, **form):
    data = {"websiteColumn": "Website", "concurrency": "1"}
    data.update(form)
    return client.post(
        "/api/enrich/start",
        files={"file": ("leads.csv", CSV_TEXT.encode("utf-8"), "text/csv")},
        data=data,
    )


def _wait_for(client, job_id, statuses=("completed", "stopped", "error")):
    for _ in range(200):
        payload = client.get("/api/enrich/progress", params={"jobId": job_id}).json()
        if payload["status"] in statuses:
            return payload
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


def test_health(api):
    with TestClient(server.app) as client:
        response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_job_runs_to_completion_and_downloads(api, monkeypatch):
    provider = StubProvider()
    monkeypatch.setattr(server, "_build_enricher", lambda: provider)

    with TestClient(server.app) as client:
        started = _start(client)
        assert started.status_code == 200, started.text
        body = started.json()
        assert body["total"] == 2
        assert body["skippedRows"] == 1
        assert body["mode"] == "domain"

        finished = _wait_for(client, body["jobId"])
        assert finished["status"] == "completed"
        assert finished["parts"] == ["result"]
        assert finished["result"]["counts"]["ok"] == 2

        download = client.get("/api/enrich/download", params={"jobId": body["jobId"]})
        assert download.status_code == 200
        assert "leads.csv" in download.headers["content-disposition"]
        assert "About shop.example.com" in download.text

        missing = client.get("/api/enrich/download", params={"jobId": body["jobId"], "part": "pending"})
        assert missing.status_code == 404

    assert provider.calls == ["shop.example.com", "beta.io"]


def test_stop_yields_processed_and_pending_parts(api, monkeypatch):
    async def wait_for_stop():
        while not any(job.get("stopRequested") for job in server.JOB_STORE.values()):
            await asyncio.sleep(0.01)

    provider = StubProvider(gate=wait_for_stop)
    monkeypatch.setattr(server, "_build_enricher", lambda: provider)

    with TestClient(server.app) as client:
        job_id = _start(client).json()["jobId"]
        conflict = _start(client)
        assert conflict.status_code == 409

        for _ in range(200):
            if provider.calls:
                break
            time.sleep(0.01)
        stopping = client.post("/api/enrich/stop", data={"jobId": job_id})
        assert stopping.json()["stopRequested"]

        finished = _wait_for(client, job_id)
        assert finished["status"] == "stopped"
        assert finished["parts"] == ["pending", "processed"]

        pending = client.get("/api/enrich/download", params={"jobId": job_id, "part": "pending"})
        assert pending.status_code == 200
        assert "leads_pending.csv" in pending.headers["content-disposition"]
        assert "beta.io" in pending.text

        info = client.get("/api/checkpoint").json()
        assert info["exists"]
        assert info["processed"] == 1

        cleared = client.post("/api/checkpoint/clear")
        assert cleared.json()["status"] == "success"
        assert client.get("/api/checkpoint").json() == {"exists": False}

    assert provider.calls == ["shop.example.com"]


def test_start_rejects_bad_input(api, monkeypatch):
    monkeypatch.setattr(server, "_build_enricher", lambda: StubProvider())

    with TestClient(server.app) as client:
        missing_column = _start(client, websiteColumn="Domain")
        assert missing_column.status_code == 400

        nothing = client.post(
            "/api/enrich/start",
            files={"file": ("leads.csv", b"Website\nfacebook.com/acme\n", "text/csv")},
            data={"websiteColumn": "Website"},
        )
        assert nothing.status_code == 400

        wrong_type = client.post(
            "/api/enrich/start",
            files={"file": ("leads.txt", b"Website\nacme.io\n", "text/plain")},
            data={"websiteColumn": "Website"},
        )
        assert wrong_type.status_code == 400

        assert client.get("/api/enrich/progress", params={"jobId": "nope"}).status_code == 404
