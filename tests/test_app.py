"""Tests for the FastAPI endpoints in app.py."""

import asyncio
import time
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import app as app_module
from wikirunner.errors import EmbeddingError, FetchError
from wikirunner.models import SolverMove, SolverType
from wikirunner.navigator import Navigator
from wikirunner.solvers import build_solver

from fakes import ScriptedSolver


class SlowSolver:
    """Walks a fixed route, taking a moment per step so requests can land mid-run."""

    kind = SolverType.VECTORS

    def __init__(self, links, delay=0.1):
        self.links = list(links)
        self.delay = delay

    async def choose(self, node, target, visited):
        await asyncio.sleep(self.delay)
        return SolverMove(link=self.links.pop(0), rationale="slow")


class FakeLookup:
    def __init__(self, error=None):
        self.error = error

    async def fetch_random_title(self):
        if self.error:
            raise self.error
        return "Cheese"

    async def search(self, query):
        if self.error:
            raise self.error
        return [f"{query.title()} (disambiguation)", query.title()]


def wait_for_status(client, session_id, *statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/runs/{session_id}").json()
        if body["status"] in statuses or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


@pytest.fixture
def preload(monkeypatch):
    mock = MagicMock()
    monkeypatch.setattr(app_module, "preload", mock)
    return mock


@pytest.fixture
def make_client(monkeypatch, line_graph, preload):
    monkeypatch.setattr(app_module, "SESSIONS", {})
    monkeypatch.setattr(app_module, "DRIVERS", {})

    def factory(solver_factory):
        monkeypatch.setattr(
            app_module, "build_navigator",
            lambda: Navigator(line_graph, solver_factory=solver_factory, pacing_delay=0),
        )
        return TestClient(app_module.app)

    return factory


@pytest.fixture
def client(make_client):
    with make_client(lambda config: ScriptedSolver(["B", "C", "D"])) as c:
        yield c


class TestStart:
    def test_run_reaches_target(self, client):
        response = client.post("/api/start", json={"start_title": "A", "target_title": "D"})
        assert response.status_code == 200
        sid = response.json()["session_id"]

        body = wait_for_status(client, sid, "SUCCESS", "FAILED")

        assert body["status"] == "SUCCESS"
        assert body["done"] is True
        assert body["path"] == ["A", "B", "C", "D"]
        assert body["chain"] == "A -> B -> C -> D"
        assert [s["title"] for s in body["steps"]] == ["B", "C", "D"]

    def test_start_is_target(self, client):
        sid = client.post("/api/start", json={"start_title": "D", "target_title": "d"}).json()["session_id"]
        body = wait_for_status(client, sid, "SUCCESS")
        assert body["success"] is True
        assert body["hops"] == 0

    def test_missing_start_page(self, client):
        response = client.post("/api/start", json={"start_title": "Nowhere", "target_title": "D"})
        assert response.status_code == 400
        assert "Nowhere" in response.json()["failure_reason"]
        assert app_module.SESSIONS == {}

    def test_blank_target_rejected(self, client):
        response = client.post("/api/start", json={"start_title": "A", "target_title": "   "})
        assert response.status_code == 400

    def test_non_positive_budget_rejected(self, client):
        response = client.post("/api/start", json={"start_title": "A", "target_title": "D", "max_steps": 0})
        assert response.status_code == 400

    def test_unknown_solver_rejected(self, client):
        response = client.post("/api/start", json={"target_title": "D", "solver": "ORACLE"})
        assert response.status_code == 422

    def test_remote_solver_without_key(self, make_client, monkeypatch, preload):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with make_client(build_solver) as c:
            response = c.post("/api/start", json={"start_title": "A", "target_title": "D", "solver": "OPENAI"})
        assert response.status_code == 400
        assert "API key is missing" in response.json()["failure_reason"]
        preload.assert_not_called()

    def test_vectors_start_preloads_model(self, client, preload):
        response = client.post("/api/start", json={"start_title": "A", "target_title": "D"})
        assert response.status_code == 200
        preload.assert_called_once_with()

    def test_model_load_failure_rejects_start(self, client, preload):
        preload.side_effect = EmbeddingError("Could not load embedding model 'x': offline")
        response = client.post("/api/start", json={"start_title": "A", "target_title": "D"})
        assert response.status_code == 400
        assert "offline" in response.json()["failure_reason"]
        assert app_module.SESSIONS == {}


class TestRunControl:
    def test_unknown_session(self, client):
        response = client.get("/api/runs/nope")
        assert response.status_code == 404
        assert "Invalid session_id" in response.json()["failure_reason"]

    def test_pause_then_resume(self, make_client):
        with make_client(lambda config: SlowSolver(["B", "C", "D"])) as c:
            sid = c.post("/api/start", json={"start_title": "A", "target_title": "D"}).json()["session_id"]

            assert c.post(f"/api/runs/{sid}/pause").status_code == 200
            paused = wait_for_status(c, sid, "PAUSED")
            assert paused["status"] == "PAUSED"
            assert paused["hops"] <= 1

            assert c.post(f"/api/runs/{sid}/resume").status_code == 200
            body = wait_for_status(c, sid, "SUCCESS", "FAILED")
            assert body["status"] == "SUCCESS"
            assert body["hops"] == 3

    def test_finished_driver_is_dropped(self, client):
        sid = client.post("/api/start", json={"start_title": "A", "target_title": "D"}).json()["session_id"]
        wait_for_status(client, sid, "SUCCESS")

        deadline = time.monotonic() + 2
        while app_module.DRIVERS and time.monotonic() < deadline:
            time.sleep(0.02)

        assert app_module.DRIVERS == {}
        assert client.get("/api/health").json()["driving"] == 0
        assert sid in app_module.SESSIONS

    def test_pause_finished_run_conflicts(self, client):
        sid = client.post("/api/start", json={"start_title": "A", "target_title": "D"}).json()["session_id"]
        wait_for_status(client, sid, "SUCCESS")

        response = client.post(f"/api/runs/{sid}/pause")

        assert response.status_code == 409
        assert "SUCCESS" in response.json()["failure_reason"]

    def test_abort_forgets_session(self, make_client):
        with make_client(lambda config: SlowSolver(["B", "C", "D"], delay=0.05)) as c:
            sid = c.post("/api/start", json={"start_title": "A", "target_title": "D"}).json()["session_id"]

            response = c.post(f"/api/runs/{sid}/abort")

            assert response.status_code == 200
            assert response.json()["status"] == "IDLE"
            assert c.get(f"/api/runs/{sid}").status_code == 404
            assert c.post(f"/api/runs/{sid}/abort").status_code == 404
            # let the abandoned step finish before the loop shuts down
            time.sleep(0.1)


class TestLookup:
    def test_random(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "source", FakeLookup())
        assert client.get("/api/random").json() == {"title": "Cheese"}

    def test_search(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "source", FakeLookup())
        body = client.get("/api/search", params={"q": "cheese"}).json()
        assert body == {"query": "cheese", "results": ["Cheese (disambiguation)", "Cheese"]}

    def test_upstream_failure(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "source", FakeLookup(FetchError("Request to Wikipedia API timed out")))
        response = client.get("/api/random")
        assert response.status_code == 502
        assert "timed out" in response.json()["failure_reason"]
        assert client.get("/api/search", params={"q": "x"}).status_code == 502

    def test_health(self, client):
        assert client.get("/api/health").json() == {"ok": True, "sessions": 0, "driving": 0}
