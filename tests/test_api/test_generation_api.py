"""
Tests for the Generation API

Tests for panelforge/api/, driven through FastAPI's TestClient with stage
executor doubles in place of the providers.
"""

import pytest
from fastapi.testclient import TestClient

from panelforge.api.main import create_app
from panelforge.api.routers import generation
from panelforge.core.config import PanelforgeConfig
from panelforge.core.exceptions import (
    ContentSafetyRejection,
    PermanentProviderError,
    TransientProviderError,
)

STORY = "A dog named Rex chased a ball in the park."


@pytest.fixture
def config(temp_dir) -> PanelforgeConfig:
    config = PanelforgeConfig()
    config.storage.state_dir = temp_dir
    config.server.rate_limit_enabled = False
    return config


@pytest.fixture
def make_client(config, fake_executors):
    """Factory: ``make_client(**executor_kwargs)`` yields a client over a fresh app."""
    clients = []

    def _make(**executor_kwargs) -> TestClient:
        app = create_app(config, executors_factory=lambda: fake_executors(**executor_kwargs))
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


def orchestrator_of(client: TestClient, session_id: str = "default"):
    return client.app.state.sessions[session_id].orchestrator


class TestHealth:
    """Tests for the service endpoints."""

    def test_root_and_health(self, make_client):
        client = make_client()

        assert client.get("/").json()["message"] == "Panelforge API"
        health = client.get("/api/health").json()
        assert health["status"] == "healthy"
        assert health["sessions"] == 0


class TestRun:
    """Tests for starting runs."""

    def test_run_completes(self, make_client):
        """Test that a background run finishes and is visible in the status."""
        client = make_client()

        response = client.post("/api/generation/run", json={"story": STORY, "style": "comic"})

        assert response.status_code == 200
        assert response.json()["session_id"] == "default"
        status = client.get("/api/generation/status").json()
        assert status["phase"] == "complete"
        assert status["isGenerating"] is False
        assert status["panelsDone"] == status["panelsTotal"] == 4
        assert status["title"] is not None

    def test_job_with_and_without_images(self, make_client):
        client = make_client()
        client.post("/api/generation/run", json={"story": STORY})

        full = client.get("/api/generation/job").json()
        bare = client.get("/api/generation/job", params={"include_images": "false"}).json()

        assert full["generatedPanels"][0]["image"] == "data:image/png;base64,P1"
        assert "image" not in bare["generatedPanels"][0]

    def test_empty_story_rejected(self, make_client):
        client = make_client()

        response = client.post("/api/generation/run", json={"story": "   "})

        assert response.status_code == 400
        assert client.get("/api/generation/status").json()["phase"] == "idle"

    def test_busy_rejected(self, make_client):
        """Test that a second run is refused while one is in progress."""
        client = make_client()
        client.get("/api/generation/status")
        orchestrator_of(client).job.is_generating = True

        response = client.post("/api/generation/run", json={"story": STORY})

        assert response.status_code == 409

    def test_invalid_resume_index(self, make_client):
        client = make_client()

        response = client.post(
            "/api/generation/run",
            json={"story": STORY, "resume_from_stage": "panels", "resume_from_item_index": 0},
        )

        assert response.status_code == 422


class TestSessions:
    """Tests for session selection."""

    def test_sessions_are_isolated(self, make_client):
        client = make_client()

        client.post("/api/generation/run", json={"story": STORY}, headers={"X-Session-ID": "alice"})

        assert client.get("/api/generation/status", headers={"X-Session-ID": "alice"}).json()["phase"] == "complete"
        assert client.get("/api/generation/status", headers={"X-Session-ID": "bob"}).json()["phase"] == "idle"

    def test_invalid_session_id(self, make_client):
        client = make_client()

        response = client.get("/api/generation/status", headers={"X-Session-ID": "../etc"})

        assert response.status_code == 400

    def test_state_survives_new_app(self, make_client):
        """Test that a session is restored from disk by a new app instance."""
        make_client().post("/api/generation/run", json={"story": STORY})

        status = make_client().get("/api/generation/status").json()

        assert status["phase"] == "complete"
        assert status["panelsDone"] == 4


class TestRetry:
    """Tests for retrying a failed run."""

    def test_retry_resumes_failed_panel(self, make_client):
        client = make_client(fail_panels={3: TransientProviderError("gemini", "Request timeout")})
        client.post("/api/generation/run", json={"story": STORY})

        status = client.get("/api/generation/status").json()
        assert status["phase"] == "failed"
        assert status["error"]["stage"] == "panels"
        assert status["error"]["itemIndex"] == 3
        assert status["canRetry"] is True

        response = client.post("/api/generation/retry")

        assert response.status_code == 200
        assert client.get("/api/generation/status").json()["phase"] == "complete"
        calls = orchestrator_of(client).executors.calls
        assert calls[-2:] == ["panel:3", "panel:4"]

    def test_retry_without_failure(self, make_client):
        client = make_client()

        assert client.post("/api/generation/retry").status_code == 400

    def test_content_block_not_retryable(self, make_client):
        client = make_client(fail_characters={1: ContentSafetyRejection("gemini", "PROHIBITED_CONTENT")})
        client.post("/api/generation/run", json={"story": STORY})

        assert client.get("/api/generation/status").json()["canRetry"] is False
        assert client.post("/api/generation/retry").status_code == 400


class TestRegenerate:
    """Tests for single-item regeneration."""

    def test_regenerate_character_and_panel(self, make_client):
        client = make_client()
        client.post("/api/generation/run", json={"story": STORY})

        character = client.post("/api/generation/characters/Rex/regenerate")
        panel = client.post("/api/generation/panels/2/regenerate")

        assert character.status_code == 200
        assert character.json()["name"] == "Rex"
        assert panel.json() == {"panelNumber": 2, "image": "data:image/png;base64,P2"}
        assert client.get("/api/generation/status").json()["phase"] == "complete"

    def test_unknown_items(self, make_client):
        client = make_client()
        client.post("/api/generation/run", json={"story": STORY})

        assert client.post("/api/generation/characters/Nobody/regenerate").status_code == 400
        assert client.post("/api/generation/panels/99/regenerate").status_code == 400

    def test_before_analysis(self, make_client):
        client = make_client()

        assert client.post("/api/generation/characters/Rex/regenerate").status_code == 400

    def test_provider_errors_mapped(self, make_client):
        """Test that regeneration failures surface with provider status codes."""
        client = make_client()
        client.post("/api/generation/run", json={"story": STORY})
        executors = orchestrator_of(client).executors
        executors.fail_panels[2] = PermanentProviderError("gemini", "HTTP 401: unauthorized", 401)
        executors.fail_panels[3] = ContentSafetyRejection("gemini", "IMAGE_SAFETY")

        assert client.post("/api/generation/panels/2/regenerate").status_code == 502
        assert client.post("/api/generation/panels/3/regenerate").status_code == 422
        assert client.get("/api/generation/status").json()["phase"] == "complete"


class TestJobLifecycle:
    """Tests for cancel, reset, storage and events."""

    def test_cancel_when_idle(self, make_client):
        client = make_client()

        assert client.post("/api/generation/cancel").json()["success"] is False

    def test_reset_clears_storage(self, make_client):
        client = make_client()
        client.post("/api/generation/run", json={"story": STORY})
        assert client.get("/api/generation/storage").json()["hasData"] is True

        assert client.delete("/api/generation/job").status_code == 200

        assert client.get("/api/generation/storage").json() == {"hasData": False, "timestamp": None}
        assert client.get("/api/generation/status").json()["phase"] == "idle"

    def test_events_when_idle(self, make_client):
        """Test that an idle session streams its status and closes."""
        client = make_client()

        response = client.get("/api/generation/events")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: status\ndata: ")
        assert '"phase": "idle"' in response.text


class TestRateLimit:
    """Tests for the provider-call rate limit."""

    def test_limit_exceeded(self, config, make_client):
        config.server.rate_limit_enabled = True
        client = make_client()
        generation.limiter.reset()

        try:
            for _ in range(25):
                assert client.post("/api/generation/run", json={"story": ""}).status_code == 400
            response = client.post("/api/generation/run", json={"story": ""})
        finally:
            generation.limiter.reset()
            generation.limiter.enabled = False

        assert response.status_code == 429
        assert response.json()["retryAfter"] > 0
        assert int(response.headers["Retry-After"]) > 0
