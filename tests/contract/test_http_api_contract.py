"""Contract tests for the HTTP surface.

Validates status codes and error envelopes that callers rely on,
independent of deliberation content.
"""

import pytest
from fastapi.testclient import TestClient

from copilot.lib.config import SessionConfig
from copilot.local.canned_reasoning import CannedReasoningService
from copilot.models.persona import PersonaId
from copilot.services.http_server import create_app
from copilot.services.interfaces.reasoning_service import ProposedToolCall, ReasoningResult


pytestmark = pytest.mark.contract

ACTION_REQUEST = "Draft an email to the sponsor about the vendor slip"


@pytest.fixture
def client_for(make_runtime):
    clients = []

    def _client(**runtime_kwargs):
        client = TestClient(create_app(make_runtime(**runtime_kwargs)))
        client.__enter__()
        clients.append(client)
        return client

    yield _client

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def commenting_reasoning():
    reasoning = CannedReasoningService()
    reasoning.set_response(PersonaId.OPERATOR, ReasoningResult(
        text="I will chase the vendor on the ticket.",
        tool_calls=[ProposedToolCall(
            tool_name="jira_add_comment",
            arguments={"issue_key": "ATLAS-2", "body": "Chasing the vendor for a date."}
        )]
    ))
    return reasoning


class TestInvokeContract:
    """Contract for POST /invoke."""

    def test_invoke_success(self, client_for):
        """Test a valid turn returns the response envelope."""
        response = client_for().post("/invoke", json={"input": "hi there"})

        assert response.status_code == 200
        data = response.json()
        assert data["mode"] == "quick_query"
        assert data["cited_personas"] == ["operator"]
        for key in ("session_id", "turn_id", "text", "executed", "held", "denied", "unresolved_challenges"):
            assert key in data

    def test_invalid_input(self, client_for):
        """Test malformed requests return 422 with details."""
        response = client_for().post("/invoke", json={"input": "   "})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "invalid_request"
        assert error["details"][0]["field"] == "input"

    def test_unknown_autonomy_mode(self, client_for):
        """Test unknown autonomy modes are rejected before any work."""
        response = client_for().post("/invoke", json={"input": "hi there", "autonomy_mode": "yolo"})

        assert response.status_code == 422

    def test_non_object_body(self, client_for):
        """Test bodies that are not JSON objects are rejected."""
        response = client_for().post("/invoke", json=["hi there"])

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_request"

    def test_ensemble_exhausted(self, client_for):
        """Test total persona failure maps to 503."""
        client = client_for(reasoning=CannedReasoningService(always_fail=[PersonaId.OPERATOR]))

        response = client.post("/invoke", json={"input": "hi there"})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ensemble_exhausted"

    def test_session_capacity(self, client_for):
        """Test the active session cap maps to 503."""
        client = client_for(session_config=SessionConfig(max_active_sessions=1))

        assert client.post("/invoke", json={"input": "hi there"}).status_code == 200
        response = client.post("/invoke", json={"input": "hi again"})

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "session_capacity"


class TestSessionContract:
    """Contract for session and draft endpoints."""

    def test_get_and_list_sessions(self, client_for):
        """Test session reads after a turn."""
        client = client_for()
        session_id = client.post("/invoke", json={"input": "hi there"}).json()["session_id"]

        session = client.get(f"/sessions/{session_id}")
        listing = client.get("/sessions", params={"limit": 10})

        assert session.status_code == 200
        assert len(session.json()["turns"]) == 1
        assert [s["session_id"] for s in listing.json()] == [session_id]

    def test_unknown_session(self, client_for):
        """Test unknown sessions return 404."""
        response = client_for().get("/sessions/missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "session_not_found"

    def test_confirm_draft_once(self, client_for, commenting_reasoning):
        """Test confirmation succeeds once and conflicts afterwards."""
        client = client_for(reasoning=commenting_reasoning)
        turn = client.post("/invoke", json={"input": ACTION_REQUEST}).json()
        draft_id = turn["held"][0]["draft_id"]
        url = f"/sessions/{turn['session_id']}/drafts/{draft_id}/confirm"

        first = client.post(url)
        second = client.post(url)

        assert first.status_code == 200
        assert first.json()["outcome"] == "executed"
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "draft_already_resolved"

    def test_reject_draft(self, client_for, commenting_reasoning):
        """Test rejection returns the resolved draft."""
        client = client_for(reasoning=commenting_reasoning)
        turn = client.post("/invoke", json={"input": ACTION_REQUEST}).json()
        draft_id = turn["held"][0]["draft_id"]

        response = client.post(f"/sessions/{turn['session_id']}/drafts/{draft_id}/reject")

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_unknown_draft(self, client_for):
        """Test unknown drafts return 404."""
        client = client_for()
        session_id = client.post("/invoke", json={"input": "hi there"}).json()["session_id"]

        response = client.post(f"/sessions/{session_id}/drafts/missing/confirm")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "draft_not_found"


class TestIntrospectionContract:
    """Contract for health and capability endpoints."""

    def test_ping(self, client_for):
        """Test liveness."""
        assert client_for().get("/ping").json() == {"status": "ok"}

    def test_health(self, client_for):
        """Test a healthy stack."""
        response = client_for().get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_unhealthy(self, client_for):
        """Test unreachable reasoning returns 503."""
        response = client_for(reasoning=CannedReasoningService(reachable=False)).get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_capabilities(self, client_for):
        """Test capability disclosure per autonomy mode."""
        response = client_for().get("/capabilities/manual")

        assert response.status_code == 200
        data = response.json()
        assert len(data["tools"]["hold"]) == 23
        assert data["tools"]["allow"] == []
        assert "sceptic" in data["personas"]

    def test_capabilities_background(self, client_for):
        """Test background disclosure denies presence-only tools."""
        data = client_for().get("/capabilities/supervised_auto", params={"is_background": "true"}).json()

        assert "outlook_send_email" in data["tools"]["deny"]
        assert "jira_transition_issue" in data["tools"]["deny"]

    def test_unknown_autonomy_mode(self, client_for):
        """Test unknown autonomy modes return 422."""
        response = client_for().get("/capabilities/yolo")

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_request"
