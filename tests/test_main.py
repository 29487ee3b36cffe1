import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, patch

from voice_session.main import app, controller

client = TestClient(app)

def test_health_check():
    """Test the health check endpoint returns correct response"""
    response = client.get("/health")
    assert response.status_code == 200

    response_json = response.json()
    assert response_json["status"] == "healthy"
    assert "gemini_api_key_configured" in response_json
    assert isinstance(response_json["gemini_api_key_configured"], bool)
    assert response_json["session_state"] == "idle"
    assert response_json["connected"] is False

def test_root_endpoint():
    """Test the root endpoint returns the correct API information"""
    response = client.get("/")
    assert response.status_code == 200

    response_json = response.json()
    assert response_json["name"] == "Live Voice Session"
    assert "description" in response_json
    assert response_json["version"] == "1.0.0"
    assert "/health" in response_json["endpoints"]
    assert "/session/connect" in response_json["endpoints"]

def test_controller_initialization():
    """The app serves a single controller with the session tools registered"""
    assert controller is not None
    assert "stopConversation" in controller.dispatcher.handlers
    assert "endSession" in controller.dispatcher.handlers

def test_session_status():
    response = client.get("/session")
    assert response.status_code == 200

    status = response.json()
    assert status["state"] == "idle"
    assert status["attempt"] == 0
    assert status["cycle"] == 1
    assert status["manual_retry_required"] is False

def test_session_transcript():
    response = client.get("/session/transcript")
    assert response.status_code == 200
    assert isinstance(response.json()["turns"], list)

def test_text_turn_without_session_is_not_sent():
    response = client.post("/session/text", json={"text": "hello"})
    assert response.status_code == 200
    assert response.json()["sent"] is False

def test_text_turn_requires_text():
    response = client.post("/session/text", json={})
    assert response.status_code == 422

def test_connect_endpoint():
    """Connect is a manual connect on the controller"""
    with patch.object(controller, "connect", AsyncMock(return_value=True)) as mock_connect:
        response = client.post("/session/connect")

    assert response.status_code == 200
    assert response.json()["connected"] is True
    mock_connect.assert_awaited_once_with(manual=True)

@pytest.mark.parametrize("body, intentional", [(None, True), ({"intentional": False}, False)])
def test_disconnect_endpoint(body, intentional):
    with patch.object(controller, "disconnect", AsyncMock()) as mock_disconnect:
        if body is None:
            response = client.post("/session/disconnect")
        else:
            response = client.post("/session/disconnect", json=body)

    assert response.status_code == 200
    assert response.json()["status"]["state"] == "idle"
    mock_disconnect.assert_awaited_once_with(intentional=intentional)
