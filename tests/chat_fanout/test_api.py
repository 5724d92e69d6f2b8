"""
Tests for the fan-out HTTP API.
"""
import pytest
from fastapi.testclient import TestClient

from chat_fanout.domain.mentions import HERE_MARKER
from chat_fanout.main import create_app


@pytest.fixture
def client(fanout_config, orchestrator, seeded_server):
    with TestClient(create_app(fanout_config, orchestrator)) as test_client:
        yield test_client


class TestTriggers:
    """Tests for the trigger endpoints."""

    def test_channel_trigger(self, client, push_provider):
        """Test accepting a channel message trigger."""
        response = client.post("/api/v1/fanout/triggers/channel-message", json={
            "serverId": "s1", "channelId": "c1", "messageId": "m1",
            "message": {"authorId": "A", "displayName": "Alice", "text": "hey @here",
                        "mentions": [{"uid": HERE_MARKER}]},
        })
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "attempted"
        assert body["recipient_count"] == 1
        assert body["suppressed"][0]["reason"] == "presence_not_active"
        assert len(push_provider.calls) == 1

    def test_thread_trigger_without_thread_id(self, client):
        """Test thread trigger without a thread id is a no-op."""
        response = client.post("/api/v1/fanout/triggers/thread-message", json={
            "serverId": "s1", "channelId": "c1", "messageId": "m1",
            "message": {"authorId": "A", "text": "hi"},
        })
        assert response.status_code == 202
        assert response.json()["reason"] == "missing_path_parameters"

    def test_dm_trigger_unknown_dm(self, client):
        """Test DM trigger for an unknown conversation."""
        response = client.post("/api/v1/fanout/triggers/dm-message", json={
            "dmId": "nope", "messageId": "m1", "message": {"authorId": "A", "text": "hi"},
        })
        assert response.status_code == 202
        assert response.json()["reason"] == "dm_not_found"


class TestPushTest:
    def test_sends_to_registered_device(self, client):
        """Test sending a test push to a registered device."""
        response = client.post("/api/v1/fanout/push/test", json={"uid": "B", "deviceId": "B-phone"})
        assert response.status_code == 200
        assert response.json()["sent"] == 1

    def test_unregistered_device(self, client):
        """Test test push to an unregistered device."""
        response = client.post("/api/v1/fanout/push/test", json={"uid": "B", "deviceId": "tablet"})
        assert response.json()["reason"] == "device_not_registered"

    def test_uid_required(self, client):
        """Test test push request without a uid."""
        response = client.post("/api/v1/fanout/push/test", json={"uid": ""})
        assert response.status_code == 422


class TestHealth:
    def test_health_and_ready(self, client):
        """Test health and readiness endpoints."""
        assert client.get("/api/v1/fanout/health").json() == {"status": "healthy"}
        assert client.get("/api/v1/fanout/ready").json() == {"status": "ready"}
        assert client.get("/").json()["service"] == "chat-fanout"

    def test_not_ready_without_lifespan(self, fanout_config, orchestrator):
        """Test readiness before the orchestrator is wired."""
        client = TestClient(create_app(fanout_config, orchestrator))
        response = client.get("/api/v1/fanout/ready")
        assert response.json() == {"status": "not_ready", "reason": "orchestrator_not_initialized"}
        assert client.post("/api/v1/fanout/push/test", json={"uid": "B"}).status_code == 503
