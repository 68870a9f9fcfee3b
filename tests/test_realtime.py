import time
import pytest
from fastapi.testclient import TestClient

from app.config.settings import settings
from app.services.realtime import RealtimeHub, user_topic
from app.utils.errors import NotFoundError


class FakeSocket:
    def __init__(self, broken: bool = False):
        self.broken = broken
        self.frames = []

    async def send_json(self, frame):
        if self.broken:
            raise RuntimeError("connection closed")
        self.frames.append(frame)


class TestRealtimeHub:
    """Fire-and-forget topic broadcast."""

    @pytest.mark.asyncio
    async def test_emit_reaches_topic_subscribers_only(self):
        hub = RealtimeHub()
        ana, bia = FakeSocket(), FakeSocket()
        hub.subscribe(user_topic("ana"), ana)
        hub.subscribe(user_topic("bia"), bia)

        scheduled = hub.emit(user_topic("ana"), "ritual:reminder", {"ritualId": "r-1"})
        await hub.drain()

        assert scheduled == 1
        assert ana.frames == [{"event": "ritual:reminder", "data": {"ritualId": "r-1"}}]
        assert bia.frames == []

    @pytest.mark.asyncio
    async def test_dead_socket_is_dropped(self):
        hub = RealtimeHub()
        topic = user_topic("ana")
        hub.subscribe(topic, FakeSocket(broken=True))
        hub.subscribe(topic, FakeSocket())

        hub.emit(topic, "ritual:reminder", {})
        await hub.drain()

        assert hub.subscriber_count(topic) == 1

    @pytest.mark.asyncio
    async def test_emit_without_subscribers(self):
        assert RealtimeHub().emit(user_topic("nobody"), "ritual:reminder", {}) == 0


class TestApplication:
    @pytest.fixture
    def client(self, monkeypatch):
        monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
        from app.main import create_application

        with TestClient(create_application()) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health/")

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["scheduler"]["running"] is False
        assert "X-Request-ID" in response.headers

    def test_websocket_receives_reminder(self, client):
        with client.websocket_connect(f"{settings.WEB_SOCKET_PREFIX}/users/u-1") as ws:
            hub = client.app.state.realtime_hub
            # The endpoint subscribes right after accepting
            for _ in range(100):
                if hub.subscriber_count(user_topic("u-1")):
                    break
                time.sleep(0.01)
            client.portal.call(
                hub.emit, user_topic("u-1"), "ritual:reminder", {"ritualId": "r-1"}
            )
            frame = ws.receive_json()

        assert frame == {"event": "ritual:reminder", "data": {"ritualId": "r-1"}}

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/health/nope")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["status"] == "error"
        assert body["meta"]["error_code"] == "HTTP_ERROR"
        assert body["requestId"] == response.headers["X-Request-ID"]

    def test_app_error_maps_to_status_and_code(self, client):
        async def missing_ritual():
            raise NotFoundError("Ritual r-9 not found", "RITUAL_NOT_FOUND")

        client.app.add_api_route("/rituals/r-9", missing_ritual)

        response = client.get("/rituals/r-9")

        assert response.status_code == 404
        assert response.json()["meta"] == {
            "error_type": "NOT_FOUND_ERROR",
            "error_code": "RITUAL_NOT_FOUND",
        }
