from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.services.realtime import user_topic
from app.utils.logging import get_logger

logger = get_logger()

realtime_router = APIRouter()


@realtime_router.websocket("/users/{user_id}")
async def user_channel(websocket: WebSocket, user_id: str):
    """Subscribe a client to reminder events for ``user_id`` until it disconnects."""
    hub = websocket.app.state.realtime_hub
    topic = user_topic(user_id)

    await websocket.accept()
    hub.subscribe(topic, websocket)
    try:
        # Inbound frames are ignored; reading keeps the disconnect observable
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Socket left {topic}")
    finally:
        hub.unsubscribe(topic, websocket)
