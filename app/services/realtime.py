import asyncio
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket

from app.utils.logging import get_logger

logger = get_logger()


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


class RealtimeHub:
    """
    In-process registry of websocket subscribers keyed by topic.

    ``emit`` is fire-and-forget: every send runs as a background task that
    nobody awaits, and a socket whose send fails is dropped from the hub.
    """

    def __init__(self):
        self._topics: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, topic: str, websocket: WebSocket) -> None:
        self._topics[topic].add(websocket)
        logger.debug(f"Socket joined {topic} ({len(self._topics[topic])} subscriber(s))")

    def unsubscribe(self, topic: str, websocket: WebSocket) -> None:
        sockets = self._topics.get(topic)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._topics[topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def emit(self, topic: str, event: str, payload: Dict[str, Any]) -> int:
        """Schedule ``event`` to every socket on ``topic``; returns how many sends were scheduled."""
        sockets = list(self._topics.get(topic, ()))
        frame = {"event": event, "data": payload}
        for websocket in sockets:
            task = asyncio.get_running_loop().create_task(
                self._send(topic, websocket, frame)
            )
            # Keep a reference until done so the task is not garbage collected
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return len(sockets)

    async def _send(self, topic: str, websocket: WebSocket, frame: Dict[str, Any]) -> None:
        try:
            await websocket.send_json(frame)
        except Exception as e:
            logger.warning(f"Dropping dead socket on {topic}: {e}")
            self.unsubscribe(topic, websocket)

    async def drain(self) -> None:
        """Wait for scheduled sends; used on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
