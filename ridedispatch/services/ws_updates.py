"""Real-time event channel: WebSocket subscribers per topic (driver:<id>, ride:<id>)."""
import asyncio
import json
import logging
from typing import Any, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

RIDE_OFFER = "ride:offer"
RIDE_OFFER_EXPIRED = "ride:offer_expired"
RIDE_CANCELLED = "ride:cancelled"
RIDE_STATUS = "ride:status"
DISPATCH_FAILED = "dispatch:failed"


def driver_topic(driver_id: str) -> str:
    return f"driver:{driver_id}"


def ride_topic(ride_id: str) -> str:
    return f"ride:{ride_id}"


class UpdatesConnectionManager:
    """Maps topic -> set of WebSockets. Publishing is best effort; dead sockets are dropped."""

    def __init__(self) -> None:
        self._connections: dict[str, Set[WebSocket]] = {}

    def connect(self, topic: str, websocket: WebSocket) -> None:
        if topic not in self._connections:
            self._connections[topic] = set()
        self._connections[topic].add(websocket)

    def disconnect(self, topic: str, websocket: WebSocket) -> None:
        if topic in self._connections:
            self._connections[topic].discard(websocket)
            if not self._connections[topic]:
                del self._connections[topic]

    def subscribers(self, topic: str) -> int:
        return len(self._connections.get(topic, ()))

    async def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        if topic not in self._connections:
            logger.debug("No subscribers for %s on %s", event, topic)
            return
        text = json.dumps({"type": event, **payload})
        dead = set()
        for ws in list(self._connections[topic]):
            try:
                await ws.send_text(text)
            except Exception:
                dead.add(ws)
        # Subscribers may have disconnected (and the topic been dropped) during the sends
        conns = self._connections.get(topic)
        if conns is None:
            return
        conns.difference_update(dead)
        if not conns:
            del self._connections[topic]

    async def publish_many(self, topics: list[str], event: str, payload: dict[str, Any]) -> None:
        await asyncio.gather(*[self.publish(t, event, payload) for t in topics])


updates_manager = UpdatesConnectionManager()
