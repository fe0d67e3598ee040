"""WebSocket connection manager for live simulation progress.

Tracks subscribed sockets per simulation and broadcasts snapshot, status
and score payloads to connected clients.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """In-memory fan-out manager keyed by simulation id."""

    def __init__(self) -> None:
        self._connections: dict[int, list[WebSocket]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def connect(self, simulation_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections[simulation_id].append(websocket)

    async def disconnect(self, simulation_id: int, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(simulation_id, [])
            if websocket in sockets:
                sockets.remove(websocket)
            if not sockets:
                self._connections.pop(simulation_id, None)

    def subscriber_count(self, simulation_id: int) -> int:
        return len(self._connections.get(simulation_id, []))

    async def broadcast(self, simulation_id: int, payload: dict[str, Any]) -> None:
        async with self._lock:
            targets = list(self._connections.get(simulation_id, []))
        stale: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_json(payload)
            except (WebSocketDisconnect, RuntimeError, OSError) as exc:
                logger.info("dropping websocket simulation=%s reason=%s", simulation_id, exc)
                stale.append(ws)
        for ws in stale:
            await self.disconnect(simulation_id, ws)
