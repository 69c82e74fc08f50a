"""WebSocket fan-out of session events to UI clients."""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


def encode_event(event: str, data: dict | None) -> str:
    return json.dumps({"event": event, "data": data})


class ConnectionManager:
    """Every connected UI client receives every PeerSession event."""

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket, snapshot: dict | None = None) -> None:
        """Accept a client; it first receives the full session snapshot."""
        await websocket.accept()
        # Broadcasts wait on the lock, so nothing is sent ahead of the snapshot
        async with self._lock:
            if snapshot is not None:
                await websocket.send_text(encode_event("snapshot", snapshot))
            self._clients.add(websocket)
        logger.info(f"UI client connected ({self.client_count} total)")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
        logger.info(f"UI client disconnected ({self.client_count} total)")

    async def broadcast(self, event: str, data: dict | None) -> None:
        message = encode_event(event, data)
        async with self._lock:
            clients = list(self._clients)

        gone = []
        for ws in clients:
            try:
                await ws.send_text(message)
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                logger.debug(f"Dropping UI client: {e}")
                gone.append(ws)

        if gone:
            async with self._lock:
                self._clients.difference_update(gone)

    async def handle_event(self, event_type: str, data: dict | None) -> None:
        """Listener for PeerSession.on_event()."""
        await self.broadcast(event_type, data)
