import asyncio
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages active WebSocket connections."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        """Send a message to all connected clients, dropping dead ones."""
        async with self._lock:
            connections = list(self.active_connections)

        dead = []
        for websocket in connections:
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.debug("Dropping WebSocket client: %s", e)
                dead.append(websocket)

        for websocket in dead:
            await self.disconnect(websocket)

    async def send_printer_refresh(self, printer_id: int):
        """Tell clients that a printer's status or slot view changed."""
        await self.broadcast({"type": "printer_refresh", "printer_id": printer_id})


ws_manager = ConnectionManager()
