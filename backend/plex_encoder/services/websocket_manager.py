"""Relays notifier events to connected dashboard sockets."""
import logging
from typing import Set
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Dashboard socket registry; subscribed to the notifier at startup."""

    def __init__(self):
        self.connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.add(websocket)
        logger.info(f"Dashboard connected ({len(self.connections)} open)")

    def disconnect(self, websocket: WebSocket):
        self.connections.discard(websocket)
        logger.info(f"Dashboard disconnected ({len(self.connections)} open)")

    async def broadcast(self, message: dict):
        """
        Deliver one event to every dashboard, at most once.

        A socket that fails to receive is forgotten; the client is
        expected to reconnect.
        """
        failed = []
        for connection in list(self.connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping dashboard after send error: {e}")
                failed.append(connection)

        for connection in failed:
            self.connections.discard(connection)

    async def send_to(self, websocket: WebSocket, message: dict):
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning(f"Dropping dashboard after send error: {e}")
            self.connections.discard(websocket)


# Global WebSocket manager instance
websocket_manager = WebSocketManager()
