import logging
from typing import Dict, Iterable, List, Union

from fastapi import WebSocket

logger = logging.getLogger(__name__)

UserId = Union[int, str]


class ConnectionManager:
    """
    Manages WebSocket connections for real-time matchmaking notifications.
    """

    def __init__(self):
        # Maps user_id to a list of active WebSocket connections
        self.active_connections: Dict[UserId, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: UserId):
        """
        Connect a WebSocket for a specific user.
        """
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)
        logger.info(
            f"User {user_id} connected to WebSocket. Total connections: {len(self.active_connections[user_id])}"
        )

    def disconnect(self, websocket: WebSocket, user_id: UserId):
        """
        Disconnect a WebSocket for a specific user.
        """
        if user_id in self.active_connections:
            if websocket in self.active_connections[user_id]:
                self.active_connections[user_id].remove(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]
            logger.info(f"User {user_id} disconnected from WebSocket")

    def is_connected(self, user_id: UserId) -> bool:
        return user_id in self.active_connections

    async def send_status(self, user_id: UserId, message: dict):
        """
        Send a matchmaking status message to a specific user.
        """
        if user_id not in self.active_connections:
            logger.debug(f"No active WebSocket connections for user {user_id}")
            return

        for connection in list(self.active_connections[user_id]):
            try:
                await connection.send_json(message)
                logger.info(f"Matchmaking status sent to user {user_id}")
            except Exception as e:
                logger.error(
                    f"Error sending matchmaking status to user {user_id}: {str(e)}"
                )

    async def broadcast(self, user_ids: Iterable[UserId], message: dict):
        for user_id in user_ids:
            await self.send_status(user_id, message)


# Create a global connection manager instance
manager = ConnectionManager()
