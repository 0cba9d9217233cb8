# app/services/realtime_service.py
"""Process-local registry of authenticated fan-out connections.

One connection per principal; registering a second one supersedes the
first. Sends never block: each connection owns a bounded FIFO drained by its
writer task, and when the buffer is full the oldest unsent message is
dropped. Sends may come from the event loop (socket handlers) or from the
worker threads running HTTP handlers, so they are marshalled onto the
connection's loop.
"""
import asyncio
import logging
import threading
import uuid
from typing import Dict, Optional

from pydantic import BaseModel

from .. import models, schemas

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256

_CLOSE = object()


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class Connection:
    """Outbound side of one authenticated socket"""

    def __init__(self, user_id: uuid.UUID, role: models.UserRole,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.id = uuid.uuid4()
        self.user_id = user_id
        self.role = role
        self.loop = loop or asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self.closed = False
        self.dropped = 0

    def send(self, message: BaseModel) -> bool:
        """Queue a message without blocking; False once the connection is closed"""
        if self.closed:
            return False
        return self._dispatch(message)

    def close(self, reason: Optional[str] = None) -> None:
        """Stop accepting messages and let the writer finish after a final error"""
        if self.closed:
            return
        self.closed = True
        if reason:
            self._dispatch(schemas.ErrorMessage(message=reason), force=True)
        self._dispatch(_CLOSE, force=True)

    async def next_message(self) -> Optional[BaseModel]:
        """Next outbound message, or None when the connection has been closed"""
        item = await self.queue.get()
        return None if item is _CLOSE else item

    def _dispatch(self, item, force: bool = False) -> bool:
        if _on_loop(self.loop):
            self._enqueue(item, force)
            return True
        try:
            self.loop.call_soon_threadsafe(self._enqueue, item, force)
        except RuntimeError:
            # loop already shut down
            self.closed = True
            return False
        return True

    def _enqueue(self, item, force: bool = False) -> None:
        if self.closed and not force:
            return
        while True:
            try:
                self.queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                logger.warning(f"Outbound buffer full for user {self.user_id}; dropped oldest message ({self.dropped} total)")


class ConnectionManager:
    """Registry from principal id to its live connection"""

    def __init__(self):
        self._connections: Dict[uuid.UUID, Connection] = {}
        self._lock = threading.Lock()

    def register(self, connection: Connection) -> Optional[Connection]:
        """Install a connection, superseding any prior one for the same principal"""
        with self._lock:
            previous = self._connections.get(connection.user_id)
            self._connections[connection.user_id] = connection
        if previous is not None and previous is not connection:
            previous.close("Session opened from another connection")
            logger.info(f"User {connection.user_id} reconnected; previous connection superseded")
        logger.info(f"User {connection.user_id} connected. Online users: {self.connection_count()}")
        return previous

    def unregister(self, connection: Connection) -> bool:
        """Remove the connection if it is still the registered one; True only for the call that removed it"""
        with self._lock:
            removed = self._connections.get(connection.user_id) is connection
            if removed:
                del self._connections[connection.user_id]
        connection.close()
        if removed:
            logger.info(f"User {connection.user_id} disconnected. Online users: {self.connection_count()}")
        return removed

    def get(self, user_id: uuid.UUID) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(user_id)

    def send_to_user(self, user_id: uuid.UUID, message: BaseModel) -> bool:
        connection = self.get(user_id)
        if connection is None:
            return False
        return connection.send(message)

    def broadcast_to_role(self, role: models.UserRole, message: BaseModel) -> int:
        with self._lock:
            targets = [c for c in self._connections.values() if c.role == role]
        return sum(1 for c in targets if c.send(message))

    def broadcast_to_all(self, message: BaseModel) -> int:
        with self._lock:
            targets = list(self._connections.values())
        return sum(1 for c in targets if c.send(message))

    def is_online(self, user_id: uuid.UUID) -> bool:
        with self._lock:
            return user_id in self._connections

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def clear(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            connection.close()

    # --- Typed helpers ---
    def send_notification(self, notification: models.Notification) -> bool:
        return self.send_to_user(notification.user_id, schemas.NotificationMessage(
            id=notification.id,
            title=notification.title,
            content=notification.content,
            notification_type=notification.notification_type,
        ))

    def broadcast_announcement(self, title: str, content: str, role: Optional[models.UserRole] = None) -> int:
        message = schemas.SystemAnnouncement(title=title, content=content)
        if role is None:
            return self.broadcast_to_all(message)
        return self.broadcast_to_role(role, message)

    def broadcast_live_stream_started(self, stream_id: uuid.UUID, title: str, host_name: str) -> int:
        return self.broadcast_to_all(schemas.LiveStreamStarted(stream_id=stream_id, title=title, host_name=host_name))

    def broadcast_live_stream_ended(self, stream_id: uuid.UUID) -> int:
        return self.broadcast_to_all(schemas.LiveStreamEnded(stream_id=stream_id))

    def broadcast_viewer_count(self, stream_id: uuid.UUID, count: int) -> int:
        return self.broadcast_to_all(schemas.LiveStreamViewerCount(stream_id=stream_id, count=count))

    def send_video_call_request(self, consultation_id: uuid.UUID, from_user_id: uuid.UUID,
                                to_user_id: uuid.UUID) -> bool:
        return self.send_to_user(to_user_id, schemas.VideoCallRequest(
            consultation_id=consultation_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
        ))


connection_manager = ConnectionManager()
