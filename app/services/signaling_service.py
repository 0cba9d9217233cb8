# app/services/signaling_service.py
"""Call setup relay for video consultations; no media passes through here."""
import logging
import threading
import uuid
from typing import Dict, Optional, Tuple

from .. import schemas
from .realtime_service import ConnectionManager, connection_manager

logger = logging.getLogger(__name__)


class CallRegistry:
    """Ringing or active calls, keyed by consultation (appointment) id"""

    def __init__(self, manager: ConnectionManager = connection_manager):
        self.manager = manager
        self._calls: Dict[uuid.UUID, Tuple[uuid.UUID, uuid.UUID]] = {}
        self._lock = threading.Lock()

    def ring(self, consultation_id: uuid.UUID, from_user_id: uuid.UUID, to_user_id: uuid.UUID) -> bool:
        with self._lock:
            self._calls[consultation_id] = (from_user_id, to_user_id)
        delivered = self.manager.send_video_call_request(consultation_id, from_user_id, to_user_id)
        logger.info(f"Call {consultation_id}: {from_user_id} -> {to_user_id} (delivered={delivered})")
        return delivered

    def peer_of(self, consultation_id: uuid.UUID, user_id: uuid.UUID) -> Optional[uuid.UUID]:
        with self._lock:
            participants = self._calls.get(consultation_id)
        if participants is None or user_id not in participants:
            return None
        caller, callee = participants
        return callee if user_id == caller else caller

    def end(self, consultation_id: uuid.UUID) -> None:
        with self._lock:
            self._calls.pop(consultation_id, None)

    def relay(self, user_id: uuid.UUID, message) -> bool:
        """Forward accepted/rejected/ended to the other participant.

        Messages from someone who is not part of the call are dropped.
        """
        peer = self.peer_of(message.consultation_id, user_id)
        if peer is None:
            logger.debug(f"Ignoring {message.type} for unknown call {message.consultation_id} from {user_id}")
            return False
        if isinstance(message, (schemas.VideoCallRejected, schemas.VideoCallEnded)):
            self.end(message.consultation_id)
        return self.manager.send_to_user(peer, message)

    def clear(self) -> None:
        with self._lock:
            self._calls.clear()


call_registry = CallRegistry()
