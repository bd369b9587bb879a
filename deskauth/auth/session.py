"""
Login session parameters.

A LoginSession correlates one browser login attempt with the polls that wait
for its tokens. Each ``start_login`` creates a fresh session; older sessions
are never reused, they are only compared against and discarded.
"""

import logging
import secrets
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class LoginSessionStatus(Enum):
    """Progress of one login attempt."""
    PENDING = "pending"
    CONFIRMING = "confirming"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass(eq=False)
class LoginSession:
    """
    One login attempt.

    Sessions compare by identity: two sessions are the same only if they are
    the same object, even when their ids happen to collide.
    """
    session_id: str
    device_id: str
    status: LoginSessionStatus = LoginSessionStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def state(self) -> str:
        """The session id as sent on the wire (``state`` query parameter)."""
        return self.session_id

    def matches(self, state: Optional[str]) -> bool:
        return bool(state) and state == self.session_id


def default_device_id() -> str:
    """Stable per-machine identifier derived from hostname and hardware address."""
    return uuid.uuid5(uuid.NAMESPACE_DNS, f"{socket.gethostname()}-{uuid.getnode():012x}").hex


class LoginSessionFactory:
    """Creates LoginSessions for one device."""

    def __init__(self, device_id: Optional[str] = None, id_bytes: int = 16):
        self.device_id = device_id or default_device_id()
        self._id_bytes = id_bytes

    def new_session_id(self) -> str:
        return secrets.token_hex(self._id_bytes)

    def create(self) -> LoginSession:
        session = LoginSession(session_id=self.new_session_id(), device_id=self.device_id)
        logger.debug(f"Created login session {session.session_id}")
        return session
