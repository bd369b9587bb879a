"""
Core data models for DeskAuth.

This module defines the data structures exchanged between the lifecycle
controller, the identity client, the token stores and the presentation layer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class AuthStatus(Enum):
    """Login status as reported by the identity service."""
    NOT_LOGGED_IN = "not_logged_in"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"
    LOGIN_FAILED = "login_failed"
    TOKEN_EXPIRED = "token_expired"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["AuthStatus"]:
        """Map a wire value to a status, None for unknown values."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ControllerState(Enum):
    """State of the authentication lifecycle controller."""
    LOGGED_OUT = "logged_out"
    LOGGING_IN = "logging_in"
    LOGGED_IN = "logged_in"


class AuthEvent(Enum):
    """Discrete events delivered to the notification sink."""
    LOGIN_STARTED = "login_started"
    LOGIN_SUCCESS = "login_success"
    LOGIN_TIMEOUT = "login_timeout"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    REFRESH_FAILED = "refresh_failed"


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair issued for one login session."""
    access_token: str
    refresh_token: str
    session_id: str

    def is_complete(self) -> bool:
        """Both token strings are present."""
        return bool(self.access_token) and bool(self.refresh_token)

    def to_dict(self) -> Dict[str, str]:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'state': self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TokenPair":
        data = data or {}
        return cls(
            access_token=data.get('access_token') or "",
            refresh_token=data.get('refresh_token') or "",
            session_id=data.get('state') or "",
        )


@dataclass(frozen=True)
class LoginState:
    """Persisted marker of the session that owns the stored tokens."""
    state: str
    device_id: Optional[str] = None


@dataclass(frozen=True)
class TokenPollResult:
    """Answer to a start/poll request; tokens are None until issued."""
    status: Optional[AuthStatus] = None
    tokens: Optional[TokenPair] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class LoginStatusResult:
    """Answer to a login status request."""
    status: Optional[AuthStatus]
    state: Optional[str]

    def confirms(self, session_id: str) -> bool:
        """The server reports the given session as logged in."""
        return self.status == AuthStatus.LOGGED_IN and bool(self.state) and self.state == session_id


@dataclass
class UserInfo:
    """Identity claims carried by an access token."""
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    organization_name: Optional[str] = None
    organization_image_url: Optional[str] = None
    avatar: Optional[str] = None
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)
