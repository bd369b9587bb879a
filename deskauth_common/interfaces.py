"""
Core interfaces for DeskAuth.

This module defines the abstract collaborators of the authentication
lifecycle controller: token persistence, the remote identity service, the
notification sink and configuration.
"""

from abc import ABC, abstractmethod
from typing import Optional, Any

from .models import (
    AuthEvent, LoginState, LoginStatusResult, TokenPair, TokenPollResult
)


class ITokenStore(ABC):
    """Interface for persisted token and login-state storage."""

    @abstractmethod
    async def get_tokens(self) -> Optional[TokenPair]:
        """Return the stored token pair, or None."""
        pass

    @abstractmethod
    async def save_tokens(self, tokens: TokenPair) -> None:
        """Persist a token pair. No-op when the stored pair is identical."""
        pass

    @abstractmethod
    async def get_login_state(self) -> Optional[LoginState]:
        """Return the stored login state, or None."""
        pass

    @abstractmethod
    async def save_login_state(self, login_state: LoginState) -> None:
        """Persist the login state."""
        pass

    @abstractmethod
    async def clear_all(self) -> None:
        """Remove tokens and login state."""
        pass


class IIdentityClient(ABC):
    """Interface for the remote identity service."""

    @abstractmethod
    def build_login_url(self, state: str, device_id: str) -> str:
        """Build the browser URL that starts a login for the given session."""
        pass

    @abstractmethod
    async def poll_token(self, state: str, device_id: str) -> TokenPollResult:
        """Ask whether the browser login for ``state`` has produced tokens."""
        pass

    @abstractmethod
    async def get_login_status(self, state: str, access_token: Optional[str]) -> LoginStatusResult:
        """Check whether the session behind a token reached logged-in status."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str, device_id: str, state: str) -> TokenPair:
        """Exchange a refresh token for a new token pair."""
        pass

    @abstractmethod
    async def revoke(self, state: Optional[str], access_token: Optional[str]) -> None:
        """Revoke the session on the server. Best effort, never raises."""
        pass


class INotificationSink(ABC):
    """Interface for user-visible authentication notifications."""

    @abstractmethod
    def notify(self, event: AuthEvent, message: str) -> None:
        """Deliver one notification."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_base_url(self) -> str:
        """Get the identity service base URL."""
        pass

    @abstractmethod
    def get_device_id(self) -> str:
        """Get the device identifier sent as ``machine_code``."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
