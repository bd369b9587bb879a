"""
Test doubles and token builders shared by the DeskAuth tests.
"""

import time
from typing import Any, Callable, List, Optional, Tuple

from jose import jwt

from deskauth_common.interfaces import IIdentityClient
from deskauth_common.models import (
    AuthStatus, LoginStatusResult, TokenPair, TokenPollResult
)

TEST_SECRET = "test-secret-key"
DEVICE_ID = "device-123"


def make_token(expires_in: Optional[int] = 3600, **claims: Any) -> str:
    """Build a signed JWT; ``expires_in`` of None leaves out the exp claim."""
    payload = dict(claims)
    if expires_in is not None:
        payload['exp'] = int(time.time()) + expires_in
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


def make_pair(session_id: str, expires_in: int = 3600, tag: str = "1") -> TokenPair:
    return TokenPair(
        access_token=make_token(expires_in, id=f"user-{tag}"),
        refresh_token=f"refresh-{tag}",
        session_id=session_id,
    )


class FakeIdentityClient(IIdentityClient):
    """
    Scriptable identity service.

    Handlers may return a result or an exception instance, which is raised.
    """

    def __init__(self):
        self.poll_handler: Callable[[str, str, int], Any] = lambda state, device_id, attempt: TokenPollResult()
        self.status_handler: Callable[[str, Optional[str]], Any] = (
            lambda state, access_token: LoginStatusResult(status=AuthStatus.LOGGED_IN, state=state)
        )
        self.refresh_results: List[Any] = []
        self.revoke_error: Optional[Exception] = None

        self.poll_calls: List[Tuple[str, str]] = []
        self.status_calls: List[Tuple[str, Optional[str]]] = []
        self.refresh_calls: List[Tuple[str, str, str]] = []
        self.revoke_calls: List[Tuple[Optional[str], Optional[str]]] = []

    def build_login_url(self, state: str, device_id: str) -> str:
        return f"https://auth.test/login?state={state}&machine_code={device_id}"

    @staticmethod
    def _resolve(result: Any) -> Any:
        if isinstance(result, Exception):
            raise result
        return result

    async def poll_token(self, state: str, device_id: str) -> TokenPollResult:
        self.poll_calls.append((state, device_id))
        return self._resolve(self.poll_handler(state, device_id, len(self.poll_calls)))

    async def get_login_status(self, state: str, access_token: Optional[str]) -> LoginStatusResult:
        self.status_calls.append((state, access_token))
        return self._resolve(self.status_handler(state, access_token))

    async def refresh(self, refresh_token: str, device_id: str, state: str) -> TokenPair:
        self.refresh_calls.append((refresh_token, device_id, state))
        if not self.refresh_results:
            raise AssertionError("unexpected refresh call")
        result = self.refresh_results.pop(0) if len(self.refresh_results) > 1 else self.refresh_results[0]
        return self._resolve(result)

    async def revoke(self, state: Optional[str], access_token: Optional[str]) -> None:
        self.revoke_calls.append((state, access_token))
        if self.revoke_error:
            raise self.revoke_error


def issue_on_attempt(attempt_number: int) -> Callable[[str, str, int], TokenPollResult]:
    """Poll handler that issues tokens for the polled session from ``attempt_number`` on."""

    def handler(state: str, device_id: str, attempt: int) -> TokenPollResult:
        if attempt >= attempt_number:
            return TokenPollResult(status=AuthStatus.LOGGED_IN, tokens=make_pair(state))
        return TokenPollResult()

    return handler


