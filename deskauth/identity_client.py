"""
HTTP client for the DeskAuth identity service.

This module talks to the plugin login routes of the identity service: the
token route used both to poll a browser login and to refresh tokens, the
login status route and the logout route. Retrying is left to the caller;
each method performs exactly one request.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Iterable
from urllib.parse import urlencode

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from deskauth import __version__
from deskauth_common.exceptions import RemoteAuthError, TransportError, ErrorCode
from deskauth_common.interfaces import IIdentityClient
from deskauth_common.models import (
    AuthStatus, LoginStatusResult, TokenPair, TokenPollResult
)

logger = logging.getLogger(__name__)

LOGIN_PATH = "/oidc-auth/api/v1/plugin/login"
TOKEN_PATH = "/oidc-auth/api/v1/plugin/login/token"
STATUS_PATH = "/oidc-auth/api/v1/plugin/login/status"
LOGOUT_PATH = "/oidc-auth/api/v1/plugin/logout"


class IdentityClient(IIdentityClient):
    """
    aiohttp client for the identity service.

    Every request is a GET carrying the fixed query parameter set
    ``machine_code, state, provider, plugin_version, client_version,
    uri_scheme``. ``machine_code`` is left out whenever a bearer token
    identifies the caller instead.
    """

    def __init__(
        self,
        base_url: str,
        device_id: str,
        timeout: float = 10.0,
        provider: str = "casdoor",
        plugin_version: str = "1.0.0",
        client_version: Optional[str] = None,
        uri_scheme: str = "deskauth"
    ):
        self.base_url = base_url.rstrip('/')
        self.device_id = device_id
        self.timeout = ClientTimeout(total=timeout)
        self.provider = provider
        self.plugin_version = plugin_version
        self.client_version = client_version or __version__
        self.uri_scheme = uri_scheme

        self._session: Optional[ClientSession] = None

        logger.info(f"Identity client initialized for server: {self.base_url}")

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={'User-Agent': f'DeskAuthClient/{self.client_version}'}
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def build_params(self, state: str, omit: Iterable[str] = ()) -> Dict[str, str]:
        """Query parameters for a request on behalf of session ``state``."""
        params = {
            'machine_code': self.device_id,
            'state': state,
            'provider': self.provider,
            'plugin_version': self.plugin_version,
            'client_version': self.client_version,
            'uri_scheme': self.uri_scheme,
        }
        for key in omit:
            params.pop(key, None)
        return params

    async def _make_request(
        self,
        path: str,
        params: Dict[str, str],
        bearer: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Make one GET request and return the decoded JSON envelope.

        Args:
            path: Route under the base URL
            params: Query parameters
            bearer: Token sent in the Authorization header, if any

        Returns:
            Response body as dictionary (empty when the body is not JSON)

        Raises:
            RemoteAuthError: On a non-2xx response
            TransportError: When no response was received
        """
        await self._ensure_session()

        url = f"{self.base_url}{path}"
        headers = {'Authorization': f'Bearer {bearer}'} if bearer else {}

        try:
            logger.debug(f"GET {url} (state={params.get('state')})")

            async with self._session.get(url, params=params, headers=headers) as response:
                if 200 <= response.status < 300:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        return {}
                    return body if isinstance(body, dict) else {}

                text = await response.text()
                raise RemoteAuthError(response.status, text, context={'path': path})

        except asyncio.TimeoutError as e:
            raise TransportError(
                f"Request to {path} timed out",
                error_code=ErrorCode.NETWORK_TIMEOUT,
                context={'path': path},
                cause=e
            )
        except (ClientError, OSError) as e:
            raise TransportError(
                f"Request to {path} failed: {e}",
                context={'path': path},
                cause=e
            )

    @staticmethod
    def _envelope_data(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not body.get('success'):
            return None
        data = body.get('data')
        return data if isinstance(data, dict) else None

    def build_login_url(self, state: str, device_id: str) -> str:
        params = self.build_params(state)
        params['machine_code'] = device_id
        return f"{self.base_url}{LOGIN_PATH}?{urlencode(params)}"

    async def poll_token(self, state: str, device_id: str) -> TokenPollResult:
        """
        Ask whether the browser login for ``state`` has issued tokens.

        A response without tokens is a normal "not yet" answer.
        """
        params = self.build_params(state)
        params['machine_code'] = device_id

        body = await self._make_request(TOKEN_PATH, params)
        data = self._envelope_data(body)
        if data is None:
            return TokenPollResult(error=body.get('error'))

        tokens = TokenPair.from_dict(data)
        return TokenPollResult(
            status=AuthStatus.parse(data.get('status')),
            tokens=tokens if tokens.is_complete() else None,
        )

    async def get_login_status(self, state: str, access_token: Optional[str]) -> LoginStatusResult:
        omit = ('machine_code',) if access_token else ()
        body = await self._make_request(STATUS_PATH, self.build_params(state, omit), bearer=access_token)

        data = self._envelope_data(body)
        if data is None:
            logger.debug(f"Login status for {state} not available: {body.get('error')}")
            return LoginStatusResult(status=None, state=None)

        return LoginStatusResult(status=AuthStatus.parse(data.get('status')), state=data.get('state'))

    async def refresh(self, refresh_token: str, device_id: str, state: str) -> TokenPair:
        """
        Exchange ``refresh_token`` for a new pair.

        The returned pair may be incomplete or belong to another session;
        validating it is up to the caller.
        """
        params = self.build_params(state, ('machine_code',) if refresh_token else ())
        if not refresh_token:
            params['machine_code'] = device_id

        body = await self._make_request(TOKEN_PATH, params, bearer=refresh_token or None)
        data = self._envelope_data(body)
        if data is None:
            logger.warning(f"[{state}] Token refresh was not accepted: {body.get('error')}")
            return TokenPair(access_token="", refresh_token="", session_id="")

        return TokenPair.from_dict(data)

    async def revoke(self, state: Optional[str], access_token: Optional[str]) -> None:
        try:
            await self._make_request(
                LOGOUT_PATH,
                self.build_params(state or "", ('machine_code',)),
                bearer=access_token
            )
            logger.info(f"Revoked session {state}")
        except (RemoteAuthError, TransportError) as e:
            logger.error(f"Failed to revoke session {state}: {e}")
