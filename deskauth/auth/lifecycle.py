"""
Authentication lifecycle controller for DeskAuth.

This module drives the browser-delegated login: it opens the login page,
polls the identity service until tokens are issued for the current session,
confirms the login through the status route, persists the tokens and keeps
them fresh with a recurring refresh task. Logout and startup validation are
handled here too.

The controller runs on a single event loop. Its two background activities
(the login poll and the refresh timer) each live in a TaskSlot, so that
starting a new one always cancels its predecessor first.
"""

import asyncio
import logging
import webbrowser
from dataclasses import dataclass
from typing import Optional, Callable, List, Any

from deskauth_common.exceptions import (
    DeskAuthError, ErrorCode, LoginTimeout, SessionMismatch, EmptyTokenResponse,
    ControllerDisposed, handle_exception
)
from deskauth_common.interfaces import IIdentityClient, INotificationSink, ITokenStore
from deskauth_common.logging_config import AuditLogger, AuditEventType, log_structured_error
from deskauth_common.models import (
    AuthEvent, ControllerState, LoginState, TokenPair, UserInfo
)
from deskauth.auth.claims import (
    compute_refresh_delay_ms, decode_identity_claims,
    REFRESH_MARGIN_SECONDS, MIN_REFRESH_DELAY_MS, FALLBACK_REFRESH_DELAY_MS
)
from deskauth.auth.scheduler import CancellationToken, TaskSlot
from deskauth.auth.session import LoginSession, LoginSessionFactory, LoginSessionStatus
from deskauth.notifications import LoggingNotificationSink
from deskauth.retry import RetryPolicy, fixed_delay

logger = logging.getLogger(__name__)

BrowserOpener = Callable[[str], Any]

REFRESH_FAILED_MESSAGE = "Token refresh failed, please log in again"


@dataclass
class LifecycleSettings:
    """Timing and ceilings used by the lifecycle controller. Durations in seconds."""
    poll_interval: float = 3.0
    max_poll_attempts: int = 100
    status_poll_interval: float = 5.0
    max_status_poll_attempts: int = 60
    refresh_retry_attempts: int = 3
    startup_check_attempts: int = 2
    startup_check_delay: float = 1.0
    refresh_margin_seconds: int = REFRESH_MARGIN_SECONDS
    min_refresh_delay_ms: int = MIN_REFRESH_DELAY_MS
    fallback_refresh_delay_ms: int = FALLBACK_REFRESH_DELAY_MS


def open_in_browser(url: str) -> None:
    """Open ``url`` in the default browser."""
    if not webbrowser.open(url):
        raise DeskAuthError(
            "No browser available to open the login page",
            error_code=ErrorCode.LIFECYCLE_BROWSER_UNAVAILABLE,
            context={'url': url}
        )


class AuthLifecycleController:
    """
    State machine for login, refresh, logout and startup validation.

    States are ``LOGGED_OUT``, ``LOGGING_IN`` and ``LOGGED_IN``; while logged
    in, ``is_refreshing`` reports whether a refresh request is in flight.
    """

    def __init__(
        self,
        identity_client: IIdentityClient,
        token_store: ITokenStore,
        notification_sink: Optional[INotificationSink] = None,
        browser_opener: Optional[BrowserOpener] = None,
        session_factory: Optional[LoginSessionFactory] = None,
        settings: Optional[LifecycleSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.identity_client = identity_client
        self.token_store = token_store
        self.notification_sink = notification_sink or LoggingNotificationSink()
        self.browser_opener = browser_opener or open_in_browser
        self.session_factory = session_factory or LoginSessionFactory()
        self.settings = settings or LifecycleSettings()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=self.settings.refresh_retry_attempts)
        self.audit = audit_logger or AuditLogger()

        self._state = ControllerState.LOGGED_OUT
        self._session: Optional[LoginSession] = None
        self._is_refreshing = False
        self._disposed = False

        self._login_slot = TaskSlot("login-poll")
        self._refresh_slot = TaskSlot("token-refresh")

        self._auth_callbacks: List[Callable[[bool], None]] = []

        logger.info("Authentication lifecycle controller initialized")

    # State

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def current_session(self) -> Optional[LoginSession]:
        """The login attempt in progress or last completed, if any."""
        return self._session

    @property
    def is_logged_in(self) -> bool:
        return self._state == ControllerState.LOGGED_IN

    @property
    def is_refreshing(self) -> bool:
        return self._is_refreshing

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def login_slot(self) -> TaskSlot:
        return self._login_slot

    @property
    def refresh_slot(self) -> TaskSlot:
        return self._refresh_slot

    @property
    def login_task(self) -> Optional[asyncio.Task]:
        return self._login_slot.task

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with the new logged-in status (bool)
        """
        self._auth_callbacks.append(callback)

    def _notify_auth_change(self, is_logged_in: bool) -> None:
        """Notify callbacks of authentication state change."""
        for callback in self._auth_callbacks:
            try:
                callback(is_logged_in)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    def _set_state(self, state: ControllerState) -> None:
        if state == self._state:
            return
        was_logged_in = self.is_logged_in
        logger.info(f"Authentication state: {self._state.value} -> {state.value}")
        self._state = state
        if was_logged_in != self.is_logged_in:
            self._notify_auth_change(self.is_logged_in)

    def _notify(self, event: AuthEvent, message: str) -> None:
        try:
            self.notification_sink.notify(event, message)
        except Exception as e:
            logger.error(f"Error delivering {event.value} notification: {e}")

    def _is_current(self, session: LoginSession, token: CancellationToken) -> bool:
        return not token.cancelled and not self._disposed and self._session is session

    # Login

    def start_login(self) -> LoginSession:
        """
        Start a browser login, superseding any login in progress.

        The login page is opened and a background task polls for the result.
        Use ``wait_for_login()`` to await the outcome.

        Returns:
            The new login session

        Raises:
            ControllerDisposed: If the controller has been disposed
        """
        if self._disposed:
            raise ControllerDisposed()

        self._login_slot.cancel()
        self._refresh_slot.cancel()

        previous = self._session
        if previous is not None and previous.status in (LoginSessionStatus.PENDING, LoginSessionStatus.CONFIRMING):
            previous.status = LoginSessionStatus.SUPERSEDED
            logger.info(f"Login session {previous.session_id} superseded")

        session = self.session_factory.create()
        self._session = session
        self._set_state(ControllerState.LOGGING_IN)

        url = self.identity_client.build_login_url(session.state, session.device_id)
        self._open_browser(url)

        self._login_slot.arm(lambda token: self._run_login_flow(session, token))
        logger.info(f"Login started for session {session.session_id}")
        return session

    def _open_browser(self, url: str) -> None:
        try:
            self.browser_opener(url)
        except Exception as e:
            logger.warning(f"Failed to open browser: {e}")
            self._notify(AuthEvent.LOGIN_STARTED, f"Could not open a browser. Open this address to log in: {url}")
            return
        self._notify(AuthEvent.LOGIN_STARTED, f"Login page opened in your browser, please complete the login: {url}")

    async def wait_for_login(self) -> Optional[TokenPair]:
        """
        Wait for the login in progress.

        Returns:
            The confirmed token pair, or None when there is no login in
            progress or it was superseded

        Raises:
            LoginTimeout: If a poll ceiling was exhausted
        """
        task = self._login_slot.task
        if task is None:
            return None
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise

    async def _run_login_flow(self, session: LoginSession, token: CancellationToken) -> Optional[TokenPair]:
        try:
            tokens = await self._poll_for_tokens(session, token)
            if tokens is None:
                return None

            session.status = LoginSessionStatus.CONFIRMING
            if not await self._confirm_login(session, tokens, token):
                return None

            return await self._complete_login(session, tokens, token)

        except LoginTimeout as e:
            if self._is_current(session, token):
                session.status = LoginSessionStatus.TIMED_OUT
                self._notify(AuthEvent.LOGIN_TIMEOUT, "Login timed out, please try again")
                self.audit.log_login(session.session_id, session.device_id, success=False, failure_reason=e.message)
            raise

        except Exception as e:
            if self._is_current(session, token):
                session.status = LoginSessionStatus.FAILED
                self._set_state(ControllerState.LOGGED_OUT)
                self._notify(AuthEvent.LOGIN_FAILED, f"Login failed: {e}")
                self.audit.log_login(session.session_id, session.device_id, success=False, failure_reason=str(e))
            logger.error(f"Login flow for session {session.session_id} failed: {e}")
            raise

    async def _poll_for_tokens(self, session: LoginSession, token: CancellationToken) -> Optional[TokenPair]:
        """
        Poll the token route until tokens for ``session`` are issued.

        Returns None if the session was superseded while polling.
        """
        attempts = max(1, self.settings.max_poll_attempts)

        for attempt in range(1, attempts + 1):
            if not self._is_current(session, token):
                return None

            try:
                result = await self.retry_policy.run(
                    "login.poll_token",
                    lambda: self.identity_client.poll_token(session.state, session.device_id),
                    max_attempts=1
                )
            except Exception as e:
                logger.debug(f"Token poll {attempt}/{attempts} for {session.session_id} failed: {e}")
            else:
                if not self._is_current(session, token):
                    return None
                tokens = result.tokens
                if tokens is not None and tokens.is_complete():
                    if session.matches(tokens.session_id):
                        logger.info(f"Tokens issued for session {session.session_id} on attempt {attempt}")
                        return tokens
                    logger.warning(f"Discarding tokens issued for session {tokens.session_id!r}")

            if attempt < attempts:
                await asyncio.sleep(self.settings.poll_interval)

        raise LoginTimeout(
            f"No tokens issued for session {session.session_id} after {attempts} attempts",
            session_id=session.session_id,
            attempts=attempts
        )

    async def _confirm_login(self, session: LoginSession, tokens: TokenPair, token: CancellationToken) -> bool:
        """
        Poll the status route until the server reports ``session`` as logged in.

        Returns False if the session was superseded while polling.
        """
        attempts = max(1, self.settings.max_status_poll_attempts)

        for attempt in range(1, attempts + 1):
            if not self._is_current(session, token):
                return False

            try:
                status = await self.retry_policy.run(
                    "login.confirm_status",
                    lambda: self.identity_client.get_login_status(session.state, tokens.access_token),
                    max_attempts=1
                )
            except Exception as e:
                logger.warning(f"Login status poll {attempt}/{attempts} for {session.session_id} failed: {e}")
            else:
                if not self._is_current(session, token):
                    return False
                if status.confirms(session.session_id):
                    logger.info(f"Login confirmed for session {session.session_id}")
                    return True

            if attempt < attempts:
                await asyncio.sleep(self.settings.status_poll_interval)

        raise LoginTimeout(
            f"Login for session {session.session_id} was not confirmed after {attempts} attempts",
            session_id=session.session_id,
            attempts=attempts
        )

    async def _complete_login(
        self,
        session: LoginSession,
        tokens: TokenPair,
        token: CancellationToken
    ) -> Optional[TokenPair]:
        await self.token_store.save_tokens(tokens)
        await self.token_store.save_login_state(LoginState(state=session.state, device_id=session.device_id))

        if not self._is_current(session, token):
            return None

        session.status = LoginSessionStatus.SUCCEEDED
        self._set_state(ControllerState.LOGGED_IN)
        self.start_token_refresh(tokens, session.device_id)

        self._notify(AuthEvent.LOGIN_SUCCESS, "Login successful")
        self.audit.log_login(session.session_id, session.device_id, success=True)
        return tokens

    # Refresh

    async def refresh_token(self, refresh_token: str, device_id: str, state: str, auto: bool = True) -> TokenPair:
        """
        Exchange a refresh token for a new pair and store it.

        Args:
            refresh_token: Current refresh token
            device_id: Device the session was started on
            state: Session the tokens belong to
            auto: Re-arm the refresh timer from the new access token

        Returns:
            The new token pair

        Raises:
            EmptyTokenResponse: If the response lacks either token
            SessionMismatch: If the response belongs to another session
        """
        self._is_refreshing = True
        try:
            tokens = await self.retry_policy.run(
                "refresh_token",
                lambda: self.identity_client.refresh(refresh_token, device_id, state),
                max_attempts=self.settings.refresh_retry_attempts
            )

            if not tokens.is_complete():
                raise EmptyTokenResponse()
            if tokens.session_id != state:
                raise SessionMismatch(expected=state, received=tokens.session_id)

            await self.token_store.save_tokens(tokens)

            if auto and not self._disposed:
                self.start_token_refresh(tokens, device_id)

            self.audit.log_token_refresh(state, success=True, automatic=auto)
            logger.info(f"Token refreshed for session {state}")
            return tokens

        except Exception as e:
            self.audit.log_token_refresh(state, success=False, automatic=auto, error_message=str(e))
            raise

        finally:
            self._is_refreshing = False

    def start_token_refresh(self, tokens: TokenPair, device_id: str) -> asyncio.Task:
        """
        Arm the recurring refresh timer for ``tokens``, replacing any previous one.

        The interval is derived once from the access token's expiry. Every
        firing refreshes; a successful refresh re-arms the timer from the new
        token, a failed one keeps the timer running at the same interval.
        """
        if self._disposed:
            raise ControllerDisposed()

        delay_ms = compute_refresh_delay_ms(
            tokens.access_token,
            refresh_margin_seconds=self.settings.refresh_margin_seconds,
            min_delay_ms=self.settings.min_refresh_delay_ms,
            fallback_delay_ms=self.settings.fallback_refresh_delay_ms
        )
        logger.info(f"Next token refresh for session {tokens.session_id} in {delay_ms / 1000:.1f}s")

        return self._refresh_slot.arm(
            lambda token: self._refresh_loop(tokens.refresh_token, device_id, tokens.session_id, delay_ms, token)
        )

    async def _refresh_loop(
        self,
        refresh_token: str,
        device_id: str,
        state: str,
        delay_ms: int,
        token: CancellationToken
    ) -> None:
        while not token.cancelled:
            await asyncio.sleep(delay_ms / 1000)
            if token.cancelled:
                return

            logger.info("Automatic token refresh triggered")
            try:
                await self.refresh_token(refresh_token, device_id, state, auto=True)
            except Exception as e:
                error = handle_exception(e, context={'operation': 'automatic_refresh'})
                log_structured_error(logger, error, session_id=state)
                self.audit.log_error(error, session_id=state)
                if not token.cancelled:
                    self._notify(AuthEvent.REFRESH_FAILED, REFRESH_FAILED_MESSAGE)

    # Logout and startup

    async def logout(self) -> None:
        """
        Log out: stop timers, revoke on the server (best effort) and clear stored tokens.

        The controller ends up logged out and the logout notification is sent
        in every case.

        Raises:
            TokenStorageError: If the stored tokens could not be cleared
        """
        logger.info("Logging out and clearing authentication state")

        self._login_slot.cancel()
        self._refresh_slot.cancel()

        if self._session is not None and self._session.status in (
            LoginSessionStatus.PENDING, LoginSessionStatus.CONFIRMING
        ):
            self._session.status = LoginSessionStatus.SUPERSEDED
        self._session = None

        login_state: Optional[LoginState] = None
        tokens: Optional[TokenPair] = None
        try:
            login_state = await self.token_store.get_login_state()
            tokens = await self.token_store.get_tokens()
        except Exception as e:
            logger.warning(f"Could not read stored login before logout: {e}")

        state = (login_state.state if login_state else None) or (tokens.session_id if tokens else None)

        revoked = False
        try:
            await self.retry_policy.run(
                "logout.revoke",
                lambda: self.identity_client.revoke(state, tokens.access_token if tokens else None),
                max_attempts=1
            )
            revoked = True
        except Exception as e:
            logger.error(f"Failed to revoke session {state}: {e}")

        # Local state is reset even if clearing storage fails
        try:
            await self.token_store.clear_all()
        except DeskAuthError as e:
            log_structured_error(logger, e, session_id=state)
            raise
        finally:
            self._set_state(ControllerState.LOGGED_OUT)
            self._notify(AuthEvent.LOGOUT, "Logged out")
            self.audit.log_logout(state, revoked)

    async def check_login_status_on_startup(self) -> bool:
        """
        Validate stored tokens against the identity service.

        Returns:
            True if the server reports the stored session as logged in, in
            which case the controller is logged in and the refresh timer armed
        """
        if self._disposed:
            raise ControllerDisposed()

        try:
            tokens = await self.token_store.get_tokens()
            if tokens is None or not tokens.is_complete():
                logger.info("No stored tokens, not logged in")
                return False

            login_state = await self.token_store.get_login_state()
            state = (login_state.state if login_state else None) or tokens.session_id

            result = await self.retry_policy.run(
                "check_login_status_on_startup",
                lambda: self.identity_client.get_login_status(state, tokens.access_token),
                delay=fixed_delay(self.settings.startup_check_delay),
                max_attempts=self.settings.startup_check_attempts
            )
        except Exception as e:
            logger.error(f"Startup login check failed: {e}")
            self.audit.log_event(
                AuditEventType.STARTUP_CHECK,
                "Startup login check failed",
                result="error",
                additional_context={'error_message': str(e)}
            )
            return False

        valid = result.confirms(state)
        self.audit.log_event(
            AuditEventType.STARTUP_CHECK,
            f"Stored session {state} is {'valid' if valid else 'not valid'}",
            session_id=state,
            result="success" if valid else "failure"
        )

        if not valid:
            logger.info(f"Stored session {state} is no longer logged in")
            return False

        device_id = (login_state.device_id if login_state else None) or self.session_factory.device_id
        self._set_state(ControllerState.LOGGED_IN)
        self.start_token_refresh(tokens, device_id)
        return True

    # Token access

    async def get_tokens(self) -> Optional[TokenPair]:
        return await self.token_store.get_tokens()

    async def get_current_access_token(self) -> Optional[str]:
        tokens = await self.token_store.get_tokens()
        return tokens.access_token if tokens and tokens.access_token else None

    async def get_user_info(self) -> Optional[UserInfo]:
        """Identity claims of the stored access token."""
        return decode_identity_claims(await self.get_current_access_token())

    # Teardown

    def dispose(self) -> None:
        """Cancel both timers and refuse further logins."""
        if self._disposed:
            return
        self._disposed = True
        self._login_slot.cancel()
        self._refresh_slot.cancel()
        logger.info("Authentication lifecycle controller disposed")

    async def shutdown(self) -> None:
        """Dispose and wait for the background tasks to finish."""
        logger.info("Shutting down authentication lifecycle controller")
        self._disposed = True
        await self._login_slot.cancel_and_wait()
        await self._refresh_slot.cancel_and_wait()
