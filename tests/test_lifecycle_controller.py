"""
Tests for the authentication lifecycle controller.

The identity service is a scripted fake and all intervals are shortened to
milliseconds, so every scenario runs on the real event loop.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from deskauth_common.exceptions import (
    ControllerDisposed, EmptyTokenResponse, ErrorCode, LoginTimeout, RemoteAuthError,
    SessionMismatch, TokenStorageError, TransportError
)
from deskauth_common.models import (
    AuthEvent, AuthStatus, ControllerState, LoginState, LoginStatusResult,
    TokenPair, TokenPollResult
)
from deskauth.auth.session import LoginSessionStatus

from helpers import DEVICE_ID, issue_on_attempt, make_pair


class TestLogin:
    """Browser login, token polling and confirmation."""

    @pytest.mark.asyncio
    async def test_login_succeeds_on_third_poll(self, controller, identity_client, token_store, sink, fast_settings):
        fast_settings.max_poll_attempts = 3
        identity_client.poll_handler = issue_on_attempt(3)

        session = controller.start_login()
        assert controller.state == ControllerState.LOGGING_IN

        tokens = await controller.wait_for_login()

        assert len(identity_client.poll_calls) == 3
        assert tokens.session_id == session.session_id
        assert await token_store.get_tokens() == tokens
        assert await token_store.get_login_state() == LoginState(session.state, DEVICE_ID)
        assert controller.state == ControllerState.LOGGED_IN
        assert session.status == LoginSessionStatus.SUCCEEDED
        assert controller.refresh_slot.generation == 1
        assert controller.refresh_slot.is_active()
        assert [event for event, _ in sink.events] == [AuthEvent.LOGIN_STARTED, AuthEvent.LOGIN_SUCCESS]

    @pytest.mark.asyncio
    async def test_browser_is_opened_with_login_url(self, controller, identity_client):
        opener = Mock()
        controller.browser_opener = opener
        identity_client.poll_handler = issue_on_attempt(1)

        session = controller.start_login()
        await controller.wait_for_login()

        opener.assert_called_once_with(identity_client.build_login_url(session.state, DEVICE_ID))

    @pytest.mark.asyncio
    async def test_browser_failure_reports_url_and_keeps_polling(self, controller, identity_client, sink):
        controller.browser_opener = Mock(side_effect=RuntimeError("no display"))
        identity_client.poll_handler = issue_on_attempt(2)

        session = controller.start_login()
        tokens = await controller.wait_for_login()

        assert tokens is not None
        started = sink.of_type(AuthEvent.LOGIN_STARTED)
        assert len(started) == 1
        assert session.state in started[0]

    @pytest.mark.asyncio
    async def test_poll_ceiling_raises_login_timeout(self, controller, identity_client, token_store, sink, fast_settings):
        fast_settings.max_poll_attempts = 3

        session = controller.start_login()
        with pytest.raises(LoginTimeout):
            await controller.wait_for_login()

        assert len(identity_client.poll_calls) == 3
        assert identity_client.status_calls == []
        assert await token_store.get_tokens() is None
        assert controller.state == ControllerState.LOGGING_IN
        assert session.status == LoginSessionStatus.TIMED_OUT
        assert len(sink.of_type(AuthEvent.LOGIN_TIMEOUT)) == 1

    @pytest.mark.asyncio
    async def test_poll_errors_consume_one_attempt(self, controller, identity_client):
        def handler(state, device_id, attempt):
            if attempt == 1:
                return TransportError("connection refused")
            return TokenPollResult(tokens=make_pair(state))

        identity_client.poll_handler = handler

        controller.start_login()
        tokens = await controller.wait_for_login()

        assert tokens is not None
        assert len(identity_client.poll_calls) == 2

    @pytest.mark.asyncio
    async def test_tokens_for_another_session_are_discarded(self, controller, identity_client, token_store, fast_settings):
        fast_settings.max_poll_attempts = 3
        identity_client.poll_handler = lambda state, device_id, attempt: TokenPollResult(tokens=make_pair("other-session"))

        controller.start_login()
        with pytest.raises(LoginTimeout):
            await controller.wait_for_login()

        assert await token_store.get_tokens() is None

    @pytest.mark.asyncio
    async def test_incomplete_tokens_are_not_yet_issued(self, controller, identity_client):
        def handler(state, device_id, attempt):
            if attempt == 1:
                return TokenPollResult(tokens=TokenPair("access", "", state))
            return TokenPollResult(tokens=make_pair(state))

        identity_client.poll_handler = handler

        controller.start_login()
        tokens = await controller.wait_for_login()

        assert tokens.refresh_token
        assert len(identity_client.poll_calls) == 2


class TestLoginConfirmation:
    """The status route must report the active session as logged in."""

    @pytest.mark.asyncio
    async def test_confirmation_uses_tentative_access_token(self, controller, identity_client):
        identity_client.poll_handler = issue_on_attempt(1)

        session = controller.start_login()
        tokens = await controller.wait_for_login()

        assert identity_client.status_calls == [(session.state, tokens.access_token)]

    @pytest.mark.asyncio
    async def test_status_for_other_session_keeps_polling(self, controller, identity_client):
        identity_client.poll_handler = issue_on_attempt(1)

        def status_handler(state, access_token):
            if len(identity_client.status_calls) < 3:
                return LoginStatusResult(status=AuthStatus.LOGGED_IN, state="X")
            return LoginStatusResult(status=AuthStatus.LOGGED_IN, state=state)

        identity_client.status_handler = status_handler

        controller.start_login()
        tokens = await controller.wait_for_login()

        assert tokens is not None
        assert len(identity_client.status_calls) == 3
        assert controller.state == ControllerState.LOGGED_IN

    @pytest.mark.asyncio
    async def test_status_errors_are_swallowed(self, controller, identity_client):
        identity_client.poll_handler = issue_on_attempt(1)

        def status_handler(state, access_token):
            if len(identity_client.status_calls) == 1:
                return RemoteAuthError(502, "bad gateway")
            return LoginStatusResult(status=AuthStatus.LOGGED_IN, state=state)

        identity_client.status_handler = status_handler

        controller.start_login()
        assert await controller.wait_for_login() is not None
        assert len(identity_client.status_calls) == 2

    @pytest.mark.asyncio
    async def test_unconfirmed_login_times_out_without_saving(self, controller, identity_client, token_store, sink):
        identity_client.poll_handler = issue_on_attempt(1)
        identity_client.status_handler = lambda state, access_token: LoginStatusResult(
            status=AuthStatus.LOGGING_IN, state=state
        )

        controller.start_login()
        with pytest.raises(LoginTimeout):
            await controller.wait_for_login()

        assert len(identity_client.status_calls) == 3
        assert await token_store.get_tokens() is None
        assert controller.state == ControllerState.LOGGING_IN
        assert len(sink.of_type(AuthEvent.LOGIN_TIMEOUT)) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_fails_login(self, controller, identity_client, token_store, sink):
        identity_client.poll_handler = issue_on_attempt(1)
        token_store.save_tokens = AsyncMock(side_effect=TokenStorageError("disk full"))

        controller.start_login()
        with pytest.raises(TokenStorageError):
            await controller.wait_for_login()

        assert controller.state == ControllerState.LOGGED_OUT
        assert len(sink.of_type(AuthEvent.LOGIN_FAILED)) == 1


class TestSupersededLogin:
    """Starting a login cancels the previous one."""

    @pytest.mark.asyncio
    async def test_only_one_login_poll_is_active(self, controller, identity_client, fast_settings):
        fast_settings.max_poll_attempts = 100
        first = controller.start_login()
        first_task = controller.login_task
        second = controller.start_login()
        second_task = controller.login_task

        await asyncio.sleep(0.05)

        assert first_task.cancelled()
        assert not second_task.done()
        assert first.status == LoginSessionStatus.SUPERSEDED
        assert controller.current_session is second
        assert identity_client.poll_calls
        assert {state for state, _ in identity_client.poll_calls} == {second.state}

    @pytest.mark.asyncio
    async def test_only_second_session_tokens_are_persisted(self, controller, identity_client, token_store):
        identity_client.poll_handler = issue_on_attempt(1)

        controller.start_login()
        second = controller.start_login()
        tokens = await controller.wait_for_login()

        assert tokens.session_id == second.session_id
        assert (await token_store.get_tokens()).session_id == second.session_id
        assert token_store.write_count == 2

    @pytest.mark.asyncio
    async def test_superseded_waiter_gets_none(self, controller):
        controller.start_login()
        waiter = asyncio.ensure_future(controller.wait_for_login())
        await asyncio.sleep(0.001)

        controller.start_login()

        assert await waiter is None

    @pytest.mark.asyncio
    async def test_start_login_cancels_refresh_timer(self, controller):
        controller.start_token_refresh(make_pair("old-session"), DEVICE_ID)
        refresh_task = controller.refresh_slot.task

        controller.start_login()
        await asyncio.sleep(0)

        assert refresh_task.cancelled()
        assert not controller.refresh_slot.is_active()


class TestRefresh:
    """Explicit and automatic token refresh."""

    @pytest.mark.asyncio
    async def test_empty_refresh_keeps_previous_tokens(self, controller, identity_client, token_store):
        previous = make_pair("session-1")
        await token_store.save_tokens(previous)
        identity_client.refresh_results = [TokenPair("", "", "session-1")]

        with pytest.raises(EmptyTokenResponse):
            await controller.refresh_token(previous.refresh_token, DEVICE_ID, "session-1")

        assert await token_store.get_tokens() == previous
        assert token_store.write_count == 1
        assert controller.refresh_slot.generation == 0

    @pytest.mark.asyncio
    async def test_refresh_for_other_session_is_rejected(self, controller, identity_client, token_store):
        previous = make_pair("session-1")
        await token_store.save_tokens(previous)
        identity_client.refresh_results = [make_pair("session-2", tag="2")]

        with pytest.raises(SessionMismatch):
            await controller.refresh_token(previous.refresh_token, DEVICE_ID, "session-1")

        assert await token_store.get_tokens() == previous

    @pytest.mark.asyncio
    async def test_successful_refresh_saves_and_rearms(self, controller, identity_client, token_store):
        renewed = make_pair("session-1", tag="2")
        identity_client.refresh_results = [renewed]

        result = await controller.refresh_token("refresh-1", DEVICE_ID, "session-1")

        assert result == renewed
        assert await token_store.get_tokens() == renewed
        assert identity_client.refresh_calls == [("refresh-1", DEVICE_ID, "session-1")]
        assert controller.refresh_slot.generation == 1
        assert not controller.is_refreshing

    @pytest.mark.asyncio
    async def test_manual_refresh_does_not_arm_timer(self, controller, identity_client):
        identity_client.refresh_results = [make_pair("session-1", tag="2")]

        await controller.refresh_token("refresh-1", DEVICE_ID, "session-1", auto=False)

        assert controller.refresh_slot.generation == 0

    @pytest.mark.asyncio
    async def test_refresh_is_retried_then_propagates(self, controller, identity_client):
        identity_client.refresh_results = [TransportError("connection reset")]

        with pytest.raises(TransportError):
            await controller.refresh_token("refresh-1", DEVICE_ID, "session-1")

        assert len(identity_client.refresh_calls) == 3
        assert not controller.is_refreshing

    @pytest.mark.asyncio
    async def test_is_refreshing_while_request_in_flight(self, controller, identity_client):
        seen = []
        renewed = make_pair("session-1", tag="2")
        identity_client.refresh = AsyncMock(side_effect=lambda *args: seen.append(controller.is_refreshing) or renewed)

        await controller.refresh_token("refresh-1", DEVICE_ID, "session-1", auto=False)

        assert seen == [True]
        assert not controller.is_refreshing

    @pytest.mark.asyncio
    async def test_timer_fires_and_rearms_from_new_token(self, controller, identity_client, token_store):
        # Expires within the refresh margin, so the timer uses the minimum delay
        current = make_pair("session-1", expires_in=60)
        await token_store.save_tokens(current)
        renewed = make_pair("session-1", expires_in=7200, tag="2")
        identity_client.refresh_results = [renewed]

        controller.start_token_refresh(current, DEVICE_ID)
        await asyncio.sleep(0.1)

        assert identity_client.refresh_calls == [(current.refresh_token, DEVICE_ID, "session-1")]
        assert await token_store.get_tokens() == renewed
        assert controller.refresh_slot.generation == 2
        assert controller.refresh_slot.is_active()

    @pytest.mark.asyncio
    async def test_failed_firing_notifies_and_keeps_timer(self, controller, identity_client, token_store, sink):
        current = make_pair("session-1", expires_in=60)
        await token_store.save_tokens(current)
        identity_client.refresh_results = [RemoteAuthError(401, "revoked")]

        controller.start_token_refresh(current, DEVICE_ID)
        await asyncio.sleep(0.12)

        failures = sink.of_type(AuthEvent.REFRESH_FAILED)
        assert len(failures) >= 2
        assert "log in again" in failures[0]
        assert await token_store.get_tokens() == current
        assert controller.refresh_slot.generation == 1
        assert controller.refresh_slot.is_active()

    @pytest.mark.asyncio
    async def test_failed_firing_is_audited_as_error(self, controller, identity_client):
        controller.audit = Mock()
        identity_client.refresh_results = [RuntimeError("socket closed")]

        controller.start_token_refresh(make_pair("session-1", expires_in=60), DEVICE_ID)
        await asyncio.sleep(0.05)

        error, = controller.audit.log_error.call_args_list[0][0]
        assert error.error_code == ErrorCode.INTERNAL_UNEXPECTED_ERROR
        assert error.context['operation'] == 'automatic_refresh'
        assert controller.audit.log_error.call_args_list[0][1] == {'session_id': "session-1"}

    @pytest.mark.asyncio
    async def test_rearming_cancels_previous_timer(self, controller):
        controller.start_token_refresh(make_pair("session-1"), DEVICE_ID)
        first = controller.refresh_slot.task

        controller.start_token_refresh(make_pair("session-1", tag="2"), DEVICE_ID)
        await asyncio.sleep(0)

        assert first.cancelled()
        assert controller.refresh_slot.generation == 2


class TestLogout:

    @pytest.mark.asyncio
    async def test_logout_with_armed_timer_and_failing_revoke(self, controller, identity_client, token_store, sink):
        tokens = make_pair("session-1")
        await token_store.save_tokens(tokens)
        await token_store.save_login_state(LoginState("session-1", DEVICE_ID))
        controller.start_token_refresh(tokens, DEVICE_ID)
        refresh_task = controller.refresh_slot.task
        identity_client.revoke_error = RuntimeError("network down")

        await controller.logout()
        await asyncio.sleep(0)

        assert refresh_task.cancelled()
        assert not controller.refresh_slot.is_active()
        assert await controller.get_tokens() is None
        assert await token_store.get_login_state() is None
        assert identity_client.revoke_calls == [("session-1", tokens.access_token)]
        assert controller.state == ControllerState.LOGGED_OUT
        assert len(sink.of_type(AuthEvent.LOGOUT)) == 1

    @pytest.mark.asyncio
    async def test_logout_after_login(self, controller, identity_client):
        identity_client.poll_handler = issue_on_attempt(1)
        session = controller.start_login()
        tokens = await controller.wait_for_login()

        await controller.logout()

        assert identity_client.revoke_calls == [(session.state, tokens.access_token)]
        assert controller.state == ControllerState.LOGGED_OUT
        assert controller.current_session is None

    @pytest.mark.asyncio
    async def test_logout_cancels_login_in_progress(self, controller, token_store):
        controller.start_login()
        login_task = controller.login_task

        await controller.logout()
        await asyncio.sleep(0)

        assert login_task.cancelled()
        assert await token_store.get_tokens() is None

    @pytest.mark.asyncio
    async def test_storage_failure_still_logs_out_locally(self, controller, identity_client, token_store, sink):
        identity_client.poll_handler = issue_on_attempt(1)
        controller.start_login()
        await controller.wait_for_login()
        token_store.clear_all = AsyncMock(side_effect=TokenStorageError("keyring locked"))

        with pytest.raises(TokenStorageError):
            await controller.logout()

        assert controller.state == ControllerState.LOGGED_OUT
        assert not controller.is_logged_in
        assert not controller.refresh_slot.is_active()
        assert controller.current_session is None
        assert len(sink.of_type(AuthEvent.LOGOUT)) == 1

    @pytest.mark.asyncio
    async def test_logout_without_stored_login(self, controller, identity_client):
        await controller.logout()

        assert identity_client.revoke_calls == [(None, None)]
        assert controller.state == ControllerState.LOGGED_OUT


class TestStartupCheck:

    @pytest.mark.asyncio
    async def test_no_stored_tokens(self, controller, identity_client):
        assert await controller.check_login_status_on_startup() is False
        assert identity_client.status_calls == []

    @pytest.mark.asyncio
    async def test_valid_session_logs_in_and_arms_refresh(self, controller, identity_client, token_store):
        tokens = make_pair("session-1")
        await token_store.save_tokens(tokens)
        await token_store.save_login_state(LoginState("session-1", "device-9"))

        assert await controller.check_login_status_on_startup() is True

        assert identity_client.status_calls == [("session-1", tokens.access_token)]
        assert controller.state == ControllerState.LOGGED_IN
        assert controller.refresh_slot.is_active()

    @pytest.mark.asyncio
    async def test_server_reports_not_logged_in(self, controller, identity_client, token_store):
        await token_store.save_tokens(make_pair("session-1"))
        identity_client.status_handler = lambda state, access_token: LoginStatusResult(
            status=AuthStatus.TOKEN_EXPIRED, state=state
        )

        assert await controller.check_login_status_on_startup() is False
        assert controller.state == ControllerState.LOGGED_OUT
        assert not controller.refresh_slot.is_active()

    @pytest.mark.asyncio
    async def test_errors_degrade_to_not_logged_in(self, controller, identity_client, token_store):
        await token_store.save_tokens(make_pair("session-1"))
        identity_client.status_handler = lambda state, access_token: TransportError("offline")

        assert await controller.check_login_status_on_startup() is False
        assert len(identity_client.status_calls) == 2


class TestTeardownAndAccessors:

    @pytest.mark.asyncio
    async def test_disposed_controller_rejects_login(self, controller):
        controller.start_token_refresh(make_pair("session-1"), DEVICE_ID)
        refresh_task = controller.refresh_slot.task

        controller.dispose()
        await asyncio.sleep(0)

        assert refresh_task.cancelled()
        with pytest.raises(ControllerDisposed):
            controller.start_login()

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_tasks(self, controller):
        controller.start_login()
        login_task = controller.login_task

        await controller.shutdown()

        assert login_task.done()
        assert controller.is_disposed

    @pytest.mark.asyncio
    async def test_auth_callbacks(self, controller, identity_client):
        changes = []
        controller.add_auth_callback(Mock(side_effect=RuntimeError("broken listener")))
        controller.add_auth_callback(changes.append)
        identity_client.poll_handler = issue_on_attempt(1)

        controller.start_login()
        await controller.wait_for_login()
        await controller.logout()

        assert changes == [True, False]

    @pytest.mark.asyncio
    async def test_token_accessors(self, controller, identity_client):
        assert await controller.get_current_access_token() is None
        assert await controller.get_user_info() is None

        identity_client.poll_handler = issue_on_attempt(1)
        controller.start_login()
        tokens = await controller.wait_for_login()

        assert await controller.get_current_access_token() == tokens.access_token
        assert (await controller.get_user_info()).id == "user-1"

    @pytest.mark.asyncio
    async def test_wait_without_login(self, controller):
        assert await controller.wait_for_login() is None
