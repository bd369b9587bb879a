"""
Exception hierarchy for the DeskAuth login client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions so that the lifecycle controller, the identity client
and the storage backends report failures consistently.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for DeskAuth."""

    # Authentication errors (1000-1099)
    AUTH_REMOTE_REJECTED = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_SESSION_MISMATCH = "AUTH_1003"
    AUTH_EMPTY_TOKEN_RESPONSE = "AUTH_1004"
    AUTH_LOGIN_TIMEOUT = "AUTH_1005"

    # Network and communication errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_INVALID_RESPONSE = "NETWORK_2003"

    # Storage errors (3000-3099)
    STORAGE_READ_FAILED = "STORAGE_3001"
    STORAGE_WRITE_FAILED = "STORAGE_3002"

    # Lifecycle errors (4000-4099)
    LIFECYCLE_DISPOSED = "LIFECYCLE_4001"
    LIFECYCLE_BROWSER_UNAVAILABLE = "LIFECYCLE_4002"

    # Configuration errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RELOGIN = "relogin"
    REFRESH_TOKEN = "refresh_token"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class DeskAuthError(Exception):
    """
    Base exception class for all DeskAuth errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class TransportError(DeskAuthError):
    """The identity service could not be reached (no HTTP response)."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            **kwargs
        )


class RemoteAuthError(DeskAuthError):
    """The identity service answered with a non-success HTTP status."""

    def __init__(self, status: int, body: str = "", **kwargs):
        context = kwargs.pop('context', {})
        context['status'] = status

        self.status = status
        self.body = body

        super().__init__(
            message=f"Identity service returned HTTP {status}: {body}" if body else f"Identity service returned HTTP {status}",
            error_code=ErrorCode.AUTH_REMOTE_REJECTED,
            severity=ErrorSeverity.HIGH if status in (401, 403) else ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RELOGIN] if status in (401, 403) else [RecoveryAction.RETRY],
            context=context,
            **kwargs
        )


class LoginTimeout(DeskAuthError):
    """A login poll exhausted its attempt ceiling."""

    def __init__(self, message: str, session_id: Optional[str] = None, attempts: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if session_id:
            context['session_id'] = session_id
        if attempts is not None:
            context['attempts'] = attempts

        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_LOGIN_TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RELOGIN],
            context=context,
            user_message="Login timed out, please try again",
            **kwargs
        )


class TokenRejectedError(DeskAuthError):
    """A token response was received but cannot be trusted."""

    def __init__(self, message: str, error_code: ErrorCode, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class SessionMismatch(TokenRejectedError):
    """The response belongs to a different login session than expected."""

    def __init__(self, expected: Optional[str], received: Optional[str], **kwargs):
        context = kwargs.pop('context', {})
        context['expected_state'] = expected
        context['received_state'] = received

        super().__init__(
            message=f"Session mismatch: expected {expected!r}, got {received!r}",
            error_code=ErrorCode.AUTH_SESSION_MISMATCH,
            context=context,
            **kwargs
        )


class EmptyTokenResponse(TokenRejectedError):
    """A refresh response did not carry both tokens."""

    def __init__(self, message: str = "Token response is missing access or refresh token", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_EMPTY_TOKEN_RESPONSE,
            **kwargs
        )


class ControllerDisposed(DeskAuthError):
    """An operation was attempted after the controller was torn down."""

    def __init__(self, message: str = "Authentication controller has been disposed", **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.LIFECYCLE_DISPOSED,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class TokenStorageError(DeskAuthError):
    """Token persistence failed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class ConfigurationError(DeskAuthError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> DeskAuthError:
    """
    Convert a generic exception to a structured DeskAuthError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured DeskAuthError
    """
    if isinstance(exception, DeskAuthError):
        return exception

    if isinstance(exception, TimeoutError):
        return TransportError(
            message=str(exception) or "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            context=context,
            cause=exception
        )

    if isinstance(exception, ConnectionError):
        return TransportError(
            message=str(exception),
            error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
            context=context,
            cause=exception
        )

    if isinstance(exception, FileNotFoundError):
        return ConfigurationError(
            message=str(exception),
            error_code=ErrorCode.CONFIG_FILE_NOT_FOUND,
            context=context,
            cause=exception
        )

    return DeskAuthError(
        message=str(exception),
        error_code=default_error_code,
        context=context,
        cause=exception
    )
