"""
Notification sinks for authentication events.

The lifecycle controller reports user-visible events (login started,
succeeded, timed out, failed, logout, refresh failure) to a single sink.
"""

import logging
from typing import Callable, List, Tuple

from deskauth_common.interfaces import INotificationSink
from deskauth_common.models import AuthEvent

logger = logging.getLogger(__name__)

NotificationCallback = Callable[[AuthEvent, str], None]

# Events that indicate something went wrong for the user
WARNING_EVENTS = {AuthEvent.LOGIN_TIMEOUT, AuthEvent.LOGIN_FAILED, AuthEvent.REFRESH_FAILED}


class LoggingNotificationSink(INotificationSink):
    """Writes notifications to a logger."""

    def __init__(self, logger_name: str = "deskauth.notifications"):
        self._logger = logging.getLogger(logger_name)

    def notify(self, event: AuthEvent, message: str) -> None:
        level = logging.WARNING if event in WARNING_EVENTS else logging.INFO
        self._logger.log(level, f"[{event.value}] {message}")


class CallbackNotificationSink(INotificationSink):
    """
    Fans notifications out to registered callbacks.

    A failing callback is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._callbacks: List[NotificationCallback] = []

    def add_callback(self, callback: NotificationCallback) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback: NotificationCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def notify(self, event: AuthEvent, message: str) -> None:
        for callback in self._callbacks:
            try:
                callback(event, message)
            except Exception as e:
                logger.error(f"Error in notification callback: {e}")


class RecordingNotificationSink(INotificationSink):
    """Keeps every notification in memory, in order of delivery."""

    def __init__(self):
        self.events: List[Tuple[AuthEvent, str]] = []

    def notify(self, event: AuthEvent, message: str) -> None:
        self.events.append((event, message))

    def of_type(self, event: AuthEvent) -> List[str]:
        return [message for kind, message in self.events if kind == event]
