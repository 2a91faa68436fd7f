"""Exception hierarchy shared across tunechat components."""

from __future__ import annotations


class TuneChatError(Exception):
    """Base class for tunechat errors."""


class ConfigurationError(TuneChatError):
    """A required configuration value (e.g. provider client credentials) is missing."""


class AuthorizationError(TuneChatError):
    """The caller may not perform the requested action."""


class ReauthenticationRequired(AuthorizationError):
    """The provider session is gone or its refresh token was rejected.

    The user has to sign in with the provider again; retrying will not help.
    """


class NotReadyError(TuneChatError):
    """A playback control was invoked before the player was ready."""


class MalformedPayloadError(TuneChatError):
    """An upstream response did not have the expected shape."""

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}
