"""
Error taxonomy for the live voice session.

- DeviceError: no microphone/speaker access. Fatal for the session, never retried.
- AuthorizationError: credentials rejected by the live endpoint. Never retried.
- TransientConnectionError: network blips, remote closes, protocol hiccups. Retried.
- ToolExecutionError: failures inside a tool invocation. Never leaves the dispatcher.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all session manager errors."""


class DeviceError(SessionError):
    """An audio device could not be acquired.

    ``permanent`` is set when no device exists at all, as opposed to a device
    that exists but could not be opened.
    """

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class AuthorizationError(SessionError):
    """The live endpoint rejected our credentials or permissions."""


class TransientConnectionError(SessionError):
    """The connection failed in a way that a later attempt may not."""


class ToolExecutionError(SessionError):
    """A tool handler failed. Converted to a result string by the dispatcher."""


_AUTHORIZATION_MARKERS = (
    "does not have permission",
    "permission denied",
    "permission_denied",
    "api key not valid",
    "api_key",
    "api key",
    "authentication credential",
    "unauthenticated",
    "unauthorized",
)


def classify_failure(reason: str, status_code: Optional[int] = None) -> SessionError:
    """
    Turn a raw failure description into a typed session error.

    Args:
        reason: Close reason, exception text or handshake failure description
        status_code: HTTP status from a rejected handshake, if any

    Returns:
        AuthorizationError for credential/permission failures,
        TransientConnectionError for everything else
    """
    if status_code in (401, 403):
        return AuthorizationError(reason or f"Handshake rejected with HTTP {status_code}")
    lowered = (reason or "").lower()
    if any(marker in lowered for marker in _AUTHORIZATION_MARKERS):
        return AuthorizationError(reason)
    return TransientConnectionError(reason or "Connection closed unexpectedly.")


def describe_failure(reason: str) -> str:
    """Map a raw failure description to a short user-facing message."""
    if not reason:
        return "An unknown error occurred."
    lowered = reason.lower()
    if "service is currently unavailable" in lowered:
        return "The service is temporarily unavailable."
    if "does not have permission" in lowered or "permission denied" in lowered:
        return "Permission error. Make sure your API key has access to the Gemini API."
    if "api_key" in lowered or "api key" in lowered or "authentication credential" in lowered:
        return "Authentication error. Make sure your API key is configured correctly."
    if "network error" in lowered or "failed to fetch" in lowered:
        return "Network error. Check your internet connection."
    if "closed unexpectedly" in lowered:
        return "The connection was closed unexpectedly."
    if "resource_exhausted" in lowered or "429" in lowered:
        return "The server is overloaded."
    return f"An error occurred: {reason}."
