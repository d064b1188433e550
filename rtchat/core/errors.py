from __future__ import annotations


class ChatError(Exception):
    """Base class for failures raised by the messaging core.

    ``code`` is the value carried in the ``error`` frame sent back to a client.
    """

    code = "INTERNAL"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class AuthError(ChatError):
    """Handshake credential missing, malformed, expired or badly signed."""

    code = "AUTH_FAILED"


class ValidationError(ChatError):
    code = "VALIDATION"


class FrameError(ValidationError):
    """Inbound frame is not JSON or lacks the envelope fields."""

    code = "BAD_FRAME"


class StorageError(ChatError):
    code = "STORAGE"


class NotFoundError(ChatError):
    code = "NOT_FOUND"


class PermissionDeniedError(ChatError):
    code = "FORBIDDEN"


class StaleHandleError(ChatError):
    """A push target went away between lookup and delivery."""

    code = "STALE_HANDLE"


class RegistrationRaceError(ChatError):
    """Unregister for a handle that is no longer the one on record."""

    code = "REGISTRATION_RACE"


__all__ = [
    "ChatError",
    "AuthError",
    "ValidationError",
    "FrameError",
    "StorageError",
    "NotFoundError",
    "PermissionDeniedError",
    "StaleHandleError",
    "RegistrationRaceError",
]
