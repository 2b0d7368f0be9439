from __future__ import annotations


class SessionError(Exception):
    """Base class for failures surfaced by session operations."""


class AuthRequiredError(SessionError):
    pass


class RoomNotFoundError(SessionError):
    pass


class RoomFullError(SessionError):
    pass


class NotHostError(SessionError):
    pass


class NotAParticipantError(SessionError):
    pass


class InvalidRoomStateError(SessionError):
    pass


class PartyNotReadyError(SessionError):
    pass


class NotRollTargetError(SessionError):
    pass


class OrchestrationError(SessionError):
    """Recoverable failure of a single orchestration turn."""


class OrchestrationNetworkError(OrchestrationError):
    pass


class ResponseParseError(OrchestrationError):
    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


class StaleClaimError(Exception):
    pass
