from .errors import (
    AuthRequiredError,
    InvalidRoomStateError,
    NotAParticipantError,
    NotHostError,
    NotRollTargetError,
    OrchestrationError,
    OrchestrationNetworkError,
    PartyNotReadyError,
    ResponseParseError,
    RoomFullError,
    RoomNotFoundError,
    SessionError,
    StaleClaimError,
)
from .orchestrator import GMOrchestrator
from .ports import NarrationPort, RealtimeStorePort
from .session import SessionStore
from .trigger import TurnTriggerGuard, should_trigger
from .types import (
    ChatMessage,
    DiceResult,
    GMResponse,
    GMRollRequest,
    NarrationRequest,
    Participant,
    RollRequest,
    Room,
    SessionSnapshot,
    TurnResult,
    WriteBatch,
)

__all__ = [
    "GMOrchestrator",
    "SessionStore",
    "TurnTriggerGuard",
    "should_trigger",
    "NarrationPort",
    "RealtimeStorePort",
    "ChatMessage",
    "DiceResult",
    "GMResponse",
    "GMRollRequest",
    "NarrationRequest",
    "Participant",
    "RollRequest",
    "Room",
    "SessionSnapshot",
    "TurnResult",
    "WriteBatch",
    "SessionError",
    "AuthRequiredError",
    "RoomNotFoundError",
    "RoomFullError",
    "NotHostError",
    "NotAParticipantError",
    "InvalidRoomStateError",
    "PartyNotReadyError",
    "NotRollTargetError",
    "OrchestrationError",
    "OrchestrationNetworkError",
    "ResponseParseError",
    "StaleClaimError",
]
