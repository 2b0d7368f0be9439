from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


ROOM_STATUS_LOBBY = "lobby"
ROOM_STATUS_PLAYING = "playing"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

ABILITY_NAMES = ("STR", "DEX", "CON", "INT", "WIS", "CHA")


@dataclass
class RollRequest:
    participant_id: str
    participant_name: str
    dice_type: str = "d20"
    reason: str = "Check"


@dataclass
class Room:
    id: str
    host_id: str
    status: str = ROOM_STATUS_LOBBY
    active_roll: Optional[RollRequest] = None
    current_scene: Optional[str] = None


@dataclass
class Participant:
    id: str
    name: str
    avatar: Optional[str] = None
    character_class: Optional[str] = None
    stats: dict[str, int] = field(default_factory=dict)
    ready: bool = False
    choices: Optional[list[str]] = None


@dataclass
class ChatMessage:
    id: str
    role: str
    content: str
    timestamp: datetime
    sender_name: Optional[str] = None
    is_action: bool = False
    seq: int = 0


@dataclass
class SessionSnapshot:
    room: Optional[Room] = None
    participants: list[Participant] = field(default_factory=list)
    messages: list[ChatMessage] = field(default_factory=list)


@dataclass
class GMRollRequest:
    target_class_name: str
    dice_type: str = "d20"
    reason: str = "Check"


@dataclass
class GMResponse:
    narrative: Optional[str] = None
    scene_image_prompt: Optional[str] = None
    roll_request: Optional[GMRollRequest] = None
    choices: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class NarrationRequest:
    model: str
    messages: list[dict[str, str]]
    format: str = "json"
    stream: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "format": self.format,
            "messages": [dict(m) for m in self.messages],
            "stream": self.stream,
        }


@dataclass
class RoomUpdate:
    values: dict[str, Any]


@dataclass
class RoomFieldDelete:
    field_name: str


@dataclass
class ParticipantUpdate:
    participant_id: str
    values: dict[str, Any]


@dataclass
class MessageAppend:
    role: str
    content: str
    sender_name: Optional[str] = None
    is_action: bool = False


@dataclass
class WriteBatch:
    """Ordered writes that the store commits in one transaction."""

    ops: list[Any] = field(default_factory=list)

    def update_room(self, **values: Any) -> "WriteBatch":
        self.ops.append(RoomUpdate(values=values))
        return self

    def delete_room_field(self, field_name: str) -> "WriteBatch":
        self.ops.append(RoomFieldDelete(field_name=field_name))
        return self

    def update_participant(self, participant_id: str, **values: Any) -> "WriteBatch":
        self.ops.append(ParticipantUpdate(participant_id=participant_id, values=values))
        return self

    def append_message(
        self,
        role: str,
        content: str,
        sender_name: Optional[str] = None,
        is_action: bool = False,
    ) -> "WriteBatch":
        self.ops.append(MessageAppend(role=role, content=content, sender_name=sender_name, is_action=is_action))
        return self

    def __len__(self) -> int:
        return len(self.ops)


@dataclass
class DiceResult:
    dice_type: str
    faces: int
    result: int
    message: Optional[ChatMessage] = None


@dataclass
class TurnResult:
    status: str
    narrative: Optional[str] = None
    error: Optional[str] = None
