from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from .types import ChatMessage, NarrationRequest, Participant, Room, WriteBatch


Unsubscribe = Callable[[], None]


class NarrationPort(Protocol):
    async def complete(self, request: NarrationRequest) -> str:
        ...


class RealtimeStorePort(Protocol):
    def create_room(self, host_id: str, current_scene: Optional[str] = None) -> Room: ...
    def get_room(self, room_id: str) -> Room | None: ...
    def delete_room(self, room_id: str) -> bool: ...
    def list_participants(self, room_id: str) -> list[Participant]: ...
    def list_messages(self, room_id: str) -> list[ChatMessage]: ...

    def update_room(self, room_id: str, **values: Any) -> None: ...
    def delete_room_field(self, room_id: str, field_name: str) -> None: ...
    def add_participant(self, room_id: str, participant: Participant, max_participants: int) -> bool: ...
    def update_participant(self, room_id: str, participant_id: str, **values: Any) -> None: ...
    def append_message(
        self,
        room_id: str,
        role: str,
        content: str,
        sender_name: Optional[str] = None,
        is_action: bool = False,
    ) -> ChatMessage: ...
    def commit_batch(self, room_id: str, batch: WriteBatch, claim_token: Optional[str] = None) -> None: ...

    def subscribe_room(self, room_id: str, callback: Callable[[Room | None], None]) -> Unsubscribe: ...
    def subscribe_participants(self, room_id: str, callback: Callable[[list[Participant]], None]) -> Unsubscribe: ...
    def subscribe_chat(self, room_id: str, callback: Callable[[list[ChatMessage]], None]) -> Unsubscribe: ...

    def acquire_turn_lease(
        self,
        room_id: str,
        trigger_key: str,
        holder_id: str,
        claim_token: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool: ...
    def release_turn_lease(self, room_id: str, claim_token: str) -> int: ...
