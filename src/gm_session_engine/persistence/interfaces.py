from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol


class RoomRepo(Protocol):
    def get(self, room_id: str): ...
    def create(self, host_id: str, current_scene: str | None = None): ...
    def apply_update(self, room_id: str, values: dict[str, object]) -> bool: ...
    def delete(self, room_id: str) -> bool: ...


class ParticipantRepo(Protocol):
    def get(self, room_id: str, participant_id: str): ...
    def count(self, room_id: str) -> int: ...
    def list_by_room(self, room_id: str): ...
    def upsert(self, room_id: str, participant_id: str, values: dict[str, Any]): ...
    def apply_update(self, room_id: str, participant_id: str, values: dict[str, object]) -> bool: ...


class ChatRepo(Protocol):
    def append(
        self,
        room_id: str,
        role: str,
        content: str,
        sender_name: str | None = None,
        is_action: bool = False,
        created_at: datetime | None = None,
    ): ...
    def list_by_room(self, room_id: str): ...


class RoomLeaseRepo(Protocol):
    def acquire_or_steal(
        self,
        room_id: str,
        holder_id: str,
        claim_token: str,
        trigger_key: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool: ...
    def validate_token(self, room_id: str, claim_token: str, now: datetime) -> bool: ...
    def release(self, room_id: str, claim_token: str) -> int: ...


class TurnMarkerRepo(Protocol):
    def mark(self, room_id: str, trigger_key: str, holder_id: str) -> bool: ...


class UnitOfWork(Protocol):
    rooms: RoomRepo
    participants: ParticipantRepo
    messages: ChatRepo
    leases: RoomLeaseRepo
    markers: TurnMarkerRepo
    changed_streams: tuple[str, ...]

    def require_room(self, room_id: str) -> Any: ...
    def touch(self, *streams: str) -> None: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
