from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Optional

from ..core.errors import (
    InvalidRoomStateError,
    NotAParticipantError,
    RoomFullError,
    StaleClaimError,
)
from ..core.normalize import dump_json, parse_json_dict, parse_json_list
from ..core.types import (
    ROOM_STATUS_LOBBY,
    ROOM_STATUS_PLAYING,
    ChatMessage,
    MessageAppend,
    Participant,
    ParticipantUpdate,
    Room,
    RoomFieldDelete,
    RoomUpdate,
    RollRequest,
    WriteBatch,
)
from .interfaces import UnitOfWork
from .sqlalchemy import models

STREAM_ROOM = "room"
STREAM_PARTICIPANTS = "participants"
STREAM_CHAT = "chat"

_ROOM_FIELDS = {"status", "current_scene", "active_roll"}
_DELETABLE_ROOM_FIELDS = {"current_scene", "active_roll"}
_PARTICIPANT_FIELDS = {"name", "avatar", "character_class", "stats", "ready", "choices"}


def room_from_row(row: models.Room) -> Room:
    roll_data = parse_json_dict(row.active_roll_json)
    active_roll = None
    if roll_data.get("participant_id"):
        active_roll = RollRequest(
            participant_id=str(roll_data["participant_id"]),
            participant_name=str(roll_data.get("participant_name") or ""),
            dice_type=str(roll_data.get("dice_type") or "d20"),
            reason=str(roll_data.get("reason") or "Check"),
        )
    return Room(
        id=row.id,
        host_id=row.host_id,
        status=row.status,
        active_roll=active_roll,
        current_scene=row.current_scene,
    )


def participant_from_row(row: models.Participant) -> Participant:
    stats = {k: int(v) for k, v in parse_json_dict(row.stats_json).items() if isinstance(v, (int, float))}
    choices = parse_json_list(row.choices_json)
    return Participant(
        id=row.participant_id,
        name=row.name,
        avatar=row.avatar,
        character_class=row.character_class,
        stats=stats,
        ready=bool(row.ready),
        choices=[str(c) for c in choices] if choices is not None else None,
    )


def message_from_row(row: models.ChatMessage) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        role=row.role,
        content=row.content,
        timestamp=row.created_at,
        sender_name=row.sender_name,
        is_action=bool(row.is_action),
        seq=row.seq,
    )


def _encode_room_values(values: dict[str, Any]) -> dict[str, object]:
    unknown = set(values) - _ROOM_FIELDS
    if unknown:
        raise ValueError(f"unknown room fields: {sorted(unknown)}")
    out: dict[str, object] = {}
    for key, value in values.items():
        if key == "active_roll":
            if isinstance(value, RollRequest):
                value = asdict(value)
            out["active_roll_json"] = dump_json(value) if value is not None else None
        else:
            out[key] = value
    return out


def _check_status_transition(current: str, values: dict[str, object]) -> None:
    status = values.get("status")
    if status is None:
        return
    if status not in (ROOM_STATUS_LOBBY, ROOM_STATUS_PLAYING):
        raise ValueError(f"unknown room status: {status}")
    if current == ROOM_STATUS_PLAYING and status == ROOM_STATUS_LOBBY:
        raise InvalidRoomStateError("room status cannot move back to lobby")


def _encode_participant_values(values: dict[str, Any]) -> dict[str, object]:
    unknown = set(values) - _PARTICIPANT_FIELDS
    if unknown:
        raise ValueError(f"unknown participant fields: {sorted(unknown)}")
    out: dict[str, object] = {}
    for key, value in values.items():
        if key == "choices":
            out["choices_json"] = dump_json(list(value)) if value is not None else None
        elif key == "stats":
            out["stats_json"] = dump_json(dict(value or {}))
        elif key == "ready":
            out["ready"] = bool(value)
        else:
            out[key] = value
    return out


class SQLAlchemyRealtimeStore:
    """Push/storage backend over a unit of work with in-process fan-out.

    Every committed write republishes the affected streams as whole
    snapshots. Chat snapshots are ordered by store sequence; room and
    participant snapshots carry no ordering relative to each other.
    Notifications raised while a dispatch is running are queued, so a
    subscriber that writes from its callback is never re-entered.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        clock: Callable[[], datetime] | None = None,
    ):
        self._uow_factory = uow_factory
        self._clock = clock or datetime.utcnow
        self._logger = logging.getLogger(__name__)
        self._subscribers: dict[tuple[str, str], dict[int, Callable[[Any], None]]] = {}
        self._next_token = 0
        self._queue: deque[tuple[str, str, Optional[int]]] = deque()
        self._dispatching = False
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_room(self, room_id: str) -> Room | None:
        with self._uow_factory() as uow:
            row = uow.rooms.get(room_id)
            return room_from_row(row) if row is not None else None

    def list_participants(self, room_id: str) -> list[Participant]:
        with self._uow_factory() as uow:
            return [participant_from_row(r) for r in uow.participants.list_by_room(room_id)]

    def list_messages(self, room_id: str) -> list[ChatMessage]:
        with self._uow_factory() as uow:
            return [message_from_row(r) for r in uow.messages.list_by_room(room_id)]

    # ------------------------------------------------------------------
    # Point writes
    # ------------------------------------------------------------------

    def create_room(self, host_id: str, current_scene: Optional[str] = None) -> Room:
        with self._uow_factory() as uow:
            row = uow.rooms.create(host_id=host_id, current_scene=current_scene)
            uow.touch(STREAM_ROOM)
            uow.commit()
            room = room_from_row(row)
        self._publish(room.id, *uow.changed_streams)
        return room

    def delete_room(self, room_id: str) -> bool:
        with self._uow_factory() as uow:
            deleted = uow.rooms.delete(room_id)
            if deleted:
                uow.touch(STREAM_ROOM, STREAM_PARTICIPANTS, STREAM_CHAT)
            uow.commit()
        self._publish(room_id, *uow.changed_streams)
        return deleted

    def update_room(self, room_id: str, **values: Any) -> None:
        encoded = _encode_room_values(values)
        with self._uow_factory() as uow:
            row = uow.require_room(room_id)
            _check_status_transition(row.status, encoded)
            uow.rooms.apply_update(room_id, encoded)
            uow.touch(STREAM_ROOM)
            uow.commit()
        self._publish(room_id, *uow.changed_streams)

    def delete_room_field(self, room_id: str, field_name: str) -> None:
        if field_name not in _DELETABLE_ROOM_FIELDS:
            raise ValueError(f"room field cannot be deleted: {field_name}")
        self.update_room(room_id, **{field_name: None})

    def add_participant(self, room_id: str, participant: Participant, max_participants: int) -> bool:
        """Create or overwrite a participant; ``True`` when newly added.

        Capacity is checked inside the transaction, so two racing joins
        cannot both take the last seat.
        """
        values = _encode_participant_values(
            {
                "name": participant.name,
                "avatar": participant.avatar,
                "character_class": participant.character_class,
                "stats": participant.stats,
                "ready": participant.ready,
                "choices": participant.choices,
            }
        )
        with self._uow_factory() as uow:
            uow.require_room(room_id)
            existing = uow.participants.get(room_id, participant.id)
            if existing is None and uow.participants.count(room_id) >= max_participants:
                raise RoomFullError(f"room {room_id} already has {max_participants} participants")
            uow.participants.upsert(room_id, participant.id, values)
            uow.touch(STREAM_PARTICIPANTS)
            uow.commit()
        self._publish(room_id, *uow.changed_streams)
        return existing is None

    def update_participant(self, room_id: str, participant_id: str, **values: Any) -> None:
        encoded = _encode_participant_values(values)
        with self._uow_factory() as uow:
            if not uow.participants.apply_update(room_id, participant_id, encoded):
                raise NotAParticipantError(f"{participant_id} is not in room {room_id}")
            uow.touch(STREAM_PARTICIPANTS)
            uow.commit()
        self._publish(room_id, *uow.changed_streams)

    def append_message(
        self,
        room_id: str,
        role: str,
        content: str,
        sender_name: Optional[str] = None,
        is_action: bool = False,
    ) -> ChatMessage:
        with self._uow_factory() as uow:
            uow.require_room(room_id)
            row = uow.messages.append(
                room_id=room_id,
                role=role,
                content=content,
                sender_name=sender_name,
                is_action=is_action,
                created_at=self._clock(),
            )
            uow.touch(STREAM_CHAT)
            uow.commit()
            message = message_from_row(row)
        self._publish(room_id, *uow.changed_streams)
        return message

    # ------------------------------------------------------------------
    # Atomic batch
    # ------------------------------------------------------------------

    def commit_batch(self, room_id: str, batch: WriteBatch, claim_token: Optional[str] = None) -> None:
        if not batch.ops:
            return
        touched: set[str] = set()
        with self._uow_factory() as uow:
            if claim_token is not None and not uow.leases.validate_token(room_id, claim_token, self._clock()):
                raise StaleClaimError("claim_invalid")
            current_status = uow.require_room(room_id).status
            for op in batch.ops:
                if isinstance(op, RoomUpdate):
                    encoded = _encode_room_values(op.values)
                    _check_status_transition(current_status, encoded)
                    current_status = encoded.get("status", current_status)
                    uow.rooms.apply_update(room_id, encoded)
                    touched.add(STREAM_ROOM)
                elif isinstance(op, RoomFieldDelete):
                    if op.field_name not in _DELETABLE_ROOM_FIELDS:
                        raise ValueError(f"room field cannot be deleted: {op.field_name}")
                    uow.rooms.apply_update(room_id, _encode_room_values({op.field_name: None}))
                    touched.add(STREAM_ROOM)
                elif isinstance(op, ParticipantUpdate):
                    values = _encode_participant_values(op.values)
                    if not uow.participants.apply_update(room_id, op.participant_id, values):
                        raise NotAParticipantError(f"{op.participant_id} is not in room {room_id}")
                    touched.add(STREAM_PARTICIPANTS)
                elif isinstance(op, MessageAppend):
                    uow.messages.append(
                        room_id=room_id,
                        role=op.role,
                        content=op.content,
                        sender_name=op.sender_name,
                        is_action=op.is_action,
                        created_at=self._clock(),
                    )
                    touched.add(STREAM_CHAT)
                else:
                    raise TypeError(f"unsupported batch operation: {op!r}")
            uow.touch(*[s for s in (STREAM_ROOM, STREAM_PARTICIPANTS, STREAM_CHAT) if s in touched])
            uow.commit()
        self._publish(room_id, *uow.changed_streams)

    # ------------------------------------------------------------------
    # Turn lease
    # ------------------------------------------------------------------

    def acquire_turn_lease(
        self,
        room_id: str,
        trigger_key: str,
        holder_id: str,
        claim_token: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        with self._uow_factory() as uow:
            if not uow.markers.mark(room_id, trigger_key, holder_id):
                uow.rollback()
                return False
            acquired = uow.leases.acquire_or_steal(
                room_id=room_id,
                holder_id=holder_id,
                claim_token=claim_token,
                trigger_key=trigger_key,
                now=now,
                expires_at=expires_at,
            )
            if not acquired:
                uow.rollback()
                return False
            uow.commit()
            return True

    def release_turn_lease(self, room_id: str, claim_token: str) -> int:
        with self._uow_factory() as uow:
            released = uow.leases.release(room_id, claim_token)
            uow.commit()
            return released

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_room(self, room_id: str, callback: Callable[[Room | None], None]) -> Callable[[], None]:
        return self._subscribe(room_id, STREAM_ROOM, callback)

    def subscribe_participants(
        self,
        room_id: str,
        callback: Callable[[list[Participant]], None],
    ) -> Callable[[], None]:
        return self._subscribe(room_id, STREAM_PARTICIPANTS, callback)

    def subscribe_chat(self, room_id: str, callback: Callable[[list[ChatMessage]], None]) -> Callable[[], None]:
        return self._subscribe(room_id, STREAM_CHAT, callback)

    def _subscribe(self, room_id: str, stream: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers.setdefault((room_id, stream), {})[token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get((room_id, stream))
                if subs is not None:
                    subs.pop(token, None)
                    if not subs:
                        self._subscribers.pop((room_id, stream), None)

        # Initial snapshot goes to the new subscriber only.
        self._enqueue((room_id, stream, token))
        return _unsubscribe

    def _snapshot(self, room_id: str, stream: str) -> Any:
        if stream == STREAM_ROOM:
            return self.get_room(room_id)
        if stream == STREAM_PARTICIPANTS:
            return self.list_participants(room_id)
        return self.list_messages(room_id)

    def _publish(self, room_id: str, *streams: str) -> None:
        for stream in streams:
            self._enqueue((room_id, stream, None))

    def _enqueue(self, item: tuple[str, str, Optional[int]]) -> None:
        with self._lock:
            if item[2] is None and item in self._queue:
                return
            self._queue.append(item)
            if self._dispatching:
                return
            self._dispatching = True
        self._drain()

    def _drain(self) -> None:
        # The dispatching flag is cleared under the lock together with the
        # empty-queue check; items enqueued by other threads are never stranded.
        finished = False
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._dispatching = False
                        finished = True
                        return
                    room_id, stream, only_token = self._queue.popleft()
                    subs = dict(self._subscribers.get((room_id, stream), {}))
                if only_token is not None:
                    subs = {only_token: subs[only_token]} if only_token in subs else {}
                if not subs:
                    continue
                snapshot = self._snapshot(room_id, stream)
                for callback in subs.values():
                    try:
                        callback(snapshot)
                    except Exception:
                        self._logger.exception("Subscriber for %s/%s raised", room_id, stream)
        finally:
            if not finished:
                with self._lock:
                    self._queue.clear()
                    self._dispatching = False
