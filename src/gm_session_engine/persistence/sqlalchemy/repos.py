from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import ChatMessage, Participant, Room, RoomLease, TurnMarker


def _is_unique_violation(exc: IntegrityError, constraint: str, columns: str) -> bool:
    message = str(exc).lower()
    return constraint in message or columns in message


class RoomRepo:
    _WRITABLE = {"status", "current_scene", "active_roll_json"}

    def __init__(self, session: Session):
        self.session = session

    def get(self, room_id: str) -> Room | None:
        return self.session.get(Room, room_id)

    def create(self, host_id: str, current_scene: str | None = None) -> Room:
        row = Room(host_id=host_id, status="lobby", current_scene=current_scene)
        self.session.add(row)
        self.session.flush()
        return row

    def apply_update(self, room_id: str, values: dict[str, object]) -> bool:
        unknown = set(values) - self._WRITABLE
        if unknown:
            raise ValueError(f"unknown room fields: {sorted(unknown)}")
        update_values = dict(values)
        update_values["updated_at"] = datetime.utcnow()
        stmt = update(Room).where(Room.id == room_id).values(**update_values)
        return (self.session.execute(stmt).rowcount or 0) == 1

    def delete(self, room_id: str) -> bool:
        stmt = delete(Room).where(Room.id == room_id)
        return (self.session.execute(stmt).rowcount or 0) == 1


class ParticipantRepo:
    _WRITABLE = {"name", "avatar", "character_class", "stats_json", "ready", "choices_json"}

    def __init__(self, session: Session):
        self.session = session

    def get(self, room_id: str, participant_id: str) -> Participant | None:
        stmt = (
            select(Participant)
            .where(Participant.room_id == room_id)
            .where(Participant.participant_id == participant_id)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def count(self, room_id: str) -> int:
        stmt = select(func.count()).select_from(Participant).where(Participant.room_id == room_id)
        return int(self.session.execute(stmt).scalar_one())

    def list_by_room(self, room_id: str) -> list[Participant]:
        stmt = (
            select(Participant)
            .where(Participant.room_id == room_id)
            .order_by(Participant.created_at.asc(), Participant.id.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def upsert(self, room_id: str, participant_id: str, values: dict[str, Any]) -> Participant:
        row = self.get(room_id, participant_id)
        if row is None:
            row = Participant(room_id=room_id, participant_id=participant_id, **values)
            self.session.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = datetime.utcnow()
        self.session.flush()
        return row

    def apply_update(self, room_id: str, participant_id: str, values: dict[str, object]) -> bool:
        unknown = set(values) - self._WRITABLE
        if unknown:
            raise ValueError(f"unknown participant fields: {sorted(unknown)}")
        update_values = dict(values)
        update_values["updated_at"] = datetime.utcnow()
        stmt = (
            update(Participant)
            .where(Participant.room_id == room_id)
            .where(Participant.participant_id == participant_id)
            .values(**update_values)
        )
        return (self.session.execute(stmt).rowcount or 0) == 1


class ChatRepo:
    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        room_id: str,
        role: str,
        content: str,
        sender_name: str | None = None,
        is_action: bool = False,
        created_at: datetime | None = None,
    ) -> ChatMessage:
        row = ChatMessage(
            room_id=room_id,
            role=role,
            content=content,
            sender_name=sender_name,
            is_action=is_action,
            created_at=created_at or datetime.utcnow(),
        )
        self.session.add(row)
        self.session.flush()
        return row

    def list_by_room(self, room_id: str) -> list[ChatMessage]:
        stmt = select(ChatMessage).where(ChatMessage.room_id == room_id).order_by(ChatMessage.seq.asc())
        return list(self.session.execute(stmt).scalars().all())


class RoomLeaseRepo:
    def __init__(self, session: Session):
        self.session = session

    def acquire_or_steal(
        self,
        room_id: str,
        holder_id: str,
        claim_token: str,
        trigger_key: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        try:
            with self.session.begin_nested():
                row = RoomLease(
                    room_id=room_id,
                    holder_id=holder_id,
                    claim_token=claim_token,
                    trigger_key=trigger_key,
                    claimed_at=now,
                    expires_at=expires_at,
                )
                self.session.add(row)
                self.session.flush()
                return True
        except IntegrityError as exc:
            if not _is_unique_violation(exc, "uq_gms_room_lease_room", "gms_room_leases.room_id"):
                raise

        stmt = (
            update(RoomLease)
            .where(RoomLease.room_id == room_id)
            .where(RoomLease.expires_at < now)
            .values(
                holder_id=holder_id,
                claim_token=claim_token,
                trigger_key=trigger_key,
                claimed_at=now,
                expires_at=expires_at,
            )
        )
        return (self.session.execute(stmt).rowcount or 0) == 1

    def validate_token(self, room_id: str, claim_token: str, now: datetime) -> bool:
        stmt = (
            select(RoomLease)
            .where(RoomLease.room_id == room_id)
            .where(RoomLease.claim_token == claim_token)
            .limit(1)
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None:
            return False
        return row.expires_at >= now

    def release(self, room_id: str, claim_token: str) -> int:
        stmt = (
            delete(RoomLease)
            .where(RoomLease.room_id == room_id)
            .where(RoomLease.claim_token == claim_token)
        )
        return self.session.execute(stmt).rowcount or 0


class TurnMarkerRepo:
    def __init__(self, session: Session):
        self.session = session

    def mark(self, room_id: str, trigger_key: str, holder_id: str) -> bool:
        """Record ``trigger_key`` as handled; ``False`` when it already was."""
        try:
            with self.session.begin_nested():
                self.session.add(TurnMarker(room_id=room_id, trigger_key=trigger_key, holder_id=holder_id))
                self.session.flush()
                return True
        except IntegrityError as exc:
            if _is_unique_violation(
                exc,
                "uq_gms_turn_marker_room_trigger",
                "gms_turn_markers.room_id, gms_turn_markers.trigger_key",
            ):
                return False
            raise

