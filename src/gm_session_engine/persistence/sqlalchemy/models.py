from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


SeqIDType = BigInteger().with_variant(Integer, "sqlite")


class Room(TimestampMixin, Base):
    __tablename__ = "gms_rooms"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    host_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="lobby")
    active_roll_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    current_scene: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('lobby','playing')", name="room_status_valid"),
    )


class Participant(TimestampMixin, Base):
    __tablename__ = "gms_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    room_id: Mapped[str] = mapped_column(String(36), ForeignKey("gms_rooms.id", ondelete="CASCADE"), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(128), nullable=False)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    character_class: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stats_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    ready: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    choices_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("room_id", "participant_id", name="uq_gms_participant_room_participant"),
    )


class ChatMessage(Base):
    __tablename__ = "gms_chat_messages"

    seq: Mapped[int] = mapped_column(SeqIDType, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, default=lambda: str(uuid.uuid4()))
    room_id: Mapped[str] = mapped_column(String(36), ForeignKey("gms_rooms.id", ondelete="CASCADE"), nullable=False)

    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('user','assistant','system')", name="chat_message_role_valid"),
    )


Index("ix_gms_chat_room_seq", ChatMessage.room_id, ChatMessage.seq)


class RoomLease(Base):
    __tablename__ = "gms_room_leases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    room_id: Mapped[str] = mapped_column(String(36), ForeignKey("gms_rooms.id", ondelete="CASCADE"), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    claim_token: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_key: Mapped[str] = mapped_column(String(200), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("room_id", name="uq_gms_room_lease_room"),
    )


Index("ix_gms_room_lease_expiry", RoomLease.expires_at)


class TurnMarker(Base):
    __tablename__ = "gms_turn_markers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    room_id: Mapped[str] = mapped_column(String(36), ForeignKey("gms_rooms.id", ondelete="CASCADE"), nullable=False)
    trigger_key: Mapped[str] = mapped_column(String(200), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("room_id", "trigger_key", name="uq_gms_turn_marker_room_trigger"),
    )
