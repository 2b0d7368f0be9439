from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from ...core.errors import RoomNotFoundError
from .models import Room
from .repos import (
    ChatRepo,
    ParticipantRepo,
    RoomLeaseRepo,
    RoomRepo,
    TurnMarkerRepo,
)


class SQLAlchemyUnitOfWork:
    """One transaction over a room's tables.

    Writers ``touch`` the snapshot streams they change. Only a successful
    ``commit`` moves them to ``changed_streams``; a rollback forgets them,
    so nothing is published for writes that never landed.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self.session: Session | None = None
        self._touched: list[str] = []
        self.changed_streams: tuple[str, ...] = ()

    def __enter__(self) -> "SQLAlchemyUnitOfWork":
        self.session = self._session_factory()
        self.rooms = RoomRepo(self.session)
        self.participants = ParticipantRepo(self.session)
        self.messages = ChatRepo(self.session)
        self.leases = RoomLeaseRepo(self.session)
        self.markers = TurnMarkerRepo(self.session)
        self._touched = []
        self.changed_streams = ()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.session is None:
            return
        if exc_type is not None:
            self.rollback()
        self.session.close()
        self.session = None

    def require_room(self, room_id: str) -> Room:
        row = self.rooms.get(room_id)
        if row is None:
            raise RoomNotFoundError(room_id)
        return row

    def touch(self, *streams: str) -> None:
        for stream in streams:
            if stream not in self._touched:
                self._touched.append(stream)

    def commit(self) -> None:
        assert self.session is not None
        self.session.commit()
        self.changed_streams = tuple(self._touched)
        self._touched = []

    def rollback(self) -> None:
        assert self.session is not None
        self.session.rollback()
        self._touched = []
