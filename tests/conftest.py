from __future__ import annotations

import pytest

from gm_session_engine.core.types import NarrationRequest
from gm_session_engine.persistence.realtime import SQLAlchemyRealtimeStore
from gm_session_engine.persistence.sqlalchemy.db import build_engine, build_session_factory, create_schema
from gm_session_engine.persistence.sqlalchemy.uow import SQLAlchemyUnitOfWork


class StubNarrator:
    """Returns canned raw outputs in order and records every request."""

    def __init__(self, *outputs: str):
        self.outputs = list(outputs)
        self.requests: list[NarrationRequest] = []

    async def complete(self, request: NarrationRequest) -> str:
        self.requests.append(request)
        if not self.outputs:
            return '{"narrative": "The world holds its breath."}'
        if len(self.outputs) == 1:
            return self.outputs[0]
        return self.outputs.pop(0)


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    return build_session_factory(engine)


@pytest.fixture()
def uow_factory(session_factory):
    def _factory():
        return SQLAlchemyUnitOfWork(session_factory)

    return _factory


@pytest.fixture()
def store(uow_factory):
    return SQLAlchemyRealtimeStore(uow_factory)
