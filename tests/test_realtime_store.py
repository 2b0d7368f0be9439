from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from gm_session_engine.config import DEFAULT_SCENE
from gm_session_engine.core.errors import (
    InvalidRoomStateError,
    NotAParticipantError,
    RoomFullError,
    RoomNotFoundError,
    StaleClaimError,
)
from gm_session_engine.core.types import Participant, RollRequest, WriteBatch
from gm_session_engine.persistence.sqlalchemy.models import ChatMessage, Participant as ParticipantRow, TurnMarker


def _participant(pid: str, name: str, character_class: str = "Fighter") -> Participant:
    return Participant(id=pid, name=name, character_class=character_class, stats={"STR": 12})


def test_created_room_starts_in_lobby_with_default_scene(store):
    room = store.create_room("host-1", current_scene=DEFAULT_SCENE)
    loaded = store.get_room(room.id)
    assert loaded.host_id == "host-1"
    assert loaded.status == "lobby"
    assert loaded.current_scene == DEFAULT_SCENE
    assert loaded.active_roll is None


def test_active_roll_round_trips_and_can_be_deleted(store):
    room = store.create_room("host-1")
    roll = RollRequest(participant_id="p2", participant_name="Bram", dice_type="d8", reason="Arcana")
    store.update_room(room.id, active_roll=roll)
    assert store.get_room(room.id).active_roll == roll

    store.delete_room_field(room.id, "active_roll")
    assert store.get_room(room.id).active_roll is None

    with pytest.raises(ValueError):
        store.delete_room_field(room.id, "host_id")
    with pytest.raises(RoomNotFoundError):
        store.update_room("missing", status="playing")


def test_subscription_delivers_current_snapshot_then_whole_updates(store):
    room = store.create_room("host-1")
    store.append_message(room.id, "system", "welcome")
    seen: list[list[str]] = []

    unsubscribe = store.subscribe_chat(room.id, lambda messages: seen.append([m.content for m in messages]))
    assert seen == [["welcome"]]

    store.append_message(room.id, "user", "I look around", sender_name="Aria", is_action=True)
    assert seen[-1] == ["welcome", "I look around"]

    unsubscribe()
    store.append_message(room.id, "user", "ignored")
    assert len(seen) == 2


def test_writes_from_a_callback_are_queued_not_reentered(store):
    room = store.create_room("host-1")
    lengths: list[int] = []
    state = {"active": False}

    def on_chat(messages):
        assert not state["active"]
        state["active"] = True
        try:
            lengths.append(len(messages))
            if len(messages) == 1:
                store.append_message(room.id, "assistant", "echo")
        finally:
            state["active"] = False

    store.subscribe_chat(room.id, on_chat)
    store.append_message(room.id, "user", "hello")
    assert lengths == [0, 1, 2]


def test_failing_subscriber_does_not_block_others(store):
    room = store.create_room("host-1")
    received = []

    def broken(_snapshot):
        raise RuntimeError("boom")

    store.subscribe_room(room.id, broken)
    store.subscribe_room(room.id, received.append)
    store.update_room(room.id, status="playing")
    assert received[-1].status == "playing"


def test_capacity_is_enforced_inside_the_store(store):
    room = store.create_room("host-1")
    for idx in range(4):
        assert store.add_participant(room.id, _participant(f"p{idx}", f"Hero {idx}"), max_participants=4)

    with pytest.raises(RoomFullError):
        store.add_participant(room.id, _participant("p9", "Latecomer"), max_participants=4)

    # Re-creating an existing character overwrites it and takes no extra seat.
    assert store.add_participant(room.id, _participant("p0", "Renamed", "Rogue"), max_participants=4) is False
    renamed = next(p for p in store.list_participants(room.id) if p.id == "p0")
    assert renamed.name == "Renamed"
    assert renamed.character_class == "Rogue"
    assert renamed.stats == {"STR": 12}


def test_update_participant_requires_membership(store):
    room = store.create_room("host-1")
    with pytest.raises(NotAParticipantError):
        store.update_participant(room.id, "ghost", ready=True)


def test_batch_is_all_or_nothing(store, session_factory):
    room = store.create_room("host-1", current_scene="before")
    store.add_participant(room.id, _participant("p1", "Aria"), max_participants=4)

    batch = (
        WriteBatch()
        .append_message("assistant", "This should never land.", sender_name="GM")
        .update_room(current_scene="after")
        .update_participant("p1", choices=["Charge", "Hold"])
        .update_participant("ghost", choices=["Boo", "Hide"])
    )
    with pytest.raises(NotAParticipantError):
        store.commit_batch(room.id, batch)

    assert store.get_room(room.id).current_scene == "before"
    assert store.list_participants(room.id)[0].choices is None
    with session_factory() as session:
        assert session.execute(select(ChatMessage)).scalars().all() == []


def test_batch_publishes_touched_streams_once(store):
    room = store.create_room("host-1")
    store.add_participant(room.id, _participant("p1", "Aria"), max_participants=4)
    room_events, participant_events, chat_events = [], [], []
    store.subscribe_room(room.id, room_events.append)
    store.subscribe_participants(room.id, participant_events.append)
    store.subscribe_chat(room.id, chat_events.append)

    batch = (
        WriteBatch()
        .append_message("assistant", "Onward.", sender_name="GM")
        .update_participant("p1", choices=["Charge", "Hold"])
    )
    store.commit_batch(room.id, batch)

    assert len(room_events) == 1
    assert len(participant_events) == 2
    assert participant_events[-1][0].choices == ["Charge", "Hold"]
    assert [m.content for m in chat_events[-1]] == ["Onward."]
    assert chat_events[-1][0].sender_name == "GM"


def test_batch_with_unknown_claim_is_stale(store):
    room = store.create_room("host-1")
    with pytest.raises(StaleClaimError):
        store.commit_batch(room.id, WriteBatch().append_message("assistant", "late"), claim_token="nope")
    assert store.list_messages(room.id) == []


def test_turn_lease_and_markers(store, session_factory):
    room = store.create_room("host-1")
    now = datetime(2024, 1, 1, 12, 0, 0)
    ttl = timedelta(seconds=90)

    assert store.acquire_turn_lease(room.id, "m1", "host-1", "tok-1", now, now + ttl)
    # Room is busy with m1; the rejected attempt must not burn the m2 marker.
    assert not store.acquire_turn_lease(room.id, "m2", "host-1", "tok-2", now, now + ttl)
    assert store.release_turn_lease(room.id, "tok-1") == 1

    # m1 was already handled, even though the lease is free again.
    assert not store.acquire_turn_lease(room.id, "m1", "host-1", "tok-3", now, now + ttl)
    assert store.acquire_turn_lease(room.id, "m2", "host-1", "tok-4", now, now + ttl)

    # An expired lease can be taken over by the next trigger.
    later = now + timedelta(minutes=5)
    assert store.acquire_turn_lease(room.id, "m3", "host-2", "tok-5", later, later + ttl)
    assert store.release_turn_lease(room.id, "tok-4") == 0

    with session_factory() as session:
        keys = sorted(row.trigger_key for row in session.execute(select(TurnMarker)).scalars().all())
    assert keys == ["m1", "m2", "m3"]


def test_room_teardown_notifies_and_cascades(store, session_factory):
    room = store.create_room("host-1")
    store.add_participant(room.id, _participant("p1", "Aria"), max_participants=4)
    store.append_message(room.id, "system", "Aria (Fighter) has joined.")
    room_events, participant_events = [], []
    store.subscribe_room(room.id, room_events.append)
    store.subscribe_participants(room.id, participant_events.append)

    assert store.delete_room(room.id)

    assert room_events[-1] is None
    assert participant_events[-1] == []
    with session_factory() as session:
        assert session.execute(select(ParticipantRow)).scalars().all() == []
        assert session.execute(select(ChatMessage)).scalars().all() == []


def test_status_only_moves_forward(store):
    room = store.create_room("host-1")
    store.update_room(room.id, status="playing")
    with pytest.raises(InvalidRoomStateError):
        store.update_room(room.id, status="lobby")
    with pytest.raises(InvalidRoomStateError):
        store.commit_batch(room.id, WriteBatch().update_room(status="lobby"))
    with pytest.raises(ValueError):
        store.update_room(room.id, status="paused")
    assert store.get_room(room.id).status == "playing"
