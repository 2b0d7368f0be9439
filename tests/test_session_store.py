from __future__ import annotations

import asyncio
import json
import random

import pytest
from conftest import StubNarrator

from gm_session_engine.config import DEFAULT_SCENE, SessionConfig
from gm_session_engine.core.errors import (
    AuthRequiredError,
    InvalidRoomStateError,
    NotAParticipantError,
    NotHostError,
    NotRollTargetError,
    PartyNotReadyError,
    RoomFullError,
    RoomNotFoundError,
)
from gm_session_engine.core.orchestrator import PARSE_ERROR_NOTICE, GMOrchestrator
from gm_session_engine.core.prompts import OPENING_USER_TURN, ROLL_RESOLUTION_INSTRUCTION
from gm_session_engine.core.session import SessionStore

OPENING = json.dumps(
    {
        "narrative": "Fog rolls over the crossroads. What do you do?",
        "scene_image_prompt": "foggy crossroads",
        "choices": {"Fighter": ["Draw sword", "Scout ahead"], "Wizard": ["Cast light", "Read the signpost"]},
    }
)
ROLL = json.dumps(
    {
        "narrative": "The signpost hums with old magic. Roll!",
        "roll_request": {"targetClassName": "wizard", "diceType": "d20", "reason": "Arcana"},
    }
)
RESOLUTION = json.dumps(
    {
        "narrative": "The runes reveal a hidden path.",
        "choices": {"Fighter": ["Follow the path", "Guard the rear"], "Wizard": ["Lead on", "Study more"]},
    }
)


def _sessions(store, narrator, config=None):
    orchestrator = GMOrchestrator(store, narrator, config)
    host = SessionStore(store, orchestrator, participant_id="host-1", config=config, rng=random.Random(7))
    guest = SessionStore(store, orchestrator, participant_id="guest-1", config=config, rng=random.Random(8))
    return host, guest


async def _lobby(host, guest):
    room_id = await host.create_room()
    await host.join(room_id)
    await guest.join(room_id)
    await host.create_character("Aria", "Fighter")
    await guest.create_character("Bram", "Wizard")
    return room_id


def test_full_session_flow(store):
    async def run_test():
        narrator = StubNarrator(OPENING, ROLL, RESOLUTION)
        host, guest = _sessions(store, narrator)
        room_id = await _lobby(host, guest)

        assert host.room.current_scene == DEFAULT_SCENE
        assert [m.content for m in guest.messages] == ["Aria (Fighter) has joined.", "Bram (Wizard) has joined."]
        assert sorted(p.name for p in host.participants) == ["Aria", "Bram"]
        assert all(3 <= v <= 18 for v in guest.me.stats.values())

        await host.set_ready(True)
        await guest.set_ready(True)
        await host.start()
        await host.wait_for_turns()

        assert guest.room.status == "playing"
        assert narrator.requests[0].messages[1] == {"role": "user", "content": OPENING_USER_TURN}
        assert guest.room.current_scene == "foggy crossroads"
        assert guest.me.choices == ["Cast light", "Read the signpost"]
        assert host.me.choices == ["Draw sword", "Scout ahead"]

        # Guest acts; only the host's session runs the turn.
        await guest.send_action("Read the signpost", is_action=True)
        assert guest.me.choices is None
        await host.wait_for_turns()
        await guest.wait_for_turns()

        assert len(narrator.requests) == 2
        roll = guest.room.active_roll
        assert roll is not None and roll.participant_id == "guest-1"
        assert host.me.choices is None and guest.me.choices is None

        with pytest.raises(NotRollTargetError):
            await host.resolve_roll()

        dice = await guest.resolve_roll()
        assert dice.faces == 20 and 1 <= dice.result <= 20
        assert dice.message.content == f"[Dice Roll] Arcana: Rolled a {dice.result} (d20)"
        assert dice.message.sender_name == "System" and dice.message.is_action
        await host.wait_for_turns()

        assert len(narrator.requests) == 3
        assert narrator.requests[2].messages[-1]["content"] == ROLL_RESOLUTION_INSTRUCTION
        assert guest.room.active_roll is None
        assert guest.messages[-1].content == "The runes reveal a hidden path."
        assert guest.me.choices == ["Lead on", "Study more"]
        assert host.last_turn_result.status == "ok"
        assert not host.is_turn_in_flight
        assert store.get_room(room_id).status == "playing"

    asyncio.run(run_test())


def test_plain_chat_does_not_trigger_a_turn(store):
    async def run_test():
        narrator = StubNarrator(OPENING)
        host, guest = _sessions(store, narrator)
        await _lobby(host, guest)

        message = await guest.send_action("  anyone hungry?  ")
        await host.wait_for_turns()

        assert message.content == "anyone hungry?"
        assert message.sender_name == "Bram"
        assert narrator.requests == []

    asyncio.run(run_test())


def test_each_message_triggers_at_most_once_across_host_sessions(store):
    async def run_test():
        narrator = StubNarrator('{"narrative": "Only once.", "choices": {}}')
        orchestrator = GMOrchestrator(store, narrator)
        tab_a = SessionStore(store, orchestrator, participant_id="host-1")
        tab_b = SessionStore(store, orchestrator, participant_id="host-1")

        room_id = await tab_a.create_room()
        await tab_a.join(room_id)
        await tab_b.join(room_id)
        await tab_a.create_character("Aria", "Fighter")
        await tab_a.send_action("I light the beacon", is_action=True)
        await tab_a.wait_for_turns()
        await tab_b.wait_for_turns()

        assert len(narrator.requests) == 1
        assert sorted([tab_a.last_turn_result.status, tab_b.last_turn_result.status]) == ["busy", "ok"]
        assert [m.content for m in store.list_messages(room_id)].count("Only once.") == 1

    asyncio.run(run_test())


def test_failed_turn_is_reported_and_next_action_retries(store):
    async def run_test():
        narrator = StubNarrator("not json at all", '{"narrative": "Better.", "choices": {}}')
        host, guest = _sessions(store, narrator)
        await _lobby(host, guest)

        await guest.send_action("I climb the wall", is_action=True)
        await host.wait_for_turns()
        assert host.messages[-1].content == PARSE_ERROR_NOTICE
        assert host.last_turn_result.status == "error"
        assert not host.is_turn_in_flight

        await guest.send_action("I try again", is_action=True)
        await host.wait_for_turns()
        assert host.messages[-1].content == "Better."
        assert len(narrator.requests) == 2

    asyncio.run(run_test())


class GatedNarrator:
    """Holds every narration call until ``gate`` is set."""

    def __init__(self, output: str):
        self.output = output
        self.gate = asyncio.Event()
        self.called = asyncio.Event()

    async def complete(self, request):
        self.called.set()
        await self.gate.wait()
        return self.output


def test_snapshots_keep_flowing_while_narration_is_pending(store):
    async def run_test():
        narrator = GatedNarrator(OPENING)
        host, guest = _sessions(store, narrator, SessionConfig(require_all_ready=False))
        room_id = await host.create_room()
        await host.join(room_id)
        await guest.join(room_id)
        await host.create_character("Aria", "Fighter")

        await host.start()
        await asyncio.wait_for(narrator.called.wait(), timeout=1)
        assert host.is_turn_in_flight

        await guest.create_character("Bram", "Wizard")
        await guest.send_action("Anyone else hear that?")
        assert host.is_turn_in_flight
        assert sorted(p.name for p in host.participants) == ["Aria", "Bram"]
        assert host.messages[-1].content == "Anyone else hear that?"

        narrator.gate.set()
        await host.wait_for_turns()
        assert not host.is_turn_in_flight
        assert host.messages[-1].content == "Fog rolls over the crossroads. What do you do?"
        assert guest.me.choices == ["Cast light", "Read the signpost"]

    asyncio.run(run_test())


def test_start_preconditions(store):
    async def run_test():
        host, guest = _sessions(store, StubNarrator(OPENING))
        await _lobby(host, guest)

        with pytest.raises(NotHostError):
            await guest.start()
        await host.set_ready(True)
        with pytest.raises(PartyNotReadyError):
            await host.start()

        await guest.set_ready(True)
        await host.start()
        await host.wait_for_turns()
        with pytest.raises(InvalidRoomStateError):
            await host.start()

    asyncio.run(run_test())


def test_start_without_ready_check(store):
    async def run_test():
        config = SessionConfig(require_all_ready=False)
        narrator = StubNarrator(OPENING)
        host, _guest = _sessions(store, narrator, config)
        room_id = await host.create_room()
        await host.join(room_id)
        await host.start()
        await host.wait_for_turns()
        assert host.room.status == "playing"
        assert len(narrator.requests) == 1

    asyncio.run(run_test())


def test_operation_preconditions(store):
    async def run_test():
        orchestrator = GMOrchestrator(store, StubNarrator())
        anonymous = SessionStore(store, orchestrator)
        with pytest.raises(AuthRequiredError):
            await anonymous.create_room()

        host = SessionStore(store, orchestrator, participant_id="host-1", config=SessionConfig(max_participants=1))
        guest = SessionStore(store, orchestrator, participant_id="guest-1", config=SessionConfig(max_participants=1))
        with pytest.raises(RoomNotFoundError):
            await host.send_action("hello")
        with pytest.raises(RoomNotFoundError):
            await host.join("no-such-room")

        room_id = await host.create_room()
        await host.join(room_id)
        await guest.join(room_id)
        with pytest.raises(NotAParticipantError):
            await host.set_ready(True)
        with pytest.raises(ValueError):
            await host.send_action("   ")
        with pytest.raises(InvalidRoomStateError):
            await host.resolve_roll()

        await host.create_character("Aria", "Fighter")
        with pytest.raises(RoomFullError):
            await guest.create_character("Bram", "Wizard")

        # Re-creating your own character is not blocked by capacity.
        await host.create_character("Aria", "Paladin")
        assert host.me.character_class == "Paladin"
        assert [m.content for m in host.messages] == ["Aria (Fighter) has joined."]

    asyncio.run(run_test())


def test_room_teardown_and_sign_out_leave_the_room(store):
    async def run_test():
        host, guest = _sessions(store, StubNarrator())
        await _lobby(host, guest)

        with pytest.raises(NotHostError):
            await guest.close_room()
        await host.close_room()

        assert guest.room is None and guest.room_id is None
        assert guest.participants == [] and guest.messages == []
        assert host.room is None

        room_id = await host.create_room()
        await host.join(room_id)
        host.bind_identity(None)
        assert host.room_id is None
        with pytest.raises(AuthRequiredError):
            await host.join(room_id)

    asyncio.run(run_test())
