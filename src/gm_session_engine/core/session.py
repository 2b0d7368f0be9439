from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import random
from typing import Any, Optional, Sequence

from ..config import SessionConfig
from .dice import format_roll_message, roll_ability_scores, roll_die
from .errors import (
    AuthRequiredError,
    InvalidRoomStateError,
    NotAParticipantError,
    NotHostError,
    NotRollTargetError,
    PartyNotReadyError,
    RoomFullError,
    RoomNotFoundError,
)
from .orchestrator import GMOrchestrator
from .ports import RealtimeStorePort
from .trigger import TurnTriggerGuard
from .types import (
    ROLE_SYSTEM,
    ROLE_USER,
    ROOM_STATUS_LOBBY,
    ROOM_STATUS_PLAYING,
    ChatMessage,
    DiceResult,
    Participant,
    RollRequest,
    Room,
    SessionSnapshot,
    TurnResult,
)

OPENING_TRIGGER_KEY = "opening"
ROLL_SENDER_NAME = "System"
DEFAULT_SENDER_NAME = "Player"


def default_avatar(name: str) -> str:
    initial = name[:1].upper() or "?"
    return f"https://placehold.co/64x64/EEE/31343C?text={initial}"


class SessionStore:
    """One participant's connection to a room.

    Holds the latest room, participant and chat snapshots delivered by the
    store subscriptions and re-evaluates the turn trigger after every
    snapshot refresh. Operations check their preconditions locally
    and let store failures propagate to the caller.
    """

    def __init__(
        self,
        store: RealtimeStorePort,
        orchestrator: GMOrchestrator,
        participant_id: Optional[str] = None,
        config: SessionConfig | None = None,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._participant_id = participant_id
        self._config = config or SessionConfig()
        self._rng = rng or random.Random()
        self._logger = logging.getLogger(__name__)
        self._guard = TurnTriggerGuard()
        self._room_id: Optional[str] = None
        self._unsubscribers: list[Any] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()
        self._foreign_turns: set[concurrent.futures.Future] = set()

        self.room: Room | None = None
        self.participants: list[Participant] = []
        self.messages: list[ChatMessage] = []
        self.last_turn_result: TurnResult | None = None

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def participant_id(self) -> Optional[str]:
        return self._participant_id

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def me(self) -> Participant | None:
        return next((p for p in self.participants if p.id == self._participant_id), None)

    @property
    def is_host(self) -> bool:
        return self.room is not None and self._participant_id is not None and self.room.host_id == self._participant_id

    @property
    def is_turn_in_flight(self) -> bool:
        return self._guard.in_flight

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(room=self.room, participants=list(self.participants), messages=list(self.messages))

    def bind_identity(self, participant_id: Optional[str]) -> None:
        if participant_id != self._participant_id:
            self.leave()
        self._participant_id = participant_id

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_room(self) -> str:
        host_id = self._require_identity()
        room = self._store.create_room(host_id, current_scene=self._config.default_scene)
        self._logger.info("Room %s created by %s", room.id, host_id)
        return room.id

    async def join(self, room_id: str) -> SessionSnapshot:
        self._require_identity()
        self.leave()
        self._loop = asyncio.get_running_loop()

        room = self._store.get_room(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)

        self._room_id = room_id
        self.room = room
        self._unsubscribers = [
            self._store.subscribe_room(room_id, lambda snap: self._on_room(room_id, snap)),
            self._store.subscribe_participants(room_id, lambda snap: self._on_participants(room_id, snap)),
            self._store.subscribe_chat(room_id, lambda snap: self._on_chat(room_id, snap)),
        ]
        return self.snapshot

    async def create_character(
        self,
        name: str,
        character_class: str,
        avatar: Optional[str] = None,
    ) -> Participant:
        participant_id = self._require_identity()
        room = self._require_room()
        name = (name or "").strip()
        if not name:
            raise ValueError("character name is required")
        character_class = (character_class or "").strip() or None

        if self.me is None and len(self.participants) >= self._config.max_participants:
            raise RoomFullError(f"room {room.id} is full")

        participant = Participant(
            id=participant_id,
            name=name,
            avatar=avatar or default_avatar(name),
            character_class=character_class,
            stats=roll_ability_scores(self._rng),
            ready=False,
            choices=None,
        )
        created = self._store.add_participant(room.id, participant, self._config.max_participants)
        if created:
            label = f"{name} ({character_class})" if character_class else name
            self._store.append_message(room.id, ROLE_SYSTEM, f"{label} has joined.")
        return participant

    async def set_ready(self, ready: bool) -> None:
        participant_id = self._require_identity()
        room = self._require_room()
        if self.me is None:
            raise NotAParticipantError("create a character before readying up")
        self._store.update_participant(room.id, participant_id, ready=bool(ready))

    async def start(self) -> None:
        participant_id = self._require_identity()
        room = self._require_room()
        if room.host_id != participant_id:
            raise NotHostError("only the host can start the game")
        if room.status != ROOM_STATUS_LOBBY:
            raise InvalidRoomStateError(f"room {room.id} is already {room.status}")
        if self._config.require_all_ready and (
            not self.participants or not all(p.ready for p in self.participants)
        ):
            raise PartyNotReadyError("every participant must be ready")

        self._store.update_room(room.id, status=ROOM_STATUS_PLAYING)
        if self._guard.claim_opening():
            self._schedule_turn(room.id, OPENING_TRIGGER_KEY, history=[])
        else:
            self._logger.info("Opening turn for room %s skipped; a turn is already in flight", room.id)

    async def send_action(self, text: str, is_action: bool = False) -> ChatMessage:
        participant_id = self._require_identity()
        room = self._require_room()
        text = (text or "").strip()
        if not text:
            raise ValueError("message text is required")

        me = self.me
        message = self._store.append_message(
            room.id,
            ROLE_USER,
            text,
            sender_name=me.name if me is not None else DEFAULT_SENDER_NAME,
            is_action=is_action,
        )
        if is_action and me is not None:
            self._store.update_participant(room.id, participant_id, choices=None)
        return message

    async def resolve_roll(self, roll_request: RollRequest | None = None) -> DiceResult:
        participant_id = self._require_identity()
        room = self._require_room()
        roll = roll_request or room.active_roll
        if roll is None:
            raise InvalidRoomStateError("no roll is pending")
        if roll.participant_id != participant_id:
            raise NotRollTargetError(f"this roll belongs to {roll.participant_name}")

        result, faces = roll_die(roll.dice_type, self._rng)
        message = self._store.append_message(
            room.id,
            ROLE_USER,
            format_roll_message(roll.reason, result, roll.dice_type),
            sender_name=ROLL_SENDER_NAME,
            is_action=True,
        )
        self._store.delete_room_field(room.id, "active_roll")
        return DiceResult(dice_type=roll.dice_type, faces=faces, result=result, message=message)

    async def close_room(self) -> None:
        participant_id = self._require_identity()
        room = self._require_room()
        if room.host_id != participant_id:
            raise NotHostError("only the host can close the room")
        self._store.delete_room(room.id)

    def leave(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._room_id = None
        self.room = None
        self.participants = []
        self.messages = []

    async def wait_for_turns(self) -> None:
        """Wait until every scheduled orchestration turn has finished."""
        while True:
            pending: list[Any] = [t for t in self._tasks if not t.done()]
            pending.extend(asyncio.wrap_future(f) for f in self._foreign_turns if not f.done())
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _on_room(self, room_id: str, room: Room | None) -> None:
        if room_id != self._room_id:
            return
        if room is None:
            self._logger.info("Room %s was closed; leaving", room_id)
            self.leave()
            return
        self.room = room
        self._evaluate_trigger()

    def _on_participants(self, room_id: str, participants: Sequence[Participant]) -> None:
        if room_id != self._room_id:
            return
        self.participants = list(participants)
        self._evaluate_trigger()

    def _on_chat(self, room_id: str, messages: Sequence[ChatMessage]) -> None:
        if room_id != self._room_id:
            return
        self.messages = list(messages)
        self._evaluate_trigger()

    # ------------------------------------------------------------------
    # Turn scheduling
    # ------------------------------------------------------------------

    def _evaluate_trigger(self) -> None:
        if self._room_id is None:
            return
        message = self._guard.claim(self.messages, self.room, self._participant_id)
        if message is None:
            return
        self._logger.debug("Message %s triggers a turn in room %s", message.id, self._room_id)
        self._schedule_turn(self._room_id, message.id, history=list(self.messages))

    def _schedule_turn(self, room_id: str, trigger_key: str, history: list[ChatMessage]) -> None:
        coro = self._run_turn(room_id, trigger_key, history, list(self.participants))
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            task = running.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(coro, self._loop)
            self._foreign_turns.add(future)
            future.add_done_callback(self._foreign_turns.discard)
        else:
            coro.close()
            self._guard.release()
            self._logger.warning("No running event loop; turn %s for room %s dropped", trigger_key, room_id)

    async def _run_turn(
        self,
        room_id: str,
        trigger_key: str,
        history: list[ChatMessage],
        participants: list[Participant],
    ) -> TurnResult:
        holder_id = self._participant_id or ""
        try:
            result = await self._orchestrator.run_turn(room_id, trigger_key, holder_id, history, participants)
        except Exception as exc:
            self._logger.exception("Turn %s for room %s aborted", trigger_key, room_id)
            result = TurnResult(status="error", error=str(exc))
        finally:
            self._guard.release()
        self.last_turn_result = result
        if room_id == self._room_id:
            self._evaluate_trigger()
        return result

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _require_identity(self) -> str:
        if not self._participant_id:
            raise AuthRequiredError("sign in first")
        return self._participant_id

    def _require_room(self) -> Room:
        if self._room_id is None or self.room is None:
            raise RoomNotFoundError("not in a room")
        return self.room
