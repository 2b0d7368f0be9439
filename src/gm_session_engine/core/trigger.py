from __future__ import annotations

from typing import Optional, Sequence

from .types import ROLE_USER, ChatMessage, Room


def should_trigger(
    messages: Sequence[ChatMessage],
    room: Room | None,
    participant_id: str | None,
    *,
    in_flight: bool,
    last_handled_id: str | None,
) -> bool:
    if not messages or room is None or participant_id is None:
        return False
    last = messages[-1]
    if last.role != ROLE_USER or not last.is_action:
        return False
    if room.active_roll is not None:
        return False
    if room.host_id != participant_id:
        return False
    if in_flight:
        return False
    return last.id != last_handled_id


class TurnTriggerGuard:
    """Process-local gate in front of orchestration turns.

    ``claim`` evaluates the latest snapshots and, when a turn should start,
    marks it in flight and remembers the message id in one step. The flag is
    advisory; cross-process exclusion is the store lease's job.
    """

    def __init__(self) -> None:
        self.in_flight = False
        self.last_handled_id: Optional[str] = None

    def claim(
        self,
        messages: Sequence[ChatMessage],
        room: Room | None,
        participant_id: str | None,
    ) -> ChatMessage | None:
        if not should_trigger(
            messages,
            room,
            participant_id,
            in_flight=self.in_flight,
            last_handled_id=self.last_handled_id,
        ):
            return None
        message = messages[-1]
        self.in_flight = True
        self.last_handled_id = message.id
        return message

    def claim_opening(self) -> bool:
        if self.in_flight:
            return False
        self.in_flight = True
        return True

    def release(self) -> None:
        self.in_flight = False
