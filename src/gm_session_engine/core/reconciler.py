from __future__ import annotations

from typing import Sequence

from .normalize import find_class_key, pad_choices
from .types import ROLE_ASSISTANT, GMResponse, Participant, Room, RollRequest, WriteBatch

GM_SENDER_NAME = "GM"
DEFAULT_CHOICES = ("Look around", "Wait")


def find_roll_target(participants: Sequence[Participant], target_class_name: str) -> Participant | None:
    wanted = target_class_name.strip().casefold()
    for participant in participants:
        if participant.character_class and participant.character_class.strip().casefold() == wanted:
            return participant
    return None


def plan_reconciliation(
    response: GMResponse,
    room: Room,
    participants: Sequence[Participant],
) -> WriteBatch:
    """Translate one validated response into a single atomic write batch.

    A roll request that resolves to a participant wins over any choices in
    the same response: the roll is set and every menu is cleared. Otherwise a
    stale roll is removed and each classed participant gets a menu of at
    least two entries.
    """
    batch = WriteBatch()

    if response.narrative:
        batch.append_message(ROLE_ASSISTANT, response.narrative, sender_name=GM_SENDER_NAME)

    if response.scene_image_prompt:
        batch.update_room(current_scene=response.scene_image_prompt)

    target = None
    if response.roll_request is not None:
        target = find_roll_target(participants, response.roll_request.target_class_name)

    if target is not None:
        roll = response.roll_request
        batch.update_room(
            active_roll=RollRequest(
                participant_id=target.id,
                participant_name=target.name,
                dice_type=roll.dice_type or "d20",
                reason=roll.reason or "Check",
            )
        )
        for participant in participants:
            batch.update_participant(participant.id, choices=None)
        return batch

    if room.active_roll is not None:
        batch.delete_room_field("active_roll")
    for participant in participants:
        if not participant.character_class:
            continue
        key = find_class_key(response.choices, participant.character_class.strip())
        matched = response.choices.get(key) if key is not None else None
        choices = pad_choices(matched) if matched else list(DEFAULT_CHOICES)
        batch.update_participant(participant.id, choices=choices)
    return batch
