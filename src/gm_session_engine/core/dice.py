"""Dice helpers for roll requests and character creation.

Die descriptors follow the ``d<N>`` shape the narrator is asked to emit
("d20", "d6"). Anything that does not parse falls back to a d20.
"""

from __future__ import annotations

import random
import re

from .types import ABILITY_NAMES

DEFAULT_FACES = 20
DICE_ROLL_MARKER = "[Dice Roll]"

_DIE_PATTERN = re.compile(r"^\s*d\s*(\d+)\s*$", re.IGNORECASE)


def parse_faces(dice_type: str | None) -> int:
    """Return the face count for ``"d<N>"``, or 20 when it cannot be parsed.

    >>> parse_faces("d6")
    6
    >>> parse_faces("percentile")
    20
    """
    if not isinstance(dice_type, str):
        return DEFAULT_FACES
    match = _DIE_PATTERN.match(dice_type)
    if not match:
        return DEFAULT_FACES
    faces = int(match.group(1))
    return faces if faces >= 1 else DEFAULT_FACES


def roll_die(dice_type: str | None, rng: random.Random | None = None) -> tuple[int, int]:
    """Roll one die and return ``(result, faces)`` with result in [1, faces]."""
    faces = parse_faces(dice_type)
    rng = rng or random
    return rng.randint(1, faces), faces


def format_roll_message(reason: str, result: int, dice_type: str) -> str:
    return f"{DICE_ROLL_MARKER} {reason}: Rolled a {result} ({dice_type})"


def is_roll_message(content: str | None) -> bool:
    return isinstance(content, str) and content.lstrip().startswith(DICE_ROLL_MARKER)


def roll_ability_scores(rng: random.Random | None = None) -> dict[str, int]:
    # Each score is uniform in 3..18.
    rng = rng or random
    return {name: rng.randint(3, 18) for name in ABILITY_NAMES}
