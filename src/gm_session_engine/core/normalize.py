from __future__ import annotations

import json
import logging
from typing import Any, Iterable

from .errors import ResponseParseError
from .types import GMResponse, GMRollRequest, Participant

logger = logging.getLogger(__name__)

FALLBACK_CHOICES = ("Observe surroundings", "Ready weapon", "Discuss with party", "Search area")
LAST_RESORT_CHOICE = "Wait"
MIN_CHOICES = 2


def parse_json_dict(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def parse_json_list(text: str | None) -> list[Any] | None:
    if not text:
        return None
    try:
        data = json.loads(text)
    except Exception:
        return None
    return data if isinstance(data, list) else None


def dump_json(data: Any) -> str:
    return json.dumps(data, ensure_ascii=True, separators=(",", ":"))


def extract_balanced_json(text: str) -> str | None:
    """Return the first balanced ``{...}`` span of ``text``, or ``None``.

    Braces inside JSON string literals (including escaped quotes) do not
    count towards the balance. An unmatched ``{`` is skipped in favour of
    the next opening brace that does close. Single pass over ``text``.
    """
    if not text:
        return None
    open_stack: list[int] = []
    best: tuple[int, int] | None = None
    in_str = False
    esc = False
    for idx, ch in enumerate(text):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            open_stack.append(idx)
        elif ch == "}" and open_stack:
            start = open_stack.pop()
            if best is None or start < best[0]:
                best = (start, idx)
            if not open_stack:
                # Every earlier brace has closed, so nothing later can start sooner.
                break
    if best is None:
        return None
    return text[best[0] : best[1] + 1]


def parse_gm_payload(raw: str | None) -> dict[str, Any]:
    text = (raw or "").strip()
    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except (TypeError, ValueError, RecursionError):
        pass

    candidate = extract_balanced_json(text)
    if candidate is None:
        raise ResponseParseError("no JSON object found in narration output", raw=raw)
    logger.warning("Direct parse of narration output failed; retrying on extracted object")
    try:
        data = json.loads(candidate)
    except (ValueError, RecursionError) as exc:
        raise ResponseParseError(f"extracted object is not valid JSON: {exc}", raw=raw) from exc
    if not isinstance(data, dict):
        raise ResponseParseError("extracted value is not a JSON object", raw=raw)
    return data


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _clean_choice_list(values: Any) -> list[str]:
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, list):
        return []
    out: list[str] = []
    for entry in values:
        if isinstance(entry, (int, float)) and not isinstance(entry, bool):
            entry = str(entry)
        text = _clean_text(entry)
        if text and text not in out:
            out.append(text)
    return out


def _first_present(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def coerce_roll_request(raw: Any) -> GMRollRequest | None:
    if not isinstance(raw, dict):
        return None
    target = _clean_text(_first_present(raw, "targetClassName", "target_class_name", "targetClass"))
    if target is None:
        return None
    dice_type = _clean_text(_first_present(raw, "diceType", "dice_type")) or "d20"
    reason = _clean_text(raw.get("reason")) or "Check"
    return GMRollRequest(target_class_name=target, dice_type=dice_type, reason=reason)


def coerce_gm_response(data: dict[str, Any]) -> GMResponse:
    choices: dict[str, list[str]] = {}
    raw_choices = data.get("choices")
    if isinstance(raw_choices, dict):
        for key, values in raw_choices.items():
            label = _clean_text(key)
            if label is None:
                continue
            choices[label] = _clean_choice_list(values)
    return GMResponse(
        narrative=_clean_text(data.get("narrative")),
        scene_image_prompt=_clean_text(_first_present(data, "scene_image_prompt", "sceneImagePrompt")),
        roll_request=coerce_roll_request(_first_present(data, "roll_request", "rollRequest")),
        choices=choices,
    )


def find_class_key(choices: dict[str, list[str]], character_class: str) -> str | None:
    wanted = character_class.casefold()
    for key in choices:
        if key.casefold() == wanted:
            return key
    return None


def pad_choices(current: list[str], pool: Iterable[str] = FALLBACK_CHOICES) -> list[str]:
    padded = list(current)
    pool = list(pool)
    while len(padded) < MIN_CHOICES:
        nxt = next((entry for entry in pool if entry not in padded), None)
        if nxt is None:
            if LAST_RESORT_CHOICE in padded:
                break
            nxt = LAST_RESORT_CHOICE
        padded.append(nxt)
    return padded


def repair_choices(response: GMResponse, participants: Iterable[Participant]) -> GMResponse:
    if response.roll_request is not None:
        return response
    for participant in participants:
        character_class = (participant.character_class or "").strip()
        if not character_class:
            continue
        key = find_class_key(response.choices, character_class)
        if key is None:
            key = character_class
            response.choices[key] = []
        if len(response.choices[key]) < MIN_CHOICES:
            logger.warning("Padding choices for class %s (had %d)", key, len(response.choices[key]))
            response.choices[key] = pad_choices(response.choices[key])
    return response


def repair_response(raw: str | None, participants: Iterable[Participant]) -> GMResponse:
    """Parse narration output and guarantee playable choices when no roll is requested."""
    return repair_choices(coerce_gm_response(parse_gm_payload(raw)), list(participants))
