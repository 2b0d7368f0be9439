from __future__ import annotations

from typing import Iterable, Sequence

from .dice import DICE_ROLL_MARKER, is_roll_message
from .types import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, ChatMessage, Participant

GM_SYSTEM_PROMPT = """[CRITICAL] YOU MUST RESPOND ONLY WITH VALID JSON.

You are a professional Dungeons & Dragons (5e) Game Master.
YOUR PLAYSTYLE: Aggressive, fast-paced, dice-heavy.
NEVER repeat the same description. ALWAYS drive the action forward.

JSON Format Structure:
{
  "narrative": "Vivid description...",
  "scene_image_prompt": "visual description...",
  "roll_request": { "targetClassName": "...", "diceType": "d20", "reason": "..." },
  "choices": { "Fighter": ["..."], "Wizard": ["..."] }
}

STRICT RULES:
1. "narrative" must end with a call to action.
2. You MUST provide EITHER "roll_request" OR "choices".
3. FIRST TURN: provide immediate "choices" for ALL players to start the adventure. Do not just describe the scene.
4. Use "roll_request" aggressively for uncertain actions.
5. If no roll is needed, provide AT LEAST 2 distinct "choices" for EVERY class.
"""

OPENING_USER_TURN = "Start the game with an engaging hook."

ROLL_RESOLUTION_INSTRUCTION = f"""[GM INSTRUCTION]
CRITICAL: The player has ROLLED DICE as requested.
READ the last '{DICE_ROLL_MARKER}' message carefully.
RESOLVE the outcome of this roll immediately based on D&D 5e rules (high is good, low is bad).
ADVANCE the story based on this result. DO NOT repeat the previous scene description."""

ADVANCE_INSTRUCTION_TEMPLATE = """[GM INSTRUCTION]
Current party: [{party}].
Based on the last action, what happens next?
REMINDER: Request 'd20' rolls for ANY uncertain outcome (searching, lockpicking, arcana checks, persuasion, etc.).
CRITICAL: You MUST now provide either a 'roll_request' (if uncertain) OR 'choices' for ALL players to advance the story."""


def party_classes(participants: Iterable[Participant]) -> list[str]:
    return [p.character_class for p in participants if p.character_class]


def build_transcript(history: Sequence[ChatMessage]) -> list[dict[str, str]]:
    transcript = [
        {"role": msg.role, "content": msg.content}
        for msg in history
        if msg.role in (ROLE_USER, ROLE_ASSISTANT)
    ]
    if not transcript:
        transcript.append({"role": ROLE_USER, "content": OPENING_USER_TURN})
    return transcript


def build_instruction(transcript: Sequence[dict[str, str]], participants: Iterable[Participant]) -> str:
    last_user = next((turn for turn in reversed(transcript) if turn["role"] == ROLE_USER), None)
    if last_user is not None and is_roll_message(last_user["content"]):
        return ROLL_RESOLUTION_INSTRUCTION
    return ADVANCE_INSTRUCTION_TEMPLATE.format(party=", ".join(party_classes(participants)))


def build_messages(history: Sequence[ChatMessage], participants: Sequence[Participant]) -> list[dict[str, str]]:
    """System persona, replayed user/assistant turns, then the trailing instruction."""
    transcript = build_transcript(history)
    messages = [{"role": ROLE_SYSTEM, "content": GM_SYSTEM_PROMPT}]
    messages.extend(transcript)
    messages.append({"role": ROLE_SYSTEM, "content": build_instruction(transcript, participants)})
    return messages
