from __future__ import annotations

import asyncio
import json
import logging
import os

from gm_session_engine import (
    GMOrchestrator,
    OllamaNarrationClient,
    SessionConfig,
    SessionStore,
    SQLAlchemyRealtimeStore,
)
from gm_session_engine.persistence.sqlalchemy import (
    build_engine,
    build_session_factory,
    build_uow_factory,
    create_schema,
)


class DemoNarrator:
    """Scripted narrator so the demo runs without a model server."""

    def __init__(self):
        self.turn = 0

    async def complete(self, request):
        self.turn += 1
        if self.turn == 1:
            return json.dumps(
                {
                    "narrative": "Rain hammers the ruined chapel. Something scratches behind the altar. What do you do?",
                    "scene_image_prompt": "ruined chapel at night, rain, candlelight",
                    "choices": {"Fighter": ["Kick the altar aside", "Guard the door"], "Wizard": ["Cast light"]},
                }
            )
        if self.turn == 2:
            # Wrapped in prose on purpose; the repair step extracts the object.
            return (
                "Of course! "
                + json.dumps(
                    {
                        "narrative": "Faint runes glow on the altar stone. Can you read them?",
                        "roll_request": {"targetClassName": "wizard", "diceType": "d20", "reason": "Arcana"},
                    }
                )
            )
        return json.dumps(
            {
                "narrative": "The runes shift into a map of the catacombs below. Where to?",
                "choices": {"Fighter": ["Descend first"], "Wizard": ["Study the map", "Follow the map"]},
            }
        )


def make_store():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    create_schema(engine)
    return SQLAlchemyRealtimeStore(build_uow_factory(build_session_factory(engine)))


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = SessionConfig.from_env()
    store = make_store()
    narrator = OllamaNarrationClient.from_config(config) if os.getenv("GM_SESSION_USE_OLLAMA") else DemoNarrator()
    orchestrator = GMOrchestrator(store, narrator, config)

    host = SessionStore(store, orchestrator, participant_id="host-1", config=config)
    guest = SessionStore(store, orchestrator, participant_id="guest-1", config=config)

    room_id = await host.create_room()
    await host.join(room_id)
    await guest.join(room_id)
    await host.create_character("Aria", "Fighter")
    await guest.create_character("Bram", "Wizard")
    await host.set_ready(True)
    await guest.set_ready(True)

    await host.start()
    await host.wait_for_turns()
    print("scene:", guest.room.current_scene)
    print("Bram's choices:", guest.me.choices)

    await guest.send_action(guest.me.choices[0] if guest.me.choices else "Look around", is_action=True)
    await host.wait_for_turns()

    if guest.room.active_roll is not None:
        dice = await guest.resolve_roll()
        print("rolled:", dice.result, "on", dice.dice_type)
        await host.wait_for_turns()

    for message in guest.messages:
        print(f"[{message.role}] {message.sender_name or '-'}: {message.content}")


if __name__ == "__main__":
    asyncio.run(main())
