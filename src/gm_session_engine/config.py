from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping


DEFAULT_SCENE = "ancient mysterious map, parchment, table top view, dnd mood"


@dataclass(frozen=True)
class SessionConfig:
    max_participants: int = 4
    lease_ttl_seconds: int = 90
    narration_timeout_seconds: float = 60.0
    model: str = "llama3:8b"
    narration_url: str = "http://127.0.0.1:11434/api/chat"
    default_scene: str = DEFAULT_SCENE
    require_all_ready: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, prefix: str = "GM_SESSION_") -> "SessionConfig":
        """Build a config from ``GM_SESSION_*`` variables, e.g. ``GM_SESSION_MODEL``.

        Unset or blank variables keep the dataclass default.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for f in fields(cls):
            raw = env.get(prefix + f.name.upper())
            if raw is None or not raw.strip():
                continue
            raw = raw.strip()
            default = f.default
            if isinstance(default, bool):
                values[f.name] = raw.lower() in ("1", "true", "yes", "on")
            elif isinstance(default, int):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        return cls(**values)
