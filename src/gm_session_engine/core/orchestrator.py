from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Sequence

from ..config import SessionConfig
from .errors import (
    OrchestrationError,
    OrchestrationNetworkError,
    ResponseParseError,
    StaleClaimError,
)
from .normalize import repair_response
from .ports import NarrationPort, RealtimeStorePort
from .prompts import build_messages
from .reconciler import plan_reconciliation
from .types import ROLE_SYSTEM, ChatMessage, NarrationRequest, Participant, TurnResult

NETWORK_ERROR_NOTICE = "(GM Error: The narrator could not be reached. Please try acting again.)"
PARSE_ERROR_NOTICE = "(GM Error: The spirits are confused. Please try acting again.)"
UNEXPECTED_ERROR_NOTICE = "(GM Error: Something went wrong while narrating. Please try acting again.)"


class GMOrchestrator:
    """Runs one orchestration turn for a room.

    The turn claims the room lease for its trigger key, calls the narration
    service, repairs the output and commits the reconciled batch while the
    claim is still valid. Failures are reported into the chat log and never
    raised to the caller.
    """

    def __init__(
        self,
        store: RealtimeStorePort,
        narrator: NarrationPort,
        config: SessionConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._narrator = narrator
        self._config = config or SessionConfig()
        self._clock = clock or datetime.utcnow
        self._logger = logging.getLogger(__name__)

    def build_request(self, history: Sequence[ChatMessage], participants: Sequence[Participant]) -> NarrationRequest:
        return NarrationRequest(model=self._config.model, messages=build_messages(history, participants))

    async def run_turn(
        self,
        room_id: str,
        trigger_key: str,
        holder_id: str,
        history: Sequence[ChatMessage],
        participants: Sequence[Participant],
    ) -> TurnResult:
        claim_token = uuid.uuid4().hex
        now = self._clock()
        expires_at = now + timedelta(seconds=self._config.lease_ttl_seconds)
        if not self._store.acquire_turn_lease(room_id, trigger_key, holder_id, claim_token, now, expires_at):
            self._logger.info("Turn %s for room %s already claimed or room busy", trigger_key, room_id)
            return TurnResult(status="busy", error="turn_inflight")

        try:
            request = self.build_request(history, participants)
            raw = await self._call_narrator(request)

            # Reconcile against the freshest state, not the snapshot the turn started from.
            room = self._store.get_room(room_id)
            if room is None:
                return TurnResult(status="error", error="room_not_found")
            current_participants = self._store.list_participants(room_id)

            response = repair_response(raw, current_participants)
            batch = plan_reconciliation(response, room, current_participants)
            self._store.commit_batch(room_id, batch, claim_token=claim_token)
            self._logger.info("Turn %s committed for room %s (%d writes)", trigger_key, room_id, len(batch))
            return TurnResult(status="ok", narrative=response.narrative)
        except StaleClaimError:
            self._logger.warning("Claim for turn %s in room %s went stale; nothing written", trigger_key, room_id)
            return TurnResult(status="conflict", error="stale_claim")
        except OrchestrationError as exc:
            self._logger.warning("Turn %s in room %s failed: %s", trigger_key, room_id, exc)
            notice = NETWORK_ERROR_NOTICE if isinstance(exc, OrchestrationNetworkError) else PARSE_ERROR_NOTICE
            self._report(room_id, notice)
            return TurnResult(status="error", error=str(exc))
        except Exception as exc:
            self._logger.exception("Unexpected failure in turn %s for room %s", trigger_key, room_id)
            self._report(room_id, UNEXPECTED_ERROR_NOTICE)
            return TurnResult(status="error", error=str(exc))
        finally:
            self._release_claim_best_effort(room_id, claim_token)

    async def _call_narrator(self, request: NarrationRequest) -> str:
        timeout = self._config.narration_timeout_seconds
        try:
            raw = await asyncio.wait_for(self._narrator.complete(request), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OrchestrationNetworkError(f"narration service timed out after {timeout}s") from exc
        except OSError as exc:
            raise OrchestrationNetworkError(f"narration service unreachable: {exc}") from exc
        if not isinstance(raw, str):
            raise ResponseParseError("narration service returned no text", raw=None)
        return raw

    def _report(self, room_id: str, notice: str) -> None:
        try:
            self._store.append_message(room_id, ROLE_SYSTEM, notice)
        except Exception:
            self._logger.exception("Could not report turn failure to room %s", room_id)

    def _release_claim_best_effort(self, room_id: str, claim_token: str) -> None:
        try:
            self._store.release_turn_lease(room_id, claim_token)
        except Exception:
            self._logger.debug("Lease release failed for room %s", room_id, exc_info=True)
