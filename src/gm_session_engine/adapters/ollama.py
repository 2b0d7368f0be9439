from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Any, Callable
from urllib import error as urllib_error
from urllib import request as urllib_request

from ..config import SessionConfig
from ..core.errors import OrchestrationNetworkError, ResponseParseError
from ..core.types import NarrationRequest

logger = logging.getLogger(__name__)


class OllamaNarrationClient:
    """Narration port backed by an Ollama-style ``/api/chat`` endpoint.

    The request is sent non-streaming with ``format: "json"`` and the reply's
    ``message.content`` string is returned unparsed.
    """

    def __init__(
        self,
        url: str = "http://127.0.0.1:11434/api/chat",
        timeout: float = 60.0,
        opener: Callable[..., Any] | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self._open = opener or urllib_request.urlopen

    @classmethod
    def from_config(cls, config: SessionConfig) -> "OllamaNarrationClient":
        return cls(url=config.narration_url, timeout=config.narration_timeout_seconds)

    async def complete(self, request: NarrationRequest) -> str:
        return await asyncio.to_thread(self._post, request.to_payload())

    def _post(self, payload: dict[str, Any]) -> str:
        body = json.dumps(payload).encode("utf-8")
        http_request = urllib_request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with self._open(http_request, timeout=self.timeout) as response:  # noqa: S310
                status = getattr(response, "status", 200)
                raw = response.read().decode("utf-8", errors="replace")
        except urllib_error.HTTPError as exc:
            raise OrchestrationNetworkError(f"narration service returned HTTP {exc.code}") from exc
        except urllib_error.URLError as exc:
            raise OrchestrationNetworkError(f"narration service unreachable: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise OrchestrationNetworkError(f"narration service timed out after {self.timeout}s") from exc

        if status != 200:
            raise OrchestrationNetworkError(f"narration service returned HTTP {status}")
        return self._extract_content(raw)

    @staticmethod
    def _extract_content(raw: str) -> str:
        try:
            envelope = json.loads(raw)
        except ValueError as exc:
            raise ResponseParseError("narration envelope is not JSON", raw=raw) from exc
        message = envelope.get("message") if isinstance(envelope, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.warning("Narration envelope missing message.content")
            raise ResponseParseError("narration envelope has no message content", raw=raw)
        return content
