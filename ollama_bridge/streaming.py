"""Incremental decoding of streamed chat completions.

The engine streams newline-delimited JSON objects; the gateway streams
server-sent events (``data: {...}`` lines ending with ``data: [DONE]``).
A line that cannot be decoded is logged and skipped, it never ends the
stream.
"""
from __future__ import annotations

import inspect
import json
import logging
from typing import Any, AsyncIterable, Awaitable, Callable, Mapping, Optional, Union

from .config import BackendMode
from .exceptions import StreamDecodeError

logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], Union[None, Awaitable[None]]]

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


class StreamDecoder:
    """Turn one response's lines into text deltas.

    Create a new decoder per request; the only state is whether the SSE
    terminator has been seen.
    """

    def __init__(self, mode: BackendMode) -> None:
        self.mode = mode
        self.finished = False

    def decode_line(self, line: str) -> Optional[str]:
        """Return the text delta carried by ``line``, if any.

        Raises :class:`StreamDecodeError` for malformed payloads.
        """

        line = line.strip()
        if not line or self.finished:
            return None
        if self.mode is BackendMode.DIRECT:
            return self._decode_ndjson(line)
        return self._decode_sse(line)

    def _load(self, line: str, raw: str) -> Mapping[str, Any]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StreamDecodeError(line, str(exc)) from exc
        if not isinstance(data, Mapping):
            raise StreamDecodeError(line, "payload is not a JSON object")
        return data

    def _decode_ndjson(self, line: str) -> Optional[str]:
        data = self._load(line, line)
        message = data.get("message")
        if isinstance(message, Mapping) and message.get("content"):
            return str(message["content"])
        if data.get("response"):
            return str(data["response"])
        return None

    def _decode_sse(self, line: str) -> Optional[str]:
        if not line.startswith(SSE_DATA_PREFIX):
            # event:, id:, retry: and ": comment" lines carry no text
            return None
        raw = line[len(SSE_DATA_PREFIX):].strip()
        if raw == SSE_DONE:
            self.finished = True
            return None
        data = self._load(line, raw)
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
            return None
        choice = choices[0]
        for key in ("delta", "message"):
            part = choice.get(key)
            if isinstance(part, Mapping) and part.get("content"):
                return str(part["content"])
        return None

    async def run(self, lines: AsyncIterable[str], on_delta: DeltaCallback) -> int:
        """Feed ``lines`` through the decoder and return the delta count."""

        emitted = 0
        async for line in lines:
            try:
                delta = self.decode_line(line)
            except StreamDecodeError as exc:
                logger.warning(
                    "Skipping undecodable stream line",
                    extra={"mode": self.mode.value, "reason": exc.reason},
                )
                continue
            if self.finished:
                break
            if not delta:
                continue
            result = on_delta(delta)
            if inspect.isawaitable(result):
                await result
            emitted += 1
        return emitted
