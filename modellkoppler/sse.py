"""Server-Sent-Events framing shared by the relay, the upstream parser and the client.

Frames are `data: <json>\n\n`; a stream ends with the literal `data: [DONE]\n\n`.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncGenerator, AsyncIterable

DONE_SENTINEL = "[DONE]"
SSE_DONE = b"data: [DONE]\n\n"


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


class SseDecoder:
    """Incremental decoder that turns arbitrary byte/text chunks into event data strings.

    Only `data:` fields are collected; comments and other fields are ignored. Multiple
    `data:` lines in one event are joined with a newline, as the SSE format requires.
    """

    def __init__(self) -> None:
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add one chunk and return the data of every event completed by it."""
        text = self._text_decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")
        events: list[str] = []
        while "\n\n" in self._buffer:
            raw_event, self._buffer = self._buffer.split("\n\n", 1)
            data = self._event_data(raw_event)
            if data is not None:
                events.append(data)
        return events

    def flush(self) -> list[str]:
        """Return the data of a trailing event that was not blank-line terminated."""
        self._buffer += self._text_decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        data = self._event_data(remainder)
        return [data] if data is not None else []

    @staticmethod
    def _event_data(raw_event: str) -> str | None:
        lines: list[str] = []
        for line in raw_event.split("\n"):
            if not line.startswith("data:"):
                continue
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            lines.append(value)
        if not lines:
            return None
        return "\n".join(lines)


async def iter_sse_data(chunks: AsyncIterable[bytes | str]) -> AsyncGenerator[str, None]:
    """Yield the data string of each SSE event in a byte/text stream, `[DONE]` included."""
    decoder = SseDecoder()
    async for chunk in chunks:
        for data in decoder.feed(chunk):
            yield data
    for data in decoder.flush():
        yield data


def parse_sse_json(data: str) -> dict[str, Any] | None:
    """Decode one event's data as a JSON object; None for the sentinel or non-objects."""
    if data.strip() == DONE_SENTINEL:
        return None
    parsed = json.loads(data)
    return parsed if isinstance(parsed, dict) else None
