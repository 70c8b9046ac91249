"""Relay an upstream chunk stream as the client SSE protocol, and drain it back to text."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterable

from .errors import UpstreamError
from .sse import DONE_SENTINEL, SSE_DONE, iter_sse_data, parse_sse_json, sse_data

LOG = logging.getLogger(__name__)

UNKNOWN_STREAM_ERROR = "未知错误"


def pick_primary_delta(chunk: dict[str, Any]) -> dict[str, Any] | None:
    """Return `choices[0].delta` of an upstream chunk, if it has that shape."""
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    return delta if isinstance(delta, dict) else None


def content_text(content_value: Any) -> str | None:
    """Extract delta text from a string or a list of text blocks."""
    if isinstance(content_value, str):
        return content_value or None
    if isinstance(content_value, list):
        parts: list[str] = []
        for item in content_value:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str) and text:
                    parts.append(text)
        if parts:
            return "".join(parts)
    return None


def frame_for_chunk(chunk: Any, reasoning_parts: list[str]) -> dict[str, Any] | None:
    """Map one upstream chunk to a client frame, or None when it carries nothing to relay.

    Reasoning deltas are appended to `reasoning_parts`.
    """
    if not isinstance(chunk, dict):
        return None
    delta = pick_primary_delta(chunk)
    if delta is not None:
        reasoning = delta.get("reasoning_content")
        if reasoning:
            reasoning_parts.append(str(reasoning))
            return {"reasoning_content": reasoning, "reasoning_expandable": True}
        text = content_text(delta.get("content"))
        if text:
            return {"content": text, "has_reasoning": bool(reasoning_parts)}
    usage = chunk.get("usage")
    if usage:
        frame: dict[str, Any] = {"usage": usage}
        if reasoning_parts:
            frame["final_reasoning"] = "".join(reasoning_parts)
        return frame
    return None


async def _close_source(chunks: Any) -> None:
    closer = getattr(chunks, "aclose", None)
    if closer is None:
        return
    try:
        await closer()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        LOG.debug("closing upstream source failed: %s", exc)


async def relay_stream(
    chunks: AsyncIterable[dict[str, Any]],
    *,
    trace_id: str | None = None,
) -> AsyncGenerator[bytes, None]:
    """Re-emit upstream chunks as SSE frames, always ending with `[DONE]`.

    An exception while reading upstream becomes one `{"error": ...}` frame; it never
    propagates to the transport.
    """
    tag = trace_id or "-"
    started = time.monotonic()
    reasoning_parts: list[str] = []
    frames = 0
    error_frame: dict[str, Any] | None = None
    try:
        async for chunk in chunks:
            frame = frame_for_chunk(chunk, reasoning_parts)
            if frame is None:
                continue
            frames += 1
            yield sse_data(frame)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        LOG.warning("upstream stream failed trace=%s frames=%s error=%s", tag, frames, exc, extra={"trace_id": tag})
        error_frame = {"error": str(exc) or UNKNOWN_STREAM_ERROR}
    finally:
        await _close_source(chunks)

    if error_frame is not None:
        yield sse_data(error_frame)
    LOG.debug(
        "relay finished trace=%s frames=%s reasoning_chars=%s elapsed=%.3fs",
        tag,
        frames,
        sum(len(part) for part in reasoning_parts),
        time.monotonic() - started,
        extra={"trace_id": tag},
    )
    yield SSE_DONE


def error_stream(message: str) -> AsyncGenerator[bytes, None]:
    """A complete SSE stream holding one error frame."""

    async def _stream() -> AsyncGenerator[bytes, None]:
        yield sse_data({"error": message})
        yield SSE_DONE

    return _stream()


async def drain_content(frames: AsyncIterable[bytes]) -> str:
    """Consume a relayed SSE stream and return its concatenated `content`.

    Raises `UpstreamError` when the stream carries an error frame.
    """
    parts: list[str] = []
    try:
        async for data in iter_sse_data(frames):
            if data.strip() == DONE_SENTINEL:
                break
            payload = parse_sse_json(data)
            if payload is None:
                continue
            if payload.get("error"):
                raise UpstreamError(str(payload["error"]))
            content = payload.get("content")
            if isinstance(content, str):
                parts.append(content)
    finally:
        await _close_source(frames)
    return "".join(parts)
