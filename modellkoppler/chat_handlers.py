"""Helpers for `/chat` and `/chat/title` endpoint handling."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from .chat_service import ChatService
from .error_classifier import classify
from .errors import RequestValidationError
from .json_helpers import payload_log_view, to_bounded_json
from .sse import sse_comment

LOG = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


async def read_json_body(request: Request) -> Any:
    """Parse the request body, mapping undecodable bodies to a validation error."""
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except (ValueError, UnicodeDecodeError) as exc:
        raise RequestValidationError("无效的消息格式") from exc


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward stream chunks, emit optional SSE heartbeats, and stop when the client leaves.

    Stopping closes `source`, which in turn closes the upstream provider stream.
    """
    started = time.monotonic()
    emit_keepalive = keepalive_seconds > 0
    poll_seconds = keepalive_seconds if emit_keepalive else 0.5

    async def _client_gone() -> bool:
        return request is not None and await request.is_disconnected()

    iterator = source.__aiter__()
    try:
        while True:
            next_item = asyncio.ensure_future(iterator.__anext__())
            try:
                while True:
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if await _client_gone():
                        LOG.info("client disconnected, aborting upstream elapsed=%.3fs", time.monotonic() - started)
                        next_item.cancel()
                        with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                            await next_item
                        return
                    if emit_keepalive:
                        yield sse_comment("keepalive")
                yield next_item.result()
            except StopAsyncIteration:
                return
            except BaseException:
                if not next_item.done():
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await next_item
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception as exc:
            LOG.debug("closing response stream failed: %s", exc)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError


async def handle_chat_request(*, request: Request, service: ChatService) -> JSONResponse | StreamingResponse:
    """Handle one `/chat` request: SSE on success, classified JSON error before streaming."""
    trace_id = uuid.uuid4().hex[:12]
    try:
        body = await read_json_body(request)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug(
                "incoming chat request trace=%s payload=%s",
                trace_id,
                to_bounded_json(payload_log_view(body), max_len=2000),
                extra={"trace_id": trace_id},
            )
        stream = await service.open_chat(body, trace_id=trace_id)
    except Exception as exc:
        classified = classify(exc)
        if classified.status_code >= 500:
            LOG.error(
                "chat request failed trace=%s status=%s error=%s",
                trace_id,
                classified.status_code,
                exc,
                extra={"trace_id": trace_id},
            )
        else:
            LOG.warning(
                "chat request rejected trace=%s status=%s error=%s",
                trace_id,
                classified.status_code,
                exc,
                extra={"trace_id": trace_id},
            )
        return JSONResponse(classified.to_payload(), status_code=classified.status_code)

    return build_sse_response(
        stream_with_keepalive(
            stream,
            keepalive_seconds=service.cfg.stream_keepalive_seconds or 0.0,
            request=request,
        )
    )


async def handle_title_request(*, request: Request, service: ChatService) -> JSONResponse:
    """Handle one `/chat/title` request; always answers 200 with a title."""
    try:
        body = await read_json_body(request)
    except RequestValidationError:
        body = None
    payload, status = await service.generate_title(body)
    return JSONResponse(payload, status_code=status)
