"""Async client for the relay's `/chat` and `/chat/title` endpoints."""

from __future__ import annotations

import base64
import logging
import mimetypes
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncGenerator

import httpx

from .chat_service import DEFAULT_TITLE
from .errors import MediaProcessingError, RelayError
from .media import MediaPayload
from .sse import DONE_SENTINEL, SseDecoder, parse_sse_json

LOG = logging.getLogger(__name__)

MAX_MEDIA_BYTES = 19 * 1024 * 1024

_EXTENSION_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
}


class ChatClientError(RelayError):
    """The relay rejected a request or reported an error inside the stream."""


@dataclass
class ChatUpdate:
    """Cumulative state of one streamed reply."""

    text: str = ""
    reasoning: str = ""
    usage: dict[str, Any] | None = None
    final_reasoning: str | None = None
    events: int = field(default=0, repr=False)


def _mime_type(path: Path) -> str:
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or _EXTENSION_TYPES.get(path.suffix.lower(), "")


def media_kind(mime_type: str) -> str | None:
    """Map a MIME type to `image`, `audio` or `video`."""
    major = mime_type.split("/", 1)[0].lower()
    return major if major in ("image", "audio", "video") else None


def media_format(mime_type: str) -> str:
    """Derive the relay's format name from a MIME subtype."""
    major, _, subtype = mime_type.lower().partition("/")
    subtype = subtype.split(";", 1)[0].strip()
    if subtype == "mpeg" and major == "audio":
        return "mp3"
    if subtype == "quicktime":
        return "mp4"
    return subtype


def load_media_file(path: str | Path) -> MediaPayload:
    """Read a local media file into a base64 payload ready to send to `/chat`."""
    path = Path(path)
    mime_type = _mime_type(path)
    kind = media_kind(mime_type)
    if kind is None:
        raise MediaProcessingError(f"unsupported media file: {path.name}")
    size = path.stat().st_size
    if size > MAX_MEDIA_BYTES:
        raise MediaProcessingError(
            f"media file too large: {size / (1024 * 1024):.2f}MB (limit {MAX_MEDIA_BYTES // (1024 * 1024)}MB)"
        )
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    LOG.debug("loaded media file=%s type=%s format=%s bytes=%s", path.name, kind, media_format(mime_type), size)
    return MediaPayload(type=kind, data=data, format=media_format(mime_type))


def _error_text(response: httpx.Response) -> str:
    fallback = f"relay request failed (status {response.status_code})"
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or fallback
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return fallback


class ChatClient:
    """Talks to a running relay over HTTP."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:3000",
        *,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=min(10.0, timeout))
        self._transport = transport

    def _build_client(self) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {"base_url": self.base_url, "timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def stream_reply(
        self,
        messages: list[dict[str, Any]],
        media: MediaPayload | None = None,
    ) -> AsyncGenerator[ChatUpdate, None]:
        """Send one chat request and yield the cumulative reply after every frame."""
        body: dict[str, Any] = {"messages": messages}
        if media is not None:
            body["media"] = media.model_dump()

        update = ChatUpdate()
        decoder = SseDecoder()
        async with self._build_client() as client:
            async with client.stream("POST", "/chat", json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ChatClientError(_error_text(response))
                async for chunk in response.aiter_bytes():
                    for data in decoder.feed(chunk):
                        if data.strip() == DONE_SENTINEL:
                            return
                        if self._apply(update, data):
                            yield replace(update)
                for data in decoder.flush():
                    if data.strip() != DONE_SENTINEL and self._apply(update, data):
                        yield replace(update)

    @staticmethod
    def _apply(update: ChatUpdate, data: str) -> bool:
        try:
            frame = parse_sse_json(data)
        except ValueError:
            LOG.debug("skipping unparsable relay event: %s", data[:200])
            return False
        if frame is None:
            return False
        if frame.get("error"):
            raise ChatClientError(str(frame["error"]))
        update.events += 1
        if frame.get("reasoning_content"):
            update.reasoning += str(frame["reasoning_content"])
        if isinstance(frame.get("content"), str):
            update.text += frame["content"]
        if frame.get("usage"):
            update.usage = frame["usage"]
            if frame.get("final_reasoning"):
                update.final_reasoning = str(frame["final_reasoning"])
        return True

    async def send(self, messages: list[dict[str, Any]], media: MediaPayload | None = None) -> ChatUpdate:
        """Collect a full streamed reply."""
        final = ChatUpdate()
        async for update in self.stream_reply(messages, media):
            final = update
        return final

    async def generate_title(self, messages: list[dict[str, Any]]) -> str:
        """Ask the relay for a conversation title; the default title on any failure."""
        try:
            async with self._build_client() as client:
                response = await client.post("/chat/title", json={"messages": messages})
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOG.warning("title request failed: %s", exc)
            return DEFAULT_TITLE
        if response.status_code >= 400 or not isinstance(payload, dict):
            return DEFAULT_TITLE
        title = payload.get("title")
        return title.strip() if isinstance(title, str) and title.strip() else DEFAULT_TITLE
