import asyncio
import base64
import json

import httpx
import pytest

from modellkoppler.client import MAX_MEDIA_BYTES, ChatClient, ChatClientError, load_media_file, media_format
from modellkoppler.errors import MediaProcessingError
from modellkoppler.media import MediaPayload


def _collect(client: ChatClient, messages: list[dict], media: MediaPayload | None = None) -> list:
    async def run() -> list:
        return [update async for update in client.stream_reply(messages, media)]

    return asyncio.run(run())


def test_load_media_file_detects_type_and_format(tmp_path) -> None:
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG")
    audio = tmp_path / "voice.mp3"
    audio.write_bytes(b"ID3")

    png = load_media_file(image)
    mp3 = load_media_file(audio)

    assert png.type == "image"
    assert png.format == "png"
    assert base64.b64decode(png.data) == b"\x89PNG"
    assert mp3.type == "audio"
    assert mp3.format == "mp3"


def test_media_format_maps_container_subtypes() -> None:
    assert media_format("audio/mpeg") == "mp3"
    assert media_format("video/quicktime") == "mp4"
    assert media_format("video/webm;codecs=vp8") == "webm"
    assert media_format("video/mpeg") == "mpeg"


def test_load_media_file_rejects_unknown_and_oversized_files(tmp_path) -> None:
    doc = tmp_path / "notes.txt"
    doc.write_text("hi", encoding="utf-8")
    with pytest.raises(MediaProcessingError):
        load_media_file(doc)

    big = tmp_path / "big.mp4"
    with big.open("wb") as handle:
        handle.truncate(MAX_MEDIA_BYTES + 1)
    with pytest.raises(MediaProcessingError, match="too large"):
        load_media_file(big)


def test_stream_reply_yields_cumulative_updates_in_order() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        body = (
            'data: {"reasoning_content": "想", "reasoning_expandable": true}\n\n'
            'data: {"content": "你", "has_reasoning": true}\n\n'
            'data: {"content": "好", "has_reasoning": true}\n\n'
            'data: {"usage": {"total_tokens": 3}, "final_reasoning": "想"}\n\n'
            "data: [DONE]\n\n"
        )
        return httpx.Response(200, content=body.encode("utf-8"))

    client = ChatClient("http://relay.test", transport=httpx.MockTransport(handler))
    media = MediaPayload(type="image", data="QUJD", format="png")

    updates = _collect(client, [{"role": "user", "content": "hi"}], media)

    assert seen["path"] == "/chat"
    assert seen["body"]["media"] == {"type": "image", "data": "QUJD", "format": "png"}
    assert [u.text for u in updates] == ["", "你", "你好", "你好"]
    assert updates[0].reasoning == "想"
    assert updates[-1].usage == {"total_tokens": 3}
    assert updates[-1].final_reasoning == "想"


def test_stream_reply_raises_on_json_error_response() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "请求过于频繁，请稍后再试"})

    client = ChatClient("http://relay.test", transport=httpx.MockTransport(handler))

    with pytest.raises(ChatClientError, match="请求过于频繁"):
        _collect(client, [{"role": "user", "content": "hi"}])


def test_stream_reply_raises_on_in_band_error_frame() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        body = 'data: {"content": "a", "has_reasoning": false}\n\ndata: {"error": "connection reset"}\n\ndata: [DONE]\n\n'
        return httpx.Response(200, content=body.encode("utf-8"))

    client = ChatClient("http://relay.test", transport=httpx.MockTransport(handler))

    with pytest.raises(ChatClientError, match="connection reset"):
        _collect(client, [{"role": "user", "content": "hi"}])


def test_send_returns_final_update() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'data: {"content": "done", "has_reasoning": false}\n\ndata: [DONE]\n\n')

    client = ChatClient("http://relay.test", transport=httpx.MockTransport(handler))

    assert asyncio.run(client.send([{"role": "user", "content": "hi"}])).text == "done"


def test_generate_title_falls_back_to_default() -> None:
    def ok(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"title": "猫"})

    def broken(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>")

    messages = [{"role": "user", "content": "hi"}]

    assert asyncio.run(ChatClient(transport=httpx.MockTransport(ok)).generate_title(messages)) == "猫"
    assert asyncio.run(ChatClient(transport=httpx.MockTransport(broken)).generate_title(messages)) == "新对话"
