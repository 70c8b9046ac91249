"""Media encoder adapter: turns a base64 media payload into provider content blocks."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from pydantic import BaseModel

from .errors import MediaProcessingError
from .message_preparation import text_block

LOG = logging.getLogger(__name__)

DEFAULT_FORMATS: dict[str, str] = {"image": "png", "audio": "mp3", "video": "mp4"}

INSTRUCTIONS: dict[str, str] = {
    "image": "请详细分析这张图片的内容，包括图片中的主体、场景、文字、特征等关键信息。如果有文字，请转录。",
    "audio": "请认真听取这段音频并详细转录其内容。如果有背景声音或情绪变化，也请指出。",
    "video": "请详细描述这段视频的内容，包括场景、人物、动作和任何重要细节。如果有对话，请转录。",
}

FAILURE_NOTICES: dict[str, str] = {
    "image": "由于图片处理失败，请尝试使用其他图片格式或更小的文件。",
    "audio": "由于音频处理失败，请尝试使用其他音频格式或更小的文件。",
    "video": "由于视频处理失败，请尝试使用其他视频格式或更小的文件。",
}
UNSUPPORTED_MEDIA_NOTICE = "不支持的媒体类型，请上传图片、音频或视频文件。"


class MediaPayload(BaseModel):
    """Media attachment as sent by the browser: base64 data plus declared type/format."""

    type: str = ""
    data: Any = None
    format: Any = None


def resolve_format(media_type: str, declared: Any) -> str:
    """Lowercase the declared format, falling back to the per-type default."""
    cleaned = str(declared or "").strip().lower()
    return cleaned or DEFAULT_FORMATS.get(media_type, "")


def data_url(media_type: str, data: str, media_format: str | None = None) -> str:
    """Build a `data:` URI; images carry their MIME type, audio and video use the bare form."""
    if media_type == "image":
        return f"data:image/{resolve_format('image', media_format)};base64,{data}"
    return f"data:;base64,{data}"


def _validate_base64(data: Any) -> str:
    if not isinstance(data, str) or not data.strip():
        raise MediaProcessingError("media data is empty")
    try:
        # Browsers sometimes strip padding; the alphabet check is what matters.
        base64.b64decode(data.strip() + "=" * (-len(data.strip()) % 4), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MediaProcessingError(f"media data is not valid base64: {exc}") from exc
    return data


def build_media_block(media: MediaPayload, *, audio_warning_chars: int = 100_000) -> dict[str, Any]:
    """Build the provider content block for one media payload.

    Raises `MediaProcessingError` when the payload cannot be represented.
    """
    media_type = media.type
    if media_type not in DEFAULT_FORMATS:
        raise MediaProcessingError(f"unsupported media type: {media_type!r}")
    data = _validate_base64(media.data)
    media_format = resolve_format(media_type, media.format)
    LOG.info("building %s block format=%s data_len=%s", media_type, media_format, len(data))

    if media_type == "image":
        return {"type": "image_url", "image_url": {"url": data_url("image", data, media_format)}}
    if media_type == "audio":
        if audio_warning_chars and len(data) > audio_warning_chars:
            LOG.warning(
                "audio payload is large data_len=%s threshold=%s; the provider may reject it",
                len(data),
                audio_warning_chars,
            )
        return {"type": "input_audio", "input_audio": {"data": data_url("audio", data), "format": media_format}}
    return {"type": "video_url", "video_url": {"url": data_url("video", data)}}


def attach_media(
    messages: list[dict[str, Any]],
    media: MediaPayload,
    *,
    audio_warning_chars: int = 100_000,
) -> list[dict[str, Any]]:
    """Return a copy of `messages` whose final user message carries the media.

    The final user content becomes `[media block, *original blocks, instruction]`.
    Not idempotent: attaching twice inserts a second media block.
    """
    out = list(messages)
    if not out or out[-1].get("role") != "user":
        out.append({"role": "user", "content": []})

    last = out[-1]
    original = last.get("content")
    if isinstance(original, list):
        original_blocks = list(original)
    elif isinstance(original, str) and original.strip():
        original_blocks = [text_block(original)]
    else:
        original_blocks = []

    try:
        lead = build_media_block(media, audio_warning_chars=audio_warning_chars)
        trailing = [text_block(INSTRUCTIONS[media.type])]
    except MediaProcessingError as exc:
        LOG.warning("media block construction failed type=%s error=%s", media.type, exc)
        lead = text_block(FAILURE_NOTICES.get(media.type, UNSUPPORTED_MEDIA_NOTICE))
        trailing = []

    out[-1] = {**last, "role": "user", "content": [lead, *original_blocks, *trailing]}
    return out
