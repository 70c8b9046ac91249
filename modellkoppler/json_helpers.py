"""JSON/text helpers for bounded logging output."""

from __future__ import annotations

import json
from typing import Any


def to_bounded_json(payload: Any, max_len: int = 8000) -> str:
    """Serialize arbitrary values into bounded JSON-like text for logging.

    The helper never raises and truncates long payloads to keep log lines readable.
    """
    try:
        raw = json.dumps(payload, ensure_ascii=False)
    except Exception:
        raw = repr(payload)
    if len(raw) > max_len:
        return raw[:max_len] + "...<truncated>"
    return raw


def mask_secret(value: str | None, visible: int = 6) -> str:
    """Render a credential as its first characters plus length."""
    if not value:
        return "<unset>"
    return f"{value[:visible]}...(len={len(value)})"


def summarize_messages(messages: list[Any], preview_len: int = 50) -> list[dict[str, Any]]:
    """Summarize a conversation for debug logs without dumping media payloads."""
    summary: list[dict[str, Any]] = []
    for index, msg in enumerate(messages):
        if not isinstance(msg, dict):
            summary.append({"index": index, "role": None, "content": type(msg).__name__})
            continue
        content = msg.get("content")
        if isinstance(content, str):
            preview: Any = content if len(content) <= preview_len else content[:preview_len] + "..."
        elif isinstance(content, list):
            preview = [item.get("type") if isinstance(item, dict) else type(item).__name__ for item in content]
        else:
            preview = type(content).__name__
        summary.append({"index": index, "role": msg.get("role"), "content": preview})
    return summary


def payload_log_view(payload: Any) -> Any:
    """Shallow view of a chat payload for debug logs: messages summarized, media data reduced to its length."""
    if not isinstance(payload, dict):
        return payload
    view = dict(payload)
    if isinstance(view.get("messages"), list):
        view["messages"] = summarize_messages(view["messages"])
    media = view.get("media")
    if isinstance(media, dict):
        data = media.get("data")
        view["media"] = {**media, "data": f"<{len(data)} chars>" if isinstance(data, str) else type(data).__name__}
    return view
