"""Message normalization into the strict per-provider chat schema."""

from __future__ import annotations

import logging
from typing import Any, Literal

from .config import ProviderName

LOG = logging.getLogger(__name__)

VALID_ROLES = ("system", "user", "assistant")
INVALID_MESSAGE_PLACEHOLDER = "请分析这个内容"

ContentForm = Literal["array", "string"]

# Fixed content-form contract per provider and role.
_CONTENT_FORMS: dict[str, dict[str, ContentForm]] = {
    "multimodal": {"system": "array", "user": "array", "assistant": "string"},
    "reasoning": {"system": "string", "user": "array", "assistant": "string"},
}

_EMPTY_USER_PROMPTS: dict[str, str] = {
    "multimodal": INVALID_MESSAGE_PLACEHOLDER,
    "reasoning": "你好",
}

_EMPTY_ROLE_DEFAULTS = {
    "system": "You are a helpful assistant.",
    "assistant": "我可以帮助你解决问题",
}


def text_block(text: str) -> dict[str, Any]:
    """Build one `text` content block."""
    return {"type": "text", "text": text}


def content_form(provider: ProviderName, role: str) -> ContentForm:
    """Return whether `provider` expects block-array or plain-string content for `role`."""
    try:
        return _CONTENT_FORMS[provider][role]
    except KeyError:
        raise ValueError(f"Unknown provider/role combination: {provider}/{role}") from None


def flatten_text_blocks(content: Any) -> str:
    """Reduce content to plain text; text blocks are joined by one space, others dropped."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text")
                if isinstance(text, str) and text:
                    parts.append(text)
        return " ".join(parts)
    return str(content)


def _invalid_message() -> dict[str, Any]:
    return {"role": "user", "content": [text_block(INVALID_MESSAGE_PLACEHOLDER)]}


def _normalize_user(content: Any, provider: ProviderName) -> dict[str, Any]:
    if isinstance(content, list):
        return {"role": "user", "content": list(content)}
    text = flatten_text_blocks(content).strip()
    if not text:
        text = _EMPTY_USER_PROMPTS[provider]
    return {"role": "user", "content": [text_block(text)]}


def _normalize_plain_role(role: str, content: Any, provider: ProviderName) -> dict[str, Any]:
    text = flatten_text_blocks(content)
    if not text.strip():
        text = _EMPTY_ROLE_DEFAULTS[role]
    if content_form(provider, role) == "array":
        return {"role": role, "content": [text_block(text)]}
    return {"role": role, "content": text}


def normalize_message(message: Any, provider: ProviderName) -> dict[str, Any]:
    """Normalize one raw message; invalid entries become a placeholder user turn."""
    if not isinstance(message, dict):
        return _invalid_message()
    role = message.get("role")
    if role not in VALID_ROLES:
        return _invalid_message()

    content = message.get("content")
    if role == "user":
        return _normalize_user(content, provider)
    return _normalize_plain_role(role, content, provider)


def normalize_messages(raw_messages: Any, provider: ProviderName) -> list[dict[str, Any]]:
    """Normalize a raw message list for `provider` without ever raising.

    The output has exactly one entry per input entry, so message indexes stay
    aligned with the caller's conversation.
    """
    if not isinstance(raw_messages, list):
        return []
    normalized = [normalize_message(msg, provider) for msg in raw_messages]
    coerced = sum(
        1 for msg in raw_messages if not isinstance(msg, dict) or msg.get("role") not in VALID_ROLES
    )
    if coerced:
        LOG.warning("coerced %s invalid message(s) to placeholder user turns provider=%s", coerced, provider)
    return normalized


def ensure_system_prompt(
    messages: list[dict[str, Any]],
    prompt: str,
    provider: ProviderName,
) -> list[dict[str, Any]]:
    """Prepend a default system message when the conversation has none."""
    if any(msg.get("role") == "system" for msg in messages):
        return list(messages)
    return [_normalize_plain_role("system", prompt, provider), *messages]


def extract_message_text(message: dict[str, Any]) -> str:
    """Return the text of one normalized message, joining text blocks with a space."""
    return flatten_text_blocks(message.get("content"))


def latest_user_index(messages: list[dict[str, Any]]) -> int | None:
    """Return the index of the latest user message, if any."""
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].get("role") == "user":
            return index
    return None


def latest_user_text(messages: list[dict[str, Any]]) -> str:
    """Return the plain text of the latest user message (empty when there is none)."""
    index = latest_user_index(messages)
    if index is None:
        return ""
    return extract_message_text(messages[index])
