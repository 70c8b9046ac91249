"""Relay service runtime: per-request pipelines and conversation title generation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import httpx

from .chat_pipeline import ChatPipeline
from .config import RelayConfig
from .errors import TitleGenerationError
from .message_preparation import flatten_text_blocks
from .upstream import ClientFactory

LOG = logging.getLogger(__name__)

DEFAULT_TITLE = "新对话"
TITLE_FAILURE_MESSAGE = "生成标题失败"
TITLE_SYSTEM_PROMPT = "你是一个擅长总结和提取主题的助手。你的任务是为对话生成一个简短的中文标题。"
TITLE_MAX_TOKENS = 50
TITLE_TEMPERATURE = 0.5


def _title_transcript(messages: list[Any]) -> str:
    lines: list[str] = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        lines.append(f"{msg.get('role')}: {flatten_text_blocks(msg.get('content'))}")
    return "\n".join(lines)


def _extract_title(response: dict[str, Any]) -> str:
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise TitleGenerationError("title response has no choices")
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    title = content.strip() if isinstance(content, str) else ""
    return title or DEFAULT_TITLE


class ChatService:
    """Holds the active configuration; everything request-scoped is built per call."""

    def __init__(self, cfg: RelayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._transport = transport

    def apply_config(self, new_cfg: RelayConfig) -> None:
        """Swap configuration; requests already in flight keep their own snapshot."""
        self.cfg = new_cfg

    def _clients(self, cfg: RelayConfig) -> ClientFactory:
        return ClientFactory(cfg, transport=self._transport)

    def new_pipeline(self, *, trace_id: str | None = None) -> ChatPipeline:
        cfg = self.cfg
        return ChatPipeline(cfg, self._clients(cfg), trace_id=trace_id)

    async def open_chat(self, body: Any, *, trace_id: str | None = None) -> AsyncGenerator[bytes, None]:
        """Open a chat stream; raises before any byte exists when the request cannot start."""
        return await self.new_pipeline(trace_id=trace_id).open(body)

    async def generate_title(self, body: Any) -> tuple[dict[str, str], int]:
        """Generate a short conversation title; never fails hard."""
        messages = body.get("messages") if isinstance(body, dict) else None
        if not isinstance(messages, list) or not messages:
            return {"title": DEFAULT_TITLE}, 200

        cfg = self.cfg
        try:
            client = self._clients(cfg).create("reasoning", timeout_seconds=cfg.title_timeout_seconds)
            response = await client.chat_completion(
                {
                    "model": cfg.title_model,
                    "messages": [
                        {"role": "system", "content": TITLE_SYSTEM_PROMPT},
                        {
                            "role": "user",
                            "content": "基于以下对话内容，生成一个简短的中文标题（不超过10个字）：\n"
                            + _title_transcript(messages),
                        },
                    ],
                    "temperature": TITLE_TEMPERATURE,
                    "max_tokens": TITLE_MAX_TOKENS,
                }
            )
            title = _extract_title(response)
        except Exception as exc:
            LOG.warning("title generation failed, using default title: %s", exc)
            return {"error": TITLE_FAILURE_MESSAGE, "title": DEFAULT_TITLE}, 200

        LOG.info("generated conversation title=%s", title)
        return {"title": title}, 200

    def health(self) -> dict[str, Any]:
        cfg = self.cfg
        return {
            "service": "modellkoppler",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "deep_analysis": cfg.deep_analysis,
            "providers": {
                "multimodal": {"model": cfg.multimodal.model, "configured": cfg.multimodal.has_credentials()},
                "reasoning": {"model": cfg.reasoning.model, "configured": cfg.reasoning.has_credentials()},
            },
        }
