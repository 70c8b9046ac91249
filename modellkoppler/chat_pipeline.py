"""Per-request chat pipeline: text-only or media (one or two stage) processing."""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, AsyncGenerator

from pydantic import ValidationError

from .config import RelayConfig
from .errors import RequestValidationError
from .json_helpers import summarize_messages, to_bounded_json
from .media import MediaPayload, attach_media
from .message_preparation import (
    VALID_ROLES,
    ensure_system_prompt,
    latest_user_text,
    normalize_messages,
    text_block,
)
from .stream_relay import drain_content, error_stream, relay_stream
from .upstream import ClientFactory

LOG = logging.getLogger(__name__)

INVALID_MESSAGES_ERROR = "无效的消息格式"
DEFAULT_MEDIA_QUESTION = "请分析这个媒体内容"
REASONING_TEMPERATURE = 0.7
ANALYSIS_MAX_TOKENS = 1500

ANALYSIS_SYSTEM_PROMPT = """你是一个强大的多模态助手，能够分析各种内容并提供深入见解。

当处理媒体内容时，你会收到两部分信息：
1. 用户的原始问题或指令
2. 多模态模型对媒体内容的初步分析

你的任务是：
- 先在reasoning_content中展示你的思考过程，分析媒体内容的关键点
- 然后在普通回复中提供简洁、有见解的回答
- 确保你的回答既考虑到媒体内容的细节，也与用户的原始问题相关"""

_MEDIA_LABELS = {"image": "图片", "audio": "音频", "video": "视频"}


class PipelineState(str, Enum):
    RECEIVED = "received"
    NORMALIZING = "normalizing"
    TEXT_ONLY = "text_only"
    MEDIA_STAGE1 = "media_stage1"
    MEDIA_STAGE2 = "media_stage2"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


def analysis_prompt(media_type: str, question: str, analysis: str) -> str:
    """Build the stage-2 user turn that hands the media analysis to the reasoning model."""
    label = _MEDIA_LABELS.get(media_type, "媒体")
    return (
        f"我需要你分析以下{label}内容：\n\n"
        f"用户原始问题：{question}\n\n"
        f"多模态模型的初步分析结果：\n{analysis}\n\n"
        "请首先在reasoning_content中详细思考，然后提供简洁有用的回答。"
    )


def _raw_latest_user_question(raw_messages: list[Any]) -> str:
    valid = [msg for msg in raw_messages if isinstance(msg, dict) and msg.get("role") in VALID_ROLES]
    return latest_user_text(valid).strip() or DEFAULT_MEDIA_QUESTION


def _parse_media(raw_media: Any) -> MediaPayload | None:
    """Turn the request's `media` field into a payload; malformed shapes still count as media."""
    if not raw_media:
        return None
    if isinstance(raw_media, dict):
        try:
            return MediaPayload.model_validate(raw_media)
        except ValidationError as exc:
            LOG.warning("media payload has unexpected shape: %s", exc.errors()[:3])
            return MediaPayload(type=str(raw_media.get("type") or ""), data=None)
    return MediaPayload(type="", data=None)


class ChatPipeline:
    """State machine for one `/chat` request.

    `open()` performs every step that can fail before the response starts and
    returns the SSE byte stream; failures there raise and are turned into JSON
    errors by the HTTP layer.
    """

    def __init__(self, cfg: RelayConfig, clients: ClientFactory, *, trace_id: str | None = None) -> None:
        self.cfg = cfg
        self.clients = clients
        self.trace_id = trace_id or uuid.uuid4().hex[:12]
        self.state = PipelineState.RECEIVED
        self.upstream_calls: list[str] = []

    @property
    def _log_extra(self) -> dict[str, str]:
        return {"trace_id": self.trace_id}

    def _transition(self, state: PipelineState) -> None:
        LOG.debug(
            "pipeline trace=%s state %s -> %s", self.trace_id, self.state.value, state.value, extra=self._log_extra
        )
        self.state = state

    async def open(self, body: Any) -> AsyncGenerator[bytes, None]:
        """Validate, route, and open the upstream stream(s) for one request."""
        try:
            messages, media = self._validate(body)
            self._transition(PipelineState.NORMALIZING)
            if media is None:
                self._transition(PipelineState.TEXT_ONLY)
                stream = await self._open_text_only(messages)
            else:
                stream = await self._open_media(messages, media)
        except Exception:
            self._transition(PipelineState.ERROR)
            raise
        if self.state is PipelineState.ERROR:
            return stream
        self._transition(PipelineState.STREAMING)
        return self._track(stream)

    def _validate(self, body: Any) -> tuple[list[Any], MediaPayload | None]:
        if not isinstance(body, dict):
            raise RequestValidationError(INVALID_MESSAGES_ERROR)
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise RequestValidationError(INVALID_MESSAGES_ERROR)
        media = _parse_media(body.get("media"))
        LOG.info(
            "chat request trace=%s messages=%s media=%s",
            self.trace_id,
            len(messages),
            media.type if media is not None else "-",
            extra=self._log_extra,
        )
        return messages, media

    async def _track(self, frames: AsyncGenerator[bytes, None]) -> AsyncGenerator[bytes, None]:
        try:
            async for frame in frames:
                yield frame
        finally:
            await frames.aclose()
        self._transition(PipelineState.DONE)

    async def _open_text_only(self, raw_messages: list[Any]) -> AsyncGenerator[bytes, None]:
        conversation = ensure_system_prompt(
            normalize_messages(raw_messages, "reasoning"),
            self.cfg.default_system_prompt,
            "reasoning",
        )
        client = self.clients.create("reasoning")
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug(
                "reasoning request trace=%s model=%s conversation=%s",
                self.trace_id,
                client.model,
                to_bounded_json(summarize_messages(conversation)),
                extra=self._log_extra,
            )
        self.upstream_calls.append("reasoning")
        upstream = await client.open_stream(
            {"messages": conversation, "temperature": REASONING_TEMPERATURE},
            trace_id=self.trace_id,
        )
        return relay_stream(upstream, trace_id=self.trace_id)

    async def _open_media(self, raw_messages: list[Any], media: MediaPayload) -> AsyncGenerator[bytes, None]:
        self._transition(PipelineState.MEDIA_STAGE1)
        conversation = ensure_system_prompt(
            normalize_messages(raw_messages, "multimodal"),
            self.cfg.default_system_prompt,
            "multimodal",
        )
        conversation = attach_media(
            conversation,
            media,
            audio_warning_chars=self.cfg.audio_size_warning_chars or 0,
        )

        multimodal = self.clients.create("multimodal")
        # Built up front so a missing reasoning credential fails before the first provider call.
        reasoning = self.clients.create("reasoning") if self.cfg.deep_analysis else None

        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug(
                "multimodal request trace=%s model=%s deep_analysis=%s conversation=%s",
                self.trace_id,
                multimodal.model,
                self.cfg.deep_analysis,
                to_bounded_json(summarize_messages(conversation)),
                extra=self._log_extra,
            )
        self.upstream_calls.append("multimodal")
        stage1 = await multimodal.open_stream(
            {
                "messages": conversation,
                "stream_options": {"include_usage": True},
                "modalities": ["text"],
            },
            trace_id=self.trace_id,
        )
        relayed = relay_stream(stage1, trace_id=self.trace_id)
        if reasoning is None:
            return relayed

        try:
            analysis = await drain_content(relayed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning("media stage1 drain failed trace=%s error=%s", self.trace_id, exc, extra=self._log_extra)
            self._transition(PipelineState.ERROR)
            return error_stream(f"媒体处理失败: {exc}")
        LOG.info(
            "media stage1 drained trace=%s analysis_chars=%s", self.trace_id, len(analysis), extra=self._log_extra
        )

        self._transition(PipelineState.MEDIA_STAGE2)
        stage2_messages = self._analysis_conversation(raw_messages, media, analysis)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug(
                "reasoning analysis request trace=%s model=%s conversation=%s",
                self.trace_id,
                reasoning.model,
                to_bounded_json(summarize_messages(stage2_messages)),
                extra=self._log_extra,
            )
        self.upstream_calls.append("reasoning")
        stage2 = await reasoning.open_stream(
            {
                "messages": stage2_messages,
                "temperature": REASONING_TEMPERATURE,
                "max_tokens": ANALYSIS_MAX_TOKENS,
            },
            trace_id=self.trace_id,
        )
        return relay_stream(stage2, trace_id=self.trace_id)

    @staticmethod
    def _analysis_conversation(
        raw_messages: list[Any],
        media: MediaPayload,
        analysis: str,
    ) -> list[dict[str, Any]]:
        """Caller system turns (or the analysis prompt), the history minus its final turn, then the analysis turn."""
        normalized = normalize_messages(raw_messages, "reasoning")
        system_messages = [msg for msg in normalized if msg["role"] == "system"]
        history = [msg for msg in normalized if msg["role"] != "system"]
        prior = history[:-1]

        question = _raw_latest_user_question(raw_messages)
        return [
            *(system_messages or [{"role": "system", "content": ANALYSIS_SYSTEM_PROMPT}]),
            *prior,
            {"role": "user", "content": [text_block(analysis_prompt(media.type, question, analysis))]},
        ]
