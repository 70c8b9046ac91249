"""Map relay and provider failures to user-facing messages and HTTP status codes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx

from .errors import ConfigurationError, RequestValidationError, UpstreamError

DEFAULT_FAILURE_MESSAGE = "处理请求失败，请联系管理员"


@dataclass(frozen=True)
class ClassifiedError:
    """HTTP status and message shown to the end user."""

    status_code: int
    message: str

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message}


@dataclass(frozen=True)
class _Rule:
    matches: Callable[[int | None, str], bool]
    message: str
    # None keeps the original status (or 500 when there is none).
    status_code: int | None = None


def _status_is(expected: int) -> Callable[[int | None, str], bool]:
    return lambda status, _text: status == expected


def _status_or_text(expected: int, needle: str) -> Callable[[int | None, str], bool]:
    return lambda status, text: status == expected or needle in text


def _text_contains(needle: str) -> Callable[[int | None, str], bool]:
    return lambda _status, text: needle in text


_RULES: tuple[_Rule, ...] = (
    _Rule(_status_is(401), "身份验证失败，请检查API密钥是否正确，或联系服务商确认您的账户状态", 401),
    _Rule(_status_is(400), "请求参数错误，可能是模型名称不正确或参数格式有误", 400),
    _Rule(_status_is(404), "请求的资源不存在，可能是模型名称错误或API端点变更", 404),
    _Rule(_status_is(429), "请求过于频繁，请稍后再试", 429),
    _Rule(_status_or_text(413, "too large"), "媒体处理失败。媒体文件太大，请使用更小的文件。"),
    _Rule(_status_or_text(415, "format"), "媒体处理失败。不支持的媒体格式，请尝试使用常见格式如MP3、MP4或PNG。"),
    _Rule(_text_contains("does not appear to be valid"), "媒体处理失败。媒体URL格式无效，请检查数据格式是否正确。"),
    _Rule(_text_contains("content field is a required field"), "消息格式错误，请确保正确提供了内容字段。"),
)


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, UpstreamError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code if error.response is not None else None
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def classify(error: BaseException) -> ClassifiedError:
    """Classify one failure; the first matching rule wins."""
    raw_message = str(error).strip()

    if isinstance(error, RequestValidationError):
        return ClassifiedError(400, raw_message or "无效的消息格式")
    if isinstance(error, ConfigurationError):
        return ClassifiedError(500, raw_message or DEFAULT_FAILURE_MESSAGE)

    status = _status_of(error)
    lowered = raw_message.lower()
    for rule in _RULES:
        if rule.matches(status, lowered):
            return ClassifiedError(rule.status_code or status or 500, rule.message)

    message = f"处理请求失败：{raw_message}" if raw_message else DEFAULT_FAILURE_MESSAGE
    return ClassifiedError(status or 500, message)
