"""Client wrapper for the upstream OpenAI-compatible chat providers."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator

import httpx

from .config import ProviderConfig, ProviderName, RelayConfig
from .errors import ConfigurationError, UpstreamError
from .json_helpers import mask_secret, payload_log_view, to_bounded_json
from .sse import DONE_SENTINEL, iter_sse_data

LOG = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"


def _error_message_from_body(body: bytes, fallback: str) -> str:
    """Extract the provider's error message from an OpenAI-style error body."""
    try:
        parsed = json.loads(body.decode("utf-8", errors="replace"))
    except (ValueError, UnicodeDecodeError):
        text = body.decode("utf-8", errors="replace").strip()
        return text[:500] or fallback
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if parsed.get("message"):
            return str(parsed["message"])
    return fallback


class UpstreamStream:
    """One open streaming completion; iterate for decoded chunk dicts, then close."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
        *,
        provider: ProviderName,
        trace_id: str,
    ) -> None:
        self._client = client
        self._response = response
        self._provider = provider
        self._trace_id = trace_id
        self._started = time.monotonic()
        self._closed = False
        self.chunk_count = 0

    def __aiter__(self) -> AsyncGenerator[dict[str, Any], None]:
        return self._chunks()

    async def _chunks(self) -> AsyncGenerator[dict[str, Any], None]:
        try:
            async for data in iter_sse_data(self._response.aiter_bytes()):
                if data.strip() == DONE_SENTINEL:
                    LOG.debug(
                        "upstream stream done marker trace=%s provider=%s elapsed=%.3fs chunks=%s",
                        self._trace_id,
                        self._provider,
                        time.monotonic() - self._started,
                        self.chunk_count,
                    )
                    return
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    # Tolerate occasional non-JSON lines in malformed streams.
                    LOG.debug("skipping non-JSON upstream event trace=%s data=%s", self._trace_id, data[:200])
                    continue
                if not isinstance(chunk, dict):
                    continue
                error = chunk.get("error")
                if error and not chunk.get("choices"):
                    message = error.get("message") if isinstance(error, dict) else str(error)
                    raise UpstreamError(str(message or "upstream stream error"), provider=self._provider)
                self.chunk_count += 1
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the HTTP response and client; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        cleanup_cancelled = False
        for closer in (self._response.aclose, self._client.aclose):
            try:
                await asyncio.shield(closer())
            except asyncio.CancelledError:
                cleanup_cancelled = True
            except Exception as exc:
                LOG.debug("upstream stream cleanup failed trace=%s error=%s", self._trace_id, exc)
        LOG.debug(
            "upstream stream closed trace=%s provider=%s elapsed=%.3fs chunks=%s",
            self._trace_id,
            self._provider,
            time.monotonic() - self._started,
            self.chunk_count,
        )
        if cleanup_cancelled:
            raise asyncio.CancelledError


class UpstreamClient:
    """Thin async HTTP client for one upstream provider."""

    def __init__(
        self,
        provider: ProviderName,
        cfg: ProviderConfig,
        *,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        api_key = (cfg.api_key or "").strip()
        if not api_key:
            raise ConfigurationError(f"{provider} provider API key is not configured")
        self.provider = provider
        self.cfg = cfg
        self.model = cfg.model
        self._api_key = api_key
        self._base_url = cfg.base_url.rstrip("/")
        read_timeout = timeout_seconds or cfg.timeout_seconds
        self._timeout = httpx.Timeout(read_timeout, connect=min(10.0, read_timeout))
        self._transport = transport
        LOG.debug(
            "upstream client ready provider=%s base_url=%s model=%s timeout=%.1fs key=%s",
            provider,
            self._base_url,
            self.model,
            read_timeout,
            mask_secret(api_key),
        )

    def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }

    def _build_client(self) -> httpx.AsyncClient:
        """Create a fresh upstream HTTP client instance."""
        kwargs: dict[str, Any] = {"base_url": self._base_url, "timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    def _with_model(self, payload: dict[str, Any]) -> dict[str, Any]:
        out = dict(payload)
        out.setdefault("model", self.model)
        return out

    async def chat_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run one non-streaming chat completion."""
        req_payload = self._with_model(payload)
        req_payload["stream"] = False
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug(
                "forwarding upstream request provider=%s path=%s stream=false payload=%s",
                self.provider,
                CHAT_COMPLETIONS_PATH,
                to_bounded_json(payload_log_view(req_payload)),
            )
        async with self._build_client() as client:
            try:
                response = await client.post(CHAT_COMPLETIONS_PATH, headers=self._headers(), json=req_payload)
            except httpx.HTTPError as exc:
                raise UpstreamError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc
            if response.status_code >= 400:
                message = _error_message_from_body(response.content, f"HTTP {response.status_code}")
                raise UpstreamError(message, status_code=response.status_code, provider=self.provider)
            try:
                return response.json()
            except ValueError as exc:
                raise UpstreamError("upstream returned invalid JSON", provider=self.provider) from exc

    async def open_stream(self, payload: dict[str, Any], *, trace_id: str | None = None) -> UpstreamStream:
        """Start a streaming completion and verify the response status before returning.

        Failures here happen before any byte reaches the caller's client.
        """
        req_payload = self._with_model(payload)
        req_payload["stream"] = True
        tag = trace_id or "-"
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug(
                "upstream stream start trace=%s provider=%s path=%s payload=%s",
                tag,
                self.provider,
                CHAT_COMPLETIONS_PATH,
                to_bounded_json(payload_log_view(req_payload), max_len=2000),
            )
        client = self._build_client()
        response: httpx.Response | None = None
        try:
            response = await client.send(
                client.build_request("POST", CHAT_COMPLETIONS_PATH, headers=self._headers(), json=req_payload),
                stream=True,
            )
            if response.status_code >= 400:
                body = await response.aread()
                message = _error_message_from_body(body, f"HTTP {response.status_code}")
                raise UpstreamError(message, status_code=response.status_code, provider=self.provider)
        except BaseException as exc:
            if response is not None:
                await response.aclose()
            await client.aclose()
            if isinstance(exc, httpx.HTTPError):
                LOG.warning("upstream connect failed trace=%s provider=%s error=%s", tag, self.provider, exc)
                raise UpstreamError(str(exc) or exc.__class__.__name__, provider=self.provider) from exc
            raise
        return UpstreamStream(client, response, provider=self.provider, trace_id=tag)


class ClientFactory:
    """Builds provider clients from an explicit configuration object."""

    def __init__(self, cfg: RelayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.cfg = cfg
        self._transport = transport

    def create(self, provider: ProviderName, *, timeout_seconds: float | None = None) -> UpstreamClient:
        return create_client(provider, self.cfg, timeout_seconds=timeout_seconds, transport=self._transport)


def create_client(
    provider: ProviderName,
    cfg: RelayConfig,
    *,
    timeout_seconds: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> UpstreamClient:
    """Create a client for `provider`; raises `ConfigurationError` without credentials."""
    return UpstreamClient(provider, cfg.provider(provider), timeout_seconds=timeout_seconds, transport=transport)
