"""HTTP application for the modellkoppler relay.

This module exposes the chat endpoints used by the browser client:
- `POST /chat` streams a multimodal or reasoning model answer as SSE,
- `POST /chat/title` generates a short conversation title,
- `GET /healthz` reports configuration health.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlparse

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .chat_handlers import handle_chat_request, handle_title_request
from .chat_service import ChatService
from .config import DEFAULT_CONFIG_PATH, RelayConfig, load_config
from .config_reload import ConfigReloadWatcher
from .json_helpers import mask_secret
from .logging_utils import setup_logging

LOG = logging.getLogger(__name__)


def _service_bind_addr(service_base_url: str) -> tuple[str, int]:
    """Parse bind host/port from service_base_url."""
    parsed = urlparse(service_base_url)
    if not parsed.hostname or parsed.port is None:
        raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:3000")
    return parsed.hostname, parsed.port


def _resolve_config_file(config_path: str | None) -> Path:
    return Path(config_path or os.getenv("MODELLKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH)


def create_app(
    config_path: str | None = None,
    *,
    cfg: RelayConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    watch_config: bool | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    When `cfg` is given it is used as-is; the config file is then watched only
    if `watch_config` is true. Without `cfg` the file is loaded and watched.
    """
    if watch_config is None:
        watch_config = cfg is None
    if cfg is None:
        cfg = load_config(config_path)
    watch_file: Path | None = None
    if watch_config:
        candidate = _resolve_config_file(config_path)
        watch_file = candidate if candidate.exists() else None
    setup_logging(cfg.logging)
    service = ChatService(cfg, transport=transport)

    LOG.info(
        "relay configured deep_analysis=%s multimodal=%s key=%s reasoning=%s key=%s",
        cfg.deep_analysis,
        cfg.multimodal.model,
        mask_secret(cfg.multimodal.api_key),
        cfg.reasoning.model,
        mask_secret(cfg.reasoning.api_key),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        reload_task: asyncio.Task[None] | None = None
        if watch_file is not None:
            watcher = ConfigReloadWatcher(config_file=watch_file, apply=service.apply_config)
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task

    app = FastAPI(title="modellkoppler", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.state.config_file = watch_file

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service and provider configuration status."""
        return JSONResponse(service.health())

    @app.post("/chat", response_model=None)
    async def chat(request: Request) -> JSONResponse | StreamingResponse:
        """Stream one chat answer as SSE."""
        return await handle_chat_request(request=request, service=service)

    @app.post("/chat/title")
    async def chat_title(request: Request) -> JSONResponse:
        """Generate a short conversation title."""
        return await handle_title_request(request=request, service=service)

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="modellkoppler chat relay")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    try:
        app = create_app(args.config, cfg=cfg, watch_config=True)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    if not cfg.reasoning.has_credentials():
        LOG.warning("DEEPSEEK_API_KEY is not set; chat and title requests will fail until it is configured")
    if not cfg.multimodal.has_credentials():
        LOG.warning("DASHSCOPE_API_KEY is not set; media requests will fail until it is configured")

    try:
        host, port = _service_bind_addr(cfg.service_base_url)
        uvicorn.run(app, host=host, port=port)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
