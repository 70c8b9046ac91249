"""Watchdog-based configuration hot reload."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import RelayConfig, load_config
from .logging_utils import setup_logging

LOG = logging.getLogger(__name__)


def event_touches_config(path: str | bytes | Path | None, config_name: str) -> bool:
    """Return true when a filesystem event path names the watched config file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == config_name


class _ConfigEventHandler(FileSystemEventHandler):
    """Wake the async reload loop when the watched file changes."""

    def __init__(self, config_name: str, notify: Callable[[], None]) -> None:
        super().__init__()
        self._config_name = config_name
        self._notify = notify

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = (getattr(event, "src_path", None), getattr(event, "dest_path", None))
        if any(event_touches_config(path, self._config_name) for path in paths):
            self._notify()


class ConfigReloadWatcher:
    """Reload `RelayConfig` from disk whenever the config file changes."""

    def __init__(
        self,
        *,
        config_file: Path,
        apply: Callable[[RelayConfig], None],
        loader: Callable[[str], RelayConfig] = load_config,
    ) -> None:
        self._config_file = config_file
        self._apply = apply
        self._loader = loader

    def reload_now(self) -> RelayConfig:
        """Load the file, re-apply logging, and hand the new config to the service."""
        LOG.info("Configuration change detected at %s, reloading...", self._config_file)
        new_cfg = self._loader(str(self._config_file))
        setup_logging(new_cfg.logging)
        self._apply(new_cfg)
        LOG.info("Configuration reloaded successfully")
        return new_cfg

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        handler = _ConfigEventHandler(self._config_file.name, lambda: loop.call_soon_threadsafe(changed.set))

        observer = Observer()
        observer.schedule(handler, str(self._config_file.parent.resolve()), recursive=False)
        observer.start()
        try:
            while True:
                await changed.wait()
                changed.clear()
                try:
                    self.reload_now()
                except Exception as exc:
                    LOG.warning("Configuration reload failed, keeping current config: %s", exc)
        finally:
            observer.stop()
            # join() is blocking; call in thread to keep event loop responsive.
            with contextlib.suppress(Exception):
                await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Run the watcher and restart it after unexpected watcher failures."""
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("config watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
