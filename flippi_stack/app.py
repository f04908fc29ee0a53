"""Composition root: builds the object graph and runs it until asked to stop."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import signal
from typing import Optional, Set

from . import APP_DISPLAY
from .capture import CaptureMonitor
from .combo_sync import ComboDataSync
from .config import CONNECTION_KEYS, Config, SettingsStore
from .obs_connection import ObsConnectionManager
from .pollers import StatusPoller
from .probe import AppProbe
from .stack import StackOrchestrator
from .status import StatusStore
from .web_hud import WebHud

log = logging.getLogger(__name__)


class App:
    def __init__(self, cfg: Config, config_path: str = "", web_enabled: Optional[bool] = None):
        self.cfg = cfg
        self.web_enabled = cfg.WEB_HUD_ENABLED if web_enabled is None else web_enabled

        self.settings = SettingsStore(cfg, config_path)
        self.store = StatusStore()
        self.probe = AppProbe()
        self.obs = ObsConnectionManager(
            self.store,
            self.settings,
            streaming_settle_s=cfg.STREAM_START_SETTLE_SECONDS,
        )
        self.capture = CaptureMonitor(
            self.obs,
            self.store,
            self.settings,
            poll_interval_s=cfg.CAPTURE_POLL_SECONDS,
            reconnect_timeout_s=cfg.CAPTURE_RECONNECT_TIMEOUT_SECONDS,
            reconnect_interval_s=cfg.CONNECT_RETRY_INTERVAL_SECONDS,
        )
        self.combo_sync = ComboDataSync(self.settings, self.store)
        self.stack = StackOrchestrator(
            self.store,
            self.obs,
            self.probe,
            self.settings,
            self.capture,
            self.combo_sync,
        )
        self.poller = StatusPoller(
            self.store,
            self.obs,
            self.probe,
            self.settings,
            capture=self.capture,
            interval_s=cfg.POLL_INTERVAL_SECONDS,
        )
        self.web: Optional[WebHud] = None
        if self.web_enabled:
            self.web = WebHud(cfg, self.store, self.settings, self.obs, self.stack, self.combo_sync)

        self.settings.add_listener(self._on_settings_changed)
        self._stop_event: Optional[asyncio.Event] = None

    def _on_settings_changed(self, changed: Set[str], _cfg: Config) -> None:
        if changed & CONNECTION_KEYS:
            log.info("OBS: connection settings changed, resetting connection")
            self.obs.invalidate()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
                pass

    async def run(self) -> None:
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        ts = dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        log.info("=== %s run started %s ===", APP_DISPLAY, ts)

        self.poller.start()
        if self.web is not None:
            try:
                await self.web.start()
            except OSError as e:
                log.error("WEB: could not start HUD on %s:%s (%s)", self.cfg.WEB_HUD_HOST, self.cfg.WEB_HUD_PORT, e)
                self.web = None

        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        # external apps keep running; only our own loops and sockets close
        self.poller.stop()
        self.capture.stop()
        if self.web is not None:
            await self.web.stop()
        self.obs.disconnect()
        ts = dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        log.info("=== %s run ended %s ===", APP_DISPLAY, ts)
