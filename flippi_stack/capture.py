"""
Game-capture monitor.

While the stack runs, grabs a small screenshot of the configured OBS source
every few seconds and decides whether the game is actually on screen. A
capture card with nothing plugged in (or Dolphin minimized) shows up as a
solid black frame, so "any real brightness in more than a handful of pixels"
is enough to call it captured.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import re
from typing import Optional

from PIL import Image, ImageChops

from .config import SettingsStore
from .obs_connection import ObsConnectionManager
from .pollers import PollLoop
from .results import FlippiStackError
from .status import CaptureState, StatusStore

log = logging.getLogger(__name__)

NON_BLACK_THRESHOLD = 10  # any RGB channel above this counts as lit
NON_BLACK_RATIO = 0.001  # more than 0.1% lit pixels = captured
SCREENSHOT_WIDTH = 160
SCREENSHOT_HEIGHT = 90

_DATA_URI_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


def decode_screenshot(image_data: str) -> bytes:
    raw = _DATA_URI_PREFIX.sub("", (image_data or "").strip())
    return base64.b64decode(raw)


def non_black_ratio(img: Image.Image) -> float:
    rgb = img.convert("RGB")
    total = rgb.width * rgb.height
    if total == 0:
        return 0.0
    r, g, b = rgb.split()
    brightest = ImageChops.lighter(ImageChops.lighter(r, g), b)
    lit = brightest.point(lambda v: 255 if v > NON_BLACK_THRESHOLD else 0)
    return lit.histogram()[255] / total


def analyze_screenshot(image_data: str) -> bool:
    """True when a base64 (or data URI) image has enough non-black pixels."""
    with Image.open(io.BytesIO(decode_screenshot(image_data))) as img:
        return non_black_ratio(img) > NON_BLACK_RATIO


class CaptureMonitor:
    def __init__(
        self,
        obs: ObsConnectionManager,
        store: StatusStore,
        settings: SettingsStore,
        poll_interval_s: float = 3.0,
        reconnect_timeout_s: float = 5.0,
        reconnect_interval_s: float = 0.5,
    ):
        self._obs = obs
        self._store = store
        self._settings = settings
        self.reconnect_timeout_s = reconnect_timeout_s
        self.reconnect_interval_s = reconnect_interval_s
        self._loop = PollLoop("capture", self.tick, poll_interval_s)

    @property
    def running(self) -> bool:
        return self._loop.running

    def _set_state(self, state: CaptureState) -> None:
        if self._store.get().streamer.capture_state != state:
            log.info("CAPTURE: %s", state.value)
            self._store.merge({"streamer": {"capture_state": state}})

    def start(self) -> None:
        self._loop.stop()
        source = self._settings.snapshot().OBS_GAME_CAPTURE_SOURCE.strip()
        self._set_state(CaptureState.MONITORING if source else CaptureState.UNCONFIGURED)
        self._loop.start()

    def stop(self) -> None:
        self._loop.stop()
        self._set_state(CaptureState.UNCONFIGURED)

    async def check_capture(self, source_name: str) -> Optional[bool]:
        """True = captured, False = black frame, None = could not tell."""
        if not self._obs.is_connected:
            return None
        try:
            image_data = await self._obs.get_source_screenshot(source_name, SCREENSHOT_WIDTH, SCREENSHOT_HEIGHT)
        except FlippiStackError as e:
            log.warning("CAPTURE: screenshot of '%s' failed (%s)", source_name, e)
            return None
        if not image_data:
            return None
        try:
            return await asyncio.to_thread(analyze_screenshot, image_data)
        except (OSError, ValueError) as e:
            # PIL.UnidentifiedImageError is an OSError, bad base64 a ValueError
            log.warning("CAPTURE: could not decode screenshot of '%s' (%s)", source_name, e)
            return None

    async def tick(self) -> None:
        cfg = await self._settings.get()
        source = cfg.OBS_GAME_CAPTURE_SOURCE.strip()
        if not source:
            self._set_state(CaptureState.UNCONFIGURED)
            return

        if not self._store.get().stack.running:
            return

        if not self._obs.is_connected:
            res = await self._obs.ensure_connected(self.reconnect_timeout_s, self.reconnect_interval_s)
            if not res.ok:
                return

        captured = await self.check_capture(source)
        if captured is True:
            self._set_state(CaptureState.ACTIVE)
        elif captured is False:
            self._set_state(CaptureState.MONITORING)
        elif not self._obs.is_connected:
            log.warning("CAPTURE: connection lost during screenshot, will retry")

    async def run_once(self) -> bool:
        return await self._loop.run_once()
