"""
Background poll loops that keep the status store in sync with the outside world.

Each loop ticks immediately on start and then every interval. A tick that is
still running when the next one is due makes that next one a no-op (no
queueing, no overlap). Ticks only merge into the store when what they observed
differs from what the store already holds.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from . import probe as apps
from .config import SettingsStore, clippi_status_file
from .obs_connection import ObsConnectionManager
from .probe import AppProbe
from .status import CaptureState, StatusStore

if TYPE_CHECKING:
    from .capture import CaptureMonitor

log = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[None]]


class PollLoop:
    """A fixed-interval ticker with a single in-flight guard."""

    def __init__(self, name: str, tick: Tick, interval_s: float = 3.0):
        self.name = name
        self.interval_s = interval_s
        self._tick = tick
        self._task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._in_flight = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll:{self.name}")

    def stop(self) -> None:
        for task in (self._task, self._tick_task):
            if task is not None and not task.done():
                task.cancel()
        self._task = None
        self._tick_task = None
        self._in_flight = False

    async def run_once(self) -> bool:
        """Run one tick now. Returns False when skipped because a tick is in flight."""
        if self._in_flight:
            return False
        self._in_flight = True
        try:
            await self._tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("POLL: %s tick failed", self.name)
        finally:
            self._in_flight = False
        return True

    async def _run(self) -> None:
        while True:
            if not self._in_flight:
                self._tick_task = asyncio.create_task(self.run_once(), name=f"poll:{self.name}:tick")
            await asyncio.sleep(self.interval_s)


@dataclass(frozen=True)
class ClippiConnectionStatus:
    obs_connected: bool
    slippi_connected: bool
    updated_at: float


def read_clippi_connection_status(path: str) -> Optional[ClippiConnectionStatus]:
    """Project Clippi's connection-status.json, or None when missing or malformed."""
    if not path:
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    obs_connected = data.get("obsConnected")
    slippi_connected = data.get("slippiConnected")
    updated_at = data.get("updatedAt")
    if not isinstance(obs_connected, bool) or not isinstance(slippi_connected, bool):
        return None
    if isinstance(updated_at, bool) or not isinstance(updated_at, (int, float)):
        return None
    return ClippiConnectionStatus(obs_connected, slippi_connected, float(updated_at))


class StatusPoller:
    """The four status loops: OBS process, OBS features, Clippi, Slippi."""

    def __init__(
        self,
        store: StatusStore,
        obs: ObsConnectionManager,
        probe: AppProbe,
        settings: SettingsStore,
        capture: Optional["CaptureMonitor"] = None,
        interval_s: float = 3.0,
    ):
        self._store = store
        self._obs = obs
        self._probe = probe
        self._settings = settings
        self._capture = capture
        self.loops: List[PollLoop] = [
            PollLoop("obs-process", self.tick_obs_process, interval_s),
            PollLoop("obs-features", self.tick_obs_features, interval_s),
            PollLoop("clippi", self.tick_clippi, interval_s),
            PollLoop("slippi", self.tick_slippi, interval_s),
        ]

    def start(self) -> None:
        for loop in self.loops:
            loop.start()
        log.info("POLL: started %d status loops", len(self.loops))

    def stop(self) -> None:
        for loop in self.loops:
            loop.stop()

    # -----------------------------
    # Ticks
    # -----------------------------
    async def tick_obs_process(self) -> None:
        running_now = await self._probe.is_running(apps.OBS)
        status = self._store.get()
        if running_now == status.streamer.process_running:
            return

        # socket_state is left to the connection manager
        self._store.merge({"streamer": {"process_running": running_now}})

        if not running_now and status.stack.running:
            self._handle_obs_exit()

    def _handle_obs_exit(self) -> None:
        cfg = self._settings.snapshot()
        if self._capture is not None:
            self._capture.stop()
        else:
            self._store.merge({"streamer": {"capture_state": CaptureState.UNCONFIGURED}})

        if cfg.OBS_EXIT_RESETS_STACK:
            log.warning("STACK: OBS exited while the stack was running; marking stack stopped")
            self._store.merge({"stack": {"running": False, "current_event_name": None, "started_at": None}})
        else:
            log.warning("STACK: OBS exited while the stack was running; capture monitoring halted")

    async def tick_obs_features(self) -> None:
        features = await self._obs.get_feature_status()
        if features is None:
            return
        current = self._store.get().streamer
        if (
            current.replay_buffer_active != features.replay_buffer_active
            or current.recording != features.recording
            or current.streaming != features.streaming
        ):
            self._store.merge({"streamer": features.as_status()})

    async def tick_clippi(self) -> None:
        running_now = await self._probe.is_running(apps.CLIPPI)

        obs_connected: Optional[bool] = None
        launcher_connected: Optional[bool] = None
        if running_now:
            path = clippi_status_file(self._settings.snapshot())
            conn = await asyncio.to_thread(read_clippi_connection_status, path)
            if conn is not None:
                obs_connected = conn.obs_connected
                launcher_connected = conn.slippi_connected

        prev = self._store.get().clipper
        if (
            running_now != prev.process_running
            or obs_connected != prev.obs_connected
            or launcher_connected != prev.launcher_connected
        ):
            self._store.merge({
                "clipper": {
                    "process_running": running_now,
                    "obs_connected": obs_connected,
                    "launcher_connected": launcher_connected,
                }
            })

    async def tick_slippi(self) -> None:
        launcher_running, dolphin_running = await asyncio.gather(
            self._probe.is_running(apps.SLIPPI_LAUNCHER),
            self._probe.is_running(apps.SLIPPI_DOLPHIN),
        )
        prev = self._store.get().launcher
        if launcher_running != prev.process_running or dolphin_running != prev.emulator_running:
            self._store.merge({
                "launcher": {"process_running": launcher_running, "emulator_running": dolphin_running}
            })
