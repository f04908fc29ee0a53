"""
Stack orchestrator: start / stop / switch the whole recording stack for an event.

The "stack" is OBS (recording into <repo>/Event/<event>/videos), Project
Clippi and Slippi Launcher, plus the capture monitor and the combo-data link.
Only one of these operations runs at a time; a second request while one is in
progress is refused rather than queued.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from . import probe as apps
from .capture import CaptureMonitor
from .combo_sync import ComboDataSync
from .config import (
    SettingsStore,
    clippi_exe_path,
    obs_exe_path,
    slippi_launcher_exe_path,
)
from .events import event_videos_dir
from .launcher import LaunchResult, launch_app
from .obs_connection import ObsConnectionManager
from .probe import AppProbe, ExternalApp, KillOutcome
from .results import FailureReason, LaunchError, OpResult, StackResult
from .status import StatusStore

log = logging.getLogger(__name__)

Launcher = Callable[..., Awaitable[LaunchResult]]
Sleep = Callable[[float], Awaitable[None]]

BUSY_MESSAGE = "Another stack operation is in progress"


class StackPhase(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    SWITCHING = "switching"
    RELAUNCHING = "relaunching"


class StackOrchestrator:
    def __init__(
        self,
        store: StatusStore,
        obs: ObsConnectionManager,
        probe: AppProbe,
        settings: SettingsStore,
        capture: CaptureMonitor,
        combo_sync: ComboDataSync,
        launcher: Launcher = launch_app,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._obs = obs
        self._probe = probe
        self._settings = settings
        self._capture = capture
        self._combo = combo_sync
        self._launch = launcher
        self._sleep = sleep
        self._clock = clock
        self._op: Optional[StackPhase] = None

    @property
    def phase(self) -> StackPhase:
        if self._op is not None:
            return self._op
        return StackPhase.RUNNING if self._store.get().stack.running else StackPhase.STOPPED

    @property
    def busy(self) -> bool:
        return self._op is not None

    async def _exclusive(self, phase: StackPhase, op: Callable[[], Awaitable[StackResult]],
                         event_name: Optional[str] = None) -> StackResult:
        if self._op is not None:
            log.warning("STACK: %s refused, %s in progress", phase.value, self._op.value)
            return StackResult(False, BUSY_MESSAGE, event_name)
        self._op = phase
        try:
            return await op()
        finally:
            self._op = None

    # -----------------------------
    # Helpers
    # -----------------------------
    async def _ensure_folder(self, folder: str) -> Optional[str]:
        try:
            await asyncio.to_thread(os.makedirs, folder, exist_ok=True)
        except OSError as e:
            return f"Could not create recording folder {folder}: {e}"
        return None

    async def _launch_exe(self, app: ExternalApp, exe_path: str) -> Optional[str]:
        try:
            await self._launch(exe_path, [], os.path.dirname(exe_path) or None)
        except LaunchError as e:
            log.error("STACK: could not launch %s (%s)", app.label, e)
            return f"Could not launch {app.label}: {e}"
        return None

    async def _launch_if_needed(self, app: ExternalApp, exe_path: str, warnings: List[str]) -> None:
        if await self._probe.is_running(app):
            log.info("STACK: %s already running", app.label)
            return
        err = await self._launch_exe(app, exe_path)
        if err:
            warnings.append(err)

    async def _sync_combo(self, event_name: str, warnings: List[str]) -> None:
        res = await self._combo.sync(event_name)
        if not res.ok:
            log.warning("STACK: combo data sync failed (%s)", res.message)
            warnings.append(f"Combo data sync failed: {res.message}")

    async def _stop_outputs(self, steps: Sequence[Callable[[], Awaitable[OpResult]]], warnings: List[str]) -> None:
        for step in steps:
            try:
                res = await step()
            except Exception as e:
                log.exception("STACK: %s raised", getattr(step, "__name__", "stop step"))
                warnings.append(f"{getattr(step, '__name__', 'stop step')}: {e}")
                continue
            # nothing to stop when OBS is not connected
            if not res.ok and res.reason is not FailureReason.NOT_CONNECTED:
                warnings.append(res.message)

    def _mark_running(self, event_name: str) -> None:
        self._store.merge({"stack": {"running": True, "current_event_name": event_name, "started_at": self._clock()}})

    # -----------------------------
    # Start
    # -----------------------------
    async def start(self, event_name: str) -> StackResult:
        return await self._exclusive(StackPhase.STARTING, lambda: self._start(event_name), event_name)

    async def _start(self, event_name: str) -> StackResult:
        event_name = (event_name or "").strip()
        if not event_name:
            return StackResult(False, "No event selected")

        cfg = await self._settings.get()
        folder = event_videos_dir(cfg, event_name)
        warnings: List[str] = []
        log.info("STACK: starting for event %s", event_name)

        err = await self._ensure_folder(folder)
        if err:
            return StackResult(False, err, event_name, folder)

        obs_was_running = await self._probe.is_running(apps.OBS)
        if not obs_was_running:
            # a session left over from a crashed OBS would look connected
            self._obs.drop_session("OBS is not running")
            exe = obs_exe_path(cfg)
            err = await self._launch_exe(apps.OBS, exe)
            if err:
                return StackResult(False, err, event_name, folder)
        connect_timeout = cfg.OBS_WARM_START_TIMEOUT_SECONDS if obs_was_running else cfg.OBS_COLD_START_TIMEOUT_SECONDS

        await self._launch_if_needed(apps.CLIPPI, clippi_exe_path(cfg), warnings)
        await self._launch_if_needed(apps.SLIPPI_LAUNCHER, slippi_launcher_exe_path(cfg), warnings)

        res = await self._obs.configure_for_event(
            folder,
            enable_replay_buffer=cfg.OBS_ENABLE_REPLAY_BUFFER,
            start_recording=cfg.OBS_START_RECORDING,
            start_streaming=cfg.OBS_START_STREAMING,
            connect_timeout_s=connect_timeout,
            interval_s=cfg.CONNECT_RETRY_INTERVAL_SECONDS,
        )
        if not res.ok:
            log.error("STACK: start failed (%s)", res.message)
            return StackResult(False, f"OBS configuration failed: {res.message}", event_name, folder, warnings)

        self._mark_running(event_name)
        await self._sync_combo(event_name, warnings)
        self._capture.start()

        log.info("STACK: running for %s (recording to %s)", event_name, folder)
        return StackResult(True, f"Recording stack started for {event_name}", event_name, folder, warnings)

    # -----------------------------
    # Stop
    # -----------------------------
    async def stop(self) -> StackResult:
        return await self._exclusive(StackPhase.STOPPING, self._stop)

    async def _stop(self) -> StackResult:
        prev_event = self._store.get().stack.current_event_name
        warnings: List[str] = []
        log.info("STACK: stopping")

        await self._stop_outputs(
            (self._obs.stop_replay_buffer, self._obs.stop_recording, self._obs.stop_streaming),
            warnings,
        )

        for app in (apps.OBS, apps.CLIPPI, apps.SLIPPI_LAUNCHER):
            try:
                killed = await self._probe.kill(app)
            except Exception as e:
                log.exception("STACK: killing %s raised", app.label)
                warnings.append(f"Failed to kill {app.label}: {e}")
                continue
            if killed.outcome is KillOutcome.FAILED:
                warnings.append(killed.message)
            elif app is apps.OBS and killed.killed:
                self._obs.drop_session("OBS closed by stop")

        self._capture.stop()

        try:
            cleared = await self._combo.clear()
            if not cleared.ok:
                warnings.append(cleared.message)
        except Exception as e:
            log.exception("STACK: clearing combo data raised")
            warnings.append(f"Failed to clear combo data: {e}")

        self._store.merge({"stack": {"running": False, "current_event_name": None, "started_at": None}})

        if warnings:
            for w in warnings:
                log.warning("STACK: %s", w)
            return StackResult(True, f"Recording stack stopped with {len(warnings)} warning(s)", prev_event, None, warnings)
        return StackResult(True, "Recording stack stopped", prev_event)

    # -----------------------------
    # Switch
    # -----------------------------
    async def switch_event(self, event_name: str) -> StackResult:
        if not self._store.get().stack.running:
            return await self.start(event_name)
        return await self._exclusive(StackPhase.SWITCHING, lambda: self._switch(event_name), event_name)

    async def _switch(self, event_name: str) -> StackResult:
        event_name = (event_name or "").strip()
        if not event_name:
            return StackResult(False, "No event selected")
        if not self._store.get().stack.running:
            return await self._start(event_name)

        cfg = await self._settings.get()
        folder = event_videos_dir(cfg, event_name)
        warnings: List[str] = []
        log.info("STACK: switching to %s", event_name)

        # streaming keeps running across events
        await self._stop_outputs((self._obs.stop_replay_buffer, self._obs.stop_recording), warnings)

        # let OBS finish writing and release the previous file
        await self._sleep(cfg.SWITCH_SETTLE_SECONDS)

        err = await self._ensure_folder(folder)
        if err:
            return StackResult(False, err, event_name, folder, warnings)

        res = await self._obs.configure_for_event(
            folder,
            enable_replay_buffer=cfg.OBS_ENABLE_REPLAY_BUFFER,
            start_recording=cfg.OBS_START_RECORDING,
            start_streaming=False,
            connect_timeout_s=cfg.OBS_WARM_START_TIMEOUT_SECONDS,
            interval_s=cfg.CONNECT_RETRY_INTERVAL_SECONDS,
        )
        if not res.ok:
            log.error("STACK: switch to %s failed (%s)", event_name, res.message)
            return StackResult(False, f"Switch to {event_name} failed: {res.message}", event_name, folder, warnings)

        self._mark_running(event_name)
        await self._sync_combo(event_name, warnings)

        log.info("STACK: switched to %s", event_name)
        return StackResult(True, f"Switched to {event_name}", event_name, folder, warnings)

    # -----------------------------
    # Relaunch
    # -----------------------------
    async def relaunch_clipper(self) -> StackResult:
        return await self._exclusive(StackPhase.RELAUNCHING, self._relaunch_clipper)

    async def _relaunch_clipper(self) -> StackResult:
        stack = self._store.get().stack
        if not stack.running:
            return StackResult(False, "Stack is not running")
        event_name = stack.current_event_name
        if await self._probe.is_running(apps.CLIPPI):
            return StackResult(True, "Project Clippi is already running", event_name)

        cfg = await self._settings.get()
        err = await self._launch_exe(apps.CLIPPI, clippi_exe_path(cfg))
        if err:
            return StackResult(False, err, event_name)

        warnings: List[str] = []
        if event_name:
            await self._sync_combo(event_name, warnings)
        return StackResult(True, "Project Clippi relaunched", event_name, None, warnings)

    async def relaunch_launcher(self) -> StackResult:
        return await self._exclusive(StackPhase.RELAUNCHING, self._relaunch_launcher)

    async def _relaunch_launcher(self) -> StackResult:
        stack = self._store.get().stack
        if not stack.running:
            return StackResult(False, "Stack is not running")
        if await self._probe.is_running(apps.SLIPPI_LAUNCHER):
            return StackResult(True, "Slippi Launcher is already running", stack.current_event_name)

        cfg = await self._settings.get()
        err = await self._launch_exe(apps.SLIPPI_LAUNCHER, slippi_launcher_exe_path(cfg))
        if err:
            return StackResult(False, err, stack.current_event_name)
        return StackResult(True, "Slippi Launcher relaunched", stack.current_event_name)

    async def relaunch_obs(self) -> StackResult:
        return await self._exclusive(StackPhase.RELAUNCHING, self._relaunch_obs)

    async def _relaunch_obs(self) -> StackResult:
        stack = self._store.get().stack
        if not stack.running:
            return StackResult(False, "Stack is not running")
        event_name = stack.current_event_name
        if await self._probe.is_running(apps.OBS):
            return StackResult(True, "OBS is already running", event_name)

        cfg = await self._settings.get()
        self._obs.drop_session("OBS is not running")
        err = await self._launch_exe(apps.OBS, obs_exe_path(cfg))
        if err:
            return StackResult(False, err, event_name)

        folder = event_videos_dir(cfg, event_name) if event_name else None
        if folder:
            res = await self._obs.configure_for_event(
                folder,
                enable_replay_buffer=cfg.OBS_ENABLE_REPLAY_BUFFER,
                start_recording=cfg.OBS_START_RECORDING,
                start_streaming=False,
                connect_timeout_s=cfg.OBS_COLD_START_TIMEOUT_SECONDS,
                interval_s=cfg.CONNECT_RETRY_INTERVAL_SECONDS,
            )
        else:
            res = await self._obs.ensure_connected(cfg.OBS_COLD_START_TIMEOUT_SECONDS, cfg.CONNECT_RETRY_INTERVAL_SECONDS)
        if not res.ok:
            return StackResult(False, f"OBS relaunched but not configured: {res.message}", event_name, folder)

        self._capture.start()
        return StackResult(True, "OBS relaunched", event_name, folder)
