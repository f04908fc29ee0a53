"""
External app probe: "is X running" / "kill X" for the apps the stack drives.

Probe failures never raise. A missing or unreadable process table reads as
"not running", a failed kill reads as KillOutcome.FAILED, so the polling side
keeps working.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import List, Optional

import psutil

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalApp:
    label: str
    windows_name: str  # image name compared on Windows
    unix_pattern: str  # regex searched in the command line elsewhere


OBS = ExternalApp("OBS", "obs64.exe", "obs")
CLIPPI = ExternalApp("Project Clippi", "Project Clippi.exe", "project.clippi")
SLIPPI_LAUNCHER = ExternalApp("Slippi Launcher", "Slippi Launcher.exe", "slippi.launcher")
SLIPPI_DOLPHIN = ExternalApp("Slippi Dolphin", "Slippi Dolphin.exe", "slippi.dolphin")


class KillOutcome(str, enum.Enum):
    KILLED = "killed"
    NOT_RUNNING = "not_running"
    FAILED = "failed"


@dataclass(frozen=True)
class KillResult:
    outcome: KillOutcome
    message: str

    @property
    def killed(self) -> bool:
        return self.outcome is KillOutcome.KILLED


class AppProbe:
    def __init__(self, platform: Optional[str] = None, kill_wait_seconds: float = 8.0):
        self.platform = platform or sys.platform
        self.kill_wait_seconds = kill_wait_seconds

    def _windows(self) -> bool:
        return self.platform.startswith("win")

    def _matches(self, proc: psutil.Process, app: ExternalApp) -> bool:
        info = getattr(proc, "info", None) or {}
        if self._windows():
            name = info.get("name") or ""
            return name.lower() == app.windows_name.lower()
        cmdline = info.get("cmdline") or []
        haystack = " ".join(cmdline) if cmdline else (info.get("name") or "")
        return re.search(app.unix_pattern, haystack, re.IGNORECASE) is not None

    def find(self, app: ExternalApp) -> List[psutil.Process]:
        """Blocking process-table scan. Never returns this process."""
        own_pid = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                if proc.pid != own_pid and self._matches(proc, app):
                    found.append(proc)
            except (psutil.Error, OSError):
                continue
        return found

    def _is_running_sync(self, app: ExternalApp) -> bool:
        try:
            return bool(self.find(app))
        except (psutil.Error, OSError) as e:
            log.debug("PROBE: %s lookup failed (%s)", app.label, e)
            return False

    def _kill_sync(self, app: ExternalApp) -> KillResult:
        try:
            procs = self.find(app)
        except (psutil.Error, OSError) as e:
            return KillResult(KillOutcome.FAILED, f"Failed to kill {app.label}: {e}")
        if not procs:
            return KillResult(KillOutcome.NOT_RUNNING, f"{app.label} is not running")

        errors = []
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except (psutil.Error, OSError) as e:
                errors.append(str(e))

        try:
            _, alive = psutil.wait_procs(procs, timeout=self.kill_wait_seconds)
        except (psutil.Error, OSError) as e:
            return KillResult(KillOutcome.FAILED, f"Failed to kill {app.label}: {e}")

        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except (psutil.Error, OSError) as e:
                errors.append(str(e))

        if errors:
            return KillResult(KillOutcome.FAILED, f"Failed to kill {app.label}: {'; '.join(errors)}")
        if alive:
            return KillResult(KillOutcome.KILLED, f"{app.label} force-killed")
        return KillResult(KillOutcome.KILLED, f"{app.label} terminated successfully")

    async def is_running(self, app: ExternalApp) -> bool:
        return await asyncio.to_thread(self._is_running_sync, app)

    async def kill(self, app: ExternalApp) -> KillResult:
        result = await asyncio.to_thread(self._kill_sync, app)
        log.info("PROBE: %s", result.message)
        return result
