"""Detached launch of the external GUI apps (OBS, Project Clippi, Slippi Launcher)."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .results import LaunchError

log = logging.getLogger(__name__)

# Variables from an embedding runtime that break a launched GUI app
# (Electron apps start as plain Node, or pick up the wrong Python).
SANITIZED_ENV_VARS = (
    "ELECTRON_RUN_AS_NODE",
    "ELECTRON_NO_ATTACH_CONSOLE",
    "ELECTRON_FORCE_IS_PACKAGED",
    "NODE_OPTIONS",
    "NODE_PATH",
    "PYTHONHOME",
    "PYTHONPATH",
    "PYTHONEXECUTABLE",
)


@dataclass(frozen=True)
class LaunchResult:
    pid: int
    exe_path: str
    args: List[str] = field(default_factory=list)


def clean_env(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    for key in SANITIZED_ENV_VARS:
        env.pop(key, None)
    return env


def _launch_sync(exe_path: str, args: List[str], cwd: Optional[str], env: Optional[Dict[str, str]]) -> LaunchResult:
    resolved = exe_path if os.path.isabs(exe_path) else os.path.abspath(exe_path)
    if not os.path.exists(resolved):
        raise LaunchError(f"Executable not found: {exe_path}")

    kwargs = {
        "cwd": cwd or None,
        "env": clean_env(env),
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if sys.platform.startswith("win"):
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen([resolved, *args], **kwargs)
    except OSError as e:
        raise LaunchError(f"Failed to launch {exe_path}: {e}") from e
    return LaunchResult(pid=proc.pid, exe_path=resolved, args=list(args))


async def launch_app(
    exe_path: str,
    args: Sequence[str] = (),
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> LaunchResult:
    """Start exe_path detached. Raises LaunchError if it is missing or cannot start."""
    result = await asyncio.to_thread(_launch_sync, exe_path, list(args), cwd, env)
    log.info("LAUNCH: started %s (pid %d)", os.path.basename(result.exe_path), result.pid)
    return result
