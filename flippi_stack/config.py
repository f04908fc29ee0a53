"""
Configuration for the Flippi stack control core.

Defaults live in the Config dataclass below. Operator changes are stored as a
JSON overrides file and applied on top of the defaults at startup (and at
runtime through SettingsStore.update).
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import os
import sys
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

log = logging.getLogger(__name__)


@dataclass
class Config:
    """Configuration for the Flippi stack."""

    # ----------------------------
    # OBS CONNECTION
    # ----------------------------
    OBS_HOST: str = "127.0.0.1"
    OBS_PORT: int = 4455
    OBS_PASSWORD: str = ""
    OBS_REQUEST_TIMEOUT_SECONDS: float = 5.0

    # ----------------------------
    # OBS RECORDING BEHAVIOUR
    # ----------------------------
    OBS_GAME_CAPTURE_SOURCE: str = ""
    OBS_ENABLE_REPLAY_BUFFER: bool = True
    OBS_START_RECORDING: bool = False
    OBS_START_STREAMING: bool = False

    # ----------------------------
    # APPLICATION PATHS (blank = platform default)
    # ----------------------------
    REPO_ROOT: str = ""
    OBS_EXE_PATH: str = ""
    CLIPPI_EXE_PATH: str = ""
    SLIPPI_LAUNCHER_EXE_PATH: str = ""
    CLIPPI_STATUS_FILE: str = ""

    # ----------------------------
    # TIMING
    # ----------------------------
    POLL_INTERVAL_SECONDS: float = 3.0
    CAPTURE_POLL_SECONDS: float = 3.0
    CAPTURE_RECONNECT_TIMEOUT_SECONDS: float = 5.0
    CONNECT_TIMEOUT_SECONDS: float = 20.0
    CONNECT_RETRY_INTERVAL_SECONDS: float = 0.5
    OBS_COLD_START_TIMEOUT_SECONDS: float = 30.0
    OBS_WARM_START_TIMEOUT_SECONDS: float = 10.0
    STREAM_START_SETTLE_SECONDS: float = 3.0
    SWITCH_SETTLE_SECONDS: float = 0.5

    # ----------------------------
    # POLICY
    # ----------------------------
    # When OBS disappears while the stack runs: False = reset capture state and
    # halt capture polling only, True = also mark the whole stack stopped.
    OBS_EXIT_RESETS_STACK: bool = False

    # ----------------------------
    # LOGGING
    # ----------------------------
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE_ENABLED: bool = True
    LOG_RUN_FILE_PREFIX: str = "flippi_stack"
    LOG_DIR: str = ""
    LOG_RETENTION_COUNT: int = 30
    LOG_BUFFER_LINES: int = 400

    # ----------------------------
    # WEB HUD (status bridge)
    # ----------------------------
    WEB_HUD_ENABLED: bool = True
    WEB_HUD_HOST: str = "127.0.0.1"
    WEB_HUD_PORT: int = 8765
    WEB_HUD_TOKEN: str = ""
    WEB_HUD_LOG_LINES: int = 30


DEFAULT_CFG = Config()

# Changing any of these invalidates the OBS connection (and clears an auth latch).
CONNECTION_KEYS = frozenset({"OBS_HOST", "OBS_PORT", "OBS_PASSWORD"})

CFG_OVERRIDE_FILENAME = "config_overrides.json"


def config_keys() -> List[str]:
    return [f.name for f in fields(Config)]


# -----------------------------
# Platform defaults
# -----------------------------

def _is_windows() -> bool:
    return sys.platform.startswith("win")


def _is_macos() -> bool:
    return sys.platform == "darwin"


def repo_root(cfg: Config) -> str:
    if cfg.REPO_ROOT.strip():
        return os.path.expanduser(cfg.REPO_ROOT.strip())
    return os.path.join(os.path.expanduser("~"), "project-flippi")


def obs_exe_path(cfg: Config) -> str:
    if cfg.OBS_EXE_PATH.strip():
        return cfg.OBS_EXE_PATH.strip()
    if _is_windows():
        program_files = os.environ.get("ProgramFiles") or r"C:\Program Files"
        return os.path.join(program_files, "obs-studio", "bin", "64bit", "obs64.exe")
    if _is_macos():
        return "/Applications/OBS.app/Contents/MacOS/OBS"
    return "/usr/bin/obs"


def clippi_exe_path(cfg: Config) -> str:
    if cfg.CLIPPI_EXE_PATH.strip():
        return cfg.CLIPPI_EXE_PATH.strip()
    if _is_windows():
        local = os.environ.get("LOCALAPPDATA") or os.path.expanduser(r"~\AppData\Local")
        return os.path.join(local, "Programs", "project-clippi", "Project Clippi.exe")
    if _is_macos():
        return "/Applications/Project Clippi.app/Contents/MacOS/Project Clippi"
    return os.path.join(os.path.expanduser("~"), "Applications", "Project-Clippi.AppImage")


def slippi_launcher_exe_path(cfg: Config) -> str:
    if cfg.SLIPPI_LAUNCHER_EXE_PATH.strip():
        return cfg.SLIPPI_LAUNCHER_EXE_PATH.strip()
    if _is_windows():
        local = os.environ.get("LOCALAPPDATA") or os.path.expanduser(r"~\AppData\Local")
        return os.path.join(local, "Programs", "slippi-launcher", "Slippi Launcher.exe")
    if _is_macos():
        return "/Applications/Slippi Launcher.app/Contents/MacOS/Slippi Launcher"
    return os.path.join(os.path.expanduser("~"), "Applications", "Slippi-Launcher.AppImage")


def clippi_status_file(cfg: Config) -> str:
    if cfg.CLIPPI_STATUS_FILE.strip():
        return cfg.CLIPPI_STATUS_FILE.strip()
    if _is_windows():
        app_data = os.environ.get("APPDATA") or os.path.expanduser(r"~\AppData\Roaming")
    elif _is_macos():
        app_data = os.path.join(os.path.expanduser("~"), "Library", "Application Support")
    else:
        app_data = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(app_data, "Project Clippi", "connection-status.json")


# -----------------------------
# Overrides file
# -----------------------------

def load_overrides_file(path: str) -> dict:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        log.warning("CONFIG: could not read overrides %s (%s)", path, e)
        return {}
    if isinstance(data, dict) and isinstance(data.get("overrides"), dict):
        return data["overrides"]
    if isinstance(data, dict):
        # legacy flat dict
        return data
    return {}


def save_overrides_file(overrides: dict, path: str) -> None:
    payload = {
        "version": 1,
        "saved_utc": dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds"),
        "overrides": overrides or {},
    }
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
    os.replace(tmp, path)


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(f"not a boolean: {value!r}")
        return bool(value)
    if isinstance(current, int):
        if isinstance(value, bool):
            raise ValueError(f"not an integer: {value!r}")
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        if value is None:
            return ""
        return str(value)
    raise ValueError(f"unsupported config type {type(current).__name__}")


def apply_overrides(cfg: Config, overrides: Dict[str, Any]) -> List[str]:
    """Apply known keys onto cfg in place. Returns the keys that were applied."""
    applied: List[str] = []
    if not overrides:
        return applied
    for key, value in overrides.items():
        if not hasattr(cfg, key):
            log.warning("CONFIG: ignoring unknown key %s", key)
            continue
        try:
            setattr(cfg, key, _coerce(getattr(cfg, key), value))
        except (TypeError, ValueError) as e:
            log.warning("CONFIG: ignoring %s=%r (%s)", key, value, e)
            continue
        applied.append(key)
    return applied


def load_config(path: str = "") -> Config:
    cfg = Config()
    apply_overrides(cfg, load_overrides_file(path))
    return cfg


def diff_keys(old: Config, new: Config, keys: Optional[Iterable[str]] = None) -> Set[str]:
    names = list(keys) if keys is not None else config_keys()
    return {k for k in names if getattr(old, k) != getattr(new, k)}


# -----------------------------
# Settings provider
# -----------------------------

SettingsListener = Callable[[Set[str], Config], None]


class SettingsStore:
    """Read-mostly settings source for the core.

    get() hands out copies, so callers never observe a half-applied update.
    update() validates, persists the operator's overrides and tells listeners
    which keys actually changed.
    """

    def __init__(self, cfg: Optional[Config] = None, path: str = ""):
        self._cfg = cfg if cfg is not None else Config()
        self.path = path
        self._listeners: List[SettingsListener] = []

    def snapshot(self) -> Config:
        return replace(self._cfg)

    async def get(self) -> Config:
        return self.snapshot()

    def add_listener(self, fn: SettingsListener) -> Callable[[], None]:
        self._listeners.append(fn)

        def _remove() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return _remove

    async def update(self, changes: Dict[str, Any]) -> Config:
        updated = replace(self._cfg)
        applied = apply_overrides(updated, changes or {})
        changed = diff_keys(self._cfg, updated, applied)
        self._cfg = updated

        if self.path and applied:
            try:
                await asyncio.to_thread(self._persist, {k: getattr(updated, k) for k in applied})
            except OSError as e:
                log.error("CONFIG: could not save overrides to %s (%s)", self.path, e)

        if changed:
            log.info("CONFIG: updated %s", ", ".join(sorted(changed)))
            for fn in list(self._listeners):
                try:
                    fn(changed, self.snapshot())
                except Exception:
                    log.exception("CONFIG: settings listener failed")
        return self.snapshot()

    def _persist(self, values: Dict[str, Any]) -> None:
        overrides = load_overrides_file(self.path)
        overrides.update(values)
        save_overrides_file(overrides, self.path)
