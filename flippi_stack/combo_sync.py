"""
Project Clippi combo-data link.

Clippi is configured once to write to <repo>/_ActiveClippiComboData/combodata.jsonl.
That path is a symlink we repoint at the current event's data/combodata.jsonl,
so clips land in the right event folder without touching Clippi's settings.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import SettingsStore, repo_root
from .results import OpResult
from .status import StatusStore

log = logging.getLogger(__name__)

ACTIVE_DIR_NAME = "_ActiveClippiComboData"
COMBO_FILE_NAME = "combodata.jsonl"


@dataclass(frozen=True)
class LinkStatus:
    linked: bool
    target_path: Optional[str]
    active_file_path: str
    error: Optional[str] = None


class ComboDataSync:
    def __init__(self, settings: SettingsStore, store: StatusStore):
        self._settings = settings
        self._store = store

    # -----------------------------
    # Paths
    # -----------------------------
    def _root(self) -> str:
        return repo_root(self._settings.snapshot())

    def active_combo_dir(self) -> str:
        return os.path.join(self._root(), ACTIVE_DIR_NAME)

    def active_combo_file(self) -> str:
        return os.path.join(self.active_combo_dir(), COMBO_FILE_NAME)

    def event_dir(self, event_name: str) -> str:
        return os.path.join(self._root(), "Event", event_name)

    def event_combo_file(self, event_name: str) -> str:
        return os.path.join(self.event_dir(event_name), "data", COMBO_FILE_NAME)

    # -----------------------------
    # Sync / clear
    # -----------------------------
    def _link_blocking(self, event_name: str) -> Tuple[bool, str]:
        event_dir = self.event_dir(event_name)
        target = self.event_combo_file(event_name)
        active = self.active_combo_file()

        if not os.path.isdir(event_dir):
            return False, f"Event folder does not exist: {event_dir}"

        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            if not os.path.exists(target):
                with open(target, "w", encoding="utf-8"):
                    pass
                log.info("CLIPPI: created empty %s", target)

            os.makedirs(self.active_combo_dir(), exist_ok=True)
            if os.path.lexists(active):
                os.remove(active)
        except OSError as e:
            return False, f"Failed to prepare combo data: {e}"

        try:
            os.symlink(target, active)
        except OSError as e:
            return False, f"Failed to create symlink: {e}"

        log.info("CLIPPI: symlink created: %s -> %s", active, target)
        return True, f"Clippi combodata linked to event: {event_name}"

    async def sync(self, event_name: str) -> OpResult:
        ok, message = await asyncio.to_thread(self._link_blocking, event_name)
        if not ok:
            log.error("CLIPPI: %s", message)
            self._store.merge({
                "clipper": {
                    "combo_data_linked": False,
                    "active_event_name": None,
                    "active_file_path": None,
                    "last_error": message,
                }
            })
            return OpResult.failure(message)

        self._store.merge({
            "clipper": {
                "combo_data_linked": True,
                "active_event_name": event_name,
                "active_file_path": self.active_combo_file(),
                "last_error": None,
            }
        })
        return OpResult.success(message)

    def _unlink_blocking(self) -> Optional[str]:
        active = self.active_combo_file()
        if not os.path.lexists(active):
            return None
        try:
            os.remove(active)
        except OSError as e:
            return f"Failed to remove {active}: {e}"
        log.info("CLIPPI: removed active combo data link")
        return None

    async def clear(self) -> OpResult:
        error = await asyncio.to_thread(self._unlink_blocking)
        self._store.merge({
            "clipper": {
                "combo_data_linked": False,
                "active_event_name": None,
                "active_file_path": None,
                "last_error": error,
            }
        })
        if error:
            log.warning("CLIPPI: %s", error)
            return OpResult.failure(error)
        return OpResult.success("Combo data link cleared")

    # -----------------------------
    # Status
    # -----------------------------
    def _link_status_blocking(self) -> LinkStatus:
        active = self.active_combo_file()
        try:
            target = os.readlink(active)
        except OSError:
            if os.path.exists(active):
                return LinkStatus(False, None, active, "Active file exists but is not a symlink")
            return LinkStatus(False, None, active)

        if not os.path.isabs(target):
            target = os.path.join(os.path.dirname(active), target)
        if os.path.exists(target):
            return LinkStatus(True, target, active)
        return LinkStatus(False, target, active, "Symlink target no longer exists")

    async def link_status(self) -> LinkStatus:
        return await asyncio.to_thread(self._link_status_blocking)
