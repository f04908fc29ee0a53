"""
Status store: one process-wide CompositeStatus snapshot.

Snapshots are immutable. merge() builds the next snapshot from a partial
update, refreshes the touched groups' timestamps and notifies every
subscriber synchronously (even when nothing changed; consumers dedupe).
Everything runs on the event-loop thread, so a merge is never observed half
applied.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Mapping, Optional

log = logging.getLogger(__name__)


class SocketState(str, enum.Enum):
    UNKNOWN = "unknown"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"


class CaptureState(str, enum.Enum):
    UNCONFIGURED = "unconfigured"  # no source set, or stack not running
    MONITORING = "monitoring"  # polling, capture not yet seen
    ACTIVE = "active"  # non-black pixels found
    INACTIVE = "inactive"  # reserved for a lost-after-active signal; not produced yet


@dataclass(frozen=True)
class StreamerStatus:
    process_running: bool = False
    socket_state: SocketState = SocketState.UNKNOWN
    capture_state: CaptureState = CaptureState.UNCONFIGURED
    replay_buffer_active: bool = False
    recording: bool = False
    streaming: bool = False
    last_error: Optional[str] = None
    last_updated_at: float = 0.0


@dataclass(frozen=True)
class StackState:
    running: bool = False
    current_event_name: Optional[str] = None
    started_at: Optional[float] = None


@dataclass(frozen=True)
class ClipperStatus:
    process_running: bool = False
    obs_connected: Optional[bool] = None
    launcher_connected: Optional[bool] = None
    combo_data_linked: bool = False
    active_event_name: Optional[str] = None
    active_file_path: Optional[str] = None
    last_error: Optional[str] = None
    last_updated_at: float = 0.0


@dataclass(frozen=True)
class LauncherStatus:
    process_running: bool = False
    emulator_running: bool = False


@dataclass(frozen=True)
class CompositeStatus:
    streamer: StreamerStatus = field(default_factory=StreamerStatus)
    stack: StackState = field(default_factory=StackState)
    clipper: ClipperStatus = field(default_factory=ClipperStatus)
    launcher: LauncherStatus = field(default_factory=LauncherStatus)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        out = asdict(self)
        for group in out.values():
            for key, value in group.items():
                if isinstance(value, enum.Enum):
                    group[key] = value.value
        return out


GROUPS = tuple(f.name for f in fields(CompositeStatus))
_GROUP_FIELDS = {
    "streamer": {f.name for f in fields(StreamerStatus)},
    "stack": {f.name for f in fields(StackState)},
    "clipper": {f.name for f in fields(ClipperStatus)},
    "launcher": {f.name for f in fields(LauncherStatus)},
}

StatusListener = Callable[[CompositeStatus], None]
PartialStatus = Mapping[str, Mapping[str, Any]]


class StatusStore:
    def __init__(self, initial: Optional[CompositeStatus] = None, clock: Callable[[], float] = time.time):
        self._clock = clock
        if initial is None:
            now = clock()
            initial = CompositeStatus(
                streamer=StreamerStatus(last_updated_at=now),
                clipper=ClipperStatus(last_updated_at=now),
            )
        self._current = initial
        self._listeners: List[StatusListener] = []

    def get(self) -> CompositeStatus:
        return self._current

    def merge(self, partial: PartialStatus) -> CompositeStatus:
        current = self._current
        updates: Dict[str, Any] = {}
        for group, values in partial.items():
            if group not in _GROUP_FIELDS:
                raise KeyError(f"unknown status group: {group}")
            unknown = set(values) - _GROUP_FIELDS[group]
            if unknown:
                raise KeyError(f"unknown {group} field(s): {', '.join(sorted(unknown))}")

            prev = getattr(current, group)
            changes = dict(values)
            if "last_updated_at" in _GROUP_FIELDS[group]:
                # never moves backwards, even if the wall clock does
                changes["last_updated_at"] = max(self._clock(), prev.last_updated_at)
            updates[group] = replace(prev, **changes)

        self._current = replace(current, **updates)
        self._notify()
        return self._current

    def subscribe(self, fn: StatusListener) -> Callable[[], None]:
        self._listeners.append(fn)

        def _unsubscribe() -> None:
            if fn in self._listeners:
                self._listeners.remove(fn)

        return _unsubscribe

    def _notify(self) -> None:
        snapshot = self._current
        for fn in list(self._listeners):
            try:
                fn(snapshot)
            except Exception:
                log.exception("STATUS: subscriber failed")
