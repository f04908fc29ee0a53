"""Result objects returned across component boundaries, plus internal errors."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class FailureReason(str, enum.Enum):
    NOT_CONNECTED = "not_connected"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    ERROR = "error"
    NOT_RUNNING = "not_running"


@dataclass(frozen=True)
class OpResult:
    ok: bool
    message: str = ""
    reason: Optional[FailureReason] = None

    @classmethod
    def success(cls, message: str = "") -> "OpResult":
        return cls(True, message)

    @classmethod
    def failure(cls, message: str, reason: FailureReason = FailureReason.ERROR) -> "OpResult":
        return cls(False, message, reason)


@dataclass(frozen=True)
class StackResult:
    ok: bool
    message: str
    event_name: Optional[str] = None
    recording_folder: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "message": self.message,
            "event_name": self.event_name,
            "recording_folder": self.recording_folder,
            "warnings": list(self.warnings),
        }


# -----------------------------
# Internal errors (converted to results at public boundaries)
# -----------------------------

class FlippiStackError(Exception):
    pass


class LaunchError(FlippiStackError):
    pass


class ObsNotConnectedError(FlippiStackError):
    def __init__(self, message: str = "Not connected to OBS"):
        super().__init__(message)


class ObsRequestError(FlippiStackError):
    """OBS answered but rejected the request. Connection state is unaffected."""

    def __init__(self, request: str, detail: str):
        self.request = request
        self.detail = detail
        super().__init__(f"{request} failed: {detail}")


class ObsConnectionLostError(FlippiStackError):
    """Transport failure while talking to OBS; the session is marked disconnected."""

    def __init__(self, request: str, detail: str):
        self.request = request
        self.detail = detail
        super().__init__(f"Connection to OBS lost during {request}: {detail}")
