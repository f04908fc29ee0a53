from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import pytest

# Keep `import flippi_stack` working when running `pytest` from the repo root.
_repo_root = str(Path(__file__).resolve().parents[1])
if _repo_root not in sys.path:
    sys.path.insert(0, _repo_root)

from flippi_stack import probe as apps  # noqa: E402
from flippi_stack.config import Config, SettingsStore  # noqa: E402
from flippi_stack.launcher import LaunchResult  # noqa: E402
from flippi_stack.obs_connection import ObsConnectionManager  # noqa: E402
from flippi_stack.probe import ExternalApp, KillOutcome, KillResult  # noqa: E402
from flippi_stack.results import LaunchError, OpResult  # noqa: E402
from flippi_stack.status import StatusStore  # noqa: E402


# -----------------------------
# OBS
# -----------------------------

class FakeObsClient:
    """Stands in for obsws_python.ReqClient. Records every request by name."""

    def __init__(self):
        self.calls: List[str] = []
        self.fail: Dict[str, Exception] = {}
        self.replay_buffer = False
        self.recording = False
        self.streaming = False
        self.record_directory = ""
        self.ignore_record_directory = False
        self.stream_fails = False
        self.inputs = ["Game Capture", "Webcam"]
        self.image_data: Optional[str] = None
        self.disconnected = False

    def _hit(self, name: str) -> None:
        self.calls.append(name)
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def get_version(self):
        self._hit("get_version")
        return SimpleNamespace(obs_version="30.2.0")

    def set_record_directory(self, recordDirectory):
        self._hit("set_record_directory")
        if not self.ignore_record_directory:
            self.record_directory = recordDirectory

    def get_record_directory(self):
        self._hit("get_record_directory")
        return SimpleNamespace(record_directory=self.record_directory)

    def get_replay_buffer_status(self):
        self._hit("get_replay_buffer_status")
        return SimpleNamespace(output_active=self.replay_buffer)

    def start_replay_buffer(self):
        self._hit("start_replay_buffer")
        self.replay_buffer = True

    def stop_replay_buffer(self):
        self._hit("stop_replay_buffer")
        self.replay_buffer = False

    def get_record_status(self):
        self._hit("get_record_status")
        return SimpleNamespace(output_active=self.recording, output_paused=False)

    def start_record(self):
        self._hit("start_record")
        self.recording = True

    def stop_record(self):
        self._hit("stop_record")
        self.recording = False

    def get_stream_status(self):
        self._hit("get_stream_status")
        return {"outputActive": self.streaming}

    def start_stream(self):
        self._hit("start_stream")
        if not self.stream_fails:
            self.streaming = True

    def stop_stream(self):
        self._hit("stop_stream")
        self.streaming = False

    def get_input_list(self, kind=None):
        self._hit("get_input_list")
        return SimpleNamespace(inputs=[{"inputName": n, "inputKind": "game_capture"} for n in self.inputs])

    def get_source_screenshot(self, name, img_format, width, height, quality):
        self._hit("get_source_screenshot")
        return SimpleNamespace(image_data=self.image_data)

    def disconnect(self):
        self.disconnected = True


class FakeObsFactory:
    """client_factory for ObsConnectionManager. Counts connect attempts."""

    def __init__(self, client: Optional[FakeObsClient] = None, delay: float = 0.0):
        self.client = client or FakeObsClient()
        self.delay = delay
        self.always: Optional[Exception] = None
        self.errors: List[Exception] = []
        self.attempts = 0
        self.args: List[tuple] = []

    def __call__(self, host, port, password, timeout):
        self.attempts += 1
        self.args.append((host, port, password, timeout))
        if self.delay:
            time.sleep(self.delay)
        if self.always is not None:
            raise self.always
        if self.errors:
            raise self.errors.pop(0)
        return self.client


# -----------------------------
# Processes
# -----------------------------

class FakeProbe:
    def __init__(self):
        self.running: Set[str] = set()
        self.fail_kill: Set[str] = set()
        self.killed: List[str] = []

    def set_running(self, app: ExternalApp, running: bool = True) -> None:
        if running:
            self.running.add(app.label)
        else:
            self.running.discard(app.label)

    async def is_running(self, app: ExternalApp) -> bool:
        return app.label in self.running

    async def kill(self, app: ExternalApp) -> KillResult:
        if app.label in self.fail_kill:
            return KillResult(KillOutcome.FAILED, f"Failed to kill {app.label}: access denied")
        if app.label not in self.running:
            return KillResult(KillOutcome.NOT_RUNNING, f"{app.label} is not running")
        self.running.discard(app.label)
        self.killed.append(app.label)
        return KillResult(KillOutcome.KILLED, f"{app.label} terminated successfully")


class FakeLauncher:
    """Async launch_app replacement; launching an exe marks its app running in the probe."""

    def __init__(self, probe: FakeProbe, apps_by_exe: Dict[str, ExternalApp]):
        self.probe = probe
        self.apps_by_exe = apps_by_exe
        self.launched: List[tuple] = []
        self.fail: Set[str] = set()

    async def __call__(self, exe_path, args=(), cwd=None, env=None) -> LaunchResult:
        if exe_path in self.fail:
            raise LaunchError(f"Executable not found: {exe_path}")
        self.launched.append((exe_path, list(args), cwd))
        app = self.apps_by_exe.get(exe_path)
        if app is not None:
            self.probe.set_running(app)
        return LaunchResult(pid=1000 + len(self.launched), exe_path=exe_path, args=list(args))

    def exes(self) -> List[str]:
        return [exe for exe, _, _ in self.launched]


class FakeCapture:
    def __init__(self):
        self.started = 0
        self.stopped = 0

    def start(self) -> None:
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1


class FakeComboSync:
    def __init__(self):
        self.synced: List[str] = []
        self.cleared = 0
        self.sync_result = OpResult.success("linked")

    async def sync(self, event_name: str) -> OpResult:
        self.synced.append(event_name)
        return self.sync_result

    async def clear(self) -> OpResult:
        self.cleared += 1
        return OpResult.success("cleared")


class FakeSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


# -----------------------------
# Fixtures
# -----------------------------

OBS_EXE = os.path.join(os.sep, "opt", "obs", "obs64")
CLIPPI_EXE = os.path.join(os.sep, "opt", "clippi", "Project Clippi")
SLIPPI_EXE = os.path.join(os.sep, "opt", "slippi", "Slippi Launcher")


@pytest.fixture
def cfg(tmp_path) -> Config:
    c = Config()
    c.REPO_ROOT = str(tmp_path / "project-flippi")
    c.OBS_EXE_PATH = OBS_EXE
    c.CLIPPI_EXE_PATH = CLIPPI_EXE
    c.SLIPPI_LAUNCHER_EXE_PATH = SLIPPI_EXE
    c.CLIPPI_STATUS_FILE = str(tmp_path / "connection-status.json")
    c.OBS_GAME_CAPTURE_SOURCE = "Game Capture"
    c.CONNECT_RETRY_INTERVAL_SECONDS = 0.01
    c.OBS_COLD_START_TIMEOUT_SECONDS = 0.3
    c.OBS_WARM_START_TIMEOUT_SECONDS = 0.3
    c.LOG_TO_FILE_ENABLED = False
    return c


@pytest.fixture
def settings(cfg) -> SettingsStore:
    return SettingsStore(cfg)


@pytest.fixture
def store() -> StatusStore:
    return StatusStore()


@pytest.fixture
def obs_client() -> FakeObsClient:
    return FakeObsClient()


@pytest.fixture
def obs_factory(obs_client) -> FakeObsFactory:
    return FakeObsFactory(obs_client)


@pytest.fixture
def obs(store, settings, obs_factory) -> ObsConnectionManager:
    return ObsConnectionManager(store, settings, client_factory=obs_factory, streaming_settle_s=0.0)


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def fake_launcher(fake_probe) -> FakeLauncher:
    return FakeLauncher(fake_probe, {OBS_EXE: apps.OBS, CLIPPI_EXE: apps.CLIPPI, SLIPPI_EXE: apps.SLIPPI_LAUNCHER})


@pytest.fixture
def fake_capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def fake_combo() -> FakeComboSync:
    return FakeComboSync()
