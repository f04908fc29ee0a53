"""Stack orchestrator flows against fake OBS / probe / launcher."""

from __future__ import annotations

import asyncio
import os

import pytest

from conftest import CLIPPI_EXE, OBS_EXE, SLIPPI_EXE, FakeSleep
from flippi_stack import probe as apps
from flippi_stack.events import event_videos_dir
from flippi_stack.results import OpResult
from flippi_stack.stack import BUSY_MESSAGE, StackOrchestrator, StackPhase
from flippi_stack.status import SocketState


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def stack(store, obs, fake_probe, settings, fake_capture, fake_combo, fake_launcher, fake_sleep):
    return StackOrchestrator(
        store,
        obs,
        fake_probe,
        settings,
        fake_capture,
        fake_combo,
        launcher=fake_launcher,
        sleep=fake_sleep,
        clock=lambda: 1700000000.0,
    )


@pytest.mark.asyncio
async def test_start_from_cold(stack, store, cfg, obs_client, fake_launcher, fake_capture, fake_combo):
    res = await stack.start("EventA")

    assert res.ok, res.message
    folder = event_videos_dir(cfg, "EventA")
    assert res.recording_folder == folder
    assert os.path.isdir(folder)

    status = store.get()
    assert status.stack.running is True
    assert status.stack.current_event_name == "EventA"
    assert status.stack.started_at == 1700000000.0
    assert status.streamer.socket_state == SocketState.CONNECTED

    assert fake_launcher.exes() == [OBS_EXE, CLIPPI_EXE, SLIPPI_EXE]
    assert fake_launcher.launched[0][2] == os.path.dirname(OBS_EXE)
    assert obs_client.record_directory == folder
    assert obs_client.replay_buffer is True
    assert obs_client.recording is False
    assert obs_client.streaming is False
    assert fake_combo.synced == ["EventA"]
    assert fake_capture.started == 1
    assert stack.phase is StackPhase.RUNNING


@pytest.mark.asyncio
async def test_start_with_apps_already_running(stack, fake_probe, fake_launcher):
    for app in (apps.OBS, apps.CLIPPI, apps.SLIPPI_LAUNCHER):
        fake_probe.set_running(app)

    res = await stack.start("EventA")

    assert res.ok
    assert fake_launcher.launched == []


@pytest.mark.asyncio
async def test_start_fails_when_obs_never_answers(stack, store, obs_factory, fake_capture, fake_combo):
    obs_factory.always = ConnectionRefusedError("[Errno 111] Connection refused")

    res = await stack.start("EventA")

    assert not res.ok
    assert "OBS configuration failed" in res.message
    assert store.get().stack.running is False
    assert fake_capture.started == 0
    assert fake_combo.synced == []


@pytest.mark.asyncio
async def test_start_fails_when_obs_cannot_launch(stack, store, fake_launcher, obs_factory):
    fake_launcher.fail.add(OBS_EXE)

    res = await stack.start("EventA")

    assert not res.ok
    assert "Could not launch OBS" in res.message
    assert obs_factory.attempts == 0
    assert store.get().stack.running is False


@pytest.mark.asyncio
async def test_helper_app_launch_failure_is_a_warning(stack, store, fake_launcher):
    fake_launcher.fail.add(CLIPPI_EXE)

    res = await stack.start("EventA")

    assert res.ok
    assert any("Project Clippi" in w for w in res.warnings)
    assert store.get().stack.running is True


@pytest.mark.asyncio
async def test_combo_sync_failure_is_a_warning(stack, store, fake_combo):
    fake_combo.sync_result = OpResult.failure("Failed to create symlink: permission denied")

    res = await stack.start("EventA")

    assert res.ok
    assert any("symlink" in w for w in res.warnings)
    assert store.get().stack.running is True


@pytest.mark.asyncio
async def test_start_requires_event_name(stack, fake_launcher):
    res = await stack.start("  ")

    assert not res.ok
    assert fake_launcher.launched == []


@pytest.mark.asyncio
async def test_switch_event_keeps_stream_running(stack, store, settings, cfg, obs_client, fake_sleep, fake_combo):
    await settings.update({"OBS_START_RECORDING": True})
    assert (await stack.start("EventA")).ok
    obs_client.streaming = True
    starts_before = obs_client.count("start_stream")
    obs_client.calls.clear()

    res = await stack.switch_event("EventB")

    assert res.ok, res.message
    calls = obs_client.calls
    assert calls.index("stop_replay_buffer") < calls.index("set_record_directory")
    assert calls.index("stop_record") < calls.index("set_record_directory")
    assert "stop_stream" not in calls
    assert obs_client.count("start_stream") == 0 and starts_before == 0
    assert obs_client.streaming is True
    assert fake_sleep.calls == [0.5]

    assert obs_client.record_directory == event_videos_dir(cfg, "EventB")
    assert obs_client.replay_buffer is True
    assert obs_client.recording is True
    assert store.get().stack.current_event_name == "EventB"
    assert store.get().stack.running is True
    assert fake_combo.synced == ["EventA", "EventB"]


@pytest.mark.asyncio
async def test_switch_when_stopped_starts(stack, store, fake_launcher):
    res = await stack.switch_event("EventB")

    assert res.ok
    assert store.get().stack.current_event_name == "EventB"
    assert OBS_EXE in fake_launcher.exes()


@pytest.mark.asyncio
async def test_failed_switch_leaves_stack_running(stack, store, obs_client):
    assert (await stack.start("EventA")).ok
    obs_client.fail["set_record_directory"] = RuntimeError("invalid path")

    res = await stack.switch_event("EventB")

    assert not res.ok
    assert "EventB" in res.message
    assert store.get().stack.running is True
    assert store.get().stack.current_event_name == "EventA"


@pytest.mark.asyncio
async def test_stop_tears_everything_down(stack, store, obs, fake_probe, fake_capture, fake_combo):
    assert (await stack.start("EventA")).ok

    res = await stack.stop()

    assert res.ok
    assert res.warnings == []
    assert res.event_name == "EventA"
    assert fake_probe.killed == ["OBS", "Project Clippi", "Slippi Launcher"]
    assert fake_capture.stopped == 1
    assert fake_combo.cleared == 1
    assert not obs.is_connected
    stack_state = store.get().stack
    assert (stack_state.running, stack_state.current_event_name, stack_state.started_at) == (False, None, None)


@pytest.mark.asyncio
async def test_stop_never_hard_fails(stack, store, obs_client, fake_probe):
    assert (await stack.start("EventA")).ok
    obs_client.fail["stop_replay_buffer"] = RuntimeError("output busy")
    fake_probe.fail_kill.add("Project Clippi")

    res = await stack.stop()

    assert res.ok
    assert len(res.warnings) == 2
    assert any("replay buffer" in w for w in res.warnings)
    assert any("Project Clippi" in w for w in res.warnings)
    assert store.get().stack.running is False


@pytest.mark.asyncio
async def test_stop_when_nothing_is_running_is_quiet(stack, store):
    res = await stack.stop()

    assert res.ok
    assert res.warnings == []
    assert store.get().stack.running is False


@pytest.mark.asyncio
async def test_concurrent_operations_are_refused(stack):
    first, second = await asyncio.gather(stack.start("EventA"), stack.start("EventB"))

    assert first.ok
    assert not second.ok
    assert second.message == BUSY_MESSAGE
    assert not stack.busy


@pytest.mark.asyncio
async def test_relaunch_refused_when_stack_stopped(stack, fake_launcher):
    for res in (await stack.relaunch_clipper(), await stack.relaunch_launcher(), await stack.relaunch_obs()):
        assert not res.ok
        assert res.message == "Stack is not running"
    assert fake_launcher.launched == []


@pytest.mark.asyncio
async def test_relaunch_clipper(stack, fake_probe, fake_launcher, fake_combo):
    assert (await stack.start("EventA")).ok
    fake_probe.set_running(apps.CLIPPI, False)

    res = await stack.relaunch_clipper()

    assert res.ok
    assert fake_launcher.exes().count(CLIPPI_EXE) == 2
    assert fake_combo.synced == ["EventA", "EventA"]

    again = await stack.relaunch_clipper()
    assert again.ok
    assert "already running" in again.message
    assert fake_launcher.exes().count(CLIPPI_EXE) == 2


@pytest.mark.asyncio
async def test_relaunch_launcher(stack, fake_probe, fake_launcher):
    assert (await stack.start("EventA")).ok
    fake_probe.set_running(apps.SLIPPI_LAUNCHER, False)

    res = await stack.relaunch_launcher()

    assert res.ok
    assert fake_launcher.exes().count(SLIPPI_EXE) == 2


@pytest.mark.asyncio
async def test_relaunch_obs_reconfigures_current_event(stack, cfg, fake_probe, fake_launcher, fake_capture, obs_client):
    assert (await stack.start("EventA")).ok
    fake_probe.set_running(apps.OBS, False)
    obs_client.record_directory = ""
    obs_client.replay_buffer = False

    res = await stack.relaunch_obs()

    assert res.ok, res.message
    assert fake_launcher.exes().count(OBS_EXE) == 2
    assert obs_client.record_directory == event_videos_dir(cfg, "EventA")
    assert obs_client.replay_buffer is True
    assert fake_capture.started == 2
