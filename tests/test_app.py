from __future__ import annotations

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeObsFactory
from flippi_stack.__main__ import parse_args
from flippi_stack.app import App
from flippi_stack.results import FailureReason
from flippi_stack.status import SocketState


def test_parse_args():
    args = parse_args(["--config", "/tmp/overrides.json", "--no-web"])

    assert args.config == "/tmp/overrides.json"
    assert args.no_web is True


@pytest.mark.asyncio
async def test_connection_setting_change_resets_obs(cfg):
    app = App(cfg, web_enabled=False)
    invalidated = []
    app.obs.invalidate = lambda: invalidated.append(True)

    await app.settings.update({"POLL_INTERVAL_SECONDS": 5})
    assert invalidated == []

    await app.settings.update({"OBS_PASSWORD": "new-password"})
    assert invalidated == [True]


@pytest.mark.asyncio
async def test_run_until_stop_requested(cfg, monkeypatch):
    app = App(cfg, web_enabled=False)

    async def not_running(_app):
        return False

    monkeypatch.setattr(app.probe, "is_running", not_running)

    runner = asyncio.create_task(app.run())
    await asyncio.sleep(0.05)
    assert all(loop.running for loop in app.poller.loops)

    app.request_stop()
    await asyncio.wait_for(runner, timeout=2)

    assert not any(loop.running for loop in app.poller.loops)
    assert app.store.get().streamer.socket_state == SocketState.DISCONNECTED


@pytest.mark.asyncio
async def test_password_change_over_web_clears_auth_latch(cfg, monkeypatch):
    app = App(cfg, web_enabled=True)
    factory = FakeObsFactory()
    factory.always = RuntimeError("authentication failed")
    monkeypatch.setattr(app.obs, "_client_factory", factory)

    latched = await app.obs.ensure_connected(0.2, 0.01)
    assert latched.reason is FailureReason.AUTH_FAILED
    assert app.obs.auth_failed

    factory.always = None
    async with TestClient(TestServer(app.web.build_app())) as client:
        resp = await client.post("/api/settings", json={"changes": {"OBS_PASSWORD": "correct-horse"}})
        assert resp.status == 200
        body = await resp.json()

    assert body["settings"]["OBS_PASSWORD"] == "********"
    assert not app.obs.auth_failed
    assert app.store.get().streamer.socket_state == SocketState.DISCONNECTED

    res = await app.obs.ensure_connected(0.5, 0.01)
    assert res.ok
    assert factory.args[-1][2] == "correct-horse"
