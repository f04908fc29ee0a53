"""
Web HUD: a small aiohttp server exposing status and stack controls.

- GET  /api/status, /api/events, /api/obs/sources, /api/logs, /api/settings,
       /api/clipper/sync
- POST /api/events, /api/stack/{start,stop,switch,relaunch}, /api/obs/feature,
       /api/settings  ({"changes": {KEY: value}})
- GET  /ws  (snapshot on connect, then a fresh snapshot whenever status changes)

If WEB_HUD_TOKEN is set, every request must carry ?token=<value>.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional, Set

from aiohttp import WSMsgType, web

from . import APP_DISPLAY
from .combo_sync import ComboDataSync
from .config import Config, SettingsStore, config_keys
from .events import create_event_from_template, list_event_folders
from .logs import recent_lines
from .obs_connection import Feature, ObsConnectionManager
from .stack import StackOrchestrator
from .status import CompositeStatus, StatusStore

log = logging.getLogger(__name__)

# Changing these mid-session would strand the HUD itself.
SETTINGS_READ_ONLY = frozenset({"WEB_HUD_HOST", "WEB_HUD_PORT", "WEB_HUD_TOKEN"})
SECRET_SETTINGS = frozenset({"OBS_PASSWORD", "WEB_HUD_TOKEN"})
SECRET_MASK = "********"


def public_settings(cfg: Config) -> dict:
    out = {}
    for key in config_keys():
        value = getattr(cfg, key)
        if key in SECRET_SETTINGS:
            value = SECRET_MASK if value else ""
        out[key] = value
    return out


class WebHud:
    def __init__(
        self,
        cfg: Config,
        store: StatusStore,
        settings: SettingsStore,
        obs: ObsConnectionManager,
        stack: StackOrchestrator,
        combo_sync: Optional[ComboDataSync] = None,
    ):
        self.cfg = cfg
        self._store = store
        self._settings = settings
        self._obs = obs
        self._stack = stack
        self._combo = combo_sync

        self._ws_clients: Set[web.WebSocketResponse] = set()
        self._dirty = asyncio.Event()
        self._unsubscribe = None
        self._broadcast_task: Optional[asyncio.Task] = None
        self._web_runner: Optional[web.AppRunner] = None
        self._web_site: Optional[web.TCPSite] = None

    # -----------------------------
    # Payloads
    # -----------------------------
    def _web_payload(self, status: Optional[CompositeStatus] = None) -> dict:
        status = status or self._store.get()
        payload = status.to_dict()
        payload["app"] = APP_DISPLAY
        payload["phase"] = self._stack.phase.value
        payload["busy"] = self._stack.busy
        return payload

    def _on_status(self, _status: CompositeStatus) -> None:
        self._dirty.set()

    def _forbidden(self, request: web.Request) -> Optional[web.Response]:
        if self.cfg.WEB_HUD_TOKEN:
            tok = request.query.get("token", "")
            if tok != self.cfg.WEB_HUD_TOKEN:
                return web.json_response({"error": "Forbidden"}, status=403)
        return None

    @staticmethod
    async def _json_body(request: web.Request) -> dict:
        try:
            data = await request.json()
        except (ValueError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    # -----------------------------
    # Routes
    # -----------------------------
    async def api_status(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        return web.json_response(self._web_payload())

    async def api_events(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        cfg = await self._settings.get()
        events = await asyncio.to_thread(list_event_folders, cfg)
        return web.json_response({"events": events})

    async def api_create_event(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        data = await self._json_body(request)
        title = str(data.get("title", "")).strip()
        if not title:
            return web.json_response({"error": "Missing event title"}, status=400)
        cfg = await self._settings.get()
        try:
            created = await create_event_from_template(cfg, title, str(data.get("venue", "")))
        except FileExistsError as e:
            return web.json_response({"error": str(e)}, status=409)
        except OSError as e:
            return web.json_response({"error": f"Could not create event: {e}"}, status=500)
        return web.json_response({"ok": True, "event_name": created.event_name, "event_path": created.event_path})

    async def api_obs_sources(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        return web.json_response({"sources": await self._obs.get_sources_list()})

    async def api_logs(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        try:
            n = int(request.query.get("n", self.cfg.WEB_HUD_LOG_LINES))
        except ValueError:
            n = self.cfg.WEB_HUD_LOG_LINES
        return web.json_response({"lines": recent_lines(n)})

    async def api_stack(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        action = request.match_info["action"]
        data = await self._json_body(request)
        log.info("WEB: stack %s requested from %s", action, request.remote or "?")

        if action == "start":
            result = await self._stack.start(str(data.get("event", "")))
        elif action == "stop":
            result = await self._stack.stop()
        elif action == "switch":
            result = await self._stack.switch_event(str(data.get("event", "")))
        elif action == "relaunch":
            target = data.get("target")
            if target == "clipper":
                result = await self._stack.relaunch_clipper()
            elif target == "launcher":
                result = await self._stack.relaunch_launcher()
            elif target == "obs":
                result = await self._stack.relaunch_obs()
            else:
                return web.json_response({"error": f"Unknown relaunch target: {target}"}, status=400)
        else:
            return web.json_response({"error": f"Unknown action: {action}"}, status=404)
        return web.json_response(result.to_dict())

    async def api_obs_feature(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        data = await self._json_body(request)
        try:
            feature = Feature(data.get("feature"))
        except ValueError:
            return web.json_response({"error": f"Unknown feature: {data.get('feature')}"}, status=400)
        enabled = bool(data.get("enabled", True))
        result = await self._obs.set_feature(feature, enabled)
        return web.json_response({
            "ok": result.ok,
            "message": result.message,
            "reason": result.reason.value if result.reason else None,
        })

    async def api_get_settings(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        cfg = await self._settings.get()
        return web.json_response({"settings": public_settings(cfg), "read_only": sorted(SETTINGS_READ_ONLY)})

    async def api_update_settings(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        try:
            data = await request.json()
        except (ValueError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON"}, status=400)
        changes = data.get("changes") if isinstance(data, dict) else None
        if not isinstance(changes, dict):
            return web.json_response({"error": "Expected {\"changes\": {...}}"}, status=400)

        known = set(config_keys())
        unknown = sorted(k for k in changes if k not in known)
        if unknown:
            return web.json_response({"error": f"Unknown setting(s): {', '.join(unknown)}"}, status=400)
        locked = sorted(k for k in changes if k in SETTINGS_READ_ONLY)
        if locked:
            return web.json_response({"error": f"Read-only setting(s): {', '.join(locked)}"}, status=400)

        # the masked placeholder from GET means "leave the secret alone"
        changes = {k: v for k, v in changes.items() if not (k in SECRET_SETTINGS and v == SECRET_MASK)}
        log.info("WEB: settings update requested from %s (%s)", request.remote or "?", ", ".join(sorted(changes)) or "none")
        cfg = await self._settings.update(changes)
        return web.json_response({"ok": True, "settings": public_settings(cfg)})

    async def api_clipper_sync(self, request: web.Request) -> web.Response:
        denied = self._forbidden(request)
        if denied:
            return denied
        if self._combo is None:
            return web.json_response({"error": "Combo data sync unavailable"}, status=503)
        status = await self._combo.link_status()
        return web.json_response({
            "linked": status.linked,
            "target_path": status.target_path,
            "active_file_path": status.active_file_path,
            "error": status.error,
        })

    async def ws_handler(self, request: web.Request) -> web.StreamResponse:
        denied = self._forbidden(request)
        if denied:
            return denied

        ws = web.WebSocketResponse(heartbeat=20)
        await ws.prepare(request)

        self._ws_clients.add(ws)
        # Send an immediate snapshot
        await ws.send_str(json.dumps(self._web_payload()))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    break
        finally:
            self._ws_clients.discard(ws)
        return ws

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([
            web.get("/api/status", self.api_status),
            web.get("/api/events", self.api_events),
            web.post("/api/events", self.api_create_event),
            web.get("/api/obs/sources", self.api_obs_sources),
            web.get("/api/logs", self.api_logs),
            web.post("/api/stack/{action}", self.api_stack),
            web.post("/api/obs/feature", self.api_obs_feature),
            web.get("/api/settings", self.api_get_settings),
            web.post("/api/settings", self.api_update_settings),
            web.get("/api/clipper/sync", self.api_clipper_sync),
            web.get("/ws", self.ws_handler),
        ])
        return app

    # -----------------------------
    # Broadcast
    # -----------------------------
    async def broadcast_once(self) -> int:
        """Push the current snapshot to every websocket client. Returns how many got it."""
        if not self._ws_clients:
            return 0
        payload = json.dumps(self._web_payload())
        dead = []
        for ws in list(self._ws_clients):
            try:
                await ws.send_str(payload)
            except (ConnectionError, RuntimeError) as e:
                log.debug("WEB: dropping websocket client (%s)", e)
                dead.append(ws)
        for ws in dead:
            self._ws_clients.discard(ws)
        return len(self._ws_clients)

    async def _broadcast_loop(self) -> None:
        while True:
            await self._dirty.wait()
            self._dirty.clear()
            await self.broadcast_once()

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def attach(self) -> None:
        """Subscribe to the status store and start the broadcaster (no HTTP listener)."""
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_status)
        if self._broadcast_task is None:
            self._broadcast_task = asyncio.get_running_loop().create_task(self._broadcast_loop(), name="web:broadcast")

    async def start(self) -> None:
        self.attach()
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.WEB_HUD_HOST, port=int(self.cfg.WEB_HUD_PORT))
        await site.start()

        self._web_runner = runner
        self._web_site = site
        log.info("WEB: HUD at http://%s:%d", self.cfg.WEB_HUD_HOST, int(self.cfg.WEB_HUD_PORT))

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._broadcast_task is not None:
            self._broadcast_task.cancel()
            self._broadcast_task = None

        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()

        if self._web_runner is not None:
            await self._web_runner.cleanup()
        self._web_runner = None
        self._web_site = None
