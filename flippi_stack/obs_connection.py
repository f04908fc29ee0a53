"""
OBS connection manager.

Owns the single obs-websocket connection to OBS and the state machine around it:

    disconnected -> connecting -> connected | auth_failed | disconnected (timeout)
    connected -> disconnected (transport error)
    auth_failed stays put until invalidate()

obsws-python is blocking, so every request runs in a worker thread, one at a
time (the lock keeps the socket single-user). The manager is built once by
the composition root and passed to whoever needs it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from obsws_python import ReqClient
from websocket import WebSocketException

from . import obs_responses
from .config import Config, SettingsStore
from .results import (
    FailureReason,
    FlippiStackError,
    ObsConnectionLostError,
    ObsNotConnectedError,
    ObsRequestError,
    OpResult,
)
from .status import SocketState, StatusStore

log = logging.getLogger(__name__)

AUTH_FAILURE_MARKERS = ("authentication", "auth", "password", "identify")
AUTH_FAILED_MESSAGE = "OBS websocket auth failed. Check the OBS password in settings."
TIMEOUT_MESSAGE = "Timed out waiting for OBS websocket."

# Errors meaning the socket itself is gone (as opposed to OBS rejecting a request).
TRANSPORT_ERRORS: Tuple[type, ...] = (OSError, WebSocketException)

ClientFactory = Callable[[str, int, str, float], Any]
Sleep = Callable[[float], Awaitable[None]]


def default_client_factory(host: str, port: int, password: str, timeout: float) -> Any:
    return ReqClient(host=host, port=port, password=password or None, timeout=timeout)


def is_auth_failure_message(msg: str) -> bool:
    m = (msg or "").lower()
    return any(marker in m for marker in AUTH_FAILURE_MARKERS)


def format_error(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    return exc.__class__.__name__


def _same_path(a: str, b: str) -> bool:
    return os.path.normcase(os.path.normpath(a)) == os.path.normcase(os.path.normpath(b))


class Feature(str, enum.Enum):
    REPLAY_BUFFER = "replay_buffer"
    RECORDING = "recording"
    STREAMING = "streaming"


# feature -> (status request, start request, stop request, label)
_FEATURE_REQUESTS: Dict[Feature, Tuple[str, str, str, str]] = {
    Feature.REPLAY_BUFFER: ("get_replay_buffer_status", "start_replay_buffer", "stop_replay_buffer", "Replay buffer"),
    Feature.RECORDING: ("get_record_status", "start_record", "stop_record", "Recording"),
    Feature.STREAMING: ("get_stream_status", "start_stream", "stop_stream", "Streaming"),
}


@dataclass(frozen=True)
class FeatureStatus:
    replay_buffer_active: bool = False
    recording: bool = False
    streaming: bool = False

    def as_status(self) -> Dict[str, bool]:
        return {
            "replay_buffer_active": self.replay_buffer_active,
            "recording": self.recording,
            "streaming": self.streaming,
        }


class ObsConnectionManager:
    def __init__(
        self,
        store: StatusStore,
        settings: SettingsStore,
        client_factory: Optional[ClientFactory] = None,
        streaming_settle_s: float = 3.0,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._settings = settings
        self._client_factory = client_factory or default_client_factory
        self.streaming_settle_s = streaming_settle_s
        self._sleep = sleep
        self._clock = clock

        self._client: Any = None
        self._auth_failed = False
        self._ready = False
        self._connect_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._request_lock = asyncio.Lock()

    # -----------------------------
    # State
    # -----------------------------
    @property
    def is_connected(self) -> bool:
        return self._ready and self._client is not None

    @property
    def auth_failed(self) -> bool:
        return self._auth_failed

    def _set_socket_state(self, state: SocketState, last_error: Optional[str] = None) -> None:
        current = self._store.get().streamer
        if current.socket_state != state or current.last_error != last_error:
            self._store.merge({"streamer": {"socket_state": state, "last_error": last_error}})

    def _set_last_error(self, message: Optional[str]) -> None:
        if self._store.get().streamer.last_error != message:
            self._store.merge({"streamer": {"last_error": message}})

    def _close_client_quietly(self, client: Any) -> None:
        disconnect = getattr(client, "disconnect", None)
        if disconnect is None:
            return
        try:
            disconnect()
        except Exception as e:
            log.debug("OBS: error while closing websocket (%s)", e)

    def _mark_disconnected(self, reason: str) -> None:
        self._ready = False
        client, self._client = self._client, None
        if client is not None:
            self._close_client_quietly(client)
        log.warning("OBS: connection lost (%s)", reason)
        self._set_socket_state(SocketState.DISCONNECTED, reason)

    def invalidate(self) -> None:
        """Forget the current session. Call whenever host/port/password change."""
        self._auth_failed = False
        self._ready = False
        self._connect_task = None
        self._generation += 1
        client, self._client = self._client, None
        if client is not None:
            self._close_client_quietly(client)
        self._set_socket_state(SocketState.DISCONNECTED, None)

    def drop_session(self, reason: str = "") -> None:
        """Forget a session whose OBS process is known to be gone. Keeps the auth latch."""
        if self._client is None and not self._ready:
            return
        self._ready = False
        client, self._client = self._client, None
        if client is not None:
            self._close_client_quietly(client)
        log.info("OBS: session dropped (%s)", reason or "OBS closed")
        self._set_socket_state(SocketState.DISCONNECTED, None)

    def disconnect(self) -> None:
        self.invalidate()

    # -----------------------------
    # Connect
    # -----------------------------
    async def ensure_connected(self, timeout_s: float = 20.0, interval_s: float = 0.5) -> OpResult:
        if self.is_connected:
            return OpResult.success()

        if self._auth_failed:
            return OpResult.failure(AUTH_FAILED_MESSAGE, FailureReason.AUTH_FAILED)

        if self._connect_task is None:
            self._set_socket_state(SocketState.CONNECTING, None)
            task = asyncio.create_task(self._connect_with_retry(timeout_s, interval_s, self._generation))
            task.add_done_callback(self._clear_connect_task)
            self._connect_task = task

        # every concurrent caller waits on the same attempt
        return await asyncio.shield(self._connect_task)

    def _clear_connect_task(self, task: asyncio.Task) -> None:
        if self._connect_task is task:
            self._connect_task = None

    def _open_client(self, cfg: Config) -> Tuple[Any, str]:
        client = self._client_factory(cfg.OBS_HOST, int(cfg.OBS_PORT), cfg.OBS_PASSWORD, cfg.OBS_REQUEST_TIMEOUT_SECONDS)
        try:
            version = obs_responses.obs_version(client.get_version())
        except Exception:
            self._close_client_quietly(client)
            raise
        return client, version

    async def _connect_with_retry(self, timeout_s: float, interval_s: float, generation: int) -> OpResult:
        cfg = await self._settings.get()
        started = self._clock()
        last_err = ""

        while self._clock() - started < timeout_s:
            try:
                client, version = await asyncio.to_thread(self._open_client, cfg)
            except Exception as e:
                msg = format_error(e)
                last_err = msg
                if generation != self._generation:
                    return OpResult.failure("OBS connection settings changed while connecting")

                if is_auth_failure_message(msg):
                    self._auth_failed = True
                    self._ready = False
                    self._set_socket_state(SocketState.AUTH_FAILED, "Authentication failed (check OBS password).")
                    log.error("OBS: authentication failed (%s); not retrying until settings change", msg)
                    return OpResult.failure(msg, FailureReason.AUTH_FAILED)

                # OBS is probably still starting; keep "connecting" while we retry
                self._ready = False
                self._set_socket_state(SocketState.CONNECTING, None)
                log.debug("OBS: connect attempt failed (%s), retrying in %.1fs", msg, interval_s)
                await self._sleep(interval_s)
                continue

            if generation != self._generation:
                self._close_client_quietly(client)
                return OpResult.failure("OBS connection settings changed while connecting")

            self._client = client
            self._ready = True
            self._set_socket_state(SocketState.CONNECTED, None)
            log.info("OBS: connected to %s:%s (OBS %s)", cfg.OBS_HOST, cfg.OBS_PORT, version or "unknown version")
            return OpResult.success()

        if generation != self._generation:
            return OpResult.failure("OBS connection settings changed while connecting")

        self._ready = False
        self._set_socket_state(SocketState.DISCONNECTED, TIMEOUT_MESSAGE)
        message = f"{TIMEOUT_MESSAGE} Last error: {last_err}" if last_err else TIMEOUT_MESSAGE
        log.warning("OBS: %s", message)
        return OpResult.failure(message, FailureReason.TIMEOUT)

    # -----------------------------
    # Requests
    # -----------------------------
    @staticmethod
    def _call(client: Any, method: str, args: tuple, kwargs: dict) -> Any:
        fn = getattr(client, method, None)
        if fn is None:
            raise AttributeError(f"missing method: {method}")
        return fn(*args, **kwargs)

    async def _request(self, method: str, *args: Any, **kwargs: Any) -> Any:
        if not self.is_connected:
            raise ObsNotConnectedError()
        client = self._client
        generation = self._generation
        async with self._request_lock:
            worker = asyncio.ensure_future(asyncio.to_thread(self._call, client, method, args, kwargs))
            try:
                return await asyncio.shield(worker)
            except asyncio.CancelledError:
                # the socket stays busy until the thread returns; hold the lock until then
                await asyncio.wait({worker})
                if not worker.cancelled():
                    worker.exception()
                raise
            except TRANSPORT_ERRORS as e:
                if generation == self._generation and client is self._client:
                    self._mark_disconnected(format_error(e))
                raise ObsConnectionLostError(method, format_error(e)) from e
            except Exception as e:
                raise ObsRequestError(method, format_error(e)) from e

    # -----------------------------
    # Features
    # -----------------------------
    async def _set_feature(self, feature: Feature, enable: bool) -> OpResult:
        status_req, start_req, stop_req, label = _FEATURE_REQUESTS[feature]
        verb = "start" if enable else "stop"
        if not self.is_connected:
            return OpResult.failure("Not connected to OBS", FailureReason.NOT_CONNECTED)

        try:
            active = obs_responses.output_active(await self._request(status_req))
            if active != enable:
                await self._request(start_req if enable else stop_req)
                log.info("OBS: %s %s", label, "started" if enable else "stopped")
        except ObsNotConnectedError as e:
            return OpResult.failure(str(e), FailureReason.NOT_CONNECTED)
        except (ObsRequestError, ObsConnectionLostError) as e:
            return OpResult.failure(f"Failed to {verb} {label.lower()}: {e}")

        return OpResult.success(f"{label} {'started' if enable else 'stopped'}")

    async def start_replay_buffer(self) -> OpResult:
        return await self._set_feature(Feature.REPLAY_BUFFER, True)

    async def stop_replay_buffer(self) -> OpResult:
        return await self._set_feature(Feature.REPLAY_BUFFER, False)

    async def start_recording(self) -> OpResult:
        return await self._set_feature(Feature.RECORDING, True)

    async def stop_recording(self) -> OpResult:
        return await self._set_feature(Feature.RECORDING, False)

    async def start_streaming(self) -> OpResult:
        return await self._set_feature(Feature.STREAMING, True)

    async def stop_streaming(self) -> OpResult:
        return await self._set_feature(Feature.STREAMING, False)

    async def get_feature_status(self) -> Optional[FeatureStatus]:
        """Live replay-buffer/recording/streaming flags, or None when not connected."""
        if not self.is_connected:
            return None
        values = {}
        for feature, (status_req, _, _, label) in _FEATURE_REQUESTS.items():
            try:
                values[feature] = obs_responses.output_active(await self._request(status_req))
            except FlippiStackError as e:
                # replay buffer may simply be disabled in OBS
                log.debug("OBS: %s status unavailable (%s)", label, e)
                values[feature] = False
        return FeatureStatus(
            replay_buffer_active=values[Feature.REPLAY_BUFFER],
            recording=values[Feature.RECORDING],
            streaming=values[Feature.STREAMING],
        )

    async def set_feature(self, feature: Feature, enabled: bool) -> OpResult:
        """Toggle one feature, then push fresh feature flags into the status store."""
        result = await self._set_feature(feature, enabled)
        status = await self.get_feature_status()
        if status is not None:
            self._store.merge({"streamer": status.as_status()})
        return result

    # -----------------------------
    # Event configuration
    # -----------------------------
    async def configure_for_event(
        self,
        recording_folder: str,
        *,
        enable_replay_buffer: bool = True,
        start_recording: bool = False,
        start_streaming: bool = False,
        connect_timeout_s: float = 20.0,
        interval_s: float = 0.5,
    ) -> OpResult:
        conn = await self.ensure_connected(connect_timeout_s, interval_s)
        if not conn.ok:
            return conn

        try:
            await self._request("set_record_directory", recording_folder)
            applied = obs_responses.record_directory(await self._request("get_record_directory"))
        except FlippiStackError as e:
            msg = f"Failed to set recording folder: {e}"
            log.error("OBS: %s", msg)
            self._set_last_error(msg)
            reason = FailureReason.NOT_CONNECTED if isinstance(e, ObsNotConnectedError) else FailureReason.ERROR
            return OpResult.failure(msg, reason)

        if applied and not _same_path(applied, recording_folder):
            msg = f"OBS kept recording folder {applied} instead of {recording_folder}"
            log.error("OBS: %s", msg)
            self._set_last_error(msg)
            return OpResult.failure(msg)
        folder = applied or recording_folder

        if enable_replay_buffer:
            res = await self.start_replay_buffer()
            if not res.ok:
                log.warning("OBS: %s", res.message)

        if start_recording:
            res = await self.start_recording()
            if not res.ok:
                log.warning("OBS: %s", res.message)

        if start_streaming:
            res = await self.start_streaming()
            if not res.ok:
                return OpResult.failure(f"Streaming failed to start: {res.message}", res.reason or FailureReason.ERROR)

            # OBS may accept StartStream and then fail to reach the ingest server
            await self._sleep(self.streaming_settle_s)
            if not self.is_connected:
                return OpResult.failure(
                    "Connection to OBS dropped while waiting for the stream to start",
                    FailureReason.NOT_CONNECTED,
                )
            try:
                live = obs_responses.output_active(await self._request("get_stream_status"))
            except FlippiStackError as e:
                return OpResult.failure(f"Could not confirm the stream started: {e}")
            if not live:
                return OpResult.failure("Streaming did not start (check the stream service/key in OBS)")

        return OpResult.success(f"OBS configured (folder: {folder}).")

    # -----------------------------
    # Sources
    # -----------------------------
    async def get_sources_list(self) -> List[str]:
        try:
            return obs_responses.input_names(await self._request("get_input_list"))
        except FlippiStackError as e:
            log.debug("OBS: input list unavailable (%s)", e)
            return []

    async def get_source_screenshot(self, source_name: str, width: int = 160, height: int = 90) -> Optional[str]:
        """Base64 PNG of a source. Raises FlippiStackError subclasses on failure."""
        resp = await self._request("get_source_screenshot", source_name, "png", width, height, -1)
        return obs_responses.screenshot_image_data(resp)
