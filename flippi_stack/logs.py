"""
Logging setup: console, per-run log file with retention, and an in-memory ring
buffer of recent lines for the web HUD.
"""

from __future__ import annotations

import datetime as dt
import glob
import logging
import os
import threading
from collections import deque
from typing import List, Optional

from .config import Config

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"


class RingBufferHandler(logging.Handler):
    """Keeps the last N formatted lines in memory."""

    def __init__(self, capacity: int = 400):
        super().__init__()
        self._lines = deque(maxlen=max(1, capacity))
        self._lines_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lines_lock:
            self._lines.append(line)

    def tail(self, n: int) -> List[str]:
        with self._lines_lock:
            lines = list(self._lines)
        if n <= 0:
            return []
        return lines[-n:]


_ring: Optional[RingBufferHandler] = None


def recent_lines(n: int) -> List[str]:
    if _ring is None:
        return []
    return _ring.tail(n)


def log_base_dir(cfg: Config) -> str:
    base = (cfg.LOG_DIR or "").strip()
    if base:
        return os.path.expanduser(base)
    return os.path.join(os.getcwd(), "logs")


def cleanup_old_logs(base_dir: str, prefix: str, retention: int) -> int:
    """Keep only the most recent `retention` run logs. Returns how many were removed."""
    files = glob.glob(os.path.join(base_dir, f"{prefix}_run_*.log"))
    if len(files) <= retention:
        return 0

    files.sort(key=os.path.getmtime)
    removed = 0
    for fpath in files[: len(files) - max(0, retention)]:
        try:
            os.remove(fpath)
            removed += 1
        except OSError:
            continue
    return removed


def setup_logging(cfg: Config) -> str:
    """Configure the root logger. Returns the run log path ("" when file logging is off)."""
    global _ring

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(getattr(logging, (cfg.LOG_LEVEL or "INFO").upper(), logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    _ring = RingBufferHandler(cfg.LOG_BUFFER_LINES)
    _ring.setFormatter(formatter)
    root.addHandler(_ring)

    # websocket-client is chatty at INFO on reconnect loops
    logging.getLogger("websocket").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    run_log_path = ""
    if cfg.LOG_TO_FILE_ENABLED:
        base_dir = log_base_dir(cfg)
        try:
            os.makedirs(base_dir, exist_ok=True)
            ts = dt.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            run_log_path = os.path.join(base_dir, f"{cfg.LOG_RUN_FILE_PREFIX}_run_{ts}.log")
            file_handler = logging.FileHandler(run_log_path, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
            root.addHandler(file_handler)
            removed = cleanup_old_logs(base_dir, cfg.LOG_RUN_FILE_PREFIX, cfg.LOG_RETENTION_COUNT)
            if removed:
                logging.getLogger(__name__).info("Cleanup: removed %d old log files.", removed)
        except OSError as e:
            logging.getLogger(__name__).warning("LOG: file logging disabled (%s)", e)
            run_log_path = ""

    return run_log_path
