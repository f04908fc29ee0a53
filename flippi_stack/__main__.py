"""python -m flippi_stack [--config PATH] [--no-web]"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import List, Optional

from . import APP_DISPLAY
from .app import App
from .config import CFG_OVERRIDE_FILENAME, load_config
from .logs import setup_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="flippi_stack", description=APP_DISPLAY)
    parser.add_argument(
        "--config",
        default=os.path.join(os.getcwd(), CFG_OVERRIDE_FILENAME),
        help=f"JSON overrides file (default: ./{CFG_OVERRIDE_FILENAME})",
    )
    parser.add_argument("--no-web", action="store_true", help="do not start the web HUD")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = load_config(args.config)
    run_log = setup_logging(cfg)
    log = logging.getLogger("flippi_stack")
    if run_log:
        log.info("LOG: run log %s", run_log)

    app = App(cfg, config_path=args.config, web_enabled=cfg.WEB_HUD_ENABLED and not args.no_web)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        log.info("Interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
