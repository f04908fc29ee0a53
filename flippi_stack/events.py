"""Event folders under <repo>/Event: listing, naming and scaffolding."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import List

from .config import Config, repo_root

log = logging.getLogger(__name__)

EVENT_SUBDIRS = (
    "data",
    "images",
    "slp",
    "thumbnails",
    os.path.join("videos", "clips"),
    os.path.join("videos", "compilations"),
)

EVENT_DATA_FILES = (
    "combodata.jsonl",
    "compdata.jsonl",
    "event_title.txt",
    "postedvids.txt",
    "titlehistory.txt",
    "venue_desc.txt",
    "videodata.jsonl",
)


@dataclass(frozen=True)
class CreatedEvent:
    event_name: str
    event_path: str


def events_dir(cfg: Config) -> str:
    return os.path.join(repo_root(cfg), "Event")


def event_videos_dir(cfg: Config, event_name: str) -> str:
    return os.path.join(events_dir(cfg), event_name, "videos")


def sanitize_event_folder_name(raw_title: str) -> str:
    """'smash @ the  pub #12' -> 'Smash-The-Pub-12'."""
    words = [w for w in re.split(r"[^A-Za-z0-9]+", raw_title or "") if w]
    joined = "-".join(w[:1].upper() + w[1:].lower() for w in words)
    joined = re.sub(r"[^A-Za-z0-9-]", "", joined)
    joined = re.sub(r"-{2,}", "-", joined).strip("-")
    return joined or "Event"


def list_event_folders(cfg: Config) -> List[str]:
    try:
        with os.scandir(events_dir(cfg)) as it:
            names = [entry.name for entry in it if entry.is_dir()]
    except FileNotFoundError:
        return []
    return sorted(names, key=str.lower)


def _scaffold(dest: str) -> None:
    for sub in EVENT_SUBDIRS:
        os.makedirs(os.path.join(dest, sub), exist_ok=True)
    for name in EVENT_DATA_FILES:
        with open(os.path.join(dest, "data", name), "w", encoding="utf-8"):
            pass


def _create_blocking(cfg: Config, event_title: str, venue_desc: str) -> CreatedEvent:
    name = sanitize_event_folder_name(event_title)
    base = events_dir(cfg)
    dest = os.path.join(base, name)

    os.makedirs(base, exist_ok=True)
    if os.path.exists(dest):
        raise FileExistsError(f"Event folder already exists: {name}")

    _scaffold(dest)
    data_dir = os.path.join(dest, "data")
    with open(os.path.join(data_dir, "event_title.txt"), "w", encoding="utf-8") as f:
        f.write(event_title)
    with open(os.path.join(data_dir, "venue_desc.txt"), "w", encoding="utf-8") as f:
        f.write(venue_desc or "")

    log.info("EVENT: created %s", dest)
    return CreatedEvent(event_name=name, event_path=dest)


async def create_event_from_template(cfg: Config, event_title: str, venue_desc: str = "") -> CreatedEvent:
    """Scaffold a new event folder. Raises FileExistsError if the name is taken."""
    return await asyncio.to_thread(_create_blocking, cfg, event_title, venue_desc)
