"""
Typed readers for obs-websocket responses.

obsws-python hands back dataclass-like objects with snake_case attributes;
raw responses and older wrappers use camelCase dict keys. Every reader here
accepts both, and a missing field is a soft failure (False / None / empty),
never an exception.
"""

from __future__ import annotations

import re
from typing import Any, List, Optional


def _camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def get_field(obj: Any, *names: str, default: Any = None) -> Any:
    if obj is None:
        return default
    for name in names:
        for key in (name, _camel_to_snake(name)):
            if isinstance(obj, dict):
                if key in obj and obj[key] is not None:
                    return obj[key]
            else:
                value = getattr(obj, key, None)
                if value is not None:
                    return value
    return default


def output_active(resp: Any) -> bool:
    """GetStreamStatus / GetRecordStatus / GetReplayBufferStatus."""
    return bool(get_field(resp, "outputActive", default=False))


def record_directory(resp: Any) -> Optional[str]:
    value = get_field(resp, "recordDirectory")
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def screenshot_image_data(resp: Any) -> Optional[str]:
    """GetSourceScreenshot: base64 image (usually a data URI)."""
    value = get_field(resp, "imageData")
    if not value or not isinstance(value, str):
        return None
    return value


def input_names(resp: Any) -> List[str]:
    inputs = get_field(resp, "inputs", default=[]) or []
    names = []
    for item in inputs:
        name = get_field(item, "inputName", "sourceName", "name")
        if name:
            names.append(str(name))
    return names


def obs_version(resp: Any) -> str:
    return str(get_field(resp, "obsVersion", default="") or "")
