"""Small filesystem and time helpers."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create directory (and parents) if missing; return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """remedybot data directory (~/.remedybot)."""
    return ensure_dir(Path.home() / ".remedybot")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def truncate(text: str, limit: int = 2000) -> str:
    """Trim long output for log lines."""
    if len(text) <= limit:
        return text
    return text[:limit] + f"... [{len(text) - limit} more chars]"


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
