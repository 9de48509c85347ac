from __future__ import annotations

import re
import time
import uuid
from datetime import datetime, timezone


_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def sanitize_id(value: str) -> str:
    value = value.strip()
    if not value or not _ID_RE.match(value):
        raise ValueError("Invalid id format.")
    return value


def new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value: int | None) -> str | None:
    if not value:
        return None
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(microsecond=0)
    return moment.isoformat().replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    value = value.strip()
    try:
        if value.endswith("Z"):
            return datetime.fromisoformat(value[:-1] + "+00:00")
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def preview(text: str, max_len: int = 50) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= max_len:
        return collapsed
    return collapsed[: max(0, max_len - 1)].rstrip() + "…"
