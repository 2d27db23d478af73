from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Optional


def now_ts() -> int:
    return int(time.time())


def now_iso() -> str:
    # Fixed microsecond precision keeps string order equal to time order.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def parse_timestamp(value: Optional[str]) -> Optional[str]:
    """
    Normalise a client supplied timestamp to the stored ISO form.

    Accepts ISO-8601 (a trailing "Z" is allowed, naive values are taken as
    UTC) or epoch milliseconds. Returns None for empty input and raises
    ValueError for anything else.
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.isdigit():
        try:
            dt = datetime.fromtimestamp(int(s) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"timestamp out of range: {s}") from exc
    else:
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
    try:
        dt = dt.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValueError(f"timestamp out of range: {s}") from exc
    return dt.isoformat(timespec="microseconds")
