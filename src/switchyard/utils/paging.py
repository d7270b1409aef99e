"""Opaque keyset cursors for newest-first listings."""

import base64
import json
from datetime import datetime
from typing import Optional

from switchyard.errors import InvalidRequest


def encode_cursor(timestamp: datetime, row_id) -> str:
    raw = json.dumps({"ts": timestamp.isoformat(), "id": str(row_id)}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> Optional[tuple[datetime, str]]:
    if not cursor:
        return None
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
        return datetime.fromisoformat(data["ts"]), str(data["id"])
    except (ValueError, KeyError, TypeError):
        raise InvalidRequest("Invalid cursor")


def clamp_limit(limit: Optional[int], default: int = 20, maximum: int = 100) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))
