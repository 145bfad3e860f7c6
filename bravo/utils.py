"""Shared helpers for Bravo: data directory, timestamps and identifiers."""

import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def get_bravo_home() -> Path:
    """Return the Bravo data directory.

    Honors ``BRAVO_DATA_DIR`` when set, otherwise ``~/.bravo``.
    """
    override = os.environ.get("BRAVO_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".bravo"


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, returning None for empty or invalid input."""
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_request_id() -> str:
    """Creation-time-derived request id, e.g. ``req_1733240000000_9f2c1a``."""
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def new_review_id() -> str:
    return str(uuid.uuid4())
