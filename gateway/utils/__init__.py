from datetime import datetime, timezone
from typing import Optional


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def body_preview(data: Optional[bytes], limit: int, total: Optional[int] = None) -> str:
    """Provide a bounded, single-line preview of an upstream body for logs."""
    if not data:
        return "<empty>"
    total = len(data) if total is None else total
    text = " ".join(data[:limit].decode("utf-8", errors="replace").split())
    if total > limit:
        return f"{text}... ({total} bytes total)"
    return text
