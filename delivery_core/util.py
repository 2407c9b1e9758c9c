import uuid
from datetime import datetime, timezone

__all__ = ["gen_id", "utcnow"]

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"

def utcnow() -> datetime:
    # naive UTC, matching how DateTime columns are stored
    return datetime.now(timezone.utc).replace(tzinfo=None)
