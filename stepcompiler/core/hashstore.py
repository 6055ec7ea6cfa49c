import hashlib
import json
from typing import Any


def compute_hash(content: str) -> str:
    """Return a stable hash for given content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def short_hash(content: str, length: int = 12) -> str:
    return compute_hash(content)[:length]


def payload_hash(payload: Any) -> str:
    """Hash a JSON-serialisable payload independent of key order."""
    return compute_hash(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
