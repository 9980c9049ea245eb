"""In-memory TTL cache for engine query results, keyed per pack."""

import hashlib
import json
import time
from typing import Any, Callable


class PromptCache:
    """Cache computed pack results with TTL.

    Keys are namespaced by pack id so a progress mutation can drop every
    entry belonging to that pack.
    """

    def __init__(self, default_ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[str, Any, float]] = {}

    def get(self, cache_key: str) -> Any | None:
        """Return cached value if not expired, else None."""
        entry = self._entries.get(cache_key)
        if entry is None:
            return None
        _, value, created_at = entry
        if self._clock() - created_at > self.default_ttl:
            del self._entries[cache_key]
            return None
        return value

    def set(self, cache_key: str, value: Any, pack_id: str):
        self._entries[cache_key] = (pack_id, value, self._clock())

    def make_key(self, kind: str, pack_id: str, **params) -> str:
        """SHA256 hash of kind + pack id + sorted params."""
        payload = json.dumps({"kind": kind, "pack": pack_id, **params}, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

    def invalidate(self, pack_id: str) -> int:
        """Drop every entry for a pack. Returns the number removed."""
        stale = [key for key, (owner, _, _) in self._entries.items() if owner == pack_id]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear_expired(self):
        cutoff = self._clock() - self.default_ttl
        for key in [k for k, (_, _, created) in self._entries.items() if created < cutoff]:
            del self._entries[key]

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
