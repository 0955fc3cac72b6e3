"""
In-process response cache for upstream completions.

Entries are keyed by a fingerprint of every request field that affects the
answer. The cache is process-local and only an optimization: a miss is never
an error, and a disabled cache changes nothing but cost.
"""

import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .types import LLMRequest, LLMResponse

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_MAX_ENTRIES = 100


def fingerprint(provider: str, request: LLMRequest, workspace_id: str) -> str:
    """Deterministic cache key for a request.

    Serializes provider, workspace, model, the ordered (role, content) pairs,
    temperature and max tokens. Content is hashed exactly as given, so any
    change, whitespace included, yields a different key.

    Args:
        provider: Provider name
        request: Canonical request
        workspace_id: Owning workspace

    Returns:
        Key of the form ``llm:<provider>:<sha256 hex>``
    """
    key_data = {
        "provider": provider,
        "workspace_id": workspace_id,
        "model": request.model,
        "messages": [[m.role, m.content] for m in request.messages],
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
    }
    serialized = json.dumps(key_data, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
    return f"llm:{provider}:{digest}"


@dataclass
class _CacheEntry:
    response: LLMResponse
    inserted_at: float


class ResponseCache:
    """TTL + least-recently-used cache of canonical responses."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.enabled = enabled
        self.clock = clock
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[LLMResponse]:
        """Cached response for ``key``, or None on a miss or expired entry."""
        if not self.enabled:
            return None

        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        if self.clock() - entry.inserted_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return entry.response

    def set(self, key: str, response: LLMResponse) -> None:
        """Insert or overwrite an entry, evicting the least recently used at capacity."""
        if not self.enabled:
            return

        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            self._evict()

        self._entries[key] = _CacheEntry(response=response, inserted_at=self.clock())

    def _evict(self) -> None:
        now = self.clock()
        expired = [k for k, e in self._entries.items() if now - e.inserted_at >= self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "max_entries": self.max_entries,
        }
