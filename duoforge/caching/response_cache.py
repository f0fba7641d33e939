import hashlib
import logging
import re
import threading
import time
from typing import Callable, Dict, Optional

from duoforge.models import Backend, CacheEntry, Mode

logger = logging.getLogger(__name__)


def normalize_prompt(prompt: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (prompt or "").lower().strip())


def code_fingerprint(current_code: Optional[str], threshold: int = 4000) -> str:
    """Cheap stand-in for the artifact: whole text when short, head + tail otherwise."""
    if not current_code:
        return ""
    code = current_code.strip()
    if len(code) <= threshold:
        return code
    half = threshold // 2
    return f"{code[:half]}|||{code[-half:]}"


def generate_cache_key(
    prompt: Optional[str],
    current_code: Optional[str],
    model: Backend,
    mode: Mode,
    fingerprint_threshold: int = 4000,
) -> str:
    fingerprint = code_fingerprint(current_code, fingerprint_threshold)
    content = f"{normalize_prompt(prompt)}::{fingerprint}::{Backend(model).value}::{Mode(mode).value}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ResponseCache:
    """Exact-match cache of finished generations with TTL and LRU eviction."""

    def __init__(
        self,
        ttl_s: float = 3600.0,
        max_size: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_s = ttl_s
        self.max_size = max_size
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.model_hits: Dict[Backend, int] = {backend: 0 for backend in Backend}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: Optional[str]) -> Optional[CacheEntry]:
        if not key:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            now = self.clock()
            if now - entry.created_at >= self.ttl_s:
                del self._entries[key]
                self.misses += 1
                return None

            entry.last_accessed = now
            entry.hit_count += 1
            self.hits += 1
            self.model_hits[entry.model] += 1
            snapshot = entry.model_copy()

        logger.info("Response cache hit [%s] (%s hits)", snapshot.model.value, snapshot.hit_count)
        return snapshot

    def set(
        self,
        key: Optional[str],
        response: Optional[str],
        code: Optional[str],
        model: Backend,
        was_truncated: bool = False,
    ) -> None:
        if not key or not response or was_truncated:
            return

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed)
                del self._entries[oldest_key]
                self.evictions += 1

            now = self.clock()
            self._entries[key] = CacheEntry(
                response=response,
                code=code,
                model=model,
                created_at=now,
                last_accessed=now,
            )
            size = len(self._entries)

        logger.info("Response cached [%s] (%s/%s entries)", Backend(model).value, size, self.max_size)

    def stats(self) -> Dict[str, object]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "entries": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": f"{self.hits / total * 100:.1f}%" if total else "0%",
                "model_hits": {backend.value: count for backend, count in self.model_hits.items()},
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Response cache cleared")
