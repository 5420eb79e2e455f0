# coding=utf-8
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

CacheKey = Tuple[str, str, str]


@dataclass(frozen=True)
class _CacheEntry:
    source_text: str
    translated: str
    stored_at: float


class TranslationCache:
    """
    TTL cache keyed by (source_lang, target_lang, text prefix).

    The prefix keeps keys short; a hit still requires the stored source text to
    match exactly, so two texts sharing a prefix never swap translations.
    """

    def __init__(
        self,
        ttl_sec: float = 60.0,
        max_entries: int = 100,
        prefix_chars: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_sec = max(0.0, float(ttl_sec))
        self.max_entries = max(1, int(max_entries))
        self.prefix_chars = max(1, int(prefix_chars))
        self.clock = clock
        self._entries: "OrderedDict[CacheKey, _CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _key(self, source_language: str, target_language: str, text: str) -> CacheKey:
        return (str(source_language), str(target_language), str(text)[: self.prefix_chars])

    def get(self, source_language: str, target_language: str, text: str) -> Optional[str]:
        key = self._key(source_language, target_language, text)
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.source_text != text:
                self.misses += 1
                return None
            if now - entry.stored_at >= self.ttl_sec:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.translated

    def put(self, source_language: str, target_language: str, text: str, translated: str) -> None:
        key = self._key(source_language, target_language, text)
        now = self.clock()
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _CacheEntry(source_text=str(text), translated=str(translated), stored_at=now)
            self._evict_locked(now)

    def _evict_locked(self, now: float) -> None:
        expired = [k for k, v in self._entries.items() if now - v.stored_at >= self.ttl_sec]
        for k in expired:
            del self._entries[k]
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
