# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Completion result cache.

Bounded LRU cache with per-entry time-to-live. Capacity and lifetime are
independent: an entry leaves the cache when it is the least recently used
live entry and room is needed, or when its TTL elapses, whichever comes
first. Expired entries are invisible to ``get`` and ``has`` and are swept
from storage on the next ``set`` or ``prune``.
"""

import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


def make_cache_key(
    prefix: str,
    suffix: str,
    model: str,
    max_tokens: int,
    temperature: float,
    language: Optional[str] = None,
) -> str:
    """Deterministic fingerprint of everything that shapes a completion."""
    fields = [prefix, suffix, model, max_tokens, temperature, language or "default"]
    payload = json.dumps(fields, ensure_ascii=False)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    value: str
    inserted_at: float
    ttl_ms: float

    def is_expired(self, now: float) -> bool:
        return (now - self.inserted_at) * 1000.0 > self.ttl_ms


@dataclass(frozen=True)
class CacheStats:
    """Cache statistics.

    Attributes:
        size: Entries physically stored, including expired ones not yet swept
        max_size: Capacity
        entry_count: Live (unexpired) entries
        utilization: size / max_size
    """

    size: int
    max_size: int
    entry_count: int
    utilization: float

    def as_dict(self) -> dict:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "entry_count": self.entry_count,
            "utilization": self.utilization,
        }


class CompletionCache:
    """LRU + TTL cache of winning completion texts."""

    def __init__(
        self,
        max_size: int = 100,
        default_ttl_ms: float = 60000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def get(self, key: str) -> Optional[str]:
        """Return the cached value and mark it most recently used."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            return None
        self._entries.move_to_end(key)
        return entry.value

    def has(self, key: str) -> bool:
        """Check for a live entry without touching recency."""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def set(self, key: str, value: str, ttl_ms: Optional[float] = None) -> None:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key, value, self._clock(), ttl)
        if len(self._entries) > self.max_size:
            self.prune()
        self._evict_to(self.max_size)

    def clear(self) -> None:
        self._entries.clear()

    def prune(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired completions")
        return len(expired)

    def resize(self, max_size: int) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.prune()
        self._evict_to(max_size)

    def keys(self) -> List[str]:
        """Live keys, least recently used first."""
        now = self._clock()
        return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def stats(self) -> CacheStats:
        size = len(self._entries)
        return CacheStats(
            size=size,
            max_size=self.max_size,
            entry_count=len(self.keys()),
            utilization=size / self.max_size,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_to(self, limit: int) -> None:
        while len(self._entries) > limit:
            key, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted least recently used completion {key[:8]}")
