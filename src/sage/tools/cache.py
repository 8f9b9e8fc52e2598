"""Bounded memo of read-only tool results."""

import json
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class CacheEntry:
    result: Any
    inserted_at: float


def cache_key(name: str, args: dict[str, Any]) -> str:
    try:
        canonical = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        canonical = repr(sorted(args.items(), key=lambda item: str(item[0])))
    return f"{name}::{canonical}"


class ToolResultCache:
    """Insertion-ordered cache; the oldest entry goes first when full.

    Reads and writes never await, so an entry is either fully present or absent
    for concurrent tasks.
    """

    def __init__(
        self,
        max_entries: int = 50,
        *,
        ttl_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max(1, max_entries)
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str, args: dict[str, Any]) -> CacheEntry | None:
        key = cache_key(name, args)
        entry = self._entries.get(key)
        if entry is not None and self.ttl_s is not None:
            if self._clock() - entry.inserted_at > self.ttl_s:
                del self._entries[key]
                entry = None
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def set(self, name: str, args: dict[str, Any], result: Any) -> None:
        key = cache_key(name, args)
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(result=result, inserted_at=self._clock())
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
