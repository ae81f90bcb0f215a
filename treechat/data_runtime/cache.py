"""Workspace-qualified in-process cache with TTL and explicit invalidation.

Entries are keyed by ``(workspace, cache_key)`` where ``cache_key`` is either
a path (``/a/b``, the value read at that path) or a path plus query suffix
(``/a/b?tree``, ``/a/b?ls``, ``/a/b?exists``).

TTL only bounds staleness for changes this process never saw; explicit
invalidation by the command layer is what keeps local writes coherent.

Each workspace has a fill token that advances on every invalidation.  A read
captures the token before it goes to the store and passes it back to
``set``; if an invalidation happened in between, the fill is discarded so the
in-flight read cannot put a pre-write value back.
"""

from __future__ import annotations

import re
import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from treechat.data_runtime import paths

TREE = "tree"
LIST = "ls"
EXISTS = "exists"
QUERIES = (TREE, LIST, EXISTS)


def query_key(path: str, query: str) -> str:
    """``/a/b`` + ``ls`` -> ``/a/b?ls``.  Valid paths never contain ``?``."""
    return f"{path}?{query}"


def split_key(cache_key: str) -> tuple[str, str | None]:
    """``/a/b?ls`` -> ``("/a/b", "ls")``; plain paths have no query."""
    path, sep, query = cache_key.partition("?")
    return path, (query if sep else None)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    invalidations: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class Cache:
    """TTL cache shared by every caller of one filesystem instance."""

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        # Insertion order doubles as age order for eviction.
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._tokens: dict[str, int] = defaultdict(int)
        self._stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: tuple[str, str]) -> bool:
        entry = self._entries.get(item)
        return entry is not None and not self._expired(entry)

    # -- Lookup ----------------------------------------------------------------

    def get(self, workspace: str, cache_key: str) -> CacheEntry | None:
        """Live entry for *cache_key*, or ``None`` on miss or expiry."""
        entry = self._entries.get((workspace, cache_key))
        if entry is not None and self._expired(entry):
            del self._entries[(workspace, cache_key)]
            entry = None
        if entry is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return entry

    def token(self, workspace: str) -> int:
        """Fill token to capture before a store read (see module docstring)."""
        return self._tokens[workspace]

    def set(self, workspace: str, cache_key: str, value: Any, *, token: int | None = None) -> bool:
        """Store *value*.  Returns False if the fill was discarded as stale."""
        if token is not None and token != self._tokens[workspace]:
            logger.debug("Discarding stale cache fill {}:{}", workspace, cache_key)
            return False
        self._entries.pop((workspace, cache_key), None)
        self._entries[(workspace, cache_key)] = CacheEntry(value=value, stored_at=self._clock())
        while len(self._entries) > self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._stats.evictions += 1
        return True

    # -- Invalidation ----------------------------------------------------------

    def invalidate_path(self, workspace: str, path: str, *, recursive: bool = False) -> int:
        """Drop every entry a change at *path* could have made stale.

        That is the exact entry and query entries for *path*, the query
        entries (tree, listing, existence) of every ancestor, and with
        ``recursive`` everything at or below *path*.
        """
        parents = set(paths.ancestors(path)) if path != paths.ROOT else set()
        stale = []
        for ws, cache_key in self._entries:
            if ws != workspace:
                continue
            base, query = split_key(cache_key)
            if (
                base == path
                or (query is not None and base in parents)
                or (recursive and paths.is_within(base, path))
            ):
                stale.append((ws, cache_key))
        return self._drop(workspace, stale)

    def invalidate_pattern(self, workspace: str, pattern: str | re.Pattern[str]) -> int:
        """Drop every entry of *workspace* whose cache key matches *pattern*."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        stale = [(ws, key) for ws, key in self._entries if ws == workspace and regex.search(key)]
        return self._drop(workspace, stale)

    def clear(self, workspace: str | None = None) -> int:
        if workspace is None:
            stale = list(self._entries)
            for ws in {ws for ws, _ in stale} | set(self._tokens):
                self._tokens[ws] += 1
            for key in stale:
                del self._entries[key]
            self._stats.invalidations += len(stale)
            return len(stale)
        return self._drop(workspace, [k for k in self._entries if k[0] == workspace])

    def prune(self) -> int:
        """Remove expired entries.  Returns how many were dropped."""
        expired = [key for key, entry in self._entries.items() if self._expired(entry)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _drop(self, workspace: str, keys: list[tuple[str, str]]) -> int:
        self._tokens[workspace] += 1
        for key in keys:
            del self._entries[key]
        self._stats.invalidations += len(keys)
        if keys:
            logger.debug("Invalidated {} cache entries in {}", len(keys), workspace)
        return len(keys)

    # -- Introspection ---------------------------------------------------------

    @property
    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._stats.hits,
            misses=self._stats.misses,
            invalidations=self._stats.invalidations,
            evictions=self._stats.evictions,
            size=len(self._entries),
        )

    def export(self, workspace: str) -> dict[str, Any]:
        """Live entries of *workspace* as ``{cache_key: value}``."""
        return {
            key: entry.value
            for (ws, key), entry in self._entries.items()
            if ws == workspace and not self._expired(entry)
        }

    def load(self, workspace: str, entries: Mapping[str, Any]) -> int:
        """Seed *workspace* from a previous ``export``.  Entries start a fresh TTL."""
        for key, value in entries.items():
            self.set(workspace, key, value)
        return len(entries)

    def _expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.stored_at >= self.ttl
