"""
Asset Cache - Async memoizing loader shared by build stages and runtime loads.

Every I/O-bound step (file and network fetches, image decodes, object document
loads) goes through an AssetCache keyed by an AsyncAssetKey. For a given key at
most one load is in flight: the first caller installs a pending entry and starts
the load, every concurrent caller awaits the same future and observes the same
value or the same error.

Example:
    async with AssetCache() as assets:
        data = await BytesFromUrl(url).get(assets)
"""

from __future__ import annotations

import asyncio
import functools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Hashable

import httpx
import structlog

from fab_pipeline.errors import AssetError, FabPipelineError

logger = structlog.get_logger()


class AsyncAssetKey(ABC):
    """
    Identity of a loadable resource.

    Subclasses are frozen dataclasses so that equality and hashing follow the
    key's fields. The cache knows nothing about what is loaded; `load` does.
    """

    @abstractmethod
    async def load(self, assets: AssetCache) -> Any:
        """Produce the value for this key. Called at most once per cache entry."""
        ...

    def cache_key(self) -> Hashable:
        return self

    async def get(self, assets: AssetCache) -> Any:
        return await assets.get(self)


@dataclass
class CacheEntry:
    """A pending or resolved load."""

    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    resolved_at: float | None = None
    hits: int = 0

    @property
    def pending(self) -> bool:
        return not self.future.done()

    @property
    def failed(self) -> bool:
        return self.future.done() and self.future.exception() is not None


class AssetCache:
    """
    Key -> value loader with at most one concurrent load per key.

    Entries are created lazily on first request and never mutated once
    resolved. Failed loads are cached as errors; retrying is up to the caller
    (`evict` the key, then `get` again). Eviction policy is left to the owner.
    """

    def __init__(self, http_timeout: float = 30.0, user_agent: str | None = None) -> None:
        self.http_timeout = http_timeout
        self.user_agent = user_agent
        self._entries: dict[Hashable, CacheEntry] = {}
        self._client: httpx.AsyncClient | None = None
        self._tasks: set[asyncio.Task] = set()
        self.loads = 0

    async def __aenter__(self) -> AssetCache:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def http_client(self) -> httpx.AsyncClient:
        """Shared HTTP client for remote fetches, created on first use."""
        if self._client is None or self._client.is_closed:
            headers = {"User-Agent": self.user_agent} if self.user_agent else None
            self._client = httpx.AsyncClient(
                timeout=self.http_timeout, follow_redirects=True, headers=headers
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def get(self, key: AsyncAssetKey) -> Any:
        """
        Return the value for `key`, loading it if nobody has yet.

        Raises:
            AssetError: If the load failed (the same error for every caller);
                errors of the pipeline taxonomy are passed through unwrapped
        """
        cache_key = key.cache_key()
        entry = self._entries.get(cache_key)
        if entry is None:
            loop = asyncio.get_running_loop()
            entry = CacheEntry(future=loop.create_future())
            self._entries[cache_key] = entry
            task = loop.create_task(self._run(key, entry))
            self._tasks.add(task)
            task.add_done_callback(functools.partial(self._finished, key, entry))
        else:
            entry.hits += 1

        # Shielded so a cancelled caller never cancels the shared load.
        return await asyncio.shield(entry.future)

    async def _run(self, key: AsyncAssetKey, entry: CacheEntry) -> None:
        self.loads += 1
        try:
            value = await key.load(self)
        except FabPipelineError as e:
            if isinstance(e, AssetError) and e.key is None:
                e.key = key
            self._fail(entry, key, e)
        except Exception as e:
            error = AssetError(f"Failed to load {key}: {e}", key=key)
            error.__cause__ = e
            self._fail(entry, key, error)
        else:
            entry.resolved_at = time.monotonic()
            entry.future.set_result(value)

    def _finished(self, key: AsyncAssetKey, entry: CacheEntry, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not entry.future.done():
            # cancelled before or during the load
            self._fail(entry, key, AssetError(f"Load of {key} was cancelled", key=key))

    def _fail(self, entry: CacheEntry, key: AsyncAssetKey, error: BaseException) -> None:
        entry.resolved_at = time.monotonic()
        logger.debug("Asset load failed", key=repr(key), error=str(error))
        entry.future.set_exception(error)
        # Mark retrieved so an unobserved failure doesn't warn at GC.
        entry.future.exception()

    def peek(self, key: AsyncAssetKey) -> CacheEntry | None:
        return self._entries.get(key.cache_key())

    def evict(self, key: AsyncAssetKey) -> bool:
        """
        Drop a resolved entry. Pending entries stay until they resolve.

        Returns:
            True if an entry was removed
        """
        cache_key = key.cache_key()
        entry = self._entries.get(cache_key)
        if entry is None or entry.pending:
            return False
        del self._entries[cache_key]
        return True

    def clear(self) -> int:
        """Drop every resolved entry, returning how many were removed."""
        resolved = [k for k, entry in self._entries.items() if not entry.pending]
        for k in resolved:
            del self._entries[k]
        return len(resolved)

    def stats(self) -> dict[str, int]:
        pending = sum(1 for entry in self._entries.values() if entry.pending)
        failed = sum(1 for entry in self._entries.values() if entry.failed)
        return {
            "entries": len(self._entries),
            "pending": pending,
            "failed": failed,
            "loads": self.loads,
            "hits": sum(entry.hits for entry in self._entries.values()),
        }
