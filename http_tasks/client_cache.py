"""Client Cache - reuses transport clients across calls with equal options.

Entries expire on a sliding window: each hit resets the entry's clock, an
entry left unused for the whole window is closed and rebuilt on next use.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable

import httpx

from http_tasks.client_factory import ClientBuilder, configure_client_defaults
from http_tasks.models import Options

logger = logging.getLogger(__name__)

DEFAULT_SLIDING_EXPIRATION = 3600.0  # seconds

# Used per request, never at client level.
_REQUEST_SCOPED_FIELDS = frozenset({"token"})


def cache_key(options: Options) -> tuple[tuple[str, Any], ...]:
    """Project options onto the fields that affect client construction."""
    fields = options.model_dump(mode="json", exclude=set(_REQUEST_SCOPED_FIELDS))
    return tuple(sorted(fields.items()))


@dataclass
class _CacheEntry:
    client: httpx.AsyncClient
    last_access: float


class ClientCache:
    """Memoizes clients built by a ClientBuilder.

    Usage:
        cache = ClientCache(HttpxClientBuilder())
        client = cache.get_or_create(options)

    Thread-safe for lookups and stores. Two concurrent misses on the same key
    may both build a client; the first one stored wins and the other is closed.

    Evicted clients (expired, cleared or losing a build race) are closed on
    the running event loop. Outside a loop they are dropped unclosed.
    """

    def __init__(
        self,
        builder: ClientBuilder,
        sliding_expiration: float = DEFAULT_SLIDING_EXPIRATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._builder = builder
        self._sliding_expiration = sliding_expiration
        self._clock = clock
        self._entries: dict[tuple[tuple[str, Any], ...], _CacheEntry] = {}
        self._lock = Lock()
        self._closing: set[asyncio.Task] = set()

    @property
    def builder(self) -> ClientBuilder:
        return self._builder

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_create(self, options: Options) -> httpx.AsyncClient:
        """Return the cached client for options, building one on a miss.

        Expired entries for every key are swept on each call.
        """
        key = cache_key(options)
        now = self._clock()

        with self._lock:
            expired = self._pop_expired(now)
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_access = now
                cached = entry.client
            else:
                cached = None
        self._close_soon(expired)
        if cached is not None:
            return cached

        client = self._builder.build(options)
        configure_client_defaults(client, options)

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = _CacheEntry(client=client, last_access=now)
                cached_clients = len(self._entries)
            else:
                entry.last_access = now
        if entry is not None:
            self._close_soon([client])
            return entry.client

        logger.debug("Cached new HTTP client", extra={"cached_clients": cached_clients})
        return client

    def clear(self) -> None:
        """Drop and close every cached client."""
        with self._lock:
            clients = [entry.client for entry in self._entries.values()]
            self._entries.clear()
        self._close_soon(clients)

    async def aclose(self) -> None:
        """Close every cached client and clear the cache."""
        with self._lock:
            clients = [entry.client for entry in self._entries.values()]
            self._entries.clear()
        for client in clients:
            await client.aclose()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    def _pop_expired(self, now: float) -> list[httpx.AsyncClient]:
        # Caller holds the lock.
        expired_keys = [
            key
            for key, entry in self._entries.items()
            if now - entry.last_access >= self._sliding_expiration
        ]
        if expired_keys:
            logger.debug("Evicting expired HTTP clients", extra={"expired_clients": len(expired_keys)})
        return [self._entries.pop(key).client for key in expired_keys]

    def _close_soon(self, clients: list[httpx.AsyncClient]) -> None:
        if not clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, dropping %d HTTP clients unclosed", len(clients))
            return
        for client in clients:
            task = loop.create_task(self._close_client(client))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _close_client(client: httpx.AsyncClient) -> None:
        try:
            await client.aclose()
        except Exception as e:
            logger.warning("Failed to close evicted HTTP client: %s", e)
