"""Discovery cache: reuse a discovered endpoint across runs until its TTL expires.

A discoverer's result is turned into a serializable snapshot ("decomposed"), stored under a
fixed key, and turned back into a live client ("composed") on later runs. Clients returned by
:class:`DiscoveryCacher` re-run discovery transparently when a request fails.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar

import requests
import structlog
from pydantic import BaseModel

from k8s_metrics_agent.clients import Discoverer, HTTPClient, MultiDiscoverer
from k8s_metrics_agent.errors import AgentError, StorageError
from k8s_metrics_agent.storage import Clock, Storage

log = structlog.get_logger()

ClientT = TypeVar("ClientT", bound=HTTPClient)
SnapshotT = TypeVar("SnapshotT", bound=BaseModel)


class CacheStrategy(Protocol[ClientT, SnapshotT]):
    """Converts between a live client and the snapshot persisted in the cache."""

    snapshot_type: type[SnapshotT]

    def decompose(self, client: ClientT) -> SnapshotT:
        ...

    def compose(self, snapshot: SnapshotT, timeout: float) -> ClientT:
        ...


def expired(
    now: float,
    stored_at: float,
    ttl: float,
    jitter_percent: int = 0,
    rand: Callable[[], float] = random.random,
) -> bool:
    """Tell whether an entry stored at ``stored_at`` is stale at ``now``.

    The TTL is scaled by a random factor in ``[1 - j, 1 + j]`` where ``j = jitter_percent / 100``,
    so that several agents started together do not refresh at the same moment. A TTL of zero or
    less is always expired.
    """
    if ttl <= 0:
        return True
    factor = 1.0
    if jitter_percent:
        factor += (jitter_percent / 100) * (rand() * 2 - 1)
    return now - stored_at >= ttl * factor


class _BaseCacher(Generic[ClientT, SnapshotT]):
    def __init__(
        self,
        strategy: CacheStrategy[ClientT, SnapshotT],
        storage: Storage,
        storage_key: str,
        ttl: float,
        ttl_jitter: int = 0,
        clock: Clock = time.time,
        rand: Callable[[], float] = random.random,
        logger: Any = None,
    ) -> None:
        self.strategy = strategy
        self.storage = storage
        self.storage_key = storage_key
        self.ttl = ttl
        self.ttl_jitter = ttl_jitter
        self._clock = clock
        self._rand = rand
        self._log = logger or log

    def _load(self, shape: Any) -> Any | None:
        """Return the cached payload, or None on a miss, a read failure or an expired entry."""
        try:
            stored_at, payload = self.storage.read(self.storage_key, shape)
        except StorageError as err:
            self._log.debug("cache_miss", key=self.storage_key, reason=str(err))
            return None

        self._log.debug("cache_hit", key=self.storage_key, stored_at=stored_at)
        if expired(self._clock(), stored_at, self.ttl, self.ttl_jitter, self._rand):
            self._log.debug("cache_expired", key=self.storage_key)
            return None
        return payload

    def _store(self, snapshot: Any) -> None:
        try:
            self.storage.write(self.storage_key, snapshot)
        except StorageError as err:
            self._log.warning("cache_write_failed", key=self.storage_key, error=str(err))

    def invalidate(self) -> None:
        try:
            self.storage.delete(self.storage_key)
        except StorageError as err:
            self._log.debug("cache_delete_failed", key=self.storage_key, error=str(err))


class DiscoveryCacher(_BaseCacher[ClientT, SnapshotT]):
    """Decorates a single-result discoverer with a TTL cache.

    Holds the last known client in the returned wrapper, so an instance must not be shared
    between concurrent scrape paths.
    """

    def __init__(
        self, discoverer: Discoverer[ClientT], strategy: CacheStrategy[ClientT, SnapshotT], **kwargs: Any
    ) -> None:
        super().__init__(strategy, **kwargs)
        self.discoverer = discoverer

    def discover(self, timeout: float) -> CacheAwareClient[ClientT]:
        snapshot = self._load(self.strategy.snapshot_type)
        if snapshot is not None:
            try:
                client = self.strategy.compose(snapshot, timeout)
            except (AgentError, ValueError, TypeError) as err:
                self._log.warning("cache_compose_failed", key=self.storage_key, error=str(err))
            else:
                return CacheAwareClient(client, self, timeout)

        return CacheAwareClient(self.discover_and_cache(timeout), self, timeout)

    def discover_and_cache(self, timeout: float) -> ClientT:
        """Run the wrapped discoverer and overwrite the cache entry with its result."""
        client = self.discoverer.discover(timeout)
        try:
            snapshot = self.strategy.decompose(client)
        except (AgentError, ValueError, TypeError) as err:
            self._log.warning("cache_write_failed", key=self.storage_key, error=str(err))
        else:
            self._store(snapshot)
        return client


class CacheAwareClient(Generic[ClientT]):
    """Client that re-discovers its endpoint once when a request fails.

    If re-discovery fails too, the cache entry is deleted and the discovery error is raised.
    """

    def __init__(self, client: ClientT, cacher: DiscoveryCacher[ClientT, Any], timeout: float) -> None:
        self.client = client
        self._cacher = cacher
        self._timeout = timeout

    @property
    def node_ip(self) -> str:
        return self.client.node_ip

    def do(self, method: str, path: str, headers: dict[str, str] | None = None) -> requests.Response:
        try:
            return self.client.do(method, path, headers=headers)
        except requests.RequestException as request_err:
            self._cacher._log.info(
                "cached_client_request_failed", key=self._cacher.storage_key, path=path, error=str(request_err)
            )
            try:
                new_client = self._cacher.discover_and_cache(self._timeout)
            except Exception as discovery_err:
                self._cacher.invalidate()
                raise discovery_err from request_err

        self.client = new_client
        return self.client.do(method, path, headers=headers)

    def get(self, path: str) -> requests.Response:
        return self.do("GET", path)


def unwrap(client: HTTPClient) -> HTTPClient:
    """Return the live client behind a cache-aware wrapper."""
    if isinstance(client, CacheAwareClient):
        return client.client
    return client


class MultiDiscoveryCacher(_BaseCacher[ClientT, SnapshotT]):
    """Decorates a fan-out discoverer; all results share one cache entry.

    A payload that can't be restored or composed is a cache miss, not a failure.
    """

    def __init__(
        self, discoverer: MultiDiscoverer[ClientT], strategy: CacheStrategy[ClientT, SnapshotT], **kwargs: Any
    ) -> None:
        super().__init__(strategy, **kwargs)
        self.discoverer = discoverer

    def discover(self, timeout: float) -> list[ClientT]:
        snapshots = self._load(list[self.strategy.snapshot_type])
        if snapshots is not None:
            try:
                return [self.strategy.compose(s, timeout) for s in snapshots]
            except (AgentError, ValueError, TypeError) as err:
                self._log.warning("cache_compose_failed", key=self.storage_key, error=str(err))

        return self.discover_and_cache(timeout)

    def discover_and_cache(self, timeout: float) -> list[ClientT]:
        clients = self.discoverer.discover(timeout)
        try:
            snapshots = [self.strategy.decompose(c) for c in clients]
        except (AgentError, ValueError, TypeError) as err:
            self._log.warning("cache_write_failed", key=self.storage_key, error=str(err))
        else:
            self._store(snapshots)
        return clients
