"""
Keyed pool of expensive external SDK clients.

Clients are cached by a structural key holding every field that decides
the client's identity (credentials, target index, ...). Cached entries are
returned without locking. The first request for an unseen key builds the
client under a per-key lock, so concurrent callers for the same key all
receive the same instance.

The pool is bounded: once ``max_size`` clients are cached, the least
recently used one is dropped and rebuilt on its next request.
"""

import asyncio
import inspect
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, TypeVar, Union

from rule_dispatch.utils.logger import StructuredLogger, get_logger

K = TypeVar("K", bound=Hashable)
C = TypeVar("C")

ClientFactory = Callable[[K], Union[C, Awaitable[C]]]

DEFAULT_MAX_SIZE = 100


class ClientPool(Generic[K, C]):
    """
    Cache of clients keyed by connection identity.

    Args:
        factory: Builds a client for a key; may be a plain or async callable
        max_size: Upper bound of cached clients (None for unbounded)
        logger: Optional structured logger instance
    """

    def __init__(
        self,
        factory: ClientFactory,
        max_size: Optional[int] = DEFAULT_MAX_SIZE,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be positive")

        self.factory = factory
        self.max_size = max_size
        self.logger = logger or get_logger(__name__)
        self._clients: "OrderedDict[K, C]" = OrderedDict()
        self._locks: Dict[K, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, key: object) -> bool:
        return key in self._clients

    async def get_client(self, key: K) -> C:
        """Return the cached client for ``key``, building it on first use."""
        client = self._lookup(key)
        if client is not None:
            return client

        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                client = self._lookup(key)
                if client is not None:
                    return client

                created = self.factory(key)
                if inspect.isawaitable(created):
                    created = await created

                self._store(key, created)
                return created
        finally:
            if self._locks.get(key) is lock and not lock.locked():
                del self._locks[key]

    def _lookup(self, key: K) -> Optional[C]:
        client = self._clients.get(key)
        if client is not None:
            self._clients.move_to_end(key)
        return client

    def _store(self, key: K, client: C) -> None:
        self._clients[key] = client
        self.logger.debug(
            "Client created",
            operation="client_pool",
            context={"pool_size": len(self._clients)},
        )

        if self.max_size is not None and len(self._clients) > self.max_size:
            self._clients.popitem(last=False)
            self.logger.info(
                "Evicted least recently used client",
                operation="client_pool",
                context={"pool_size": len(self._clients), "max_size": self.max_size},
            )
