from __future__ import annotations

import threading
import weakref
from collections import OrderedDict
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any

import msgspec

from .batching import BatchLoader


LoaderFactory = Callable[[bool], BatchLoader[Any, Any]]


def fingerprint(modifier: Any) -> str:
    """Stable string form of a loader modifier.

    Plain filter mappings are encoded as key-sorted JSON so that equal filters
    share a loader regardless of insertion order. Callables built by
    :func:`~sqla_batchloads.tools.add_conditions` carry a structural
    ``loader_fingerprint``; any other modifier falls back to ``str()``.
    """
    if modifier is None:
        return ""

    if isinstance(modifier, tuple):
        return "|".join(fingerprint(part) for part in modifier)

    if isinstance(modifier, Mapping):
        return msgspec.json.encode(dict(modifier), order="sorted", enc_hook=str).decode()

    if isinstance(structural := getattr(modifier, "loader_fingerprint", None), str):
        return structural

    return str(modifier)


def loader_key(
    kind: str,
    model: type,
    columns: str | Sequence[str],
    modifier: Any = None,
    generation: int = 0,
) -> str:
    """Build the composite key identifying one batched operation.

    Example:
        >>> loader_key("many", Post, "author_id", {"published": True})
        'many:Post:0:author_id:{"published":true}'
    """
    column_part = columns if isinstance(columns, str) else ",".join(columns)

    return f"{kind}:{model.__name__}:{generation}:{column_part}:{fingerprint(modifier)}"


def _key_kind(key: str) -> str:
    return key.split(":", 1)[0]


def _key_model(key: str) -> str:
    return key.split(":", 2)[1]


class LoaderScope:
    """Bounds the lifetime and sharing of loader instances.

    Create one per logical unit of work (an HTTP request, a job) and pass it
    as ``scope=`` to every load; loaders and their memoized results are
    discarded together with the scope. Within one scope equal loader keys
    always resolve to the identical :class:`BatchLoader`, so independently
    written call sites coalesce into the same batch.

    Loaders for an explicit connection (e.g. a session inside a transaction)
    live in a nested map keyed by the identity of that connection.

    With *max_loaders* set, each map keeps at most that many loaders and
    drops the least recently used one first.
    """

    __slots__ = ("__weakref__", "_connections", "_loaders", "_lock", "max_loaders", "memoize", "name")

    def __init__(self, name: str = "", *, memoize: bool = True, max_loaders: int | None = None) -> None:
        if max_loaders is not None and max_loaders < 1:
            raise ValueError("max_loaders must be positive")

        self.name = name
        self.memoize = memoize
        self.max_loaders = max_loaders
        self._lock = threading.RLock()
        self._loaders: OrderedDict[str, BatchLoader[Any, Any]] = OrderedDict()
        self._connections: dict[int, tuple[Callable[[], Any], OrderedDict[str, BatchLoader[Any, Any]]]] = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} loaders={len(self)}>"

    def __len__(self) -> int:
        return len(self._loaders) + sum(len(loaders) for _, loaders in self._connections.values())

    def get_loader(
        self,
        key: str,
        factory: LoaderFactory,
        connection: Any = None,
    ) -> BatchLoader[Any, Any]:
        """Return the loader stored under *key*, creating it with *factory* on first use.

        Args:
            key: Composite loader key, see :func:`loader_key`.
            factory: Called with this scope's memoization flag.
            connection: Optional connection/session the loader is bound to.
        """
        with self._lock:
            loaders = self._loaders if connection is None else self._connection_loaders(connection)
            if (loader := loaders.get(key)) is not None:
                loaders.move_to_end(key)
                return loader

            loader = factory(self.memoize)
            loaders[key] = loader
            if self.max_loaders is not None:
                while len(loaders) > self.max_loaders:
                    loaders.popitem(last=False)

            return loader

    def _connection_loaders(self, connection: Any) -> OrderedDict[str, BatchLoader[Any, Any]]:
        ident = id(connection)
        if (entry := self._connections.get(ident)) is not None and entry[0]() is connection:
            return entry[1]

        loaders: OrderedDict[str, BatchLoader[Any, Any]] = OrderedDict()
        try:
            ref: Callable[[], Any] = weakref.ref(connection)
            weakref.finalize(connection, self._forget_connection, ident, loaders)
        except TypeError:
            # not weak-referenceable; kept until the scope is cleared
            ref = lambda: connection  # noqa: E731
        self._connections[ident] = (ref, loaders)

        return loaders

    def _forget_connection(self, ident: int, loaders: OrderedDict[str, BatchLoader[Any, Any]]) -> None:
        with self._lock:
            entry = self._connections.get(ident)
            if entry is not None and entry[1] is loaders:
                del self._connections[ident]

    def iter_loaders(self, model: type | None = None) -> Iterator[BatchLoader[Any, Any]]:
        """Yield live loaders, optionally only those built for *model*."""
        with self._lock:
            maps = [self._loaders, *(loaders for _, loaders in self._connections.values())]
            items = [item for loaders in maps for item in loaders.items()]

        for key, loader in items:
            if model is None or _key_model(key) == model.__name__:
                yield loader

    def forget(self, model: type, key: Any) -> None:
        """Drop the memoized value of *key* from every loader of *model*."""
        for loader in self.iter_loaders(model):
            loader.clear(key)

    def discard(self, model: type, *, kinds: tuple[str, ...] = ()) -> None:
        """Remove every loader built for *model*, plus every loader of *kinds*."""
        with self._lock:
            maps = [self._loaders, *(loaders for _, loaders in self._connections.values())]
            for loaders in maps:
                stale = [k for k in loaders if _key_model(k) == model.__name__ or _key_kind(k) in kinds]
                for key in stale:
                    del loaders[key]

    def invalidate(self, model: type, key: Any) -> None:
        """Forget everything this scope may hold about the *model* row *key*.

        The memoized by-id value is cleared, and since the written row may
        now belong to other groups, every grouped and many-to-many loader
        that could list it is removed.
        """
        self.forget(model, key)
        self.discard(model, kinds=("through",))

    def clear(self) -> None:
        with self._lock:
            self._loaders.clear()
            self._connections.clear()


GLOBAL_SCOPE = LoaderScope("global", memoize=False, max_loaders=1024)
"""Default scope used when no scope is passed.

Shared across unrelated units of work for the whole process, so its loaders
never memoize: they only coalesce requests within one batch window. The
number of live loaders is bounded.
"""
