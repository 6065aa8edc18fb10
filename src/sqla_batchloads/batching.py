from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Hashable, Mapping, Sequence
from typing import Any, Generic, TypeVar, Union

import structlog

from .errors import BatchSizeMismatchError


K = TypeVar("K")
V = TypeVar("V")

BatchFetch = Callable[[list[Any]], Awaitable[Sequence[Any]]]
MapBy = Union[str, tuple[str, ...], Callable[[Any], Any]]

logger = structlog.get_logger(__name__)


def is_absent(key: Any) -> bool:
    """Return ``True`` for keys that can never match a row.

    ``None``, ``""``, ``0``, ``False`` and the literal ``"0"`` are absent; a
    composite key is absent when it is empty or any component is ``None``.
    """
    if isinstance(key, tuple):
        return not key or any(part is None for part in key)

    return key is None or key == "0" or not key


def cache_key(key: Any) -> Hashable:
    """Normalize *key* for de-duplication and result matching.

    Scalars compare by their string form (``3`` and ``"3"`` are the same key),
    composite keys compare field by field.
    """
    if isinstance(key, tuple):
        return key

    return str(key)


def _attr(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row[name]

    return getattr(row, name)


def _key_getter(map_by: MapBy) -> Callable[[Any], Any]:
    if callable(map_by):
        return map_by

    if isinstance(map_by, str):
        return lambda row: _attr(row, map_by)

    return lambda row: tuple(_attr(row, name) for name in map_by)


class BatchLoader(Generic[K, V]):
    """Coalesce ``load()`` calls issued in one event-loop pass into a single fetch.

    Every key requested before the loop gets to run the dispatch callback
    (scheduled with ``loop.call_soon`` on the first request of a window) is
    sent to *fetch* in one call. Equal keys are queued once and share a
    single pending future.

    Args:
        fetch: ``async (keys) -> results``. Without ``map_by`` it must return
            exactly one result per key, in key order.
        cache: Memoize ``key -> value`` for the lifetime of this loader.
        map_by: Column name, tuple of column names or callable used to
            realign arbitrarily ordered rows to the requested keys.
        many: Every key resolves to the list of all rows matching it.
        max_batch_size: Split a window into several fetch calls of this size.
        filter_keys: ``False`` sends absent keys to *fetch* too; a callable
            replaces the default absent-key test.
        name: Label used in log events.

    Example:
        >>> loader = BatchLoader(fetch_users, map_by="id")
        >>> alice, bob = await asyncio.gather(loader.load(1), loader.load(2))
    """

    __slots__ = (
        "_fetch",
        "_filter_keys",
        "_key_of",
        "_map_by",
        "_memo",
        "_queue",
        "_scheduled",
        "_tasks",
        "cache",
        "many",
        "max_batch_size",
        "name",
    )

    def __init__(
        self,
        fetch: BatchFetch,
        *,
        cache: bool = False,
        map_by: MapBy | None = None,
        many: bool = False,
        max_batch_size: int | None = None,
        filter_keys: bool | Callable[[Any], bool] = True,
        name: str = "",
    ) -> None:
        if max_batch_size is not None and max_batch_size <= 0:
            raise ValueError(f"max_batch_size must be positive, got {max_batch_size}")

        self._fetch = fetch
        self._map_by = map_by
        self._key_of = _key_getter(map_by) if map_by is not None else None
        self._filter_keys = filter_keys
        self.cache = cache
        self.many = many
        self.max_batch_size = max_batch_size
        self.name = name
        self._memo: dict[Hashable, asyncio.Future[Any]] = {}
        self._queue: dict[Hashable, tuple[Any, asyncio.Future[Any]]] = {}
        self._scheduled = False
        self._tasks: set[asyncio.Task[None]] = set()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} cache={self.cache} many={self.many}>"

    def load(self, key: K) -> Awaitable[V | None]:
        """Queue *key* for the current window and return an awaitable result.

        Not a coroutine function: the key is queued at call time, so
        ``asyncio.gather(loader.load(1), loader.load(2))`` and independent
        call sites awaiting later all end up in one batch.
        """
        loop = asyncio.get_running_loop()
        if isinstance(key, list):
            key = tuple(key)  # type: ignore[assignment]

        if not self._is_present(key):
            return _resolved(loop, [] if self.many else None)

        ck = cache_key(key)
        if self.cache and (memoized := self._memo.get(ck)) is not None:
            return asyncio.shield(memoized)

        if (pending := self._queue.get(ck)) is not None:
            return asyncio.shield(pending[1])

        future: asyncio.Future[Any] = loop.create_future()
        self._queue[ck] = (key, future)
        if self.cache:
            self._memo[ck] = future

        if not self._scheduled:
            self._scheduled = True
            loop.call_soon(self._dispatch)

        return asyncio.shield(future)

    def load_many(self, keys: Sequence[K]) -> Awaitable[list[V | None]]:
        """Queue all *keys*; the awaitable resolves to results in key order."""
        return asyncio.gather(*(self.load(key) for key in keys))

    def prime(self, key: K, value: V) -> None:
        """Seed the memo with *value* (no-op unless ``cache`` is enabled)."""
        if not self.cache or is_absent(key):
            return

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._memo[cache_key(key)] = future

    def clear(self, key: K) -> None:
        """Forget the memoized value for *key*."""
        self._memo.pop(cache_key(tuple(key) if isinstance(key, list) else key), None)

    def clear_all(self) -> None:
        self._memo.clear()

    def _is_present(self, key: Any) -> bool:
        if self._filter_keys is False:
            return True

        if callable(self._filter_keys):
            return bool(self._filter_keys(key))

        return not is_absent(key)

    def _dispatch(self) -> None:
        self._scheduled = False
        batch, self._queue = self._queue, {}
        if not batch:
            return

        items = list(batch.values())
        size = self.max_batch_size or len(items)
        for start in range(0, len(items), size):
            task = asyncio.ensure_future(self._run_batch(items[start : start + size]))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_batch(self, items: list[tuple[Any, asyncio.Future[Any]]]) -> None:
        keys = [key for key, _ in items]
        logger.debug("batch.dispatched", loader=self.name, size=len(keys))
        try:
            values = self._realign(keys, await self._fetch(keys))
        except asyncio.CancelledError:
            self._forget(items)
            for _, future in items:
                future.cancel()
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("batch.failed", loader=self.name, size=len(keys), error=repr(exc))
            self._forget(items)
            for _, future in items:
                if not future.done():
                    future.set_exception(exc)
            return

        for (_, future), value in zip(items, values):
            if not future.done():
                future.set_result(value)

    def _forget(self, items: list[tuple[Any, asyncio.Future[Any]]]) -> None:
        for key, future in items:
            ck = cache_key(key)
            if self._memo.get(ck) is future:
                del self._memo[ck]

    def _realign(self, keys: list[Any], results: Sequence[Any]) -> list[Any]:
        results = list(results)
        if self._key_of is None:
            if len(results) != len(keys):
                raise BatchSizeMismatchError(len(keys), len(results))
            return results

        if self.many:
            grouped: defaultdict[Hashable, list[Any]] = defaultdict(list)
            for row in results:
                if row is not None:
                    grouped[cache_key(self._key_of(row))].append(row)
            return [grouped.get(cache_key(key), []) for key in keys]

        index: dict[Hashable, Any] = {}
        for row in results:
            if row is not None:
                index.setdefault(cache_key(self._key_of(row)), row)

        return [index.get(cache_key(key)) for key in keys]


def _resolved(loop: asyncio.AbstractEventLoop, value: Any) -> asyncio.Future[Any]:
    future: asyncio.Future[Any] = loop.create_future()
    future.set_result(value)
    return future
