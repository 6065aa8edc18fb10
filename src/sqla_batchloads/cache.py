from __future__ import annotations

import asyncio
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Hashable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Final, Generic, Protocol, TypeVar

import msgspec
import structlog

from .tools import get_table_name


if TYPE_CHECKING:
    from redis.asyncio import Redis

KeyT = TypeVar("KeyT", bound=Hashable)
ValueT = TypeVar("ValueT")

DEFAULT_PREFIX: Final[str] = "a"
DEFAULT_MAX_LOCAL_ITEMS: Final[int] = 1000
DEFAULT_LOCAL_TTL: Final[str] = "5s"

logger = structlog.get_logger(__name__)

_MS_PER_UNIT: Final[dict[str, int]] = {
    "": 1,
    "ms": 1,
    "msec": 1,
    "msecs": 1,
    "millisecond": 1,
    "milliseconds": 1,
    "s": 1000,
    "sec": 1000,
    "secs": 1000,
    "second": 1000,
    "seconds": 1000,
    "m": 60_000,
    "min": 60_000,
    "mins": 60_000,
    "minute": 60_000,
    "minutes": 60_000,
    "h": 3_600_000,
    "hr": 3_600_000,
    "hrs": 3_600_000,
    "hour": 3_600_000,
    "hours": 3_600_000,
    "d": 86_400_000,
    "day": 86_400_000,
    "days": 86_400_000,
    "w": 604_800_000,
    "week": 604_800_000,
    "weeks": 604_800_000,
}
_TTL_PART = re.compile(r"\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*")


def parse_ttl(ttl: int | float | str | timedelta) -> int:
    """Convert a TTL to milliseconds.

    Numbers are already milliseconds; strings are one or more
    ``<amount><unit>`` parts such as ``"500ms"``, ``"30 s"``, ``"1h 30min"``
    or ``"2 days"``.

    Raises:
        ValueError: If the string cannot be parsed or the TTL is negative.
    """
    if isinstance(ttl, timedelta):
        total = ttl.total_seconds() * 1000
    elif isinstance(ttl, (int, float)):
        total = float(ttl)
    else:
        total = 0.0
        position = 0
        text = ttl.strip()
        if not text:
            raise ValueError("Empty TTL string")
        while position < len(text):
            match = _TTL_PART.match(text, position)
            if not match or match.end() == position:
                raise ValueError(f"Cannot parse TTL {ttl!r}")
            amount, unit = match.groups()
            try:
                total += float(amount) * _MS_PER_UNIT[unit.lower()]
            except KeyError:
                raise ValueError(f"Unknown TTL unit {unit!r} in {ttl!r}") from None
            position = match.end()

    if total < 0:
        raise ValueError(f"TTL must not be negative, got {ttl!r}")

    return int(total)


@dataclass(slots=True, frozen=True)
class CacheById:
    """Per-model settings for caching ``load_by_id`` results, set as ``__cache_by_id__``.

    Args:
        ttl: Lifetime in the distributed tier, milliseconds or a duration string.
        columns: Only persist these columns (default: every column).
        exclude_columns: Never persist these columns.
        max_local_items: Size of the process-local front cache.
        local_ttl: Lifetime in the front cache, capped at ``ttl``. Writes in
            another process only clear that process's front cache, so this
            bounds how long a peer may serve a stale entity.
        bypass_on_connection: Skip both tiers when a caller targets an
            explicit connection, e.g. inside a transaction.
    """

    ttl: int | str | timedelta
    columns: tuple[str, ...] | None = None
    exclude_columns: tuple[str, ...] = ()
    max_local_items: int = DEFAULT_MAX_LOCAL_ITEMS
    local_ttl: int | str | timedelta | None = None
    bypass_on_connection: bool = True

    @property
    def ttl_ms(self) -> int:
        return parse_ttl(self.ttl)

    @property
    def local_ttl_ms(self) -> int:
        local = parse_ttl(self.local_ttl if self.local_ttl is not None else DEFAULT_LOCAL_TTL)
        if not self.ttl_ms:
            return local

        return min(local, self.ttl_ms)


@dataclass(slots=True, frozen=True)
class _CacheRecord(Generic[ValueT]):
    value: ValueT
    inserted_at: float


class LRUCache(Generic[KeyT, ValueT]):
    """Thread-safe least-recently-used cache with optional age-based expiry.

    Args:
        maxsize: Maximum number of entries to retain. Must be positive.
        ttl_seconds: Entry lifetime; ``None`` keeps entries until evicted.
        now_fn: Injectable monotonic clock, mainly for tests.
    """

    def __init__(
        self,
        maxsize: int = DEFAULT_MAX_LOCAL_ITEMS,
        ttl_seconds: float | None = None,
        *,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if maxsize <= 0:
            raise ValueError(f"maxsize must be positive, got {maxsize}")

        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive or None, got {ttl_seconds}")

        self._maxsize = maxsize
        self._ttl_seconds = ttl_seconds
        self._now = now_fn
        self._lock = threading.RLock()
        self._store: OrderedDict[KeyT, _CacheRecord[ValueT]] = OrderedDict()

    def get(self, key: KeyT, default: Any = None) -> ValueT | Any:
        """Return the live value for *key* and mark it most recently used."""
        with self._lock:
            record = self._store.get(key)
            if record is None:
                return default

            if self._expired(record):
                del self._store[key]
                return default

            self._store.move_to_end(key)
            return record.value

    def set(self, key: KeyT, value: ValueT) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = _CacheRecord(value=value, inserted_at=self._now())
            while len(self._store) > self._maxsize:
                self._store.popitem(last=False)

    def delete(self, key: KeyT) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __contains__(self, key: object) -> bool:
        return self.get(key, _MISS) is not _MISS  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            for key in [k for k, record in self._store.items() if self._expired(record)]:
                del self._store[key]
            return len(self._store)

    def _expired(self, record: _CacheRecord[ValueT]) -> bool:
        return self._ttl_seconds is not None and self._now() - record.inserted_at >= self._ttl_seconds


class DistributedCache(Protocol):
    """Operations the id cache needs from the distributed tier.

    ``get`` returns ``None`` only for a miss; transport failures must raise.
    """

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, *, ttl_ms: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class RedisCache:
    """``DistributedCache`` on top of ``redis.asyncio``.

    Keys are namespaced as ``"{prefix}:{key}"``; TTLs are passed as ``PX``.

    Example::

        cache = RedisCache(Redis.from_url("redis://localhost:6379/0"), prefix="shop")
        await cache.get_or_set("settings", load_settings, ttl="10 min", parse=msgspec.json.decode)
    """

    __slots__ = ("_client", "prefix")

    def __init__(self, client: Redis, *, prefix: str = DEFAULT_PREFIX) -> None:
        self._client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    async def get(self, key: str) -> bytes | None:
        return await self._client.get(self._key(key))

    async def set(self, key: str, value: bytes, *, ttl_ms: int | None = None) -> None:
        await self._client.set(self._key(key), value, px=ttl_ms or None)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def get_or_set(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        *,
        ttl: int | str | timedelta | None = None,
        parse: Callable[[bytes], Any] | None = None,
    ) -> Any:
        """Return the cached value of *key*, computing and storing it on a miss.

        Computed values are stored as JSON; *parse* decodes hits (raw bytes
        are returned without it).
        """
        if (raw := await self.get(key)) is not None:
            return parse(raw) if parse is not None else raw

        value = await compute()
        await self.set(
            key,
            msgspec.json.encode(value),
            ttl_ms=parse_ttl(ttl) if ttl is not None else None,
        )

        return value

    async def close(self) -> None:
        await self._client.aclose()


_MISS: Final = object()
_NULL_PAYLOAD: Final[bytes] = b"null"


class IdCache:
    """Two-tier cache of ``load_by_id`` results for one model.

    A bounded local LRU of payload dicts sits in front of the optional
    distributed tier. Entities are stored as JSON payloads of the selected
    columns; a cached ``null`` records that an id does not exist. Local
    entries expire after ``settings.local_ttl_ms``; *now_fn* is the clock of
    that expiry.
    """

    __slots__ = ("_backend", "_local", "_table", "columns", "model", "settings")

    def __init__(
        self,
        model: type,
        settings: CacheById,
        backend: DistributedCache | None,
        *,
        now_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.settings = settings
        self._backend = backend
        self._table = get_table_name(model)  # type: ignore[arg-type]
        self._local: LRUCache[str, dict[str, Any] | None] = LRUCache(
            maxsize=settings.max_local_items,
            ttl_seconds=settings.local_ttl_ms / 1000 or None,
            now_fn=now_fn,
        )
        names = settings.columns or tuple(column.key for column in model.__table__.c)  # type: ignore[attr-defined]
        self.columns = tuple(name for name in names if name not in settings.exclude_columns)

    def key(self, ident: Any) -> str:
        return f"{self._table}:id:{ident}"

    async def get_many(
        self,
        ids: Sequence[Any],
        compute: Callable[[list[Any]], Awaitable[Sequence[Any]]],
    ) -> list[Any]:
        """Resolve *ids* through both tiers, computing every miss in one call.

        Args:
            ids: Ids to resolve.
            compute: ``async (missing_ids) -> entities`` aligned with its input,
                ``None`` for ids without a row.

        Returns:
            Entities (or ``None``) aligned with *ids*.
        """
        payloads: list[Any] = [self._local.get(self.key(ident), _MISS) for ident in ids]

        remote = [i for i, payload in enumerate(payloads) if payload is _MISS]
        if remote and self._backend is not None:
            raws = await asyncio.gather(*(self._backend.get(self.key(ids[i])) for i in remote))
            for i, raw in zip(remote, raws):
                if raw is None:
                    continue
                payload = msgspec.json.decode(raw)
                payloads[i] = payload
                self._local.set(self.key(ids[i]), payload)

        results: list[Any] = [
            None if payload is _MISS or payload is None else self.model.from_cache_payload(payload)  # type: ignore[attr-defined]
            for payload in payloads
        ]

        missing = [i for i, payload in enumerate(payloads) if payload is _MISS]
        logger.debug(
            "cache.lookup", model=self.model.__name__, hits=len(ids) - len(missing), misses=len(missing)
        )
        if not missing:
            return results

        computed = list(await compute([ids[i] for i in missing]))
        writes: list[Awaitable[None]] = []
        for i, entity in zip(missing, computed):
            payload = entity.to_cache_payload(self.columns) if entity is not None else None
            self._local.set(self.key(ids[i]), payload)
            if self._backend is not None:
                raw = msgspec.json.encode(payload) if payload is not None else _NULL_PAYLOAD
                writes.append(self._backend.set(self.key(ids[i]), raw, ttl_ms=self.settings.ttl_ms))
            results[i] = entity

        if writes:
            await asyncio.gather(*writes)

        return results

    async def invalidate(self, ident: Any) -> None:
        """Remove *ident* from both tiers."""
        self._local.delete(self.key(ident))
        if self._backend is not None:
            await self._backend.delete(self.key(ident))

        logger.debug("cache.invalidated", model=self.model.__name__, id=ident)

    def clear_local(self) -> None:
        self._local.clear()
