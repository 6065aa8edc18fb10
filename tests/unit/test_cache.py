from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import msgspec
import pytest

from sqla_batchloads import CacheById, IdCache, LRUCache, RedisCache, parse_ttl

from ..conftest import InMemoryCache
from ..models import Store


pytestmark = pytest.mark.anyio


class TestParseTtl:
    @pytest.mark.parametrize(
        ("ttl", "expected"),
        [
            (1500, 1500),
            ("500ms", 500),
            ("30s", 30_000),
            ("10 min", 600_000),
            ("1h", 3_600_000),
            ("2 days", 172_800_000),
            ("1h 30min", 5_400_000),
            ("250", 250),
            (timedelta(seconds=2), 2000),
        ],
    )
    def test_parse(self, ttl: Any, expected: int) -> None:
        assert parse_ttl(ttl) == expected

    @pytest.mark.parametrize("ttl", ["", "soon", "10 fortnights", "-5s"])
    def test_invalid(self, ttl: str) -> None:
        with pytest.raises(ValueError):
            parse_ttl(ttl)

    def test_settings_expose_milliseconds(self) -> None:
        settings = CacheById(ttl="1 min", local_ttl="5s")
        assert settings.ttl_ms == 60_000
        assert settings.local_ttl_ms == 5_000
        assert CacheById(ttl=100).local_ttl_ms == 100

    def test_local_ttl_defaults_to_short_window(self) -> None:
        assert CacheById(ttl="10 min").local_ttl_ms == 5_000
        assert CacheById(ttl="10 min", local_ttl="1h").local_ttl_ms == 600_000
        assert CacheById(ttl=0).local_ttl_ms == 5_000


class TestLRUCache:
    def test_evicts_least_recently_used(self) -> None:
        cache: LRUCache[str, int] = LRUCache(maxsize=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert len(cache) == 2

    def test_expiry(self) -> None:
        now = [0.0]
        cache: LRUCache[str, int] = LRUCache(maxsize=4, ttl_seconds=10, now_fn=lambda: now[0])
        cache.set("a", 1)

        now[0] = 9.9
        assert cache.get("a") == 1
        now[0] = 10.0
        assert cache.get("a") is None

    def test_none_values_are_distinct_from_missing(self) -> None:
        cache: LRUCache[str, None] = LRUCache()
        cache.set("a", None)
        sentinel = object()

        assert cache.get("a", sentinel) is None
        assert cache.get("b", sentinel) is sentinel

    def test_rejects_bad_sizes(self) -> None:
        with pytest.raises(ValueError):
            LRUCache(maxsize=0)
        with pytest.raises(ValueError):
            LRUCache(ttl_seconds=0)


def _store(ident: int, name: str) -> Store:
    return Store(id=ident, name=name, region="eu", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))


class Compute:
    def __init__(self, rows: dict[int, Store]) -> None:
        self.rows = rows
        self.calls: list[list[int]] = []

    async def __call__(self, ids: list[int]) -> list[Store | None]:
        self.calls.append(list(ids))
        return [self.rows.get(ident) for ident in ids]


class TestIdCache:
    @pytest.fixture
    def settings(self) -> CacheById:
        return CacheById(ttl="10 min", exclude_columns=("updated_at",))

    async def test_miss_then_local_hit(self, settings: CacheById, distributed_cache: InMemoryCache) -> None:
        id_cache = IdCache(Store, settings, distributed_cache)
        compute = Compute({1: _store(1, "North")})

        first = await id_cache.get_many([1], compute)
        second = await id_cache.get_many([1], compute)

        assert compute.calls == [[1]]
        assert first[0].name == second[0].name == "North"
        assert second[0].created_at.year == 2024
        assert distributed_cache.ttls["stores:id:1"] == 600_000

    async def test_payload_respects_columns(self, settings: CacheById, distributed_cache: InMemoryCache) -> None:
        id_cache = IdCache(Store, settings, distributed_cache)

        await id_cache.get_many([1], Compute({1: _store(1, "North")}))

        payload = msgspec.json.decode(distributed_cache.data["stores:id:1"])
        assert payload["name"] == "North"
        assert "updated_at" not in payload
        assert "updated_at" not in id_cache.columns

    async def test_distributed_hit_skips_compute(self, settings: CacheById, distributed_cache: InMemoryCache) -> None:
        distributed_cache.data["stores:id:7"] = msgspec.json.encode({"id": 7, "name": "Remote", "region": "us"})
        id_cache = IdCache(Store, settings, distributed_cache)
        compute = Compute({})

        (store,) = await id_cache.get_many([7], compute)

        assert compute.calls == []
        assert isinstance(store, Store)
        assert (store.id, store.name, store.region) == (7, "Remote", "us")

    async def test_missing_row_cached_as_null(self, settings: CacheById, distributed_cache: InMemoryCache) -> None:
        compute = Compute({})
        id_cache = IdCache(Store, settings, distributed_cache)

        assert await id_cache.get_many([9], compute) == [None]
        assert distributed_cache.data["stores:id:9"] == b"null"

        fresh = IdCache(Store, settings, distributed_cache)
        assert await fresh.get_many([9], compute) == [None]
        assert compute.calls == [[9]]

    async def test_mixed_hits_compute_misses_in_one_call(
        self, settings: CacheById, distributed_cache: InMemoryCache
    ) -> None:
        id_cache = IdCache(Store, settings, distributed_cache)
        compute = Compute({1: _store(1, "North"), 2: _store(2, "South"), 3: _store(3, "East")})
        await id_cache.get_many([2], compute)

        stores = await id_cache.get_many([1, 2, 3], compute)

        assert compute.calls == [[2], [1, 3]]
        assert [store.name for store in stores] == ["North", "South", "East"]

    async def test_invalidate_clears_both_tiers(self, settings: CacheById, distributed_cache: InMemoryCache) -> None:
        id_cache = IdCache(Store, settings, distributed_cache)
        compute = Compute({1: _store(1, "North")})
        await id_cache.get_many([1], compute)

        await id_cache.invalidate(1)
        compute.rows[1] = _store(1, "Renamed")
        (store,) = await id_cache.get_many([1], compute)

        assert "stores:id:1" in distributed_cache.data
        assert store.name == "Renamed"
        assert ("delete", "stores:id:1") in distributed_cache.calls

    async def test_backend_failure_is_not_a_miss(self, settings: CacheById, distributed_cache: InMemoryCache) -> None:
        id_cache = IdCache(Store, settings, distributed_cache)
        compute = Compute({1: _store(1, "North")})
        distributed_cache.fail = True

        with pytest.raises(ConnectionError):
            await id_cache.get_many([1], compute)
        assert compute.calls == []

    async def test_local_only(self, settings: CacheById) -> None:
        id_cache = IdCache(Store, settings, None)
        compute = Compute({1: _store(1, "North")})

        await id_cache.get_many([1], compute)
        await id_cache.get_many([1], compute)

        assert compute.calls == [[1]]


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, bytes] = {}
        self.px: dict[str, int | None] = {}

    async def get(self, key: str) -> bytes | None:
        return self.store.get(key)

    async def set(self, key: str, value: bytes, px: int | None = None) -> None:
        self.store[key] = value
        self.px[key] = px

    async def delete(self, key: str) -> None:
        self.store.pop(key, None)


class TestRedisCache:
    async def test_prefix_and_ttl(self) -> None:
        client = FakeRedis()
        cache = RedisCache(client, prefix="shop")  # type: ignore[arg-type]

        await cache.set("k", b"v", ttl_ms=1000)

        assert client.store == {"shop:k": b"v"}
        assert client.px["shop:k"] == 1000
        assert await cache.get("k") == b"v"

        await cache.delete("k")
        assert await cache.get("k") is None

    async def test_get_or_set(self) -> None:
        client = FakeRedis()
        cache = RedisCache(client)  # type: ignore[arg-type]
        calls = 0

        async def compute() -> dict[str, int]:
            nonlocal calls
            calls += 1
            return {"count": 3}

        first = await cache.get_or_set("stats", compute, ttl="1 min", parse=msgspec.json.decode)
        second = await cache.get_or_set("stats", compute, ttl="1 min", parse=msgspec.json.decode)

        assert first == second == {"count": 3}
        assert calls == 1
        assert client.px["a:stats"] == 60_000


class TestSharedBackend:
    """Two id caches on one distributed tier, as in two processes."""

    async def test_peer_sees_write_after_local_ttl(self, distributed_cache: InMemoryCache) -> None:
        now = [0.0]
        settings = CacheById(ttl="10 min", local_ttl="5s")
        writer = IdCache(Store, settings, distributed_cache, now_fn=lambda: now[0])
        reader = IdCache(Store, settings, distributed_cache, now_fn=lambda: now[0])
        compute = Compute({1: _store(1, "North")})

        (before,) = await reader.get_many([1], compute)
        await writer.invalidate(1)
        compute.rows[1] = _store(1, "Renamed")

        now[0] = 4.0
        (within_window,) = await reader.get_many([1], compute)
        now[0] = 5.0
        (after_window,) = await reader.get_many([1], compute)

        assert before.name == within_window.name == "North"
        assert after_window.name == "Renamed"
        assert compute.calls == [[1], [1]]

    async def test_writer_sees_own_write_immediately(self, distributed_cache: InMemoryCache) -> None:
        settings = CacheById(ttl="10 min")
        writer = IdCache(Store, settings, distributed_cache)
        compute = Compute({1: _store(1, "North")})
        await writer.get_many([1], compute)

        await writer.invalidate(1)
        compute.rows[1] = _store(1, "Renamed")
        (store,) = await writer.get_many([1], compute)

        assert store.name == "Renamed"
