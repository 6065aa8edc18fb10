from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_batchloads import GLOBAL_SCOPE, LoaderScope, SessionExecutor
from sqla_batchloads.executor import Connection
from sqla_batchloads.registry import Registry, get_registry, init_registry

from .models import (
    Base,
    Brand,
    BrandProfile,
    Category,
    Product,
    StockEntry,
    Store,
    category_store_map,
)


pytestmark = pytest.mark.anyio


class InMemoryCache:
    """``DistributedCache`` double that records traffic and can simulate an outage."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int | None] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail = False

    def _record(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        if self.fail:
            raise ConnectionError("cache unavailable")

    async def get(self, key: str) -> bytes | None:
        self._record("get", key)
        return self.data.get(key)

    async def set(self, key: str, value: bytes, *, ttl_ms: int | None = None) -> None:
        self._record("set", key)
        self.data[key] = value
        self.ttls[key] = ttl_ms

    async def delete(self, key: str) -> None:
        self._record("delete", key)
        self.data.pop(key, None)


class TransactionExecutor(SessionExecutor):
    """Runs every statement inside the test transaction, one at a time.

    The sessions share a single connection, which does not support concurrent use.
    """

    def __init__(self, connection: AsyncConnection) -> None:
        super().__init__(lambda: AsyncSession(bind=connection, expire_on_commit=False))
        self._serial = asyncio.Lock()

    @asynccontextmanager
    async def session(self, connection: Connection | None = None) -> AsyncIterator[tuple[AsyncSession, bool]]:
        async with self._serial, super().session(connection) as pair:
            yield pair


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_registry() -> None:
    """Register the test models.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    Registry.reset()
    init_registry(get_registry(Base))


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
def distributed_cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def registry(connection: AsyncConnection, distributed_cache: InMemoryCache) -> Iterator[Registry]:
    """The registry wired to the test transaction and the in-memory cache."""
    reg = Registry()
    reg.configure(
        executor=TransactionExecutor(connection),
        cache=distributed_cache,
    )
    yield reg
    reg.executor = None
    reg.cache = None
    reg.clear_caches()


@pytest.fixture
def statements(engine: AsyncEngine) -> Iterator[list[str]]:
    """SQL statements sent to the database while the test runs."""
    seen: list[str] = []

    def _record(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        seen.append(statement)

    sa.event.listen(engine.sync_engine, "before_cursor_execute", _record)
    yield seen
    sa.event.remove(engine.sync_engine, "before_cursor_execute", _record)


@pytest.fixture
def selects(statements: list[str]) -> Any:
    def _count() -> int:
        return sum(1 for statement in statements if statement.lstrip().upper().startswith("SELECT"))

    return _count


@pytest.fixture
def scope() -> Iterator[LoaderScope]:
    loader_scope = LoaderScope("test")
    yield loader_scope
    loader_scope.clear()


@pytest.fixture
async def seed_data(session: AsyncSession, registry: Registry) -> dict[str, list[Base]]:
    acme = Brand(id=1, name="Acme")
    globex = Brand(id=2, name="Globex")
    initech = Brand(id=3, name="Initech")
    session.add_all([acme, globex, initech])
    await session.flush()

    session.add(BrandProfile(id=1, slogan="Everything you need", brand_id=1))

    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    north = Store(id=1, name="North", region="eu", brand_id=1, created_at=created)
    south = Store(id=2, name="South", region="us", brand_id=1, created_at=created)
    east = Store(id=3, name="East", region="eu", brand_id=2, created_at=created)
    closed = Store(id=4, name="Closed", region="eu", brand_id=2, created_at=created, deleted_at=created)
    session.add_all([north, south, east, closed])
    await session.flush()

    widget = Product(id=1, name="Widget", price=50, active=True, store_id=1)
    gadget = Product(id=2, name="Gadget", price=150, active=True, store_id=1)
    gizmo = Product(id=3, name="Gizmo", price=20, active=False, store_id=1)
    doohickey = Product(id=4, name="Doohickey", price=300, active=True, store_id=3)
    session.add_all([widget, gadget, gizmo, doohickey])

    tools = Category(id=1, name="Tools")
    toys = Category(id=2, name="Toys")
    garden = Category(id=3, name="Garden")
    session.add_all([tools, toys, garden])
    await session.flush()

    await session.execute(
        category_store_map.insert().values([
            {"category_id": 1, "store_id": 1, "position": 2},
            {"category_id": 2, "store_id": 1, "position": 1},
            {"category_id": 1, "store_id": 3, "position": 1},
            {"category_id": 2, "store_id": 4, "position": 1},
        ])
    )

    session.add_all([
        StockEntry(id=1, store_id=1, region="eu", quantity=10),
        StockEntry(id=2, store_id=1, region="us", quantity=5),
        StockEntry(id=3, store_id=2, region="us", quantity=7),
    ])
    await session.flush()

    session.expunge_all()

    return {
        "brands": [acme, globex, initech],
        "stores": [north, south, east, closed],
        "products": [widget, gadget, gizmo, doohickey],
        "categories": [tools, toys, garden],
    }


@pytest.fixture(autouse=True)
def _clear_global_scope() -> Iterator[None]:
    yield
    GLOBAL_SCOPE.clear()
