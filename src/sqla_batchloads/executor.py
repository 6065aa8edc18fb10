from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, Union

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from .query import QueryBuilder
from .relations import Modifier, Relation
from .tools import attribute_name, get_column, unique_scalars


Connection = Union[AsyncSession, AsyncConnection]
SessionFactory = Callable[[], AsyncSession]

logger = structlog.get_logger(__name__)

# entities are re-read even if the session already holds them
_FRESH = {"populate_existing": True}


def _builder(model: type) -> QueryBuilder[Any]:
    query = getattr(model, "query", None)

    return query() if query is not None else QueryBuilder(model)


class SessionExecutor:
    """Runs the statements behind every batch on SQLAlchemy's asyncio extension.

    Each call opens a short-lived session from *session_factory*, unless the
    caller targets an explicit connection: an ``AsyncSession`` is used as is,
    an ``AsyncConnection`` gets a session bound to it. Statements against one
    explicit connection are serialized, since neither object supports
    concurrent use.

    Args:
        session_factory: Usually an ``async_sessionmaker``; anything returning a
            fresh ``AsyncSession`` works.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> executor = SessionExecutor(async_sessionmaker(engine, expire_on_commit=False))
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._locks: weakref.WeakKeyDictionary[Any, asyncio.Lock] = weakref.WeakKeyDictionary()

    @asynccontextmanager
    async def session(self, connection: Connection | None = None) -> AsyncIterator[tuple[AsyncSession, bool]]:
        """Yield ``(session, owned)``; only owned sessions are committed and closed here."""
        if connection is None:
            async with self._session_factory() as session:
                yield session, True
            return

        async with self._lock(connection):
            if isinstance(connection, AsyncSession):
                yield connection, False
            else:
                async with AsyncSession(bind=connection, expire_on_commit=False) as session:
                    yield session, False

    def _lock(self, connection: Connection) -> asyncio.Lock:
        if (lock := self._locks.get(connection)) is None:
            lock = self._locks[connection] = asyncio.Lock()

        return lock

    async def fetch_by_column(
        self,
        model: type,
        columns: Sequence[str],
        values: Sequence[Any],
        *modifiers: Modifier,
        connection: Connection | None = None,
    ) -> Sequence[Any]:
        """Fetch every *model* row whose *columns* match one of *values*.

        A single column uses ``IN``; several columns use a tuple ``IN`` and
        *values* must be tuples of the same arity.
        """
        query = _builder(model)
        if len(columns) == 1:
            query.where_in(columns[0], list(values))
        else:
            key = sa.tuple_(*(get_column(model, name) for name in columns))
            query.where(key.in_([tuple(value) for value in values]))
        query.apply(*modifiers)

        async with self.session(connection) as (session, _):
            rows = unique_scalars(await session.execute(query.build(), execution_options=_FRESH))

        logger.debug(
            "executor.fetched", model=model.__name__, columns=list(columns), keys=len(values), rows=len(rows)
        )

        return rows

    async def fetch_through(
        self,
        relation: Relation,
        values: Sequence[Any],
        *modifiers: Modifier,
        connection: Connection | None = None,
    ) -> list[tuple[Any, Any]]:
        """Load a many-through relation for several owners in one joined query.

        Returns:
            ``(owner_key, related)`` pairs. Extra join-table columns are set
            as plain attributes on the related entities; an entity linked to
            several owners carries the values of the last link read.
        """
        through = relation.through
        assert through is not None, f"{relation.name} is not a many-through relation"

        table = through.table
        related = relation.related
        owner_key = table.c[through.from_column]
        extra = [table.c[name] for name in through.extra]
        query = (
            _builder(related)
            .join(table, table.c[through.to_column] == get_column(related, relation.related_columns[0]))
            .columns(owner_key, *extra)
            .where(owner_key.in_(list(values)))
        )

        if isinstance(through.filter, Mapping):
            query.where(*(table.c[name] == value for name, value in through.filter.items()))
        else:
            query.apply(through.filter)
        query.apply(relation.filter, *modifiers)

        async with self.session(connection) as (session, _):
            rows = (await session.execute(query.build(), execution_options=_FRESH)).all()

        pairs: list[tuple[Any, Any]] = []
        for entity, key, *extra_values in rows:
            for column, value in zip(through.extra, extra_values):
                setattr(entity, column, value)
            pairs.append((key, entity))

        logger.debug("executor.fetched_through", relation=relation.name, keys=len(values), rows=len(pairs))

        return pairs

    async def fetch_related(
        self,
        relation: Relation,
        instance: Any,
        *modifiers: Modifier,
        connection: Connection | None = None,
    ) -> Any:
        """Resolve *relation* for one instance without batching (composite keys)."""
        values = [getattr(instance, attribute_name(relation.owner, name)) for name in relation.owner_columns]
        if any(value is None for value in values):
            return [] if relation.many else None

        query = _builder(relation.related)
        query.where(
            *(
                get_column(relation.related, name) == value
                for name, value in zip(relation.related_columns, values)
            )
        )
        query.apply(relation.filter, *modifiers)

        async with self.session(connection) as (session, _):
            rows = unique_scalars(await session.execute(query.build(), execution_options=_FRESH))

        if relation.many:
            return list(rows)

        return rows[0] if rows else None

    async def execute(self, statement: sa.Executable, connection: Connection | None = None) -> sa.Result[Any]:
        """Execute a write statement, committing when the session is owned here."""
        async with self.session(connection) as (session, owned):
            result = await session.execute(statement)
            if owned:
                await session.commit()

        return result

    async def add(self, entity: Any, connection: Connection | None = None) -> Any:
        """Insert *entity* and flush it so generated keys are populated."""
        async with self.session(connection) as (session, owned):
            session.add(entity)
            await session.flush()
            if owned:
                await session.commit()

        return entity
