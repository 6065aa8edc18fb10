from __future__ import annotations

import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any, ClassVar

import msgspec
import sqlalchemy as sa
import structlog

from . import resolution
from .errors import ConfigurationError, UserError, user_error_for
from .limits import limit_filter
from .query import QueryBuilder
from .registry import Registry
from .relations import Modifier, RelationDecl
from .scope import LoaderScope
from .tools import attribute_name, get_primary_key


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .batching import BatchLoader
    from .cache import CacheById
    from .executor import Connection

DEFAULT_SOFT_DELETE_COLUMN = "deleted_at"
CREATED_AT = "created_at"
UPDATED_AT = "updated_at"

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache
def _python_types(model: type) -> dict[str, tuple[str, Any]]:
    """``column name -> (attribute name, python type)`` for cache payload decoding."""
    result: dict[str, tuple[str, Any]] = {}
    for column in model.__table__.c:  # type: ignore[attr-defined]
        try:
            python_type: Any = column.type.python_type
        except NotImplementedError:
            python_type = Any
        result[column.key] = (attribute_name(model, column.key), python_type)

    return result


class BatchModel:
    """Mixin for declarative models that load through batched, scoped loaders.

    Mix it into the declarative base::

        class Base(BatchModel, DeclarativeBase):
            pass

        class Store(Base):
            __tablename__ = "stores"
            __soft_delete__ = True
            __cache_by_id__ = CacheById(ttl="10 min")
            __relations__ = (belongs_to("Brand"), has_many_through("Category"))

    Class settings:
        ``__relations__``: relation declarations, see :mod:`.relations`.
        ``__soft_delete__``: ``True`` (column ``deleted_at``) or a column name;
        reads hide soft-deleted rows and ``delete_by_id`` only marks them.
        ``__timestamps__``: maintain ``created_at`` / ``updated_at`` on writes.
        ``__cache_by_id__``: :class:`.CacheById` settings of the id cache.
        ``__scopes__``: named predicates ``{name: (model) -> clause}``; the
        ``"default"`` scope applies to every query.
    """

    __relations__: ClassVar[Sequence[RelationDecl]] = ()
    __soft_delete__: ClassVar[bool | str] = False
    __timestamps__: ClassVar[bool] = False
    __cache_by_id__: ClassVar[CacheById | None] = None
    __scopes__: ClassVar[Mapping[str, Callable[[Any], sa.ColumnElement[bool]]]] = {}

    Error: ClassVar[type[UserError]] = UserError

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "Error" not in cls.__dict__:
            cls.Error = user_error_for(cls.__name__)

    @classmethod
    def id_column(cls) -> str:
        return get_primary_key(cls).key  # type: ignore[arg-type]

    @classmethod
    def soft_delete_column(cls) -> str | None:
        if not cls.__soft_delete__:
            return None

        if isinstance(cls.__soft_delete__, str):
            return cls.__soft_delete__

        return DEFAULT_SOFT_DELETE_COLUMN

    @classmethod
    def system_columns(cls) -> tuple[str, ...]:
        """Columns maintained by the write helpers rather than by callers."""
        columns = [CREATED_AT, UPDATED_AT] if cls.__timestamps__ else []
        if (soft_delete := cls.soft_delete_column()) is not None:
            columns.append(soft_delete)

        return tuple(columns)

    @classmethod
    def query(cls) -> QueryBuilder[Any]:
        return QueryBuilder(cls)  # type: ignore[type-var]

    # loaders

    @classmethod
    def get_loader(
        cls,
        columns: str | Sequence[str],
        filter: Modifier = None,  # noqa: A002
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> BatchLoader[Any, Any]:
        """Loader returning the first row per value of *columns* (tuple keys for several columns)."""
        return resolution.column_loader(cls, columns, filter, scope=scope, connection=connection)

    @classmethod
    def get_many_loader(
        cls,
        column: str,
        filter: Modifier = None,  # noqa: A002
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> BatchLoader[Any, list[Any]]:
        """Loader returning every row per value of *column*.

        Raises:
            CompositeKeyError: If *column* names several columns.
        """
        return resolution.column_loader(
            cls, column, filter, many=True, scope=scope, connection=connection
        )

    @classmethod
    def get_id_loader(
        cls, *, scope: LoaderScope | None = None, connection: Connection | None = None
    ) -> BatchLoader[Any, Any]:
        return resolution.id_loader(cls, scope=scope, connection=connection)

    @classmethod
    def get_relation_loader(
        cls,
        name: str,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
        filter: Modifier = None,  # noqa: A002
    ) -> BatchLoader[Any, Any]:
        return resolution.get_relation_loader(
            cls, name, scope=scope, connection=connection, filter=filter
        )

    # loads

    @classmethod
    async def load_by_id(
        cls,
        ident: Any,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> Self | None:
        """Load one row by primary key; concurrent calls share one query.

        Example:
            >>> store, other = await asyncio.gather(Store.load_by_id(1), Store.load_by_id(2))
        """
        return await cls.get_id_loader(scope=scope, connection=connection).load(ident)

    @classmethod
    async def load_by_ids(
        cls,
        ids: Sequence[Any],
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> list[Self | None]:
        return await cls.get_id_loader(scope=scope, connection=connection).load_many(ids)

    @classmethod
    async def load_by_column(
        cls,
        column: str | Sequence[str],
        value: Any,
        filter: Modifier = None,  # noqa: A002
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> Self | None:
        return await cls.get_loader(column, filter, scope=scope, connection=connection).load(value)

    @classmethod
    async def load_many_by_column(
        cls,
        column: str,
        value: Any,
        filter: Modifier = None,  # noqa: A002
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> list[Self]:
        loader = cls.get_many_loader(column, filter, scope=scope, connection=connection)

        return await loader.load(value)

    @classmethod
    async def load_by_ids_limited(
        cls,
        ids: Sequence[Any],
        limit: int | None,
        offset: int = 0,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> list[Self]:
        """Load up to *limit* existing rows from *ids*, skipping ids without a (visible) row."""
        loader = cls.get_id_loader(scope=scope, connection=connection)

        return await limit_filter(ids, loader.load_many, limit=limit, offset=offset, non_null=True)

    def load_relation(
        self,
        name: str,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
        default: Any = resolution.MISSING,
        filter: Modifier = None,  # noqa: A002
    ) -> Awaitable[Any]:
        """Resolve relation *name*, see :func:`.resolution.load_relation`."""
        return resolution.load_relation(
            self, name, scope=scope, connection=connection, default=default, filter=filter
        )

    # writes

    @classmethod
    async def insert(
        cls,
        values: Mapping[str, Any],
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> Self:
        """Insert a row built from *values* and return the new entity."""
        values = dict(values)
        if cls.__timestamps__:
            now = _now()
            values.setdefault(CREATED_AT, now)
            values.setdefault(UPDATED_AT, now)

        entity = await Registry().get_executor().add(cls(**values), connection)
        # an earlier miss for this id may be cached as null
        await cls.delete_cache_by_id(getattr(entity, attribute_name(cls, cls.id_column())), scope=scope)
        logger.debug("model.inserted", model=cls.__name__)

        return entity

    @classmethod
    async def save(
        cls,
        values: Mapping[str, Any],
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> Self | int:
        """Insert *values*, or patch the row when they carry an id."""
        id_attr = attribute_name(cls, cls.id_column())
        if values.get(id_attr) is None:
            return await cls.insert(
                {k: v for k, v in values.items() if k != id_attr}, scope=scope, connection=connection
            )

        fields = {k: v for k, v in values.items() if k != id_attr}

        return await cls.patch_by_id(values[id_attr], fields, scope=scope, connection=connection)

    @classmethod
    async def _update_by_id(
        cls,
        ident: Any,
        values: Mapping[str, Any],
        scope: LoaderScope | None,
        connection: Connection | None,
    ) -> int:
        statement = cls.query().find(ident).build_update(values)
        result = await Registry().get_executor().execute(statement, connection)
        await cls.delete_cache_by_id(ident, scope=scope)

        return result.rowcount

    @classmethod
    async def patch_by_id(
        cls,
        ident: Any,
        values: Mapping[str, Any],
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> int:
        """Update columns of one row and drop its cached copies.

        Returns:
            Number of rows updated.
        """
        values = dict(values)
        if cls.__timestamps__:
            values.setdefault(UPDATED_AT, _now())

        return await cls._update_by_id(ident, values, scope, connection)

    @classmethod
    async def delete_by_id(
        cls,
        ident: Any,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> int:
        """Delete one row; models with soft delete only get it marked."""
        if (column := cls.soft_delete_column()) is not None:
            return await cls._update_by_id(ident, {attribute_name(cls, column): _now()}, scope, connection)

        return await cls.force_delete_by_id(ident, scope=scope, connection=connection)

    @classmethod
    async def force_delete_by_id(
        cls,
        ident: Any,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> int:
        statement = cls.query().find(ident).build_delete()
        result = await Registry().get_executor().execute(statement, connection)
        await cls.delete_cache_by_id(ident, scope=scope)

        return result.rowcount

    @classmethod
    async def restore_by_id(
        cls,
        ident: Any,
        *,
        scope: LoaderScope | None = None,
        connection: Connection | None = None,
    ) -> int:
        """Clear the soft-delete mark of one row.

        Raises:
            ConfigurationError: If the model does not use soft delete.
        """
        if (column := cls.soft_delete_column()) is None:
            raise ConfigurationError(f"{cls.__name__} does not use soft delete")

        return await cls._update_by_id(ident, {attribute_name(cls, column): None}, scope, connection)

    @classmethod
    async def delete_cache_by_id(cls, ident: Any, *, scope: LoaderScope | None = None) -> None:
        """Forget *ident* in the id cache and drop what *scope* memoized about it."""
        if (id_cache := Registry().id_cache(cls)) is not None:
            await id_cache.invalidate(ident)

        if scope is not None:
            scope.invalidate(cls, ident)

    # id cache payloads

    def to_cache_payload(self, columns: Sequence[str]) -> dict[str, Any]:
        """JSON-ready ``{column: value}`` of *columns* for the distributed cache tier."""
        model = type(self)

        return msgspec.to_builtins(
            {column: getattr(self, attribute_name(model, column)) for column in columns}
        )

    @classmethod
    def from_cache_payload(cls, payload: Mapping[str, Any]) -> Self:
        """Rebuild a detached entity from a cache payload written by :meth:`to_cache_payload`."""
        types = _python_types(cls)
        values: dict[str, Any] = {}
        for column, value in payload.items():
            if column not in types:
                continue
            attr, python_type = types[column]
            values[attr] = value if value is None else msgspec.convert(value, python_type, strict=False)

        return cls(**values)
