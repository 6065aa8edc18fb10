"""Relation resolution: picks the loader for a relation access and runs it.

Every relation access goes through the same steps:

1. the instance's ``before_resolve`` hook may substitute the object used for
   the lookup;
2. a value already stored on that object is returned as is;
3. composite keys cannot be batched and are fetched row by row;
4. belongs-to and has-one relations use a single-key loader on the related
   type, has-many a grouping loader, many-through one joined query per batch;
5. an empty result is replaced by the caller's default, ``after_resolve``
   may transform the value and the value is stored on the instance.
"""

from __future__ import annotations

import asyncio
import enum
import weakref
from collections import defaultdict
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import structlog

from .batching import BatchLoader, cache_key
from .errors import CompositeKeyError
from .registry import Registry
from .relations import Modifier, Relation, RelationKind
from .scope import GLOBAL_SCOPE, LoaderScope, loader_key
from .tools import attribute_name, get_primary_key


if TYPE_CHECKING:
    from .executor import Connection

logger = structlog.get_logger(__name__)


class _Missing(enum.Enum):
    MISSING = enum.auto()

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing.MISSING
"""Marker for "no default given"; ``None`` is a valid default."""


@dataclass(slots=True, frozen=True)
class ResolveContext:
    """What a relation access is about, as seen by the resolve hooks."""

    instance: Any
    relation: Relation
    scope: LoaderScope
    connection: Any = None
    filter: Modifier = None
    default: Any = MISSING


@runtime_checkable
class Resolvable(Protocol):
    """Optional capability of an entity type to take part in relation resolution.

    ``before_resolve`` returns the object used for the lookup (or ``None`` to
    keep the instance); ``after_resolve`` returns the final value and learns
    whether the caller's default was substituted. Both must be free of side
    effects beyond their return value.
    """

    def before_resolve(self, ctx: ResolveContext) -> Any: ...

    def after_resolve(self, value: Any, ctx: ResolveContext, used_default: bool) -> Any: ...


def _modifiers(*modifiers: Modifier) -> tuple[Modifier, ...]:
    return tuple(modifier for modifier in modifiers if modifier is not None)


def _connection_ref(connection: Connection | None) -> Callable[[], Any]:
    """Reference the connection from loader closures without keeping it alive."""
    if connection is None:
        return lambda: None

    try:
        return weakref.ref(connection)
    except TypeError:
        return lambda: connection


def _map_by(model: type, columns: Sequence[str]) -> str | tuple[str, ...]:
    names = tuple(attribute_name(model, column) for column in columns)

    return names[0] if len(names) == 1 else names


def column_loader(
    model: type,
    columns: str | Sequence[str],
    *modifiers: Modifier,
    many: bool = False,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
) -> BatchLoader[Any, Any]:
    """Loader of *model* rows keyed by *columns*.

    Composite column sets take tuple keys and are only supported for
    single-row lookups.

    Raises:
        CompositeKeyError: If ``many`` is requested for several columns.
    """
    columns = (columns,) if isinstance(columns, str) else tuple(columns)
    if many and len(columns) != 1:
        raise CompositeKeyError(
            f"{model.__name__}: many-loaders need a single key column, got {list(columns)}"
        )

    registry = Registry()
    mods = _modifiers(*modifiers)
    conn = _connection_ref(connection)
    key = loader_key("many" if many else "one", model, columns, mods or None, registry.generation(model))
    map_by = _map_by(model, columns)

    def factory(memoize: bool) -> BatchLoader[Any, Any]:
        async def fetch(keys: list[Any]) -> Sequence[Any]:
            return await registry.get_executor().fetch_by_column(
                model, columns, keys, *mods, connection=conn()
            )

        return BatchLoader(
            fetch,
            cache=memoize,
            map_by=map_by,
            many=many,
            max_batch_size=registry.max_batch_size,
            name=key,
        )

    return (scope if scope is not None else GLOBAL_SCOPE).get_loader(key, factory, connection)


def id_loader(
    model: type,
    *,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
) -> BatchLoader[Any, Any]:
    """Loader of *model* rows by primary key, read through the id cache when configured.

    With an explicit *connection* the cache is skipped if the model's
    ``CacheById.bypass_on_connection`` is set.
    """
    registry = Registry()
    id_column = get_primary_key(model).key
    id_cache = registry.id_cache(model)
    if id_cache is not None and connection is not None and id_cache.settings.bypass_on_connection:
        id_cache = None

    if id_cache is None:
        return column_loader(model, id_column, scope=scope, connection=connection)

    conn = _connection_ref(connection)
    key = loader_key("id", model, id_column, None, registry.generation(model))
    id_attr = attribute_name(model, id_column)

    def factory(memoize: bool) -> BatchLoader[Any, Any]:
        async def compute(ids: list[Any]) -> list[Any]:
            rows = await registry.get_executor().fetch_by_column(
                model, (id_column,), ids, connection=conn()
            )
            index = {cache_key(getattr(row, id_attr)): row for row in rows}
            return [index.get(cache_key(ident)) for ident in ids]

        async def fetch(keys: list[Any]) -> list[Any]:
            return await id_cache.get_many(keys, compute)

        return BatchLoader(fetch, cache=memoize, max_batch_size=registry.max_batch_size, name=key)

    return (scope if scope is not None else GLOBAL_SCOPE).get_loader(key, factory, connection)


def through_loader(
    relation: Relation,
    *modifiers: Modifier,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
) -> BatchLoader[Any, list[Any]]:
    """Loader of a many-through relation keyed by the owner key; one joined query per batch."""
    registry = Registry()
    mods = _modifiers(*modifiers)
    conn = _connection_ref(connection)
    key = loader_key(
        "through", relation.owner, relation.name, mods or None, registry.generation(relation.owner)
    )

    def factory(memoize: bool) -> BatchLoader[Any, list[Any]]:
        async def fetch(keys: list[Any]) -> list[list[Any]]:
            pairs = await registry.get_executor().fetch_through(
                relation, keys, *mods, connection=conn()
            )
            grouped: defaultdict[Any, list[Any]] = defaultdict(list)
            for owner_key, entity in pairs:
                grouped[cache_key(owner_key)].append(entity)
            return [grouped.get(cache_key(owner_key), []) for owner_key in keys]

        return BatchLoader(
            fetch, cache=memoize, many=True, max_batch_size=registry.max_batch_size, name=key
        )

    return (scope if scope is not None else GLOBAL_SCOPE).get_loader(key, factory, connection)


def relation_loader(
    relation: Relation,
    filter: Modifier = None,  # noqa: A002
    *,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
) -> BatchLoader[Any, Any]:
    """Pick the loader serving *relation*.

    Unfiltered relations share the plain column loaders of the related type,
    so relation accesses and direct ``load_by_column`` calls coalesce.
    """
    if relation.composite:
        raise CompositeKeyError(
            f"{relation.owner.__name__}.{relation.name} has a composite key and cannot be batched"
        )

    mods = _modifiers(relation.filter, filter)
    related = relation.related

    match relation.kind:
        case RelationKind.OWNING_REF:
            if not mods and relation.related_columns[0] == get_primary_key(related).key:
                return id_loader(related, scope=scope, connection=connection)
            return column_loader(
                related, relation.related_columns, *mods, scope=scope, connection=connection
            )
        case RelationKind.SINGLE_OWNED:
            return column_loader(
                related, relation.related_columns, *mods, scope=scope, connection=connection
            )
        case RelationKind.MANY_OWNED:
            return column_loader(
                related, relation.related_columns, *mods, many=True, scope=scope, connection=connection
            )
        case RelationKind.MANY_THROUGH:
            return through_loader(relation, *mods, scope=scope, connection=connection)


def get_relation_loader(
    model: type,
    name: str,
    *,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
    filter: Modifier = None,  # noqa: A002
) -> BatchLoader[Any, Any]:
    """Loader for relation *name* of *model*, keyed by the owner-side column value.

    Raises:
        UndeclaredRelationError: If *model* declares no such relation.
        CompositeKeyError: If the relation key spans several columns.
    """
    relation = Registry().relation(model, name)

    return relation_loader(relation, filter, scope=scope, connection=connection)


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, list) and not value)


def load_relation(
    instance: Any,
    name: str,
    *,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
    default: Any = MISSING,
    filter: Modifier = None,  # noqa: A002
) -> Coroutine[Any, Any, Any]:
    """Resolve relation *name* of *instance*.

    The relation is looked up immediately, so an undeclared name raises here
    rather than when the result is awaited. Results loaded without a
    *filter* are stored on the instance under the relation name and returned
    directly by later calls.

    Args:
        instance: Entity owning the relation.
        name: Declared relation name.
        scope: Loader scope of the current unit of work; ``None`` uses the
            non-memoizing global scope.
        connection: Run the query on this session/connection.
        default: Returned (and stored) when nothing was found.
        filter: Extra filtering of the related rows.

    Raises:
        UndeclaredRelationError: If the relation is not declared.

    Example:
        >>> brand = await load_relation(store, "brand", scope=scope)
    """
    relation = Registry().relation(type(instance), name)
    ctx = ResolveContext(
        instance=instance,
        relation=relation,
        scope=scope if scope is not None else GLOBAL_SCOPE,
        connection=connection,
        filter=filter,
        default=default,
    )

    return _resolve(ctx)


async def _resolve(ctx: ResolveContext) -> Any:
    instance, relation = ctx.instance, ctx.relation
    stored = getattr(instance, "__dict__", {})
    if ctx.filter is None and relation.name in stored:
        return stored[relation.name]

    hooks = instance if isinstance(instance, Resolvable) else None

    target = instance
    if hooks is not None and (substitute := hooks.before_resolve(ctx)) is not None:
        target = substitute

    if relation.composite:
        logger.debug(
            "relation.composite_fallback", model=relation.owner.__name__, relation=relation.name
        )
        value = await Registry().get_executor().fetch_related(
            relation, target, ctx.filter, connection=ctx.connection
        )
    else:
        owner_key = getattr(target, attribute_name(relation.owner, relation.owner_columns[0]))
        loader = relation_loader(relation, ctx.filter, scope=ctx.scope, connection=ctx.connection)
        value = await loader.load(owner_key)

    used_default = _is_empty(value) and ctx.default is not MISSING
    if used_default:
        value = ctx.default

    if hooks is not None:
        value = hooks.after_resolve(value, ctx, used_default)

    if ctx.filter is None:
        setattr(instance, relation.name, value)

    return value


async def load_relations(
    instances: Sequence[Any],
    name: str,
    *,
    scope: LoaderScope | None = None,
    connection: Connection | None = None,
    default: Any = MISSING,
    filter: Modifier = None,  # noqa: A002
) -> list[Any]:
    """Resolve relation *name* for every instance; all keys go out in one batch."""
    return await asyncio.gather(
        *(
            load_relation(
                instance, name, scope=scope, connection=connection, default=default, filter=filter
            )
            for instance in instances
        )
    )
