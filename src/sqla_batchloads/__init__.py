"""Batched, scoped data loading for SQLAlchemy asyncio models.

sqla_batchloads coalesces the lookups issued during one pass of the event
loop into a single ``IN`` query per entity type and column.  Register your
models once at startup with ``init_registry(get_registry(Base), executor=...)``,
mix ``BatchModel`` into the declarative base, declare relations with
``belongs_to`` / ``has_one`` / ``has_many`` / ``has_many_through`` and load
them with ``load_by_id`` and ``load_relation``.  Pass a ``LoaderScope`` per
unit of work to memoize results; by-id loads can be fronted by a two-tier
cache (local LRU plus Redis).
"""

from ._version import __version__, __version_tuple__
from .batching import BatchLoader, is_absent
from .cache import CacheById, DistributedCache, IdCache, LRUCache, RedisCache, parse_ttl
from .errors import (
    BatchLoadError,
    BatchSizeMismatchError,
    CompositeKeyError,
    ConfigurationError,
    UndeclaredRelationError,
    UserError,
    user_error_for,
)
from .executor import SessionExecutor
from .limits import limit_filter
from .model import BatchModel
from .query import QueryBuilder, compile_where
from .registry import Registry, get_registry, init_registry
from .relations import (
    Relation,
    RelationKind,
    Through,
    belongs_to,
    has_many,
    has_many_through,
    has_one,
)
from .resolution import (
    MISSING,
    Resolvable,
    ResolveContext,
    get_relation_loader,
    load_relation,
    load_relations,
)
from .scope import GLOBAL_SCOPE, LoaderScope, loader_key
from .tools import add_conditions, get_primary_key, get_table_name, plural, snake_case, unique_scalars


__all__ = (
    "GLOBAL_SCOPE",
    "MISSING",
    "BatchLoadError",
    "BatchLoader",
    "BatchModel",
    "BatchSizeMismatchError",
    "CacheById",
    "CompositeKeyError",
    "ConfigurationError",
    "DistributedCache",
    "IdCache",
    "LRUCache",
    "LoaderScope",
    "QueryBuilder",
    "RedisCache",
    "Registry",
    "Relation",
    "RelationKind",
    "ResolveContext",
    "Resolvable",
    "SessionExecutor",
    "Through",
    "UndeclaredRelationError",
    "UserError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "belongs_to",
    "compile_where",
    "get_primary_key",
    "get_registry",
    "get_relation_loader",
    "get_table_name",
    "has_many",
    "has_many_through",
    "has_one",
    "init_registry",
    "is_absent",
    "limit_filter",
    "load_relation",
    "load_relations",
    "loader_key",
    "parse_ttl",
    "plural",
    "snake_case",
    "unique_scalars",
    "user_error_for",
)
