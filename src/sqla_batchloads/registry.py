from __future__ import annotations

import threading
import warnings
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, ClassVar, final

import structlog
from sqlalchemy import orm

from .errors import ConfigurationError, UndeclaredRelationError
from .relations import Relation, build_relations
from .scope import GLOBAL_SCOPE


if TYPE_CHECKING:
    from .cache import DistributedCache, IdCache
    from .executor import SessionExecutor

logger = structlog.get_logger(__name__)


@final
class Registry:
    """Process-wide registry of entity types and their derived metadata.

    Populated once at start-up with :func:`init_registry`; afterwards every
    lookup by type name is a plain mapping access. The registry also owns the
    side tables the rest of the package needs per model: relation
    descriptors (built lazily, exactly once), a generation counter used in
    loader keys, and the two-tier id caches. Nothing is stored on the model
    classes themselves.
    """

    __instance: ClassVar[Registry | None] = None
    _models: Mapping[str, type[orm.DeclarativeBase]]

    def __new__(
        cls,
        models: Mapping[str, type[orm.DeclarativeBase]] | None = None,
    ) -> Registry:
        if cls.__instance is None:
            if not models:
                raise ConfigurationError("Registry is not initialized or empty")

            instance = super().__new__(cls)
            instance._init_state()
            instance.set_models(models)
            cls.__instance = instance
        elif models:
            cls.__instance.set_models(models)

        if not cls.__instance._models:
            raise ConfigurationError("Registry is not initialized or empty")

        return cls.__instance

    def _init_state(self) -> None:
        self._lock = threading.RLock()
        self._relations: dict[type, Mapping[str, Relation]] = {}
        self._generations: dict[type, int] = {}
        self._id_caches: dict[type, IdCache] = {}
        self.executor: SessionExecutor | None = None
        self.cache: DistributedCache | None = None
        self.max_batch_size: int | None = None

    def get(self, name: str) -> type[orm.DeclarativeBase] | None:
        """Look up a model by class name, returning ``None`` if unknown."""
        return self.models.get(name)

    def model(self, name: str) -> type[orm.DeclarativeBase]:
        """Look up a model by class name.

        Raises:
            ConfigurationError: If no model with that name is registered.
        """
        try:
            return self.models[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown model {name!r}. Registered: {sorted(self.models)}"
            ) from None

    def __getitem__(self, name: str) -> type[orm.DeclarativeBase]:
        return self.models[name]

    def __contains__(self, name: object) -> bool:
        return name in self.models

    @property
    def models(self) -> Mapping[str, type[orm.DeclarativeBase]]:
        """The underlying name-to-model mapping (read-only)."""
        return self._models

    def set_models(self, models: Mapping[str, type[orm.DeclarativeBase]]) -> None:
        self._models = MappingProxyType(dict(models))
        with self._lock:
            self._relations.clear()
            self._id_caches.clear()

    def configure(
        self,
        *,
        executor: SessionExecutor | None = None,
        cache: DistributedCache | None = None,
        max_batch_size: int | None = None,
    ) -> None:
        """Attach the query executor, the distributed cache and batch limits."""
        if executor is not None:
            self.executor = executor
        if cache is not None:
            self.cache = cache
            with self._lock:
                self._id_caches.clear()
        if max_batch_size is not None:
            self.max_batch_size = max_batch_size

    def get_executor(self) -> SessionExecutor:
        if self.executor is None:
            raise ConfigurationError("No executor configured; pass one to init_registry()")

        return self.executor

    def relations(self, model: type) -> Mapping[str, Relation]:
        """Relation descriptors of *model*, built on first access."""
        if (cached := self._relations.get(model)) is not None:
            return cached

        with self._lock:
            if (cached := self._relations.get(model)) is None:
                cached = build_relations(model, self.model)
                self._relations[model] = cached
                logger.debug("registry.relations_built", model=model.__name__, count=len(cached))

        return cached

    def relation(self, model: type, name: str) -> Relation:
        """Return the relation *name* of *model*.

        Raises:
            UndeclaredRelationError: If *model* declares no such relation.
        """
        try:
            return self.relations(model)[name]
        except KeyError:
            raise UndeclaredRelationError(model, name) from None

    def generation(self, model: type) -> int:
        return self._generations.get(model, 0)

    def reset_relations(self, model: type) -> None:
        """Drop the descriptors of *model* and invalidate every live loader for it."""
        with self._lock:
            self._relations.pop(model, None)
            self._generations[model] = self.generation(model) + 1

        GLOBAL_SCOPE.discard(model)

    def id_cache(self, model: type) -> IdCache | None:
        """The two-tier id cache of *model*, or ``None`` when caching is disabled."""
        settings = getattr(model, "__cache_by_id__", None)
        if not settings:
            return None

        if (cached := self._id_caches.get(model)) is not None:
            return cached

        from .cache import IdCache

        with self._lock:
            if (cached := self._id_caches.get(model)) is None:
                cached = IdCache(model, settings, self.cache)
                self._id_caches[model] = cached

        return cached

    def clear_caches(self) -> None:
        """Drop the id caches, including their local tiers."""
        with self._lock:
            self._id_caches.clear()

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._models = {}
        cls.__instance = None


def get_registry(base: type[orm.DeclarativeBase]) -> Mapping[str, type[orm.DeclarativeBase]]:
    """Collect every mapped class of a declarative base, keyed by class name.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Read-only mapping from class name to model class.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
    """
    assert isinstance(base, type) and issubclass(base, orm.DeclarativeBase), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    models: dict[str, type[orm.DeclarativeBase]] = {}
    for mapper in base.registry.mappers:
        name = mapper.class_.__name__
        if name in models and models[name] is not mapper.class_:
            warnings.warn(
                f"Duplicate model name {name!r}; {mapper.class_.__module__}.{name} shadows "
                f"{models[name].__module__}.{name}",
                stacklevel=2,
            )
        models[name] = mapper.class_

    return MappingProxyType(models)


def init_registry(
    models: Mapping[str, type[orm.DeclarativeBase]],
    *,
    executor: SessionExecutor | None = None,
    cache: DistributedCache | None = None,
    max_batch_size: int | None = None,
) -> Registry:
    """Initialize the global Registry singleton.

    Call once during application start-up, before any loader is used.

    Args:
        models: Mapping from class name to model class, see :func:`get_registry`.
        executor: Executes the batched queries.
        cache: Optional distributed tier for models with ``__cache_by_id__``.
        max_batch_size: Split batches larger than this into several queries.

    Example:
        >>> init_registry(
        ...     get_registry(Base),
        ...     executor=SessionExecutor(async_sessionmaker(engine)),
        ...     cache=RedisCache(Redis.from_url("redis://localhost")),
        ... )
    """
    registry = Registry(models)
    registry.configure(executor=executor, cache=cache, max_batch_size=max_batch_size)
    logger.info("registry.initialized", models=len(models), cache=cache is not None)

    return registry
