from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from functools import lru_cache
from typing import Any, TypeVar

import msgspec
import sqlalchemy as sa
from sqlalchemy import orm


T = TypeVar("T", bound=orm.DeclarativeBase)
_R = TypeVar("_R")

_VOWELS = frozenset("aeiouAEIOU")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def unique_scalars(result: sa.Result[tuple[_R]]) -> Sequence[_R]:
    """Shorthand for ``result.unique().scalars().all()``."""
    return result.unique().scalars().all()


@lru_cache
def get_table_name(model: type[T]) -> str:
    """Table name of *model*, preferring ``__tablename__`` over the table description.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    name = getattr(model, "__tablename__", None) or model.__table__.description
    if not name:
        raise ValueError(f"Cannot determine tablename for {model}")

    return name


@lru_cache
def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """First primary-key column of *model*."""
    return next(iter(model.__table__.primary_key))


def get_column(model: type[T], name: str) -> sa.ColumnElement[Any]:
    """Look up the table column *name* on *model*.

    Raises:
        ValueError: If the table has no such column.
    """
    try:
        return model.__table__.c[name]
    except KeyError:
        raise ValueError(
            f"Column {name!r} not found on {model.__name__}. "
            f"Available: {[c.key for c in model.__table__.c]}"
        ) from None


@lru_cache
def attribute_name(model: type[T], column_name: str) -> str:
    """Return the mapped attribute name of table column *column_name* on *model*."""
    column = get_column(model, column_name)

    return sa.inspect(model).get_property_by_column(column).key


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[tuple[T]]], sa.Select[tuple[T]]]:
    """Create a function that adds WHERE conditions to a select query.

    The returned callable is the shape expected by relation ``filter``
    options and by the ``filter`` argument of the many loaders.

    Args:
        *conditions: SQLAlchemy column expressions that evaluate to boolean.

    Returns:
        A function that takes a select query and returns it with added conditions.

    Example:
        >>> has_many(Post, filter=add_conditions(Post.published.is_(True)))
    """

    def _add(query: sa.Select[tuple[T]]) -> sa.Select[tuple[T]]:
        return query.where(*conditions)

    _add.loader_fingerprint = condition_fingerprint(*conditions)  # type: ignore[attr-defined]

    return _add


def condition_fingerprint(*conditions: sa.ColumnExpressionArgument[bool]) -> str:
    """Structural identity of a set of WHERE conditions.

    Two calls with the same SQL and the same bound values produce the same
    string, so filters rebuilt on every request still share one loader.
    """
    if not conditions:
        return ""

    compiled = sa.and_(*conditions).compile()
    params = msgspec.json.encode(compiled.params, order="sorted", enc_hook=str).decode()

    return f"{compiled}@{params}"


@lru_cache(maxsize=1024)
def snake_case(name: str) -> str:
    """``"StoreBrand"`` -> ``"store_brand"``; already-snake names are kept."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


@lru_cache(maxsize=1024)
def plural(word: str) -> str:
    """Pluralize an English identifier with a handful of suffix rules.

    Examples:
        >>> plural("brand"), plural("category"), plural("bus"), plural("day")
        ('brands', 'categories', 'buses', 'days')
    """
    if len(word) <= 2:
        return word

    if word.endswith("y"):
        if word[-2] in _VOWELS:
            return f"{word}s"
        return f"{word[:-1]}ies"

    # must run before the generic "s" rule; "bus" -> "buses", "cactus" -> "cacti"
    if word.endswith("us") and len(word) > 3:
        return f"{word[:-2]}i"

    if word.endswith(("ch", "sh", "x", "s")):
        return f"{word}es"

    return f"{word}s"
