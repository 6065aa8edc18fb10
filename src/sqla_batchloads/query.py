from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar, Union

import sqlalchemy as sa
from sqlalchemy import orm

from .errors import ConfigurationError
from .relations import Modifier
from .tools import get_column, get_primary_key


T = TypeVar("T", bound=orm.DeclarativeBase)

_Connector = Literal["and", "or"]
ColumnRef = Union[str, sa.ColumnElement[Any]]


@dataclass(slots=True, frozen=True)
class _Condition:
    connector: _Connector
    clause: sa.ColumnElement[bool]


@dataclass(slots=True, frozen=True)
class _Injected:
    """An automatic predicate and the position it was declared at.

    The predicate is produced at build time so that ``with_trashed()`` and
    friends called later in the chain are still honoured.
    """

    name: str
    predicate: Callable[[QueryBuilder[Any]], sa.ColumnElement[bool] | None]


def _combine(items: Sequence[tuple[_Connector, sa.ColumnElement[bool]]]) -> sa.ColumnElement[bool]:
    """Fold ``(connector, clause)`` pairs with SQL precedence: AND-runs, then OR."""
    groups: list[list[sa.ColumnElement[bool]]] = [[]]
    for connector, clause in items:
        if connector == "or" and groups[-1]:
            groups.append([])
        groups[-1].append(clause)

    terms = [group[0] if len(group) == 1 else sa.and_(*group) for group in groups]

    return terms[0] if len(terms) == 1 else sa.or_(*terms)


def compile_where(
    statements: Sequence[_Condition | _Injected], builder: QueryBuilder[Any]
) -> sa.ColumnElement[bool] | None:
    """Compile accumulated conditions and injected predicates into one WHERE tree.

    Every injected predicate applies as ``(everything before it) AND
    predicate``: when two or more top-level conditions precede it they are
    collapsed into a single parenthesised group first. Conditions declared
    after the predicate keep their own connectors.
    """
    items: list[tuple[_Connector, sa.ColumnElement[bool]]] = []
    for stmt in statements:
        if isinstance(stmt, _Condition):
            items.append((stmt.connector, stmt.clause))
            continue

        if (predicate := stmt.predicate(builder)) is None:
            continue

        if len(items) > 1:
            items = [("and", _combine(items).self_group())]
        items.append(("and", predicate))

    return _combine(items) if items else None


def _soft_delete_predicate(builder: QueryBuilder[Any]) -> sa.ColumnElement[bool] | None:
    get_name = getattr(builder.model, "soft_delete_column", None)
    column_name = get_name() if get_name is not None else None
    if column_name is None or builder.trashed == "with":
        return None

    column = get_column(builder.model, column_name)

    return column.is_not(None) if builder.trashed == "only" else column.is_(None)


def _scope_predicate(name: str) -> Callable[[QueryBuilder[Any]], sa.ColumnElement[bool] | None]:
    def _predicate(builder: QueryBuilder[Any]) -> sa.ColumnElement[bool] | None:
        if name == "default" and builder.without_default_scope:
            return None

        scope = (getattr(builder.model, "__scopes__", None) or {}).get(name)

        return scope(builder.model) if scope is not None else None

    return _predicate


class QueryBuilder(Generic[T]):
    """Accumulates WHERE conditions for *model* and compiles them lazily.

    Conditions are kept as a flat list of ``(connector, clause)`` statements,
    the way they were written (``where`` is AND, ``or_where`` is OR). The
    automatic filters of the model, soft delete and the ``"default"`` scope,
    are appended when :meth:`build` runs, so everything the caller wrote ends
    up bracketed before them::

        Store.query().where(name="a").or_where(name="b").build()
        # WHERE (stores.name = 'a' OR stores.name = 'b') AND stores.deleted_at IS NULL

    Named scopes applied with :meth:`scoped` and predicates applied with
    :meth:`filtered` are injected at the position they were called.
    """

    __slots__ = (
        "_columns",
        "_joins",
        "_limit",
        "_modifiers",
        "_offset",
        "_order_by",
        "_ordered_values",
        "_statements",
        "model",
        "trashed",
        "without_default_scope",
    )

    def __init__(self, model: type[T]) -> None:
        self.model = model
        self.trashed: Literal["without", "with", "only"] = "without"
        self.without_default_scope = False
        self._statements: list[_Condition | _Injected] = []
        self._columns: list[sa.ColumnElement[Any]] = []
        self._joins: list[tuple[sa.FromClause, sa.ColumnElement[bool]]] = []
        self._modifiers: list[Callable[[sa.Select[Any]], sa.Select[Any]]] = []
        self._order_by: list[sa.ColumnElement[Any]] = []
        self._ordered_values: tuple[sa.ColumnElement[Any], Sequence[Any]] | None = None
        self._limit: int | None = None
        self._offset: int | None = None

    def _column(self, ref: ColumnRef) -> sa.ColumnElement[Any]:
        return get_column(self.model, ref) if isinstance(ref, str) else ref

    def _add(
        self,
        connector: _Connector,
        clauses: Sequence[sa.ColumnExpressionArgument[bool]],
        equals: Mapping[str, Any],
    ) -> QueryBuilder[T]:
        parts = [sa.and_(clause) for clause in clauses]
        parts += [self._column(name) == value for name, value in equals.items()]
        if parts:
            clause = parts[0] if len(parts) == 1 else sa.and_(*parts)
            self._statements.append(_Condition(connector, clause))

        return self

    def where(self, *clauses: sa.ColumnExpressionArgument[bool], **equals: Any) -> QueryBuilder[T]:
        """AND a condition; keyword arguments are column equality tests."""
        return self._add("and", clauses, equals)

    def or_where(
        self, *clauses: sa.ColumnExpressionArgument[bool], **equals: Any
    ) -> QueryBuilder[T]:
        """OR a condition onto everything written so far."""
        return self._add("or", clauses, equals)

    def where_by_or(self, values: Mapping[str, Any]) -> QueryBuilder[T]:
        """AND one group that matches when any ``column == value`` pair holds."""
        tests = [self._column(name) == value for name, value in values.items()]
        if tests:
            self._statements.append(_Condition("and", sa.or_(*tests).self_group()))

        return self

    def where_in(self, column: ColumnRef, values: Sequence[Any]) -> QueryBuilder[T]:
        return self.where(self._column(column).in_(values))

    def where_in_ordered(self, column: ColumnRef, values: Sequence[Any]) -> QueryBuilder[T]:
        """``where_in`` whose rows come back in the order of *values*."""
        self._ordered_values = (self._column(column), list(values))

        return self.where_in(column, values)

    def find(self, ident: Any) -> QueryBuilder[T]:
        return self.where(get_primary_key(self.model) == ident)

    def apply(self, *modifiers: Modifier) -> QueryBuilder[T]:
        """Apply loader modifiers: mappings of column values or ``Select`` callables."""
        for modifier in modifiers:
            if modifier is None:
                continue
            if isinstance(modifier, Mapping):
                self.where(**modifier)
            else:
                self._modifiers.append(modifier)

        return self

    def filtered(
        self, predicate: sa.ColumnElement[bool], *, name: str = "filter"
    ) -> QueryBuilder[T]:
        """Inject *predicate* here: ``(conditions so far) AND predicate``."""
        self._statements.append(_Injected(name, lambda _builder: predicate))

        return self

    def scoped(self, name: str) -> QueryBuilder[T]:
        """Inject the named scope from the model's ``__scopes__`` here.

        Raises:
            ConfigurationError: If the model declares no scope *name*.
        """
        scopes = getattr(self.model, "__scopes__", None) or {}
        if name not in scopes:
            raise ConfigurationError(f"{self.model.__name__} has no scope {name!r}")

        self._statements.append(_Injected(name, _scope_predicate(name)))

        return self

    def with_trashed(self, with_trashed: bool = True) -> QueryBuilder[T]:
        self.trashed = "with" if with_trashed else "without"

        return self

    def only_trashed(self, only_trashed: bool = True) -> QueryBuilder[T]:
        self.trashed = "only" if only_trashed else "without"

        return self

    def without_scope(self, without_scope: bool = True) -> QueryBuilder[T]:
        self.without_default_scope = without_scope

        return self

    def columns(self, *columns: sa.ColumnElement[Any]) -> QueryBuilder[T]:
        """Select extra columns next to the entity."""
        self._columns.extend(columns)

        return self

    def join(self, target: sa.FromClause, onclause: sa.ColumnElement[bool]) -> QueryBuilder[T]:
        self._joins.append((target, onclause))

        return self

    def order_by(self, *columns: ColumnRef) -> QueryBuilder[T]:
        self._order_by.extend(self._column(c) for c in columns)

        return self

    def limit(self, limit: int | None) -> QueryBuilder[T]:
        self._limit = limit

        return self

    def offset(self, offset: int | None) -> QueryBuilder[T]:
        self._offset = offset

        return self

    def where_clause(self, *, automatic: bool = True) -> sa.ColumnElement[bool] | None:
        """The compiled WHERE tree; ``automatic=False`` leaves out the model's own filters."""
        statements = list(self._statements)
        if automatic:
            statements.append(_Injected("soft_delete", _soft_delete_predicate))
            statements.append(_Injected("default", _scope_predicate("default")))

        return compile_where(statements, self)

    def build(self) -> sa.Select[Any]:
        """Compile the SELECT; automatic filters are bracketed against the caller's conditions."""
        query: sa.Select[Any] = sa.select(self.model, *self._columns)
        for target, onclause in self._joins:
            query = query.join(target, onclause)

        if (clause := self.where_clause()) is not None:
            query = query.where(clause)

        for modifier in self._modifiers:
            query = modifier(query)

        if self._ordered_values is not None:
            column, values = self._ordered_values
            if values:
                positions = {value: index for index, value in enumerate(dict.fromkeys(values))}
                query = query.order_by(sa.case(positions, value=column, else_=len(positions)))

        if self._order_by:
            query = query.order_by(*self._order_by)
        if self._limit is not None:
            query = query.limit(self._limit)
        if self._offset is not None:
            query = query.offset(self._offset)

        return query

    def build_update(self, values: Mapping[str, Any]) -> sa.Update:
        """UPDATE with the caller's conditions only; soft-deleted rows stay reachable."""
        statement = sa.update(self.model).values(dict(values))
        if (clause := self.where_clause(automatic=False)) is not None:
            statement = statement.where(clause)

        return statement

    def build_delete(self) -> sa.Delete:
        statement = sa.delete(self.model)
        if (clause := self.where_clause(automatic=False)) is not None:
            statement = statement.where(clause)

        return statement
