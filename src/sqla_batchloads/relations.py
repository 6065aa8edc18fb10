from __future__ import annotations

import enum
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Union

import sqlalchemy as sa

from .errors import ConfigurationError
from .tools import get_primary_key, get_table_name, plural, snake_case


Modifier = Union[Mapping[str, Any], Callable[[sa.Select[Any]], sa.Select[Any]], None]
"""Extra filtering of a loader: column equality mapping or ``Select -> Select`` callable."""

THROUGH_TABLE_SUFFIX = "map"


class RelationKind(enum.Enum):
    OWNING_REF = "belongs_to"
    SINGLE_OWNED = "has_one"
    MANY_OWNED = "has_many"
    MANY_THROUGH = "has_many_through"

    @property
    def many(self) -> bool:
        return self in (RelationKind.MANY_OWNED, RelationKind.MANY_THROUGH)


@dataclass(slots=True, frozen=True)
class Through:
    """Join table of a many-through relation.

    ``from_column`` points at the owner, ``to_column`` at the related entity.
    """

    table: sa.Table
    from_column: str
    to_column: str
    model: type | None = None
    extra: tuple[str, ...] = ()
    filter: Modifier = None


@dataclass(slots=True, frozen=True)
class Relation:
    """Resolved metadata for one declared relation.

    ``owner_columns`` are read on the owning instance and matched, position by
    position, against ``related_columns`` on the related entity (through the
    join table for many-through relations).
    """

    name: str
    kind: RelationKind
    owner: type
    related: type
    owner_columns: tuple[str, ...]
    related_columns: tuple[str, ...]
    filter: Modifier = None
    through: Through | None = None

    def __post_init__(self) -> None:
        if len(self.owner_columns) != len(self.related_columns):
            raise ConfigurationError(
                f"{self.owner.__name__}.{self.name}: {len(self.owner_columns)} owner column(s) "
                f"but {len(self.related_columns)} related column(s)"
            )

        if self.through is not None and self.composite:
            raise ConfigurationError(
                f"{self.owner.__name__}.{self.name}: many-through relations need single-column keys"
            )

    @property
    def composite(self) -> bool:
        """``True`` when the key spans several columns and cannot be batched."""
        return len(self.owner_columns) != 1

    @property
    def many(self) -> bool:
        return self.kind.many


@dataclass(slots=True, frozen=True)
class RelationDecl:
    """A relation as written in ``__relations__``, resolved later by :meth:`build`.

    Fields left as ``None`` are filled in by the default naming rules once
    both models are known.
    """

    kind: RelationKind
    target: type | str
    name: str | None = None
    join_from: tuple[str, ...] | None = None
    join_to: tuple[str, ...] | None = None
    filter: Modifier = None
    through: Mapping[str, Any] = field(default_factory=dict)

    def build(self, owner: type, resolve: Callable[[str], type]) -> Relation:
        """Resolve the declaration against *owner*.

        Args:
            owner: Model class declaring the relation.
            resolve: Maps a registered class name to its model class.
        """
        related = resolve(self.target) if isinstance(self.target, str) else self.target
        owner_id = get_primary_key(owner).key
        related_id = get_primary_key(related).key
        owner_name = snake_case(owner.__name__)
        related_name = snake_case(related.__name__)
        through: Through | None = None

        match self.kind:
            case RelationKind.OWNING_REF:
                name = self.name or related_name
                owner_columns = self.join_from or (f"{name}_{related_id}",)
                related_columns = self.join_to or (related_id,)
            case RelationKind.SINGLE_OWNED | RelationKind.MANY_OWNED:
                name = self.name or (
                    plural(related_name) if self.kind.many else related_name
                )
                owner_columns = self.join_from or (owner_id,)
                related_columns = self.join_to or (f"{owner_name}_{owner_id}",)
            case RelationKind.MANY_THROUGH:
                name = self.name or plural(related_name)
                owner_columns = self.join_from or (owner_id,)
                related_columns = self.join_to or (related_id,)
                through = self._build_through(owner, related, owner_name, related_name)

        _check_columns(owner, name, owner_columns)
        _check_columns(related, name, related_columns)

        return Relation(
            name=name,
            kind=self.kind,
            owner=owner,
            related=related,
            owner_columns=tuple(owner_columns),
            related_columns=tuple(related_columns),
            filter=self.filter,
            through=through,
        )

    def _build_through(
        self, owner: type, related: type, owner_name: str, related_name: str
    ) -> Through:
        options = self.through
        through_model = options.get("model")
        if isinstance(through_model, str):
            through_model = _resolve_from_owner(owner, through_model)

        if through_model is not None:
            table_name = options.get("table") or get_table_name(through_model)
        else:
            first, second = sorted((owner_name, related_name))
            table_name = options.get("table") or f"{first}_{second}_{THROUGH_TABLE_SUFFIX}"

        table = owner.metadata.tables.get(table_name)  # type: ignore[attr-defined]
        if table is None:
            raise ConfigurationError(
                f"{owner.__name__}: join table {table_name!r} is not defined in the metadata"
            )

        from_column = _column_name(
            options.get("from") or f"{owner_name}_{get_primary_key(owner).key}"
        )
        to_column = _column_name(
            options.get("to") or f"{related_name}_{get_primary_key(related).key}"
        )
        extra = tuple(options.get("extra") or ())
        for column in (from_column, to_column, *extra):
            if column not in table.c:
                raise ConfigurationError(f"Join table {table_name!r} has no column {column!r}")

        return Through(
            table=table,
            from_column=from_column,
            to_column=to_column,
            model=through_model,
            extra=extra,
            filter=options.get("filter"),
        )


def _resolve_from_owner(owner: type, name: str) -> type:
    for mapper in owner.registry.mappers:  # type: ignore[attr-defined]
        if mapper.class_.__name__ == name:
            return mapper.class_

    raise ConfigurationError(f"Unknown through model {name!r}")


def _column_name(name: str) -> str:
    """Accept ``"table.column"`` as well as a bare column name."""
    return name.rpartition(".")[2]


def _columns(value: str | Sequence[str] | None) -> tuple[str, ...] | None:
    if value is None:
        return None

    if isinstance(value, str):
        return (_column_name(value),)

    return tuple(_column_name(v) for v in value)


def _check_columns(model: type, relation: str, columns: Sequence[str]) -> None:
    table = model.__table__  # type: ignore[attr-defined]
    for column in columns:
        if column not in table.c:
            raise ConfigurationError(
                f"Relation {relation!r}: {model.__name__} has no column {column!r}"
            )


def _declare(
    kind: RelationKind,
    model: type | str,
    *,
    name: str | None,
    join_from: str | Sequence[str] | None,
    join_to: str | Sequence[str] | None,
    filter: Modifier,  # noqa: A002
    through: Mapping[str, Any] | None = None,
) -> RelationDecl:
    return RelationDecl(
        kind=kind,
        target=model,
        name=name,
        join_from=_columns(join_from),
        join_to=_columns(join_to),
        filter=filter,
        through=dict(through or {}),
    )


def belongs_to(
    model: type | str,
    *,
    name: str | None = None,
    join_from: str | Sequence[str] | None = None,
    join_to: str | Sequence[str] | None = None,
    filter: Modifier = None,  # noqa: A002
) -> RelationDecl:
    """The declaring model holds a foreign key to *model*.

    ``Pet`` with ``belongs_to("Person")`` reads ``Pet.person_id`` and loads
    the ``Person`` whose ``id`` matches, exposed as ``pet.person``.
    """
    return _declare(
        RelationKind.OWNING_REF, model, name=name, join_from=join_from, join_to=join_to, filter=filter
    )


def has_one(
    model: type | str,
    *,
    name: str | None = None,
    join_from: str | Sequence[str] | None = None,
    join_to: str | Sequence[str] | None = None,
    filter: Modifier = None,  # noqa: A002
) -> RelationDecl:
    """*model* holds a foreign key to the declaring model; at most one row matches.

    ``Person`` with ``has_one("Passport")`` loads the ``Passport`` whose
    ``person_id`` equals ``person.id``.
    """
    return _declare(
        RelationKind.SINGLE_OWNED, model, name=name, join_from=join_from, join_to=join_to, filter=filter
    )


def has_many(
    model: type | str,
    *,
    name: str | None = None,
    join_from: str | Sequence[str] | None = None,
    join_to: str | Sequence[str] | None = None,
    filter: Modifier = None,  # noqa: A002
) -> RelationDecl:
    """Like :func:`has_one` but every matching row is loaded, as a list."""
    return _declare(
        RelationKind.MANY_OWNED, model, name=name, join_from=join_from, join_to=join_to, filter=filter
    )


def has_many_through(
    model: type | str,
    *,
    name: str | None = None,
    join_from: str | Sequence[str] | None = None,
    join_to: str | Sequence[str] | None = None,
    filter: Modifier = None,  # noqa: A002
    through: Mapping[str, Any] | None = None,
) -> RelationDecl:
    """Many-to-many through a join table.

    Args:
        model: Related model or its registered class name.
        name: Relation name, defaults to the plural of the related name.
        join_from: Owner column matched by ``through["from"]``.
        join_to: Related column matched by ``through["to"]``.
        filter: Extra filtering of the related rows.
        through: Optional ``{"model", "table", "from", "to", "extra", "filter"}``.
            The table defaults to the two snake-cased model names in sorted
            order plus ``"_map"`` (``"category_store_map"``), the columns to
            ``"{owner}_id"`` and ``"{related}_id"``.
    """
    return _declare(
        RelationKind.MANY_THROUGH,
        model,
        name=name,
        join_from=join_from,
        join_to=join_to,
        filter=filter,
        through=through,
    )


def build_relations(
    model: type, resolve: Callable[[str], type]
) -> Mapping[str, Relation]:
    """Build the immutable relation map declared in ``model.__relations__``."""
    mapped = set(sa.inspect(model).attrs.keys())
    relations: dict[str, Relation] = {}
    for decl in getattr(model, "__relations__", ()):
        relation = decl.build(model, resolve)
        if relation.name in relations:
            raise ConfigurationError(f"{model.__name__}: relation {relation.name!r} declared twice")
        if relation.name in mapped:
            raise ConfigurationError(
                f"{model.__name__}: relation {relation.name!r} collides with a mapped attribute"
            )
        relations[relation.name] = relation

    return MappingProxyType(relations)
