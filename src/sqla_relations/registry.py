from __future__ import annotations

import logging
from collections.abc import Mapping
from functools import lru_cache
from typing import Any, final

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import frozendict
from .exceptions import (
    InvalidRelationError,
    InvalidViaError,
    RelationConfigError,
    RelationNameCaseError,
    UnknownRelationError,
)
from .lazy import install_invalidation
from .relation import Relation, declared_relations
from .tools import get_column_map


logger = logging.getLogger(__name__)


@final
class RelationRegistry:
    """Read-only map of every mapped model to the relations it declares.

    Built once at startup with :func:`get_registry` and injected into the
    resolver; nothing is looked up through reflection at query time. Lookup
    by name is exact: a name that only differs in case from a declared
    relation is reported as such instead of being tolerated.
    """

    __slots__ = ("_relations",)

    def __init__(self, relations: Mapping[type[Any], Mapping[str, Relation[Any]]]) -> None:
        self._relations: frozendict[type[Any], frozendict[str, Relation[Any]]] = frozendict({
            model: frozendict(rels) for model, rels in relations.items()
        })

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {[m.__name__ for m in self._relations]!r}>"

    def __contains__(self, model: object) -> bool:
        return model in self._relations

    def __getitem__(self, model: type[Any]) -> Mapping[str, Relation[Any]]:
        """Look up the relations of *model*, raising ``KeyError`` if it is not registered."""
        return self._relations[model]

    def get(self, model: type[Any]) -> Mapping[str, Relation[Any]]:
        """Relations of *model*, empty when the model declares none or is unknown."""
        return self._relations.get(model) or frozendict()

    @property
    def models(self) -> tuple[type[Any], ...]:
        return tuple(self._relations)

    def relation(self, model: type[Any], name: str) -> Relation[Any]:
        """Return the validated relation *name* of *model*.

        Raises:
            RelationNameCaseError: *name* matches a declaration only case-insensitively.
            InvalidRelationError: *name* is an attribute of *model* but not a relation,
                or the relation cannot be linked to its target.
            InvalidViaError: the junction of the relation cannot be resolved.
            UnknownRelationError: nothing called *name* exists on *model*.
        """
        relations = self.get(model)
        relation = relations.get(name)
        if relation is not None:
            validate_relation(model, relation)
            return relation

        lowered = name.lower()
        for declared in relations:
            if declared.lower() == lowered:
                raise RelationNameCaseError(model, name, declared)

        if hasattr(model, name):
            raise InvalidRelationError(
                f"{model.__name__}.{name} is not a relation "
                f"(got {type(getattr(model, name)).__name__})"
            )

        raise UnknownRelationError(model, name)


def get_registry(base: type[orm.DeclarativeBase]) -> RelationRegistry:
    """Build the relation registry of every model mapped by a declarative base.

    Also installs the attribute listeners that drop cached relations when an
    owner-side link attribute changes.

    Example:
        >>> from myapp.models import Base
        >>> resolver = RelationResolver(ConnectionExecutor(conn), get_registry(Base))
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    relations: dict[type[Any], Mapping[str, Relation[Any]]] = {}
    for mapper in base.registry.mappers:
        model = mapper.class_
        declared = declared_relations(model)
        relations[model] = declared
        if declared:
            install_invalidation(model)

    logger.debug(
        "Registered %d relations on %d models",
        sum(len(rels) for rels in relations.values()),
        len(relations),
    )

    return RelationRegistry(relations)


def _require_columns(model: type[Any], attributes: tuple[str, ...], what: str, error: type[RelationConfigError]) -> None:
    columns = get_column_map(model)
    if missing := [attribute for attribute in attributes if attribute not in columns]:
        raise error(f"{what}: {model.__name__} has no column attribute(s) {missing}")


def pivot_table(model: type[Any], relation: Relation[Any]) -> sa.Table:
    via = relation.via
    assert via is not None and via.table is not None
    if isinstance(via.table, sa.Table):
        return via.table

    metadata = sa.inspect(model).local_table.metadata
    table = metadata.tables.get(via.table)
    if table is None:
        raise InvalidViaError(
            f"{model.__name__}.{relation.name}: pivot table {via.table!r} is not in the metadata"
        )

    return table


@lru_cache(maxsize=1024)
def validate_relation(model: type[Any], relation: Relation[Any]) -> None:
    """Check that *relation* of *model* can be linked; memoized once it passes."""
    where = f"{model.__name__}.{relation.name}"
    target = relation.target
    if sa.inspect(target, raiseerr=False) is None:
        raise InvalidRelationError(f"{where}: target {target!r} is not a mapped class")

    _require_columns(target, relation.target_attributes, where, InvalidRelationError)

    via = relation.via
    if via is None:
        _require_columns(model, relation.owner_attributes, where, InvalidRelationError)
    elif via.is_table:
        table = pivot_table(model, relation)
        _require_columns(model, tuple(owner for owner, _ in via.link), where, InvalidViaError)
        pivot_columns = {column for _, column in via.link} | set(relation.owner_attributes)
        if missing := sorted(column for column in pivot_columns if column not in table.c):
            raise InvalidViaError(f"{where}: pivot table {table.name!r} has no column(s) {missing}")
    else:
        junction = declared_relations(model).get(via.relation or "")
        if junction is None:
            raise InvalidViaError(f"{where}: via relation {via.relation!r} is not declared on {model.__name__}")
        _check_via_chain(model, relation)
        validate_relation(model, junction)
        _require_columns(junction.target, relation.owner_attributes, where, InvalidViaError)

    if relation.inverse_of is not None and relation.inverse_of not in declared_relations(target):
        raise UnknownRelationError(target, relation.inverse_of)

    for attribute in relation.order_by:
        _require_columns(target, (attribute.lstrip("-"),), f"{where} order_by", InvalidRelationError)


def _check_via_chain(model: type[Any], relation: Relation[Any]) -> None:
    relations = declared_relations(model)
    seen = [relation.name]
    step: Relation[Any] | None = relation
    while step is not None and step.via is not None and not step.via.is_table:
        name = step.via.relation or ""
        if name in seen:
            raise InvalidViaError(
                f"{model.__name__}.{relation.name}: circular via chain {' -> '.join([*seen, name])}"
            )
        seen.append(name)
        step = relations.get(name)
