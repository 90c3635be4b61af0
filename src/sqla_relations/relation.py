from __future__ import annotations

import sys
from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union, overload


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa

from .datastructures import frozendict, relation_cache
from .exceptions import InvalidRelationError, UnboundRecordError


if TYPE_CHECKING:
    from typing_extensions import Self

T = TypeVar("T")

Link = tuple[tuple[str, str], ...]
Where = Callable[[sa.FromClause], sa.ColumnElement[bool]]
IndexBy = Union[str, Callable[[Any], Hashable]]


class RelationOptions(TypedDict, total=False):
    via: Via
    where: Where
    inverse_of: str
    order_by: tuple[str, ...]
    index_by: IndexBy


@dataclass(frozen=True, slots=True)
class Via:
    """Junction of a two-hop relation.

    Either ``relation`` names another relation declared on the owner whose
    rows are the junction rows, or ``table`` names a pivot table and
    ``link`` pairs owner attributes with pivot columns. ``where`` narrows
    the junction rows; a filtered junction is never cached on the owner.
    """

    relation: str | None = None
    table: str | sa.Table | None = None
    link: Link = ()
    where: Where | None = None

    @property
    def is_table(self) -> bool:
        return self.table is not None

    @property
    def table_name(self) -> str | None:
        if isinstance(self.table, sa.Table):
            return self.table.name

        return self.table


def via(relation: str, *, where: Where | None = None) -> Via:
    """Declare that a relation goes through another relation of the owner.

    Example::

        class Order(Base):
            order_items = has_many("OrderItem", {"id": "order_id"})
            items = has_many("Item", {"item_id": "id"}, via=via("order_items"))
    """
    return Via(relation=relation, where=where)


def via_table(
    table: str | sa.Table,
    link: Mapping[str, str] | Sequence[tuple[str, str]],
    *,
    where: Where | None = None,
) -> Via:
    """Declare that a relation goes through a pivot table.

    ``link`` maps owner attributes to pivot columns; the relation's own link
    then maps pivot columns to target attributes.
    """
    pairs = _normalize_link(link)
    if not pairs:
        raise InvalidRelationError("via_table() link must not be empty")

    return Via(table=table, link=pairs, where=where)


class Relation(Generic[T]):
    """Declarative description of one relation, used as a class attribute.

    Reading the attribute on an instance returns the cached result or
    resolves it lazily through the resolver bound to the instance. Assigning
    populates the relation, ``del`` unsets it.

    ``link`` maps owner attributes to target attributes. For relations with
    a ``via`` the owner side of the link refers to the junction row instead.
    """

    __slots__ = (
        "_target",
        "index_by",
        "inverse_of",
        "link",
        "multiple",
        "name",
        "order_by",
        "owner",
        "via",
        "where",
    )

    def __init__(
        self,
        target: type[T] | str,
        link: Mapping[str, str] | Sequence[tuple[str, str]],
        *,
        multiple: bool,
        via: Via | None = None,
        where: Where | None = None,
        inverse_of: str | None = None,
        order_by: tuple[str, ...] = (),
        index_by: IndexBy | None = None,
    ) -> None:
        self.link = _normalize_link(link)
        if not self.link:
            raise InvalidRelationError("Relation link must not be empty")

        self._target = target
        self.multiple = multiple
        self.via = via
        self.where = where
        self.inverse_of = inverse_of
        self.order_by = tuple(order_by)
        self.index_by = index_by
        self.name = ""
        self.owner: type[Any] | None = None

    def __set_name__(self, owner: type[Any], name: str) -> None:
        self.owner = owner
        self.name = name

    def __repr__(self) -> str:
        owner = self.owner.__name__ if self.owner else "?"
        kind = "has_many" if self.multiple else "has_one"
        return f"<Relation {owner}.{self.name} {kind} {self.target_name}>"

    @overload
    def __get__(self, instance: None, owner: type[Any] | None = None) -> Self: ...

    @overload
    def __get__(self, instance: object, owner: type[Any] | None = None) -> Any: ...

    def __get__(self, instance: object | None, owner: type[Any] | None = None) -> Any:
        if instance is None:
            return self

        cache = relation_cache(instance)
        if cache.is_populated(self.name):
            return cache.get(self.name)

        if cache.resolver is None:
            raise UnboundRecordError(
                f"Cannot lazily resolve {type(instance).__name__}.{self.name}: "
                "no resolver is bound to the record"
            )

        return cache.resolver.resolve_one(instance, self.name)

    def __set__(self, instance: object, value: Any) -> None:
        relation_cache(instance).set(self.name, value)

    def __delete__(self, instance: object) -> None:
        relation_cache(instance).discard(self.name)

    @property
    def target_name(self) -> str:
        return self._target if isinstance(self._target, str) else self._target.__name__

    @property
    def target(self) -> type[T]:
        """The target model, resolving a class name against the owner's registry."""
        if isinstance(self._target, str):
            self._target = _resolve_class(self.owner, self._target)

        return self._target

    @property
    def owner_attributes(self) -> tuple[str, ...]:
        return tuple(owner_attr for owner_attr, _ in self.link)

    @property
    def target_attributes(self) -> tuple[str, ...]:
        return tuple(target_attr for _, target_attr in self.link)


def has_one(
    target: type[T] | str,
    link: Mapping[str, str] | Sequence[tuple[str, str]],
    **options: Unpack[RelationOptions],
) -> Relation[T]:
    """Declare a relation yielding at most one target record.

    Example::

        class Order(Base):
            customer = has_one("Customer", {"customer_id": "id"})
    """
    return Relation(target, link, multiple=False, **options)


def has_many(
    target: type[T] | str,
    link: Mapping[str, str] | Sequence[tuple[str, str]],
    **options: Unpack[RelationOptions],
) -> Relation[T]:
    """Declare a relation yielding an ordered list of target records.

    Example::

        class Customer(Base):
            orders = has_many("Order", {"id": "customer_id"}, inverse_of="customer")
    """
    return Relation(target, link, multiple=True, **options)


def _normalize_link(link: Mapping[str, str] | Sequence[tuple[str, str]]) -> Link:
    items = link.items() if isinstance(link, Mapping) else link
    return tuple((str(left), str(right)) for left, right in items)


def _resolve_class(owner: type[Any] | None, name: str) -> type[Any]:
    if owner is None:
        raise InvalidRelationError(f"Relation to {name!r} is not attached to a model")

    mapper = sa.inspect(owner, raiseerr=False)
    if mapper is None:
        raise InvalidRelationError(f"{owner.__name__} is not a mapped class")

    for candidate in mapper.registry.mappers:
        if candidate.class_.__name__ == name:
            return candidate.class_

    raise InvalidRelationError(
        f"Relation {owner.__name__} -> {name!r}: no mapped class named {name!r}"
    )


@lru_cache(maxsize=512)
def declared_relations(model: type[Any]) -> frozendict[str, Relation[Any]]:
    """Collect the relations declared on *model* and its bases, base classes first."""
    found: dict[str, Relation[Any]] = {}
    for klass in reversed(model.__mro__):
        for name, value in vars(klass).items():
            if isinstance(value, Relation):
                found[name] = value

    return frozendict(found)


def _owner_dependencies(model: type[Any], relation: Relation[Any], seen: frozenset[str]) -> frozenset[str]:
    if relation.via is None:
        return frozenset(relation.owner_attributes)

    if relation.via.is_table:
        return frozenset(owner_attr for owner_attr, _ in relation.via.link)

    via_name = relation.via.relation
    via_relation = declared_relations(model).get(via_name or "")
    if via_relation is None or via_name in seen:
        return frozenset()

    return _owner_dependencies(model, via_relation, seen | {via_name})


@lru_cache(maxsize=2048)
def dependent_relations(model: type[Any], attribute: str) -> frozenset[str]:
    """Names of the relations of *model* whose owner-side link reads *attribute*.

    Via relations depend on the owner attributes of their junction link, so
    changing an order's ``id`` invalidates both ``order_items`` and the
    ``items`` declared through it.
    """
    return frozenset(
        name
        for name, relation in declared_relations(model).items()
        if attribute in _owner_dependencies(model, relation, frozenset({name}))
    )


def link_attributes(model: type[Any]) -> frozenset[str]:
    """Every owner attribute of *model* that some relation depends on."""
    out: set[str] = set()
    for name, relation in declared_relations(model).items():
        out |= _owner_dependencies(model, relation, frozenset({name}))

    return frozenset(out)
