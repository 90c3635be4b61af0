from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Final, TypeVar, Union


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa

from .datastructures import frozendict, relation_cache
from .exceptions import RelationConfigError
from .executor import QueryExecutor
from .joins import JoinPlanner, JoinRequest
from .lazy import LazyRelationProxy
from .linker import LinkKey, as_rows, distinct_keys, link, link_via
from .populator import ResultPopulator, _row_keys, index_rows
from .registry import RelationRegistry, pivot_table, validate_relation
from .relation import IndexBy, Relation, Where, declared_relations, dependent_relations
from .tools import _get_column_map, _get_primary_key, _get_table_name, get_column, get_table


logger = logging.getLogger(__name__)

T = TypeVar("T")

Customize = Callable[[sa.Select[Any]], sa.Select[Any]]
RelationPaths = Union[
    str,
    Iterable[Union[str, tuple[str, Union[Customize, None]]]],
    Mapping[str, Union[Customize, None]],
]

PATH_SEPARATOR: Final[str] = "."


class FindOptions(TypedDict, total=False):
    query: sa.Select[Any]
    where: Sequence[sa.ColumnExpressionArgument[bool]]
    customize: Customize
    order_by: tuple[str, ...]
    limit: int | None
    offset: int | None
    distinct: bool
    with_: RelationPaths
    join_with: Sequence[JoinRequest | str]
    as_array: bool
    index_by: IndexBy


@dataclass(slots=True, frozen=True)
class _ResolvePlan:
    """Normalized ``paths`` argument: a relation tree plus per-path customizations."""

    tree: frozendict[str, Any]
    customize: frozendict[str, Customize] = field(default_factory=frozendict)


class RelationResolver:
    """Plans and runs the queries that populate relations of records.

    Eager use goes through :meth:`resolve`, which issues one query per
    relation level whatever the number of owners (plus one junction query
    per via hop). Lazy use goes through :meth:`resolve_one` and the relation
    descriptors of records bound to this resolver. The executor and the
    registry are the only collaborators; the resolver holds no other state.

    Example::

        resolver = RelationResolver(ConnectionExecutor(conn), get_registry(Base))
        customers = resolver.find(Customer, with_=("orders.items",))
        customers[0].orders[0].items  # already populated, no query
    """

    __slots__ = ("_lazy", "executor", "registry")

    def __init__(self, executor: QueryExecutor, registry: RelationRegistry) -> None:
        self.executor = executor
        self.registry = registry
        self._lazy = LazyRelationProxy(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} executor={self.executor!r}>"

    # -- public relation API -------------------------------------------------

    def resolve(
        self,
        owners: Sequence[Any],
        paths: RelationPaths,
        *,
        model: type[Any] | None = None,
        as_array: bool = False,
    ) -> None:
        """Populate the relations named by *paths* on every owner.

        *paths* holds dotted relation paths (``"orders.items.category"``),
        optionally paired with a query customization applied to the query of
        the last segment, either as ``(path, fn)`` tuples or as a mapping.
        Each level is fully linked before its children are resolved against
        the targets that level fetched. Plain-dict owners need *model*.
        """
        if not owners:
            return

        if model is None:
            first = owners[0]
            if isinstance(first, Mapping):
                raise TypeError("resolve() needs `model` when owners are plain rows")
            model = type(first)

        plan = _resolve_plan(_freeze_paths(paths))
        self._resolve_level(list(owners), model, plan.tree, plan.customize, as_array=as_array, prefix="")

    def resolve_one(self, owner: Any, name: str) -> Any:
        """Return relation *name* of *owner*, querying only on first access."""
        return self._lazy.get(owner, name)

    def invalidate(self, owner: Any, attribute: str) -> list[str]:
        """Drop the cached relations of *owner* that depend on *attribute*."""
        return self._lazy.invalidate(owner, attribute)

    def is_populated(self, owner: Any, name: str) -> bool:
        return self._lazy.is_populated(owner, name)

    def unset(self, owner: Any, name: str) -> None:
        """Forget relation *name* of *owner*; no other relation is touched."""
        self._lazy.unset(owner, name)

    def populate(self, owner: Any, name: str, value: Any) -> None:
        """Store *value* as relation *name* of *owner* without querying."""
        if isinstance(owner, Mapping):
            owner[name] = value  # type: ignore[index]
            return

        self.registry.relation(type(owner), name)
        cache = relation_cache(owner)
        cache.set(name, value)
        if cache.resolver is None:
            cache.resolver = self

    def bind(self, record: T) -> T:
        """Attach this resolver to *record* so its relations load lazily."""
        relation_cache(record).resolver = self
        return record

    # -- primary queries -----------------------------------------------------

    def find(self, model: type[T], **options: Unpack[FindOptions]) -> list[Any] | dict[Hashable, Any]:
        """Run a primary query on *model*, then populate the requested relations.

        ``join_with`` relations are joined in SQL (and assembled from the
        joined columns when eager), ``with_`` relations are loaded with one
        extra query per level. ``customize`` receives the final select, so
        joined aliases can be filtered with :func:`~sqla_relations.tools.resolve_col`.

        Example::

            resolver.find(
                Customer,
                join_with=(JoinRequest("orders", kind="inner", eager=False),),
                customize=lambda q: q.where(resolve_col(q, "orders.total") > 100),
                with_={"orders.items": add_conditions(Item.price > 10)},
                distinct=True,
            )
        """
        as_array = options.get("as_array", False)
        query = options.get("query")
        if query is None:
            query = sa.select(get_table(model))

        plan = None
        if join_requests := options.get("join_with"):
            plan = JoinPlanner(self.registry, model).plan(join_requests)
            query = plan.apply(query)

        if where := options.get("where"):
            query = query.where(*where)
        query = _apply_order_by(query, model, options.get("order_by") or ())
        if customize := options.get("customize"):
            query = customize(query)
        if options.get("distinct"):
            query = query.distinct()
        if (limit := options.get("limit")) is not None:
            query = query.limit(limit)
        if (offset := options.get("offset")) is not None:
            query = query.offset(offset)

        rows = self.executor.execute(query)

        if plan is not None:
            joined = plan.assemble(rows, as_array=as_array, resolver=self)
            records = joined.records
            for relation, owners, results in joined.relations:
                self._store(relation, owners, results)
                if relation.inverse_of is not None:
                    self._populate_inverse(relation, owners, results)
        else:
            records = ResultPopulator(model, as_array=as_array, resolver=self).populate(rows)  # type: ignore[assignment]

        if with_ := options.get("with_"):
            self.resolve(records, with_, model=model, as_array=as_array)

        if (index_by := options.get("index_by")) is not None:
            return index_rows(records, index_by)

        return records

    def find_one(self, model: type[T], **options: Unpack[FindOptions]) -> Any:
        """Like :meth:`find` but return the first record or ``None``.

        Without joins the query is limited to one row.
        """
        options.pop("index_by", None)
        if not options.get("join_with"):
            options["limit"] = 1

        records = self.find(model, **options)
        return records[0] if records else None

    # -- resolution ----------------------------------------------------------

    def _resolve_level(
        self,
        owners: list[Any],
        model: type[Any],
        tree: Mapping[str, Any],
        customize: Mapping[str, Customize],
        *,
        as_array: bool,
        prefix: str,
    ) -> None:
        for name, children in tree.items():
            path = f"{prefix}{PATH_SEPARATOR}{name}" if prefix else name
            relation = self.registry.relation(model, name)
            targets = self._populate_relation(
                relation, owners, model, customize=customize.get(path), as_array=as_array
            )
            if children and targets:
                self._resolve_level(
                    targets, relation.target, children, customize, as_array=as_array, prefix=path
                )

    def _populate_relation(
        self,
        relation: Relation[Any],
        owners: list[Any],
        model: type[Any],
        *,
        customize: Customize | None,
        as_array: bool,
    ) -> list[Any]:
        targets, results = self._load(relation, owners, model, customize=customize, as_array=as_array)
        self._store(relation, owners, results)
        if relation.inverse_of is not None:
            self._populate_inverse(relation, owners, results)

        logger.debug(
            "Resolved %s.%s for %d owners: %d targets",
            model.__name__,
            relation.name,
            len(owners),
            len(targets),
        )

        return targets

    def _load(
        self,
        relation: Relation[Any],
        owners: list[Any],
        model: type[Any],
        *,
        customize: Customize | None,
        as_array: bool,
        extra_where: Where | None = None,
    ) -> tuple[list[Any], list[Any]]:
        """Fetch the targets of *relation* for *owners* and link them.

        Returns the fetched targets and one relation result per owner.
        """
        wheres = (relation.where, extra_where)
        if relation.via is None:
            keys = distinct_keys(owners, relation.owner_attributes, expand_arrays=relation.multiple)
            targets = self._fetch(
                relation, keys, wheres=wheres, customize=customize, as_array=as_array
            )
            results = link(
                owners, targets, relation.link, multiple=relation.multiple, index_by=relation.index_by
            )
            return targets, results

        junctions = self._junctions(relation, owners, model, as_array=as_array)
        seen: dict[int, Any] = {}
        for rows in junctions:
            for row in rows:
                seen.setdefault(id(row), row)

        keys = distinct_keys(seen.values(), relation.owner_attributes)
        targets = self._fetch(relation, keys, wheres=wheres, customize=customize, as_array=as_array)
        results = link_via(
            junctions, targets, relation.link, multiple=relation.multiple, index_by=relation.index_by
        )
        return targets, results

    def _junctions(
        self, relation: Relation[Any], owners: list[Any], model: type[Any], *, as_array: bool
    ) -> list[list[Any]]:
        """Junction rows of every owner, in the order the junction query returned them."""
        via = relation.via
        assert via is not None

        if via.is_table:
            table = pivot_table(model, relation)
            owner_attributes = tuple(owner for owner, _ in via.link)
            keys = distinct_keys(owners, owner_attributes)
            if not keys:
                return [[] for _ in owners]

            query = sa.select(table).where(_in_keys([table.c[col] for _, col in via.link], keys))
            if via.where is not None:
                query = query.where(via.where(table))
            rows = [dict(row) for row in self.executor.execute(query)]

            return link(owners, rows, via.link, multiple=True)

        junction = self.registry.relation(model, via.relation or "")
        cacheable = via.where is None
        pending = [o for o in owners if not (cacheable and self.is_populated(o, junction.name))]

        fresh: dict[int, Any] = {}
        if pending:
            _, results = self._load(
                junction, pending, model, customize=None, as_array=as_array, extra_where=via.where
            )
            if cacheable:
                self._store(junction, pending, results)
            fresh = {id(owner): result for owner, result in zip(pending, results)}

        return [
            as_rows(
                fresh[id(owner)] if id(owner) in fresh else _cached(owner, junction.name),
                multiple=junction.multiple,
            )
            for owner in owners
        ]

    def _fetch(
        self,
        relation: Relation[Any],
        keys: list[LinkKey],
        *,
        wheres: Sequence[Where | None],
        customize: Customize | None,
        as_array: bool,
    ) -> list[Any]:
        if not keys:
            return []

        target = relation.target
        table = get_table(target)
        columns = [get_column(target, attribute) for attribute in relation.target_attributes]
        query = sa.select(table).where(_in_keys(columns, keys))
        for where in wheres:
            if where is not None:
                query = query.where(where(table))

        query = _apply_order_by(query, target, relation.order_by)
        if customize is not None:
            query = customize(query)

        rows = self.executor.execute(query)

        return ResultPopulator(target, as_array=as_array, resolver=self).populate(rows)  # type: ignore[return-value]

    def _store(self, relation: Relation[Any], owners: Sequence[Any], results: Sequence[Any]) -> None:
        for owner, result in zip(owners, results):
            if isinstance(owner, Mapping):
                owner[relation.name] = result  # type: ignore[index]
                continue

            cache = relation_cache(owner)
            cache.set(relation.name, result)
            if cache.resolver is None:
                cache.resolver = self

    def _populate_inverse(
        self, relation: Relation[Any], owners: Sequence[Any], results: Sequence[Any]
    ) -> None:
        """Point every linked target back at its owner(s) through ``inverse_of``."""
        inverse = self.registry.relation(relation.target, relation.inverse_of or "")
        linked: dict[int, tuple[Any, list[Any]]] = {}
        for owner, result in zip(owners, results):
            for target in as_rows(result, multiple=relation.multiple):
                back = linked.setdefault(id(target), (target, []))[1]
                if not any(existing is owner for existing in back):
                    back.append(owner)

        for target, back in linked.values():
            self._store(inverse, (target,), (back if inverse.multiple else back[0],))


def _cached(owner: Any, name: str) -> Any:
    if isinstance(owner, Mapping):
        return owner[name]

    return relation_cache(owner).get(name)


def _in_keys(columns: Sequence[sa.ColumnElement[Any]], keys: Sequence[LinkKey]) -> sa.ColumnElement[bool]:
    """``columns IN keys``; composite keys are spelled as an OR of ANDs."""
    if len(columns) == 1:
        return columns[0].in_([key[0] for key in keys])

    return sa.or_(*(sa.and_(*(col == value for col, value in zip(columns, key))) for key in keys))


def _apply_order_by(query: sa.Select[Any], model: type[Any], order_by: tuple[str, ...]) -> sa.Select[Any]:
    """Apply ORDER BY attribute names, a leading ``-`` meaning descending."""
    if not order_by:
        return query

    clauses = [
        get_column(model, by[1:]).desc() if by.startswith("-") else get_column(model, by).asc()
        for by in order_by
    ]
    return query.order_by(*clauses)


def _freeze_paths(paths: RelationPaths) -> tuple[tuple[str, Customize | None], ...]:
    if isinstance(paths, str):
        return ((paths, None),)

    if isinstance(paths, Mapping):
        return tuple(paths.items())

    return tuple(item if isinstance(item, tuple) else (item, None) for item in paths)


@lru_cache(maxsize=1028)
def _relation_tree(paths: tuple[str, ...]) -> frozendict[str, Any]:
    """Merge dotted paths into a nested tree: ``("a.b", "a.c")`` -> ``{a: {b: {}, c: {}}}``."""
    root: dict[str, Any] = {}
    for dotted in paths:
        segments = dotted.split(PATH_SEPARATOR)
        if not all(segments):
            raise RelationConfigError(f"Empty segment in relation path {dotted!r}")

        node = root
        for segment in segments:
            node = node.setdefault(segment, {})

    def freeze(node: dict[str, Any]) -> frozendict[str, Any]:
        return frozendict({name: freeze(child) for name, child in node.items()})

    return freeze(root)


def _resolve_plan(paths: tuple[tuple[str, Customize | None], ...]) -> _ResolvePlan:
    customize = frozendict({path: fn for path, fn in paths if fn is not None})
    return _ResolvePlan(tree=_relation_tree(tuple(path for path, _ in paths)), customize=customize)


_CACHED_FUNCTIONS: Final = (
    _relation_tree,
    declared_relations,
    dependent_relations,
    validate_relation,
    _row_keys,
    _get_column_map,
    _get_primary_key,
    _get_table_name,
)


def relations_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {fn.__name__: fn.cache_info() for fn in _CACHED_FUNCTIONS}


def relations_cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in _CACHED_FUNCTIONS:
        fn.cache_clear()
