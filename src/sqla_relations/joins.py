from __future__ import annotations

import logging
import warnings
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Literal

import sqlalchemy as sa

from .populator import ResultPopulator, index_rows
from .registry import RelationRegistry, pivot_table
from .relation import Relation
from .tools import get_column, get_primary_key, get_table, get_table_name


if TYPE_CHECKING:
    from .resolver import RelationResolver


logger = logging.getLogger(__name__)

JoinKind = Literal["left", "inner"]
DEFAULT_JOIN_KIND: Final[JoinKind] = "left"
JOIN_COLUMN_SEPARATOR: Final[str] = "."

_JOIN_KINDS: Final[frozenset[str]] = frozenset({"left", "inner"})
_OnBuilder = Callable[[sa.FromClause], sa.ColumnElement[bool]]


@dataclass(frozen=True, slots=True)
class JoinRequest:
    """One relation path to join in SQL rather than load with a separate query.

    ``alias`` names the table alias of the last segment (defaults to the
    path with dots replaced by underscores). ``on`` adds a condition on
    that alias to the ON clause. With ``eager=False`` the join only serves
    filtering and ordering, and nothing is assembled from its columns.
    """

    path: str
    alias: str | None = None
    kind: JoinKind = DEFAULT_JOIN_KIND
    eager: bool = True
    on: _OnBuilder | None = None


@dataclass(eq=False, slots=True)
class JoinNode:
    """A table joined by a plan: a relation target or a junction."""

    name: str
    path: str
    table: sa.Table
    alias: sa.FromClause
    onclause: sa.ColumnElement[bool]
    kind: JoinKind
    eager: bool
    relation: Relation[Any] | None = None
    owner: JoinNode | None = None
    model: type[Any] | None = None

    @property
    def label_prefix(self) -> str:
        return f"{self.name}{JOIN_COLUMN_SEPARATOR}"


@dataclass(slots=True)
class JoinResult:
    """Primary records of a joined query and the relations assembled from it."""

    records: list[Any]
    relations: list[tuple[Relation[Any], list[Any], list[Any]]] = field(default_factory=list)


class JoinPlan:
    """Ordered join graph rooted at a model's table.

    Built by :class:`JoinPlanner`. ``apply`` extends a select with the joins
    and the labelled columns of eager joins, ``assemble`` turns the rows
    back into primary records carrying their joined relations.
    """

    __slots__ = ("_by_name", "_by_path", "model", "nodes", "table")

    def __init__(self, model: type[Any]) -> None:
        self.model = model
        self.table = get_table(model)
        self.nodes: list[JoinNode] = []
        self._by_name: dict[str, JoinNode] = {}
        self._by_path: dict[str, JoinNode] = {}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {get_table_name(self.model)} {[n.name for n in self.nodes]!r}>"

    def alias(self, name: str) -> sa.FromClause:
        """Return the aliased table joined under alias or relation path *name*."""
        node = self._by_name.get(name) or self._by_path.get(name)
        if node is None:
            raise KeyError(f"No join named {name!r}; joined: {list(self._by_name)}")

        return node.alias

    @property
    def eager_nodes(self) -> list[JoinNode]:
        return [node for node in self.nodes if node.eager and node.relation is not None]

    def apply(self, query: sa.Select[Any]) -> sa.Select[Any]:
        """Add the planned joins to *query* and select the columns of eager joins."""
        if not self.nodes:
            return query

        from_: sa.FromClause = self.table
        for node in self.nodes:
            from_ = from_.join(node.alias, node.onclause, isouter=node.kind == "left")

        columns = [
            node.alias.c[column.key].label(f"{node.label_prefix}{column.key}")
            for node in self.eager_nodes
            for column in node.table.c
        ]

        return query.select_from(from_).add_columns(*columns)

    def assemble(
        self,
        rows: Iterable[Mapping[str, Any]],
        *,
        as_array: bool = False,
        resolver: RelationResolver | None = None,
    ) -> JoinResult:
        """Split joined rows into de-duplicated records and their eager relations.

        Records come out in first-seen order. A many relation collects each
        distinct child once per owner in row order; a single relation keeps
        its first child. Joins of the same relation path under different
        aliases merge into one result per owner.

        Children are keyed by primary key, so a many relation through a
        junction holds each target once per owner even when several junction
        rows link the pair. Loading the same relation with a separate query
        appends the target once per junction row instead.
        """
        primary = ResultPopulator(self.model, as_array=as_array, resolver=resolver)
        primary_keys = _key_columns(self.model)
        eager = self.eager_nodes
        populators = {
            id(node): ResultPopulator(node.model, as_array=as_array, resolver=resolver)  # type: ignore[arg-type]
            for node in eager
        }

        records: dict[tuple[Any, ...], Any] = {}
        children: dict[tuple[str, tuple[Any, ...]], Any] = {}
        buckets: dict[tuple[int, str], tuple[Any, JoinNode, list[Any], set[tuple[Any, ...]]]] = {}

        for row in rows:
            key = tuple(row[column] for column in primary_keys)
            record = records.get(key)
            if record is None:
                record = records[key] = primary.populate_row(row)

            current: dict[int | None, Any] = {None: record}
            for node in eager:
                owner = current.get(id(node.owner) if node.owner else None)
                if owner is None:
                    current[id(node)] = None
                    continue

                prefix = node.label_prefix
                child_key = tuple(row[f"{prefix}{column}"] for column in _key_columns(node.model))  # type: ignore[arg-type]
                child = None
                if not any(value is None for value in child_key):
                    child = children.get((node.path, child_key))
                    if child is None:
                        child = populators[id(node)].populate_row(row, prefix=prefix)
                        children[(node.path, child_key)] = child
                current[id(node)] = child

                bucket = buckets.get((id(owner), node.path))
                if bucket is None:
                    bucket = buckets[(id(owner), node.path)] = (owner, node, [], set())
                if child is not None and child_key not in bucket[3]:
                    bucket[3].add(child_key)
                    bucket[2].append(child)

        grouped: dict[str, tuple[Relation[Any], list[Any], list[Any]]] = {}
        for owner, node, matches, _ in buckets.values():
            relation = node.relation
            assert relation is not None
            owners, results = grouped.setdefault(node.path, (relation, [], []))[1:]
            owners.append(owner)
            results.append(_finish(relation, matches))

        return JoinResult(records=list(records.values()), relations=list(grouped.values()))


def _finish(relation: Relation[Any], matches: list[Any]) -> Any:
    if not relation.multiple:
        return matches[0] if matches else None

    if relation.index_by is not None:
        return index_rows(matches, relation.index_by)

    return matches


def _key_columns(model: type[Any]) -> tuple[str, ...]:
    return tuple(get_column(model, attribute).key for attribute in get_primary_key(model))


class JoinPlanner:
    """Turns join requests into a :class:`JoinPlan`.

    Every segment of a dotted path becomes a join; intermediate segments
    reuse an existing join of the same path. Via relations join their
    junction first, under the alias the junction relation would get if it
    were joined directly, so joining ``order_items`` and ``items`` (through
    ``order_items``) produces a single junction join. Joins with the same
    table, alias and ON clause are merged; an alias taken by a different
    join gets a numeric suffix.
    """

    __slots__ = ("model", "registry")

    def __init__(self, registry: RelationRegistry, model: type[Any]) -> None:
        self.registry = registry
        self.model = model

    def plan(self, requests: Sequence[JoinRequest | str]) -> JoinPlan:
        plan = JoinPlan(self.model)
        for request in requests:
            if isinstance(request, str):
                request = JoinRequest(request)

            kind = request.kind
            if kind not in _JOIN_KINDS:
                warnings.warn(
                    f"Unknown join kind: {kind!r}. Using {DEFAULT_JOIN_KIND!r}.",
                    stacklevel=2,
                )
                kind = DEFAULT_JOIN_KIND

            self._plan_path(plan, request, kind)

        return plan

    def _plan_path(self, plan: JoinPlan, request: JoinRequest, kind: JoinKind) -> None:
        segments = request.path.split(".")
        if not all(segments):
            raise ValueError(f"Empty segment in join path {request.path!r}")

        model = self.model
        owner: JoinNode | None = None
        for depth, segment in enumerate(segments):
            path = ".".join(segments[: depth + 1])
            last = depth == len(segments) - 1
            relation = self.registry.relation(model, segment)

            existing = plan._by_path.get(path)  # noqa: SLF001
            if not last and existing is not None:
                existing.eager = existing.eager or request.eager
                owner, model = existing, relation.target
                continue

            alias = request.alias if last and request.alias else path.replace(".", "_")
            owner = self._join_relation(
                plan,
                owner,
                model,
                relation,
                path=path,
                alias=alias,
                kind=kind,
                eager=request.eager,
                on=request.on if last else None,
            )
            model = relation.target

    def _join_relation(
        self,
        plan: JoinPlan,
        owner: JoinNode | None,
        model: type[Any],
        relation: Relation[Any],
        *,
        path: str,
        alias: str,
        kind: JoinKind,
        eager: bool,
        on: _OnBuilder | None,
    ) -> JoinNode:
        owner_from = owner.alias if owner else plan.table
        target = relation.target
        target_table = get_table(target)
        target_columns = [get_column(target, attr).key for attr in relation.target_attributes]
        via = relation.via

        if via is None:
            owner_columns = [get_column(model, attr).key for attr in relation.owner_attributes]
            left: sa.FromClause = owner_from
        elif via.is_table:
            pivot = pivot_table(model, relation)
            pivot_on = _equal_columns(
                owner_from, [get_column(model, attr).key for attr, _ in via.link], [col for _, col in via.link]
            )
            left = self._add(
                plan,
                JoinNode(
                    name=f"{alias}_via",
                    path=f"{path}#via",
                    table=pivot,
                    alias=pivot,
                    onclause=sa.true(),
                    kind=kind,
                    eager=False,
                    owner=owner,
                ),
                lambda a: _and(pivot_on(a), via.where(a) if via.where else None),
            ).alias
            owner_columns = list(relation.owner_attributes)
        else:
            junction_relation = self.registry.relation(model, via.relation or "")
            junction_path = f"{owner.path}.{junction_relation.name}" if owner else junction_relation.name
            junction = self._join_relation(
                plan,
                owner,
                model,
                junction_relation,
                path=junction_path,
                alias=junction_path.replace(".", "_"),
                kind=kind,
                eager=False,
                on=via.where,
            )
            left = junction.alias
            owner_columns = [
                get_column(junction_relation.target, attr).key for attr in relation.owner_attributes
            ]

        link_on = _equal_columns(left, owner_columns, target_columns)
        return self._add(
            plan,
            JoinNode(
                name=alias,
                path=path,
                table=target_table,
                alias=target_table,
                onclause=sa.true(),
                kind=kind,
                eager=eager,
                relation=relation,
                owner=owner,
                model=target,
            ),
            lambda a: _and(
                link_on(a),
                relation.where(a) if relation.where else None,
                on(a) if on else None,
            ),
        )

    def _add(self, plan: JoinPlan, node: JoinNode, build_on: _OnBuilder) -> JoinNode:
        existing = plan._by_name.get(node.name)  # noqa: SLF001
        if existing is not None:
            if existing.table is node.table and build_on(existing.alias).compare(existing.onclause):
                existing.eager = existing.eager or node.eager
                logger.debug("Merged duplicate join %s (%s)", node.name, node.path)
                return existing

            node.name = _unique_name(plan, node.name)

        node.alias = node.table.alias(node.name)
        node.onclause = build_on(node.alias)
        plan.nodes.append(node)
        plan._by_name[node.name] = node  # noqa: SLF001
        if node.relation is not None:
            plan._by_path.setdefault(node.path, node)  # noqa: SLF001

        return node


def _unique_name(plan: JoinPlan, name: str) -> str:
    suffix = 2
    while f"{name}_{suffix}" in plan._by_name:  # noqa: SLF001
        suffix += 1

    return f"{name}_{suffix}"


def _equal_columns(
    left: sa.FromClause, left_columns: Sequence[str], right_columns: Sequence[str]
) -> _OnBuilder:
    def build(right: sa.FromClause) -> sa.ColumnElement[bool]:
        return sa.and_(*(left.c[lc] == right.c[rc] for lc, rc in zip(left_columns, right_columns)))

    return build


def _and(*clauses: sa.ColumnElement[bool] | None) -> sa.ColumnElement[bool]:
    present = [clause for clause in clauses if clause is not None]
    return present[0] if len(present) == 1 else sa.and_(*present)

