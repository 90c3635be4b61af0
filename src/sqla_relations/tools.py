from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from functools import lru_cache
from typing import Any

import sqlalchemy as sa


@lru_cache
def _get_column_map(model: type[Any]) -> Mapping[str, sa.Column[Any]]:
    """Return ``{attribute_key: Column}`` for the mapped columns of *model* (cached)."""
    mapper = sa.inspect(model)
    return {prop.key: prop.columns[0] for prop in mapper.column_attrs}


@lru_cache
def _get_primary_key(model: type[Any]) -> tuple[str, ...]:
    """Return the attribute keys of *model*'s primary key columns (cached)."""
    mapper = sa.inspect(model)
    return tuple(mapper.get_property_by_column(col).key for col in mapper.primary_key)


@lru_cache
def _get_table_name(model: type[Any]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(model, "__tablename__", None) or sa.inspect(model).local_table.description
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[Any]) -> str:
    """Get the table name for a mapped model.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_table(model: type[Any]) -> sa.Table:
    """Get the local table a mapped model selects from."""
    return sa.inspect(model).local_table  # type: ignore[return-value]


def get_primary_key(model: type[Any]) -> tuple[str, ...]:
    """Get the primary key attribute names of a mapped model, in column order."""
    return _get_primary_key(model)


def get_column_map(model: type[Any]) -> Mapping[str, sa.Column[Any]]:
    """Get the mapping of attribute name to table column for a mapped model."""
    return _get_column_map(model)


def get_column(model: type[Any], attribute: str) -> sa.Column[Any]:
    """Get the table column behind *attribute* of *model*.

    Raises:
        KeyError: If *attribute* is not a mapped column of *model*.
    """
    return _get_column_map(model)[attribute]


def get_value(row: Any, attribute: str) -> Any:
    """Read *attribute* from a record or a row mapping, ``None`` when absent."""
    if isinstance(row, Mapping):
        return row.get(attribute)

    return getattr(row, attribute, None)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any]], sa.Select[Any]]:
    """Create a query customization that adds WHERE conditions.

    Example:
        >>> resolver.resolve(
        ...     customers,
        ...     {"orders": add_conditions(Order.total > 100)},
        ... )
    """

    def _add(query: sa.Select[Any]) -> sa.Select[Any]:
        return query.where(*conditions)

    return _add


def _iter_froms(query: sa.Select[Any]) -> Iterator[sa.FromClause]:
    """Yield the named FROM elements of *query* left to right, descending into joins."""
    for root in query.get_final_froms():
        pending: list[sa.FromClause] = [root]
        while pending:
            node = pending.pop()
            if isinstance(node, sa.Join):
                pending += (node.right, node.left)
            else:
                yield node


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Table and alias names in the FROM clause of *query*, in join order.

    An alias of a table is reported under the alias name.
    """
    names: dict[str, None] = {}
    for node in _iter_froms(query):
        if name := getattr(node, "name", None):
            names.setdefault(name, None)

    return list(names)


def resolve_col(query: sa.Select[Any], ref: str) -> sa.ColumnElement[Any]:
    """Resolve ``'alias.column'`` to a bound column of *query*.

    Works on queries extended by a join plan, where every joined relation
    is an alias named after its path (``orders``, ``orders_items``) or the
    alias given in the join request::

        col = resolve_col(query, "orders_items.name")
        query = query.where(col == "widget")

    Raises ``ValueError`` if the alias or the column is not found.
    """
    alias_name, sep, col_name = ref.partition(".")
    if not sep:
        raise ValueError(f"Expected 'alias.column' format, got {ref!r}")

    found = next((node for node in _iter_froms(query) if getattr(node, "name", None) == alias_name), None)
    if found is None:
        raise ValueError(f"Alias {alias_name!r} not found in query. Available: {get_table_names(query)}")

    if col_name not in found.c:
        raise ValueError(
            f"Column {col_name!r} not found in alias {alias_name!r}. "
            f"Available: {[c.key for c in found.c]}"
        )

    return found.c[col_name]
