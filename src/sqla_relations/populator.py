from __future__ import annotations

from collections.abc import Hashable, Iterable, Mapping
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy.orm.attributes import set_committed_value

from .datastructures import relation_cache
from .tools import get_column_map, get_value


if TYPE_CHECKING:
    from .relation import IndexBy
    from .resolver import RelationResolver

T = TypeVar("T")


@lru_cache(maxsize=512)
def _row_keys(model: type[Any]) -> tuple[tuple[str, str], ...]:
    """``(attribute_key, column_key)`` pairs used to read a row of *model*'s table."""
    return tuple((attr, column.key) for attr, column in get_column_map(model).items())


def index_rows(rows: Iterable[Any], index_by: IndexBy) -> dict[Hashable, Any]:
    """Key *rows* by an attribute name or a callable; later rows overwrite earlier ones."""
    if isinstance(index_by, str):
        return {get_value(row, index_by): row for row in rows}

    return {index_by(row): row for row in rows}


class ResultPopulator(Generic[T]):
    """Materializes raw rows of *model*'s table as records or plain dicts.

    Records are created through the class manager, bypassing ``__init__``,
    and their column values are set as committed state: a populated record
    is clean, and populating it fires no attribute events. When a
    *resolver* is given, every record is bound to it for lazy relation
    access.

    ``prefix`` reads labelled columns such as ``"orders.id"`` produced by a
    join plan.
    """

    __slots__ = ("_keys", "as_array", "index_by", "model", "resolver")

    def __init__(
        self,
        model: type[T],
        *,
        as_array: bool = False,
        index_by: IndexBy | None = None,
        resolver: RelationResolver | None = None,
    ) -> None:
        self.model = model
        self.as_array = as_array
        self.index_by = index_by
        self.resolver = resolver
        self._keys = _row_keys(model)

    def populate(self, rows: Iterable[Mapping[str, Any]]) -> list[Any] | dict[Hashable, Any]:
        """Populate every row, indexing the result when ``index_by`` is set."""
        populated = [self.populate_row(row) for row in rows]
        if self.index_by is not None:
            return index_rows(populated, self.index_by)

        return populated

    def populate_row(self, row: Mapping[str, Any], prefix: str = "") -> T | dict[str, Any]:
        values = {attr: row[f"{prefix}{key}"] for attr, key in self._keys if f"{prefix}{key}" in row}
        if self.as_array:
            return values

        instance = sa.inspect(self.model).class_manager.new_instance()
        for attr, value in values.items():
            set_committed_value(instance, attr, value)

        if self.resolver is not None:
            relation_cache(instance).resolver = self.resolver

        return instance
