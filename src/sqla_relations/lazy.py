from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.orm.base import NO_VALUE

from .datastructures import peek_relation_cache, relation_cache
from .exceptions import RelationConfigError
from .relation import dependent_relations, link_attributes
from .tools import get_column_map


if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import AttributeEventToken

    from .resolver import RelationResolver


logger = logging.getLogger(__name__)


def invalidate(owner: object, attribute: str) -> list[str]:
    """Drop every cached relation of *owner* whose link reads *attribute*.

    Entries are removed rather than flagged, so the next access queries
    again with the new key. Returns the names that were dropped.
    """
    if isinstance(owner, Mapping):
        return []

    cache = peek_relation_cache(owner)
    if cache is None or not len(cache):
        return []

    removed = cache.discard_many(sorted(dependent_relations(type(owner), attribute)))
    if removed:
        logger.debug(
            "%s.%s changed, dropped cached relations %s",
            type(owner).__name__,
            attribute,
            removed,
        )

    return removed


def _on_link_attribute_set(
    target: object, value: Any, oldvalue: Any, initiator: AttributeEventToken
) -> None:
    if oldvalue is not NO_VALUE and (oldvalue is value or oldvalue == value):
        return

    invalidate(target, initiator.key)


def install_invalidation(model: type[Any]) -> None:
    """Listen to ``set`` events of every owner-side link attribute of *model*."""
    columns = get_column_map(model)
    for attribute in sorted(link_attributes(model)):
        if attribute not in columns:
            continue

        instrumented = getattr(model, attribute)
        if not sa.event.contains(instrumented, "set", _on_link_attribute_set):
            sa.event.listen(instrumented, "set", _on_link_attribute_set)


class LazyRelationProxy:
    """On-demand access to one relation of one record.

    The first read resolves the relation for the single owner through the
    same batch algorithm the resolver uses for eager loading, and stores the
    result in the owner's relation cache; later reads return the cached
    value without querying until the entry is invalidated or unset.
    """

    __slots__ = ("_resolver",)

    def __init__(self, resolver: RelationResolver) -> None:
        self._resolver = resolver

    def get(self, owner: object, name: str) -> Any:
        if isinstance(owner, Mapping):
            raise TypeError(
                f"Lazy relation access needs a record, got {type(owner).__name__}; "
                "resolve relations of plain rows eagerly"
            )

        if "." in name:
            raise RelationConfigError(
                f"resolve_one() takes a single relation name, got path {name!r}; use resolve() for nested paths"
            )

        cache = relation_cache(owner)
        if cache.is_populated(name):
            return cache.get(name)

        if cache.resolver is None:
            cache.resolver = self._resolver

        self._resolver.resolve((owner,), (name,))

        return cache.get(name)

    @staticmethod
    def is_populated(owner: object, name: str) -> bool:
        if isinstance(owner, Mapping):
            return name in owner

        cache = peek_relation_cache(owner)
        return cache is not None and cache.is_populated(name)

    @staticmethod
    def unset(owner: object, name: str) -> None:
        if isinstance(owner, Mapping):
            owner.pop(name, None)  # type: ignore[attr-defined]
            return

        cache = peek_relation_cache(owner)
        if cache is not None:
            cache.discard(name)

    @staticmethod
    def invalidate(owner: object, attribute: str) -> list[str]:
        return invalidate(owner, attribute)
