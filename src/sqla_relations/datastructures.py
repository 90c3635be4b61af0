from __future__ import annotations

import sys
from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Any, Final, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .resolver import RelationResolver


K = TypeVar("K")
V = TypeVar("V")

CACHE_ATTRIBUTE: Final[str] = "_sqla_relations_cache"


class frozendict(Mapping[K, V]):  # noqa: N801
    """Hashable read-only mapping.

    Used for everything the resolver memoizes on: registry contents, the
    normalized relation tree of a ``resolve`` call and per-path customization
    maps. Insertion order is preserved, the hash is computed on first use.

    Example:
        >>> tree = frozendict(orders=frozendict(items=frozendict()))
        >>> tree["orders"]
        <frozendict {'items': <frozendict {}>}>
        >>> tree.merge(customer=frozendict())
        <frozendict {'orders': <frozendict {'items': <frozendict {}>}>, 'customer': <frozendict {}>}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: object) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(tuple(self._dict.items()))

        return self._hash

    def merge(self, *others: Mapping[K, V], **add_or_replace: V) -> Self:
        """Return a new frozendict with *others* and keyword items layered on top."""
        merged = dict(self._dict)
        for other in others:
            merged.update(other)
        merged.update(add_or_replace)  # type: ignore[arg-type]

        return type(self)(merged)


class RelationCache:
    """Per-record storage of resolved relations.

    A relation is *populated* when its name is present, whatever the value:
    ``None`` for a single relation without a match and ``[]`` for an empty
    many relation are both populated results. The cache also carries the
    resolver that lazy access on the record goes through.
    """

    __slots__ = ("_related", "resolver")

    def __init__(self, resolver: RelationResolver | None = None) -> None:
        self._related: dict[str, Any] = {}
        self.resolver = resolver

    def __contains__(self, name: object) -> bool:
        return name in self._related

    def __len__(self) -> int:
        return len(self._related)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {sorted(self._related)!r}>"

    def is_populated(self, name: str) -> bool:
        return name in self._related

    def get(self, name: str) -> Any:
        """Return the cached result for *name*, raising ``KeyError`` when not populated."""
        return self._related[name]

    def set(self, name: str, value: Any) -> None:
        self._related[name] = value

    def discard(self, name: str) -> bool:
        """Remove *name*; return whether it was populated."""
        return self._related.pop(name, _MISSING) is not _MISSING

    def discard_many(self, names: Iterable[str]) -> list[str]:
        """Remove every populated name in *names* and return the removed ones."""
        return [name for name in names if self.discard(name)]


_MISSING: Final = object()


def relation_cache(record: object) -> RelationCache:
    """Return the relation cache stored on *record*, creating it on first use."""
    state = vars(record)
    cache = state.get(CACHE_ATTRIBUTE)
    if cache is None:
        cache = state[CACHE_ATTRIBUTE] = RelationCache()

    return cache


def peek_relation_cache(record: object) -> RelationCache | None:
    """Return the relation cache of *record* without creating one."""
    return vars(record).get(CACHE_ATTRIBUTE)
