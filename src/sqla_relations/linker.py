"""In-memory matching of fetched rows to the records that own them.

Every function here is pure: rows are records or row mappings, attributes
are read with :func:`~sqla_relations.tools.get_value`, and results are
returned as lists aligned with the owners passed in. Matching goes through
a hash index on the target side, so linking is linear in the number of
owners plus targets.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from typing import Any

from .populator import index_rows
from .relation import IndexBy, Link
from .tools import get_value


LinkKey = tuple[Hashable, ...]


def link_key(row: Any, attributes: Sequence[str]) -> LinkKey | None:
    """Extract the link key of *row*; ``None`` when any component is ``None``."""
    key = tuple(get_value(row, attribute) for attribute in attributes)
    if any(value is None for value in key):
        return None

    return key


def owner_keys(row: Any, attributes: Sequence[str], *, expand_arrays: bool = False) -> list[LinkKey]:
    """Link keys an owner row matches.

    With *expand_arrays* and a single-attribute link, an attribute holding a
    list or tuple yields one key per element, in element order.
    """
    if expand_arrays and len(attributes) == 1:
        value = get_value(row, attributes[0])
        if isinstance(value, (list, tuple)):
            return [(item,) for item in value if item is not None]

    key = link_key(row, attributes)
    return [] if key is None else [key]


def distinct_keys(
    rows: Iterable[Any], attributes: Sequence[str], *, expand_arrays: bool = False
) -> list[LinkKey]:
    """Distinct link keys of *rows* in first-seen order, skipping incomplete keys."""
    seen: dict[LinkKey, None] = {}
    for row in rows:
        for key in owner_keys(row, attributes, expand_arrays=expand_arrays):
            seen.setdefault(key, None)

    return list(seen)


def build_index(rows: Iterable[Any], attributes: Sequence[str]) -> dict[LinkKey, list[Any]]:
    """Bucket *rows* by link key, preserving row order inside each bucket."""
    index: dict[LinkKey, list[Any]] = {}
    for row in rows:
        key = link_key(row, attributes)
        if key is not None:
            index.setdefault(key, []).append(row)

    return index


def _finish(matches: list[Any], *, multiple: bool, index_by: IndexBy | None) -> Any:
    if not multiple:
        # first match wins, extra rows of a single relation are ignored
        return matches[0] if matches else None

    if index_by is not None:
        return index_rows(matches, index_by)

    return matches


def link(
    owners: Sequence[Any],
    targets: Sequence[Any],
    pairs: Link,
    *,
    multiple: bool,
    index_by: IndexBy | None = None,
) -> list[Any]:
    """Match *targets* to *owners* through the ``(owner_attr, target_attr)`` *pairs*.

    Returns one result per owner: the first match or ``None`` for a single
    relation, the matches in target order (or indexed by *index_by*) for a
    many relation.
    """
    owner_attributes = tuple(left for left, _ in pairs)
    index = build_index(targets, tuple(right for _, right in pairs))

    results: list[Any] = []
    for owner in owners:
        matches: list[Any] = []
        for key in owner_keys(owner, owner_attributes, expand_arrays=multiple):
            matches.extend(index.get(key, ()))
        results.append(_finish(matches, multiple=multiple, index_by=index_by))

    return results


def link_via(
    junctions_per_owner: Sequence[Sequence[Any]],
    targets: Sequence[Any],
    pairs: Link,
    *,
    multiple: bool,
    index_by: IndexBy | None = None,
) -> list[Any]:
    """Match *targets* to owners through their junction rows.

    *junctions_per_owner* holds, for each owner, its junction rows in the
    order they were returned. Targets are appended once per junction row in
    that order, so the target query's own ordering never leaks through.
    *pairs* maps junction attributes to target attributes.
    """
    junction_attributes = tuple(left for left, _ in pairs)
    index = build_index(targets, tuple(right for _, right in pairs))

    results: list[Any] = []
    for junctions in junctions_per_owner:
        matches: list[Any] = []
        for junction in junctions:
            key = link_key(junction, junction_attributes)
            if key is not None:
                matches.extend(index.get(key, ()))
        results.append(_finish(matches, multiple=multiple, index_by=index_by))

    return results


def as_rows(result: Any, *, multiple: bool) -> list[Any]:
    """Flatten a relation result (``None``, a row, a list or an indexed dict) to a list."""
    if not multiple:
        return [] if result is None else [result]

    if isinstance(result, dict):
        return list(result.values())

    return list(result or ())
