"""Relation resolution and eager loading for SQLAlchemy models.

sqla_relations declares relations as plain descriptors on mapped classes
(``has_one`` / ``has_many``, optionally ``via`` another relation or a pivot
table) and resolves them with one query per relation level, whatever the
number of records.  Build a registry at startup with ``get_registry(Base)``,
wrap a connection in a ``ConnectionExecutor`` and hand both to a
``RelationResolver``: ``resolver.find(Customer, with_=("orders.items",))``
returns customers with orders and items populated, while unloaded relations
still resolve lazily on first access.
"""

from ._version import __version__, __version_tuple__
from .datastructures import RelationCache, frozendict
from .exceptions import (
    InvalidRelationError,
    InvalidViaError,
    RelationConfigError,
    RelationError,
    RelationNameCaseError,
    UnboundRecordError,
    UnknownRelationError,
)
from .executor import ConnectionExecutor, QueryExecutor
from .joins import DEFAULT_JOIN_KIND, JOIN_COLUMN_SEPARATOR, JoinPlan, JoinPlanner, JoinRequest
from .lazy import LazyRelationProxy
from .populator import ResultPopulator
from .registry import RelationRegistry, get_registry
from .relation import Relation, Via, has_many, has_one, via, via_table
from .resolver import FindOptions, RelationResolver, relations_cache_clear, relations_cache_info
from .tools import (
    add_conditions,
    get_primary_key,
    get_table_name,
    get_table_names,
    resolve_col,
)


__all__ = (
    "DEFAULT_JOIN_KIND",
    "JOIN_COLUMN_SEPARATOR",
    "ConnectionExecutor",
    "FindOptions",
    "InvalidRelationError",
    "InvalidViaError",
    "JoinPlan",
    "JoinPlanner",
    "JoinRequest",
    "LazyRelationProxy",
    "QueryExecutor",
    "Relation",
    "RelationCache",
    "RelationConfigError",
    "RelationError",
    "RelationNameCaseError",
    "RelationRegistry",
    "RelationResolver",
    "ResultPopulator",
    "UnboundRecordError",
    "UnknownRelationError",
    "Via",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "frozendict",
    "get_primary_key",
    "get_registry",
    "get_table_name",
    "get_table_names",
    "has_many",
    "has_one",
    "relations_cache_clear",
    "relations_cache_info",
    "resolve_col",
    "via",
    "via_table",
)
