from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import sqlalchemy as sa
from sqlalchemy import orm


logger = logging.getLogger(__name__)


@runtime_checkable
class QueryExecutor(Protocol):
    """The only I/O seam of the relation engine.

    Receives a fully built ``Select`` (filter, joins, ordering and limit are
    already part of it) and returns its rows as mappings in the order the
    database produced them. Errors are not caught: whatever the driver or
    SQLAlchemy raises reaches the caller of ``resolve`` unchanged.
    """

    def execute(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]: ...


class ConnectionExecutor:
    """Runs statements on a ``Connection`` or an ORM ``Session``.

    Example::

        with engine.connect() as conn:
            resolver = RelationResolver(ConnectionExecutor(conn), registry)
    """

    __slots__ = ("bind", "statements")

    def __init__(self, bind: sa.Connection | orm.Session) -> None:
        self.bind = bind
        self.statements = 0

    def __repr__(self) -> str:
        return f"<{type(self).__name__} bind={self.bind!r} statements={self.statements}>"

    def execute(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Executing relation query: %s", statement)

        rows = self.bind.execute(statement).mappings().all()
        self.statements += 1

        return rows
