from __future__ import annotations


class RelationError(Exception):
    """Base class for every error raised by sqla_relations."""


class RelationConfigError(RelationError, ValueError):
    """A relation declaration or request is invalid.

    Configuration errors are raised at the moment a relation is first
    resolved, never retried and never swallowed.
    """


class UnknownRelationError(RelationConfigError):
    """The requested relation name is not declared on the model."""

    def __init__(self, model: type, name: str) -> None:
        self.model = model
        self.name = name
        super().__init__(f"No relation {name!r} on {model.__name__}")


class RelationNameCaseError(RelationConfigError):
    """The requested relation name differs only in case from a declared one."""

    def __init__(self, model: type, name: str, declared: str) -> None:
        self.model = model
        self.name = name
        self.declared = declared
        super().__init__(
            f"Relation names are case-sensitive: {model.__name__} declares "
            f"{declared!r}, got {name!r}"
        )


class InvalidRelationError(RelationConfigError):
    """The attribute exists but does not describe a relation of the declared target."""


class InvalidViaError(RelationConfigError):
    """A via relation or pivot table cannot be linked to the target."""


class UnboundRecordError(RelationError, RuntimeError):
    """Lazy relation access on a record that has no resolver bound to it."""
