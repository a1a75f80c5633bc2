"""Error taxonomy for graft.

Three families, by who can do something about them:

- ClientInputFault: the request was malformed (bad actor reference, bad body).
  The HTTP layer answers 400.
- InternalFault: a statement failed or a coding contract was violated
  (unknown column type, drifted enum shape). The HTTP layer answers 500.
- FatalProcessFault: the shared connection is unusable (lost connection,
  failed startup). Not recoverable inside the process.
"""

from __future__ import annotations


class GraftError(Exception):
    """Base class for all graft errors."""

    pass


# --- Client input ---


class ClientInputFault(GraftError):
    """Raised when request input has an unacceptable shape."""

    pass


class InvalidActorReference(ClientInputFault):
    """Raised when an actor reference is not text, an object, or a list."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid actor: {type(value).__name__} is not an actor reference")


class InvalidRequestBody(ClientInputFault):
    """Raised when a posted body is not the expected JSON object."""

    pass


# --- Internal ---


class InternalFault(GraftError):
    """Raised when the server, not the client, is at fault."""

    pass


class UnsupportedColumnType(InternalFault):
    """A result column has a type with no registered decoder.

    This is a programming error: the query returned a column that was never
    accounted for. It is deliberately not handled anywhere in the core.
    """

    def __init__(self, type_name: str, column: str | None = None):
        self.type_name = type_name
        self.column = column
        where = f" (column {column!r})" if column else ""
        super().__init__(f"SQL type {type_name!r}{where} is not compatible with JSON")


class EnumShapeMismatch(InternalFault):
    """The database enum type no longer matches the expected actor kinds."""

    pass


class StatementFailed(InternalFault):
    """A prepared statement failed to execute."""

    def __init__(self, statement: str, cause: BaseException):
        self.statement = statement
        self.cause = cause
        super().__init__(f"Statement {statement} failed: {cause}")


# --- Fatal ---


class FatalProcessFault(GraftError):
    """The shared connection cannot be used; the process must stop."""

    pass
