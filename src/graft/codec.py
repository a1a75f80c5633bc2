"""Column codec: relational cells to JSON-like values, and actor kinds to enum labels.

Decoding is type-directed. Every result column carries the PostgreSQL type
name reported by the driver; that name selects exactly one reader from a
closed table. A cell that is NULL always decodes to None. A type name with
no reader is a programming error (UnsupportedColumnType) and is never
recovered from inside the core.

    Type tag   Native width        Python value
    --------   ------------------  ------------
    char       8-bit signed int    int
    int2       16-bit int          int
    int4       32-bit int          int
    int8       64-bit int          int
    oid        unsigned 32-bit     int
    float4     32-bit float        float
    float8     64-bit float        float
    bytea      byte sequence       bytes
    text       text                str
    bool       boolean             bool

Encoding only exists for the actor kind enumeration. Before a kind is turned
into a label, the target enum type (introspected from the database) must pass
an acceptance check so a drifted schema is never written to.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from .errors import EnumShapeMismatch, InternalFault, UnsupportedColumnType

# Name of the relational enum holding actor kinds
ACTOR_ENUM_NAME = "actors_available"

USER_LABEL = "member"
GROUP_LABEL = "organization"


class ColumnType(str, enum.Enum):
    """Column types the codec knows how to decode, keyed by PostgreSQL type name."""

    CHAR = "char"
    INT2 = "int2"
    INT4 = "int4"
    INT8 = "int8"
    OID = "oid"
    FLOAT4 = "float4"
    FLOAT8 = "float8"
    BYTEA = "bytea"
    TEXT = "text"
    BOOL = "bool"

    @classmethod
    def from_name(cls, type_name: str, column: str | None = None) -> "ColumnType":
        """Look up a type tag, failing loudly for unregistered types."""
        try:
            return cls(type_name)
        except ValueError:
            raise UnsupportedColumnType(type_name, column) from None


# --- Readers ---


def _int_reader(bits: int, signed: bool = True) -> Callable[[Any], int]:
    if signed:
        low, high = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    else:
        low, high = 0, (1 << bits) - 1

    def read(value: Any) -> int:
        # bool is an int subclass but never a valid integer cell
        if isinstance(value, bool) or not isinstance(value, int):
            raise InternalFault(f"Expected a {bits}-bit integer, got {type(value).__name__}")
        if not low <= value <= high:
            raise InternalFault(f"Value {value} does not fit in {bits} bits")
        return int(value)

    return read


_read_int8bit = _int_reader(8)


def _read_char(value: Any) -> int:
    """PostgreSQL "char" is a single byte; expose it as a signed 8-bit integer."""
    if isinstance(value, str):
        value = value.encode("latin-1")
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if len(raw) != 1:
            raise InternalFault(f"Expected a single byte, got {len(raw)} bytes")
        return int.from_bytes(raw, "big", signed=True)
    return _read_int8bit(value)


def _read_float4(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InternalFault(f"Expected a float, got {type(value).__name__}")
    # Round-trip through single precision so the value is exactly what was stored
    return struct.unpack("f", struct.pack("f", float(value)))[0]


def _read_float8(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InternalFault(f"Expected a float, got {type(value).__name__}")
    return float(value)


def _read_bytea(value: Any) -> bytes:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise InternalFault(f"Expected bytes, got {type(value).__name__}")
    return bytes(value)


def _read_text(value: Any) -> str:
    if not isinstance(value, str):
        raise InternalFault(f"Expected text, got {type(value).__name__}")
    return value


def _read_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise InternalFault(f"Expected a boolean, got {type(value).__name__}")
    return value


_READERS: dict[ColumnType, Callable[[Any], Any]] = {
    ColumnType.CHAR: _read_char,
    ColumnType.INT2: _int_reader(16),
    ColumnType.INT4: _int_reader(32),
    ColumnType.INT8: _int_reader(64),
    ColumnType.OID: _int_reader(32, signed=False),
    ColumnType.FLOAT4: _read_float4,
    ColumnType.FLOAT8: _read_float8,
    ColumnType.BYTEA: _read_bytea,
    ColumnType.TEXT: _read_text,
    ColumnType.BOOL: _read_bool,
}


def decode_cell(value: Any, column_type: ColumnType | str, column: str | None = None) -> Any:
    """Decode one cell into a JSON-like value.

    Args:
        value: The raw cell as returned by the driver (None for SQL NULL).
        column_type: A ColumnType or a PostgreSQL type name.
        column: Column name, only used in error messages.

    Returns:
        None, int, float, bool, bytes or str, according to column_type.

    Raises:
        UnsupportedColumnType: If column_type has no registered reader.
    """
    if not isinstance(column_type, ColumnType):
        column_type = ColumnType.from_name(column_type, column)
    reader = _READERS[column_type]
    if value is None:
        return None
    return reader(value)


def decode_row(record: Mapping[str, Any], attributes: Iterable[Any]) -> dict[str, Any]:
    """Decode a result row into a field mapping.

    `attributes` are the statement's result attributes, each with a `name`
    and a `type.name` (asyncpg's Attribute shape).
    """
    return {
        attr.name: decode_cell(record[attr.name], attr.type.name, attr.name)
        for attr in attributes
    }


def to_json_value(value: Any) -> Any:
    """Render a decoded value for a JSON body (byte sequences become integer arrays)."""
    if isinstance(value, bytes):
        return list(value)
    return value


# --- Actor kinds ---


class ActorKind(enum.Enum):
    """The two kinds of actor a mailbox can belong to."""

    USER = "user"
    GROUP = "group"

    @property
    def label(self) -> str:
        return USER_LABEL if self is ActorKind.USER else GROUP_LABEL


@dataclass(frozen=True)
class EnumType:
    """A relational parameter type as introspected from the database."""

    name: str
    kind: str
    labels: tuple[str, ...] = ()

    @property
    def is_enum(self) -> bool:
        return self.kind == "enum"


def accepts(enum_type: EnumType) -> bool:
    """Check that enum_type is the two-label actor kind enumeration.

    The name must match, the type must be an enum, and its labels must be
    exactly {member, organization} in any order.
    """
    if enum_type.name != ACTOR_ENUM_NAME:
        return False
    if not enum_type.is_enum:
        return False
    if len(enum_type.labels) != 2:
        return False
    return set(enum_type.labels) == {USER_LABEL, GROUP_LABEL}


def encode_actor_kind(kind: ActorKind, enum_type: EnumType) -> str:
    """Encode an actor kind as the label of the target enum type.

    Raises:
        EnumShapeMismatch: If enum_type fails the acceptance check. Nothing
            is encoded in that case.
    """
    if not accepts(enum_type):
        raise EnumShapeMismatch(
            f"Cannot encode {kind.name} into {enum_type.name!r} "
            f"(kind={enum_type.kind}, labels={list(enum_type.labels)}); "
            f"expected enum {ACTOR_ENUM_NAME!r} with labels {USER_LABEL!r}, {GROUP_LABEL!r}"
        )
    return kind.label
