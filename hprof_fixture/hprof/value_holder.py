from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, Union

from hprof_fixture.hprof.errors import UnrecognizedValueKindError
from hprof_fixture.hprof.primitive_type import REFERENCE_HPROF_TYPE, PrimitiveType


class ValueKind(Enum):
    """
    Closed set of field value kinds: the eight primitives plus references.
    """

    BOOLEAN = "boolean"
    CHAR = "char"
    FLOAT = "float"
    DOUBLE = "double"
    BYTE = "byte"
    SHORT = "short"
    INT = "int"
    LONG = "long"
    REFERENCE = "reference"

    @property
    def primitive_type(self) -> PrimitiveType | None:
        """The primitive type of this kind, None for references."""
        if self is ValueKind.REFERENCE:
            return None
        return PrimitiveType[self.name]

    @property
    def hprof_type(self) -> int:
        """The HPROF type code written in field and array records."""
        primitive_type = self.primitive_type
        if primitive_type is None:
            return REFERENCE_HPROF_TYPE
        return primitive_type.hprof_type

    @classmethod
    def from_hprof_type(cls, hprof_type: int) -> ValueKind:
        """
        Look up the kind of an HPROF type code.

        Raises:
            UnrecognizedValueKindError:
                If `hprof_type` is not a field type code.
        """
        if hprof_type == REFERENCE_HPROF_TYPE:
            return cls.REFERENCE
        return cls[PrimitiveType.from_hprof_type(hprof_type).name]


@dataclass(frozen=True)
class BooleanHolder:
    value: bool


@dataclass(frozen=True)
class CharHolder:
    """A single UTF-16 code unit, given as a one character string."""
    value: str

    def __post_init__(self):
        if not isinstance(self.value, str) or len(self.value) != 1 or ord(self.value) > 0xFFFF:
            raise ValueError(f"Char value must be a single UTF-16 code unit, got {self.value!r}")


@dataclass(frozen=True)
class FloatHolder:
    value: float


@dataclass(frozen=True)
class DoubleHolder:
    value: float


@dataclass(frozen=True)
class ByteHolder:
    value: int


@dataclass(frozen=True)
class ShortHolder:
    value: int


@dataclass(frozen=True)
class IntHolder:
    value: int


@dataclass(frozen=True)
class LongHolder:
    value: int


@dataclass(frozen=True)
class ReferenceHolder:
    """
    Reference to another record of the heap dump by identifier.

    Attributes:
        value (int):
            The identifier of the referenced record, 0 for null.
    """
    value: int

    @property
    def is_null(self) -> bool:
        return self.value == 0


ValueHolder = Union[
    BooleanHolder,
    CharHolder,
    FloatHolder,
    DoubleHolder,
    ByteHolder,
    ShortHolder,
    IntHolder,
    LongHolder,
    ReferenceHolder,
]

NULL_REFERENCE = ReferenceHolder(0)


def unrecognized_kind(value: NoReturn) -> NoReturn:
    """
    Terminate a `match` over ValueHolder.

    Type checkers flag a call site where `value` has not been narrowed to
    `Never`, so every dispatch over the value kinds stays exhaustive.

    Raises:
        UnrecognizedValueKindError:
            Always.
    """
    raise UnrecognizedValueKindError(f"Unrecognized value kind {type(value).__name__}")


def kind_of(value: ValueHolder) -> ValueKind:
    """
    Return the kind of a field value.

    Raises:
        UnrecognizedValueKindError:
            If `value` is not one of the ValueHolder variants.
    """
    match value:
        case BooleanHolder():
            return ValueKind.BOOLEAN
        case CharHolder():
            return ValueKind.CHAR
        case FloatHolder():
            return ValueKind.FLOAT
        case DoubleHolder():
            return ValueKind.DOUBLE
        case ByteHolder():
            return ValueKind.BYTE
        case ShortHolder():
            return ValueKind.SHORT
        case IntHolder():
            return ValueKind.INT
        case LongHolder():
            return ValueKind.LONG
        case ReferenceHolder():
            return ValueKind.REFERENCE
        case _:
            unrecognized_kind(value)


def type_of(value: ValueHolder) -> int:
    """
    Return the HPROF type code of a field value.

    Raises:
        UnrecognizedValueKindError:
            If `value` is not one of the ValueHolder variants.
    """
    return kind_of(value).hprof_type
