from __future__ import annotations
from collections.abc import Iterable, Sequence
import struct

from hprof_fixture.hprof.primitive_type import id_struct_format
from hprof_fixture.hprof.value_holder import (
    BooleanHolder,
    ByteHolder,
    CharHolder,
    DoubleHolder,
    FloatHolder,
    IntHolder,
    LongHolder,
    ReferenceHolder,
    ShortHolder,
    ValueHolder,
    ValueKind,
    unrecognized_kind,
)


def encode_value(value: ValueHolder, id_size: int) -> bytes:
    """
    Encode a single field value with the native width of its kind.

    All values are big-endian. Booleans take one byte, chars one UTF-16 code
    unit and references `id_size` bytes.

    Args:
        value (ValueHolder):
            The value to encode.

        id_size (int):
            The identifier byte width of the heap dump.

    Returns:
        bytes:
            The encoded value.

    Raises:
        UnrecognizedValueKindError:
            If `value` is not one of the ValueHolder variants.
    """
    match value:
        case BooleanHolder(value=v):
            return struct.pack(">B", 1 if v else 0)
        case CharHolder(value=v):
            return struct.pack(">H", ord(v))
        case FloatHolder(value=v):
            return struct.pack(">f", v)
        case DoubleHolder(value=v):
            return struct.pack(">d", v)
        case ByteHolder(value=v):
            return struct.pack(">b", v)
        case ShortHolder(value=v):
            return struct.pack(">h", v)
        case IntHolder(value=v):
            return struct.pack(">i", v)
        case LongHolder(value=v):
            return struct.pack(">q", v)
        case ReferenceHolder(value=v):
            return struct.pack(">" + id_struct_format(id_size), v)
        case _:
            unrecognized_kind(value)


def encode_field_values(values: Iterable[ValueHolder], id_size: int) -> bytes:
    """
    Encode the field values of an instance into one contiguous buffer.

    Values are concatenated in the order given without padding. The caller is
    responsible for supplying them in the field declaration order of the
    instance's class, own fields first then each superclass in turn.

    Args:
        values (Iterable[ValueHolder]):
            The ordered field values.

        id_size (int):
            The identifier byte width of the heap dump.

    Returns:
        bytes:
            The instance field value payload.
    """
    return b"".join(encode_value(value, id_size) for value in values)


def decode_field_values(buffer: bytes, kinds: Sequence[ValueKind], id_size: int) -> list[ValueHolder]:
    """
    Decode an instance field value payload against ordered field kinds.

    This is the inverse of `encode_field_values` and is how a heap dump
    analyzer reads an instance: the payload alone does not say where one
    value ends and the next one starts.

    Args:
        buffer (bytes):
            The instance field value payload.

        kinds (Sequence[ValueKind]):
            The field kinds in declaration order.

        id_size (int):
            The identifier byte width of the heap dump.

    Returns:
        list[ValueHolder]:
            One value per kind.

    Raises:
        ValueError:
            If the payload length does not match the field kinds.
    """
    values: list[ValueHolder] = []
    idx = 0
    for kind in kinds:
        value, idx = _decode_value(buffer, idx, kind, id_size)
        values.append(value)
    if idx != len(buffer):
        raise ValueError(f"Field values use {idx} bytes of a {len(buffer)} byte payload")
    return values


def _decode_value(buffer: bytes, idx: int, kind: ValueKind, id_size: int) -> tuple[ValueHolder, int]:
    match kind:
        case ValueKind.BOOLEAN:
            v, = struct.unpack_from(">B", buffer, idx)
            return BooleanHolder(v != 0), idx + 1
        case ValueKind.CHAR:
            v, = struct.unpack_from(">H", buffer, idx)
            return CharHolder(chr(v)), idx + 2
        case ValueKind.FLOAT:
            v, = struct.unpack_from(">f", buffer, idx)
            return FloatHolder(v), idx + 4
        case ValueKind.DOUBLE:
            v, = struct.unpack_from(">d", buffer, idx)
            return DoubleHolder(v), idx + 8
        case ValueKind.BYTE:
            v, = struct.unpack_from(">b", buffer, idx)
            return ByteHolder(v), idx + 1
        case ValueKind.SHORT:
            v, = struct.unpack_from(">h", buffer, idx)
            return ShortHolder(v), idx + 2
        case ValueKind.INT:
            v, = struct.unpack_from(">i", buffer, idx)
            return IntHolder(v), idx + 4
        case ValueKind.LONG:
            v, = struct.unpack_from(">q", buffer, idx)
            return LongHolder(v), idx + 8
        case ValueKind.REFERENCE:
            v, = struct.unpack_from(">" + id_struct_format(id_size), buffer, idx)
            return ReferenceHolder(v), idx + id_size
        case _:
            unrecognized_kind(kind)
