from __future__ import annotations
from abc import ABC
import abc
from dataclasses import Field, fields
import struct
from typing import Any, TypeVar

from hprof_fixture.hprof.field_values import encode_value
from hprof_fixture.hprof.primitive_type import id_struct_format

# Supported struct format characters for all primitive field types
_ALLOWED_STRUCT_FORMAT_CHARS = {
    "b", "B", "h", "H", "i", "I", "q", "Q", "f", "d", "y",
}


def compile_field(field: Field[Any]) -> FieldSpecCompiled:
    """
    Compile a dataclass Field into a corresponding FieldSpecCompiled instance.

    This function reads the layout metadata from the dataclass field and
    returns a concrete compiled field handler that knows how to write that
    field in HPROF byte order (big-endian).

    Supported formats in `field.metadata["format"]`:

      - Basic types (struct format characters), e.g.:
          - 'I' — unsigned 4-byte integer
          - 'H' — unsigned 2-byte integer
          - 'B' — unsigned 1-byte integer
          - 'y' — boolean stored as one byte

      - Identifiers:
          - 'id' — an object identifier, 4 or 8 bytes wide depending on the
            identifier size the record is written with.

      - Typed values:
          - 'v' — a ValueHolder, written with the width of its own kind.

      - Raw bytes with a length prefix:
          - '[B]' — a 4-byte length followed by the bytes themselves.

      - Text filling the rest of the record:
          - 'S' — UTF-8 bytes without length prefix or terminator.

      - Array of nested layouts:
          - '[_]' — a 2-byte count followed by each nested element.
            Requires 'ptype' metadata specifying the element class type.

    Args:
        field (Field[Any]):
            A dataclasses.Field object representing a field in a dataclass.
            Must have metadata specifying a 'format'.

    Returns:
        FieldSpecCompiled:
            An instance of a FieldSpecCompiled subclass corresponding to the
            field's layout.

    Raises:
        ValueError:
            - If the 'format' string is not supported.
            - If a nested array ('[_]') is specified without a 'ptype'.
    """
    struct_format = field.metadata.get("format")
    ptype = field.metadata.get("ptype")
    name = field.name

    if struct_format is None:
        raise ValueError("Struct format must be provided")

    if struct_format == "id":
        return FieldSpecCompiledIdentifier(name)

    if struct_format == "v":
        return FieldSpecCompiledValue(name)

    if struct_format == "S":
        return FieldSpecCompiledString(name)

    if struct_format == "[B]":
        return FieldSpecCompiledBytes(name)

    if struct_format == "[_]":
        if ptype is None:
            raise ValueError("Type must be provided for nested array")
        return FieldSpecCompiledNestedArray(name, ptype)

    if len(struct_format) != 1 or struct_format not in _ALLOWED_STRUCT_FORMAT_CHARS:
        raise ValueError(
            "Struct only supports format characters "
            + "".join(sorted(_ALLOWED_STRUCT_FORMAT_CHARS))
        )
    return FieldSpecCompiledBasic(name, struct_format)


class FieldSpecCompiled(ABC):
    """
    Abstract base class representing a compiled field layout responsible for
    writing a single field of a heap dump record.

    Attributes:
        name (str):
            The name of the field this instance handles.
    """

    name: str

    def __init__(self, name: str):
        self.name = name

    @abc.abstractmethod
    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        """
        Serialize the field's value from `class_obj` into the provided
        `buffer` starting at index `idx`.

        Args:
            class_obj (Any):
                The record containing the field value to serialize.

            buffer (bytearray):
                The buffer into which to serialize data.

            idx (int):
                The starting index in the buffer at which to write data.

            id_size (int):
                The identifier byte width of the heap dump.

        Returns:
            int:
                The updated buffer index after writing the field data.
        """

    @abc.abstractmethod
    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        """
        Compute the number of bytes required to serialize the field's value
        from `class_obj`.

        Args:
            class_obj (Any):
                The record containing the field value.

            id_size (int):
                The identifier byte width of the heap dump.

        Returns:
            int:
                The byte size needed for serialization of this field.
        """


class FieldSpecCompiledBasic(FieldSpecCompiled):
    """
    Fixed-size field defined by a single struct format character, written
    big-endian.

    Attributes:
        struct_format (str):
            The struct format character ('y' is stored as 'B').

        _struct_format_byte_length (int):
            The fixed size in bytes computed from `struct_format`.
    """

    struct_format: str
    _struct_format_byte_length: int

    def __init__(self, name: str, struct_format: str):
        super().__init__(name)
        self.struct_format = "B" if struct_format == "y" else struct_format
        self._struct_format_byte_length = struct.calcsize('>' + self.struct_format)

    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        value = getattr(class_obj, self.name)
        struct.pack_into('>' + self.struct_format, buffer, idx, value)
        return idx + self._struct_format_byte_length

    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        return self._struct_format_byte_length


class FieldSpecCompiledIdentifier(FieldSpecCompiled):
    """
    Object identifier whose width is only known when the record is written.
    """

    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        struct.pack_into('>' + id_struct_format(id_size), buffer, idx, getattr(class_obj, self.name))
        return idx + id_size

    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        return id_size


class FieldSpecCompiledValue(FieldSpecCompiled):
    """
    Typed value (a ValueHolder), written with the byte width of its kind.

    Used for static field values, whose type code is written by a preceding
    field of the same record.
    """

    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        data = encode_value(getattr(class_obj, self.name), id_size)
        buffer[idx:idx + len(data)] = data
        return idx + len(data)

    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        return len(encode_value(getattr(class_obj, self.name), id_size))


class FieldSpecCompiledBytes(FieldSpecCompiled):
    """
    Raw byte payload prefixed by its length as a 4-byte unsigned integer.
    """

    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        data = getattr(class_obj, self.name)
        struct.pack_into(">I", buffer, idx, len(data))
        idx += 4
        buffer[idx:idx + len(data)] = data
        return idx + len(data)

    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        return 4 + len(getattr(class_obj, self.name))


class FieldSpecCompiledString(FieldSpecCompiled):
    """
    UTF-8 text occupying the remainder of a record.

    No length prefix is written: the enclosing record header carries the
    total body length.
    """

    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        data = getattr(class_obj, self.name).encode("utf-8")
        buffer[idx:idx + len(data)] = data
        return idx + len(data)

    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        return len(getattr(class_obj, self.name).encode("utf-8"))


class FieldSpecCompiledNestedArray(FieldSpecCompiled):
    """
    Sequence of nested layouts prefixed by a 2-byte element count.

    Attributes:
        ptype (type[HprofSerializable]):
            The element class type.
    """

    ptype: type[HprofSerializable]

    def __init__(self, name: str, ptype: type[HprofSerializable]):
        super().__init__(name)
        self.ptype = ptype

    def serialize_to_bytes(self, class_obj: Any, buffer: bytearray, idx: int, id_size: int) -> int:
        array = getattr(class_obj, self.name)
        struct.pack_into(">H", buffer, idx, len(array))
        idx += 2
        for elem in array:
            idx = elem.serialize_to_bytes(buffer, idx, id_size)
        return idx

    def serialized_byte_size(self, class_obj: Any, id_size: int) -> int:
        return 2 + sum(elem.serialized_byte_size(id_size) for elem in getattr(class_obj, self.name))


C = TypeVar('C', bound=type)


class HprofSerializable:
    """
    Base interface class for anything written into a heap dump body.

    The implementations of `serialize_to_bytes` and `serialized_byte_size` are
    injected by the `@serializable` decorator. Layouts that a flat list of
    fields cannot describe implement both methods by hand instead.
    """

    def serialize_to_bytes(self, buffer: bytearray, idx: int, id_size: int) -> int:
        """
        Serialize the object into the given buffer starting at index `idx`.

        Args:
            buffer (bytearray):
                The buffer into which to serialize the data.

            idx (int):
                The starting index in the buffer at which to write data.

            id_size (int):
                The identifier byte width of the heap dump.

        Returns:
            int:
                The updated buffer index after serialization.
        """
        raise RuntimeError("not implemented yet") # pragma: no cover

    def serialized_byte_size(self, id_size: int) -> int:
        """
        Return the number of bytes required to serialize this object.

        Args:
            id_size (int):
                The identifier byte width of the heap dump.

        Returns:
            int:
                The byte size needed for serialization.
        """
        raise RuntimeError("not implemented yet") # pragma: no cover

    def to_bytes(self, id_size: int) -> bytearray:
        """
        Serialize the object into a freshly allocated buffer of the exact size.

        Args:
            id_size (int):
                The identifier byte width of the heap dump.

        Returns:
            bytearray:
                The serialized bytes.
        """
        buffer = bytearray(self.serialized_byte_size(id_size))
        self.serialize_to_bytes(buffer, 0, id_size)
        return buffer


def serializable(cls: C) -> C:
    """
    Class decorator that adds HPROF layout methods to a dataclass.

    This decorator inspects the dataclass fields' metadata to compile the
    layout, then injects two methods into the class:

        - serialize_to_bytes(self, buffer: bytearray, idx: int, id_size: int) -> int
        - serialized_byte_size(self, id_size: int) -> int

    Fields are written in declaration order. Fields without a 'format'
    in their metadata are not written.

    Args:
        cls (Type[C]):
            The dataclass type to be enhanced with serialization methods.

    Returns:
        Type[C]:
            The same class type with added serialization capabilities.
    """
    compiled_fields: list[FieldSpecCompiled] = []
    for f in fields(cls):
        meta = getattr(f, "metadata", None)
        if meta and "format" in meta:
            compiled_fields.append(compile_field(f))

    setattr(cls, "_hprof_compiled_fields", compiled_fields)

    def serialize_to_bytes(self: C, buffer: bytearray, idx: int, id_size: int) -> int:
        for field in compiled_fields:
            idx = field.serialize_to_bytes(self, buffer, idx, id_size)
        return idx

    def serialized_byte_size(self: C, id_size: int) -> int:
        return sum(field.serialized_byte_size(self, id_size) for field in compiled_fields)

    setattr(cls, "serialize_to_bytes", serialize_to_bytes)
    setattr(cls, "serialized_byte_size", serialized_byte_size)

    return cls
