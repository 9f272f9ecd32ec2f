from __future__ import annotations
from dataclasses import dataclass, field
from enum import IntEnum
import struct
from typing import Any, ClassVar

import numpy as np
from numpy.typing import NDArray

from hprof_fixture.hprof.primitive_type import PrimitiveType, id_struct_format
from hprof_fixture.hprof.value_holder import ValueHolder
from hprof_fixture.serialization.hprof_serialization import HprofSerializable, serializable


class HprofTag(IntEnum):
    """Tags of the top-level records of an HPROF file."""
    STRING_IN_UTF8 = 0x01
    LOAD_CLASS = 0x02
    HEAP_DUMP = 0x0C
    HEAP_DUMP_SEGMENT = 0x1C
    HEAP_DUMP_END = 0x2C


class HeapDumpTag(IntEnum):
    """Tags of the sub-records found inside a heap dump record."""
    ROOT_UNKNOWN = 0xFF
    ROOT_JNI_GLOBAL = 0x01
    ROOT_JNI_LOCAL = 0x02
    ROOT_JAVA_FRAME = 0x03
    ROOT_STICKY_CLASS = 0x05
    ROOT_THREAD_OBJECT = 0x08
    CLASS_DUMP = 0x20
    INSTANCE_DUMP = 0x21
    OBJECT_ARRAY_DUMP = 0x22
    PRIMITIVE_ARRAY_DUMP = 0x23


class HprofRecord(HprofSerializable):
    """
    Base class of everything an HprofWriter can write.

    Top-level records define `tag` and are written with their own record
    header. Heap dump records (see HeapDumpRecord) are gathered into a
    heap dump record instead.
    """

    tag: ClassVar[int]


class HeapDumpRecord(HprofRecord):
    """
    Base class of heap dump sub-records, each prefixed by a one byte
    `heap_tag`.
    """

    tag: ClassVar[int] = HprofTag.HEAP_DUMP
    heap_tag: ClassVar[int]


@serializable
@dataclass(frozen=True)
class StringRecord(HprofRecord):
    tag: ClassVar[int] = HprofTag.STRING_IN_UTF8

    id: int = field(metadata={"format": "id"})
    string: str = field(metadata={"format": "S"})


@serializable
@dataclass(frozen=True)
class LoadClassRecord(HprofRecord):
    """
    Binds a class object id to the string record holding the class name.
    """
    tag: ClassVar[int] = HprofTag.LOAD_CLASS

    class_serial_number: int = field(metadata={"format": "I"})
    id: int = field(metadata={"format": "id"})
    stack_trace_serial_number: int = field(metadata={"format": "I"})
    class_name_string_id: int = field(metadata={"format": "id"})


@serializable
@dataclass(frozen=True)
class GcRoot(HprofSerializable):
    """
    An object or class reachable from outside the heap graph.

    Attributes:
        id (int):
            The identifier of the root object or class.
    """
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_UNKNOWN

    id: int = field(metadata={"format": "id"})


@serializable
@dataclass(frozen=True)
class Unknown(GcRoot):
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_UNKNOWN


@serializable
@dataclass(frozen=True)
class StickyClass(GcRoot):
    """A loaded class that is never unloaded."""
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_STICKY_CLASS


@serializable
@dataclass(frozen=True)
class JniGlobal(GcRoot):
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_JNI_GLOBAL

    jni_global_ref_id: int = field(default=0, metadata={"format": "id"})


@serializable
@dataclass(frozen=True)
class JniLocal(GcRoot):
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_JNI_LOCAL

    thread_serial_number: int = field(default=0, metadata={"format": "I"})
    frame_number: int = field(default=0, metadata={"format": "I"})


@serializable
@dataclass(frozen=True)
class JavaFrame(GcRoot):
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_JAVA_FRAME

    thread_serial_number: int = field(default=0, metadata={"format": "I"})
    frame_number: int = field(default=0, metadata={"format": "I"})


@serializable
@dataclass(frozen=True)
class ThreadObject(GcRoot):
    heap_tag: ClassVar[int] = HeapDumpTag.ROOT_THREAD_OBJECT

    thread_serial_number: int = field(default=0, metadata={"format": "I"})
    stack_trace_serial_number: int = field(default=0, metadata={"format": "I"})


@dataclass(frozen=True)
class GcRootRecord(HeapDumpRecord):
    """
    Heap dump sub-record for a GC root. Its heap tag and body are those of
    the wrapped root.
    """

    gc_root: GcRoot

    @property
    def heap_tag(self) -> int:  # type: ignore[override]
        return self.gc_root.heap_tag

    def serialize_to_bytes(self, buffer: bytearray, idx: int, id_size: int) -> int:
        return self.gc_root.serialize_to_bytes(buffer, idx, id_size)

    def serialized_byte_size(self, id_size: int) -> int:
        return self.gc_root.serialized_byte_size(id_size)


@serializable
@dataclass(frozen=True)
class FieldRecord(HprofSerializable):
    """
    Declaration of one instance field of a class.

    Attributes:
        name_string_id (int):
            The id of the string record holding the field name.

        type (int):
            The HPROF type code of the field.
    """
    name_string_id: int = field(metadata={"format": "id"})
    type: int = field(metadata={"format": "B"})


@serializable
@dataclass(frozen=True)
class StaticFieldRecord(HprofSerializable):
    """
    Declaration and value of one static field of a class.
    """
    name_string_id: int = field(metadata={"format": "id"})
    type: int = field(metadata={"format": "B"})
    value: ValueHolder = field(metadata={"format": "v"})


@serializable
@dataclass(frozen=True, kw_only=True)
class ClassDumpRecord(HeapDumpRecord):
    """
    Heap dump sub-record describing a class: its superclass, the size of its
    instances and its static and instance field declarations.

    `instance_size` covers the fields of the class and of all its
    superclasses. `fields` only lists the fields declared by the class itself.
    """
    heap_tag: ClassVar[int] = HeapDumpTag.CLASS_DUMP

    id: int = field(metadata={"format": "id"})
    stack_trace_serial_number: int = field(metadata={"format": "I"})
    super_class_id: int = field(metadata={"format": "id"})
    class_loader_id: int = field(default=0, metadata={"format": "id"})
    signers_id: int = field(default=0, metadata={"format": "id"})
    protection_domain_id: int = field(default=0, metadata={"format": "id"})
    reserved1: int = field(default=0, metadata={"format": "id"})
    reserved2: int = field(default=0, metadata={"format": "id"})
    instance_size: int = field(metadata={"format": "I"})
    constant_pool_size: int = field(default=0, init=False, metadata={"format": "H"})
    static_fields: tuple[StaticFieldRecord, ...] = field(
        default=(), metadata={"format": "[_]", "ptype": StaticFieldRecord}
    )
    fields: tuple[FieldRecord, ...] = field(
        default=(), metadata={"format": "[_]", "ptype": FieldRecord}
    )


@serializable
@dataclass(frozen=True, kw_only=True)
class InstanceDumpRecord(HeapDumpRecord):
    heap_tag: ClassVar[int] = HeapDumpTag.INSTANCE_DUMP

    id: int = field(metadata={"format": "id"})
    stack_trace_serial_number: int = field(metadata={"format": "I"})
    class_id: int = field(metadata={"format": "id"})
    field_values: bytes = field(metadata={"format": "[B]"})


@dataclass(frozen=True, kw_only=True)
class ObjectArrayDumpRecord(HeapDumpRecord):
    """
    Heap dump sub-record for an array of references.

    The element count is written between the stack trace serial number and
    the array class id, which is why the layout is written by hand.

    Attributes:
        elements (tuple[int, ...]):
            The ids of the elements, 0 for null elements.
    """
    heap_tag: ClassVar[int] = HeapDumpTag.OBJECT_ARRAY_DUMP

    id: int
    stack_trace_serial_number: int
    array_class_id: int
    elements: tuple[int, ...]

    def serialize_to_bytes(self, buffer: bytearray, idx: int, id_size: int) -> int:
        id_format = id_struct_format(id_size)
        length = len(self.elements)
        struct.pack_into(
            ">" + id_format + "II" + id_format,
            buffer, idx, self.id, self.stack_trace_serial_number, length, self.array_class_id
        )
        idx += 2 * id_size + 8
        struct.pack_into(">" + id_format * length, buffer, idx, *self.elements)
        return idx + id_size * length

    def serialized_byte_size(self, id_size: int) -> int:
        return 2 * id_size + 8 + id_size * len(self.elements)


@dataclass(frozen=True, kw_only=True, eq=False)
class PrimitiveArrayDumpRecord(HeapDumpRecord):
    """
    Heap dump sub-record for an array of primitives.

    The elements are held as a one-dimensional NumPy array and written as the
    big-endian dtype of `type`.

    Attributes:
        type (PrimitiveType):
            The element kind.

        elements (NDArray[Any]):
            The element values. Char arrays hold UTF-16 code units.
    """
    heap_tag: ClassVar[int] = HeapDumpTag.PRIMITIVE_ARRAY_DUMP

    id: int
    stack_trace_serial_number: int
    type: PrimitiveType
    elements: NDArray[Any]

    def __post_init__(self):
        if np.ndim(self.elements) != 1:
            raise ValueError("Primitive array elements must be one-dimensional")

    def _payload(self) -> bytes:
        return np.asarray(self.elements).astype(self.type.dtype).tobytes(order="C")

    def serialize_to_bytes(self, buffer: bytearray, idx: int, id_size: int) -> int:
        struct.pack_into(
            ">" + id_struct_format(id_size) + "IIB",
            buffer, idx, self.id, self.stack_trace_serial_number, len(self.elements),
            self.type.hprof_type
        )
        idx += id_size + 9
        data = self._payload()
        buffer[idx:idx + len(data)] = data
        return idx + len(data)

    def serialized_byte_size(self, id_size: int) -> int:
        return id_size + 9 + len(self.elements) * self.type.byte_size
