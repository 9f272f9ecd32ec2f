from __future__ import annotations
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
import logging
import os
from types import TracebackType
from typing import Any

import numpy as np
from numpy.typing import ArrayLike, NDArray

from hprof_fixture.hprof.class_registry import ClassRegistry
from hprof_fixture.hprof.field_values import encode_field_values
from hprof_fixture.hprof.hprof_config import HprofConfig
from hprof_fixture.hprof.hprof_record import (
    ClassDumpRecord,
    FieldRecord,
    GcRoot,
    GcRootRecord,
    InstanceDumpRecord,
    LoadClassRecord,
    ObjectArrayDumpRecord,
    PrimitiveArrayDumpRecord,
    StaticFieldRecord,
    StickyClass,
    StringRecord,
    Unknown,
)
from hprof_fixture.hprof.hprof_writer import HprofWriter, SupportsWrite
from hprof_fixture.hprof.identifiers import IdentifierAllocator, WeakRefKeySource
from hprof_fixture.hprof.primitive_type import PrimitiveType, TypeSizes
from hprof_fixture.hprof.value_holder import (
    IntHolder,
    LongHolder,
    ReferenceHolder,
    ValueHolder,
    ValueKind,
    kind_of,
    type_of,
)

LOG = logging.getLogger("hprof_fixture.hprof.hprof_writer_helper")


class InstanceAndClassDefinition:
    """
    Description of an instance together with its class.

    Both mappings keep insertion order, which becomes the field declaration
    order of the class and the layout of the instance.

    Attributes:
        field (dict[str, ValueHolder]):
            Instance field values. The kind of each value is the kind of the
            declared field.

        static_field (dict[str, ValueHolder]):
            Static field values of the class.
    """

    field: dict[str, ValueHolder]
    static_field: dict[str, ValueHolder]

    def __init__(self, field: Mapping[str, ValueHolder] | None = None,
                 static_field: Mapping[str, ValueHolder] | None = None):
        self.field = dict(field) if field is not None else {}
        self.static_field = dict(static_field) if static_field is not None else {}


class ClassDefinition:
    """
    Description of a class that only declares static fields.

    Attributes:
        static_field (dict[str, ValueHolder]):
            Static field values, in declaration order.
    """

    static_field: dict[str, ValueHolder]

    def __init__(self, static_field: Mapping[str, ValueHolder] | None = None):
        self.static_field = dict(static_field) if static_field is not None else {}


class HprofWriterHelper:
    """
    Builds a consistent heap dump on top of an HprofWriter.

    The helper allocates every identifier, keeps track of the classes it
    defined to compute instance sizes, and writes records as soon as they are
    built. Nothing else is retained: instances and arrays only exist in the
    output.

    A handful of classes are defined up front, in this order:
    `java.lang.Object`, `java.lang.Object[]`, `java.lang.String`,
    `java.lang.ref.Reference`, `java.lang.ref.WeakReference` and
    `leakcanary.KeyedWeakReference`.

    One helper builds one heap dump. It is not thread-safe.

    Attributes:
        classes (ClassRegistry):
            Every class defined so far.

        object_class_id (int):
            Id of `java.lang.Object`, the default superclass.

        object_array_class_id (int):
            Id of `java.lang.Object[]`.

        string_class_id (int):
            Id of `java.lang.String`.

        reference_class_id (int):
            Id of `java.lang.ref.Reference`.

        weak_reference_class_id (int):
            Id of `java.lang.ref.WeakReference`.

        keyed_weak_reference_class_id (int):
            Id of `leakcanary.KeyedWeakReference`.
    """

    classes: ClassRegistry
    object_class_id: int
    object_array_class_id: int
    string_class_id: int
    reference_class_id: int
    weak_reference_class_id: int
    keyed_weak_reference_class_id: int

    _writer: HprofWriter
    _ids: IdentifierAllocator
    _weak_ref_keys: WeakRefKeySource
    _stack_trace_serial_number: int
    _class_serial_number: int
    _defined_classes: dict[tuple[Any, ...], int]

    def __init__(self, writer: HprofWriter):
        self._writer = writer
        self._ids = IdentifierAllocator()
        self._weak_ref_keys = WeakRefKeySource(writer.config.weak_ref_key_seed)
        self._stack_trace_serial_number = writer.config.stack_trace_serial_number
        self._class_serial_number = 0
        self._defined_classes = {}
        self.classes = ClassRegistry(TypeSizes(writer.id_size))

        self.object_class_id = self.clazz("java.lang.Object", super_class_id=0)
        self.object_array_class_id = self.array_class("java.lang.Object")
        self.string_class_id = self.clazz(
            "java.lang.String",
            fields=[("value", ValueKind.REFERENCE), ("count", ValueKind.INT)],
        )
        self.reference_class_id = self.clazz(
            "java.lang.ref.Reference",
            fields=[("referent", ValueKind.REFERENCE)],
        )
        self.weak_reference_class_id = self.clazz(
            "java.lang.ref.WeakReference",
            super_class_id=self.reference_class_id,
        )
        self.keyed_weak_reference_class_id = self.clazz(
            "leakcanary.KeyedWeakReference",
            super_class_id=self.weak_reference_class_id,
            static_fields=[("heapDumpUptimeMillis", LongHolder(30000))],
            fields=[
                ("key", ValueKind.REFERENCE),
                ("name", ValueKind.REFERENCE),
                ("watchUptimeMillis", ValueKind.LONG),
                ("retainedUptimeMillis", ValueKind.LONG),
            ],
        )

    @property
    def id_size(self) -> int:
        return self._writer.id_size

    @property
    def last_id(self) -> int:
        """The most recently allocated identifier."""
        return self._ids.last_id

    def clazz(self,
              class_name: str,
              super_class_id: int | None = None,
              static_fields: Iterable[tuple[str, ValueHolder]] = (),
              fields: Iterable[tuple[str, ValueKind]] = ()) -> int:
        """
        Define a class and write its records.

        Writes the class name string, a load class record, one string per
        static and instance field name, the class dump and a sticky class GC
        root, in that order.

        The superclass chain is resolved before anything is written, so a
        class defined against an unknown superclass leaves no record behind.

        Args:
            class_name (str):
                Fully qualified class name.

            super_class_id (int | None):
                Id of the superclass. None means `java.lang.Object`, 0 means
                the class is the root of the hierarchy.

            static_fields (Iterable[tuple[str, ValueHolder]]):
                Static field names and values, in declaration order.

            fields (Iterable[tuple[str, ValueKind]]):
                Instance field names and kinds, in declaration order.

        Returns:
            int:
                The id of the new class.

        Raises:
            UnresolvedReferenceError:
                If the superclass chain reaches a class that was never
                defined.
        """
        if super_class_id is None:
            super_class_id = self.object_class_id
        static_fields = list(static_fields)
        fields = list(fields)

        instance_size = self.classes.resolve_instance_size(
            (kind.hprof_type for _, kind in fields), super_class_id
        )

        class_name_id = self._write_string(class_name)
        self._class_serial_number += 1
        load_class = LoadClassRecord(
            self._class_serial_number, self._ids.next(), self._stack_trace_serial_number, class_name_id
        )
        self._writer.write(load_class)

        static_field_records = tuple(
            StaticFieldRecord(self._write_string(name), type_of(value), value)
            for name, value in static_fields
        )
        field_records = tuple(
            FieldRecord(self._write_string(name), kind.hprof_type)
            for name, kind in fields
        )

        class_dump = ClassDumpRecord(
            id=load_class.id,
            stack_trace_serial_number=self._stack_trace_serial_number,
            super_class_id=super_class_id,
            instance_size=instance_size,
            static_fields=static_field_records,
            fields=field_records,
        )
        self._writer.write(class_dump)
        self.classes.register(class_dump)
        self.gc_root(StickyClass(class_dump.id))
        LOG.debug("Defined class %s as %d, instance size %d", class_name, class_dump.id, instance_size)
        return class_dump.id

    def array_class(self, class_name: str) -> int:
        """Define the array class of `class_name`, named `<class_name>[]`."""
        return self.clazz(f"{class_name}[]")

    def gc_root(self, gc_root: GcRoot) -> None:
        """Write a GC root record."""
        self._writer.write(GcRootRecord(gc_root))

    def instance(self, class_id: int, fields: Iterable[ValueHolder] = ()) -> ReferenceHolder:
        """
        Write an instance dump.

        The values must follow the instance layout of the class: its own
        fields first, then those of each superclass in turn. This is not
        checked here; `instance_of` derives the class from the values instead.

        Args:
            class_id (int):
                Id of the class of the instance.

            fields (Iterable[ValueHolder]):
                Field values in layout order.

        Returns:
            ReferenceHolder:
                A reference to the new instance.

        Raises:
            UnresolvedReferenceError:
                If `class_id` was never registered.
        """
        self.classes.get(class_id)
        field_values = encode_field_values(fields, self.id_size)
        instance_dump = InstanceDumpRecord(
            id=self._ids.next(),
            stack_trace_serial_number=self._stack_trace_serial_number,
            class_id=class_id,
            field_values=field_values,
        )
        self._writer.write(instance_dump)
        return ReferenceHolder(instance_dump.id)

    def string(self, string: str) -> ReferenceHolder:
        """
        Write a `java.lang.String` instance backed by a char array.

        Returns:
            ReferenceHolder:
                A reference to the string instance.
        """
        chars = _utf16_code_units(string)
        return self.instance(
            self.string_class_id,
            fields=[self.primitive_array(PrimitiveType.CHAR, chars), IntHolder(len(chars))],
        )

    def char_array(self, string: str) -> ReferenceHolder:
        """Write a char array holding the UTF-16 code units of `string`."""
        return self.primitive_array(PrimitiveType.CHAR, _utf16_code_units(string))

    def primitive_array(self, primitive_type: PrimitiveType, elements: ArrayLike) -> ReferenceHolder:
        """
        Write a primitive array dump.

        Args:
            primitive_type (PrimitiveType):
                Element kind.

            elements (ArrayLike):
                One-dimensional element values, converted to the dtype of
                `primitive_type`.

        Returns:
            ReferenceHolder:
                A reference to the new array.
        """
        array_dump = PrimitiveArrayDumpRecord(
            id=self._ids.next(),
            stack_trace_serial_number=self._stack_trace_serial_number,
            type=primitive_type,
            elements=np.asarray(elements, dtype=primitive_type.dtype),
        )
        self._writer.write(array_dump)
        return ReferenceHolder(array_dump.id)

    def object_array(self, *elements: ReferenceHolder) -> ReferenceHolder:
        """Write a `java.lang.Object[]` array of the given references."""
        return self.object_array_of(self.object_array_class_id, *elements)

    def object_array_of(self, class_id: int, *elements: ReferenceHolder) -> ReferenceHolder:
        """Write an array of class `class_id` holding the given references."""
        return ReferenceHolder(self.object_array_ids(class_id, [e.value for e in elements]))

    def object_array_ids(self, class_id: int, ids: Sequence[int]) -> int:
        """
        Write an object array dump.

        Args:
            class_id (int):
                Id of the array class.

            ids (Sequence[int]):
                Element ids, 0 for null elements.

        Returns:
            int:
                The id of the new array.

        Raises:
            UnresolvedReferenceError:
                If `class_id` was never registered.
        """
        self.classes.get(class_id)
        array_dump = ObjectArrayDumpRecord(
            id=self._ids.next(),
            stack_trace_serial_number=self._stack_trace_serial_number,
            array_class_id=class_id,
            elements=tuple(ids),
        )
        self._writer.write(array_dump)
        return array_dump.id

    def keyed_weak_reference(self, referent_instance_id: ReferenceHolder) -> ReferenceHolder:
        """
        Write a `leakcanary.KeyedWeakReference` watching an instance, and mark
        it as a GC root.

        The key is drawn from the seeded key source, so the same sequence of
        calls always produces the same keys.

        Args:
            referent_instance_id (ReferenceHolder):
                The watched instance.

        Returns:
            ReferenceHolder:
                A reference to the weak reference instance.
        """
        reference_key = self.string(self._weak_ref_keys.next_key())
        weak_reference = self.instance(
            self.keyed_weak_reference_class_id,
            fields=[
                reference_key,
                self.string(""),
                LongHolder(5000),
                LongHolder(20000),
                ReferenceHolder(referent_instance_id.value),
            ],
        )
        self.gc_root(Unknown(weak_reference.value))
        return weak_reference

    def instance_of(self, class_name: str, definition: InstanceAndClassDefinition) -> ReferenceHolder:
        """
        Write an instance, defining its class from the field values.

        Each field of the class gets the kind of its value. A class defined
        earlier by this method or `class_of` with the same name, fields and
        static fields is reused.

        Args:
            class_name (str):
                Fully qualified class name.

            definition (InstanceAndClassDefinition):
                Field and static field values.

        Returns:
            ReferenceHolder:
                A reference to the new instance.
        """
        class_fields = [(name, kind_of(value)) for name, value in definition.field.items()]
        class_id = self._defined_class(class_name, class_fields, list(definition.static_field.items()))
        return self.instance(class_id, definition.field.values())

    def watched_instance(self, class_name: str, definition: InstanceAndClassDefinition) -> ReferenceHolder:
        """
        Write an instance like `instance_of` and a keyed weak reference
        watching it.

        Returns:
            ReferenceHolder:
                A reference to the watched instance.
        """
        instance = self.instance_of(class_name, definition)
        self.keyed_weak_reference(instance)
        return instance

    def class_of(self, class_name: str, definition: ClassDefinition) -> int:
        """
        Define a class with static fields only, or reuse one with the same
        name and static fields.

        Returns:
            int:
                The class id.
        """
        return self._defined_class(class_name, [], list(definition.static_field.items()))

    def close(self) -> None:
        """Close the underlying writer."""
        self._writer.close()

    def __enter__(self) -> HprofWriterHelper:
        return self

    def __exit__(self, exc_type: type[BaseException] | None,
                 exc_value: BaseException | None,
                 traceback: TracebackType | None) -> None:
        self.close()

    def _defined_class(self,
                       class_name: str,
                       fields: list[tuple[str, ValueKind]],
                       static_fields: list[tuple[str, ValueHolder]]) -> int:
        key = (class_name, tuple(fields), tuple(static_fields))
        class_id = self._defined_classes.get(key)
        if class_id is None:
            class_id = self.clazz(class_name, static_fields=static_fields, fields=fields)
            self._defined_classes[key] = class_id
        return class_id

    def _write_string(self, string: str) -> int:
        string_record = StringRecord(self._ids.next(), string)
        self._writer.write(string_record)
        return string_record.id


def _utf16_code_units(string: str) -> NDArray[Any]:
    return np.frombuffer(string.encode("utf-16-be"), dtype=">u2")


@contextmanager
def dump(target: str | os.PathLike[str] | SupportsWrite,
         config: HprofConfig | None = None) -> Iterator[HprofWriterHelper]:
    """
    Open a heap dump on a path or binary stream and yield a helper to build
    it. The writer is closed when the block exits, whether it completes or
    raises.

    Example:
        >>> with dump(path) as helper:
        ...     leaky = helper.watched_instance(
        ...         "com.example.Leaky",
        ...         InstanceAndClassDefinition(field={"count": IntHolder(3)}),
        ...     )

    Args:
        target (str | os.PathLike[str] | SupportsWrite):
            Where to write the heap dump.

        config (HprofConfig | None):
            Heap dump settings, defaults to `HprofConfig()`.

    Yields:
        HprofWriterHelper:
            The helper writing into the heap dump.
    """
    with HprofWriter.open(target, config) as writer:
        yield HprofWriterHelper(writer)
