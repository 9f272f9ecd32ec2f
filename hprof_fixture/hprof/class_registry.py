from __future__ import annotations
from collections.abc import Iterable, Iterator
import logging

from hprof_fixture.hprof.errors import UnresolvedReferenceError
from hprof_fixture.hprof.hprof_record import ClassDumpRecord
from hprof_fixture.hprof.primitive_type import TypeSizes

LOG = logging.getLogger("hprof_fixture.hprof.class_registry")


class ClassRegistry:
    """
    Class dumps of one heap dump, keyed by class id.

    The registry is what makes instance sizes consistent: the size of a class
    is the byte width of its own fields plus the width of the fields of every
    superclass up to the root, whose superclass id is 0.

    Attributes:
        type_sizes (TypeSizes):
            Byte widths of field types, references included.
    """

    type_sizes: TypeSizes
    _class_dumps: dict[int, ClassDumpRecord]

    def __init__(self, type_sizes: TypeSizes):
        self.type_sizes = type_sizes
        self._class_dumps = {}

    def __contains__(self, class_id: object) -> bool:
        return class_id in self._class_dumps

    def __len__(self) -> int:
        return len(self._class_dumps)

    def get(self, class_id: int) -> ClassDumpRecord:
        """
        Return the class dump registered for `class_id`.

        Raises:
            UnresolvedReferenceError:
                If no class was registered with that id.
        """
        try:
            return self._class_dumps[class_id]
        except KeyError:
            raise UnresolvedReferenceError(f"Class id {class_id} was never registered") from None

    def fields_byte_size(self, field_types: Iterable[int]) -> int:
        """Sum of the byte widths of fields of the given HPROF types."""
        return sum(self.type_sizes.byte_size(t) for t in field_types)

    def ancestors(self, super_class_id: int) -> Iterator[ClassDumpRecord]:
        """
        Walk up the superclass chain starting at `super_class_id`.

        Yields:
            ClassDumpRecord:
                `super_class_id` itself, then its superclass, up to the root.

        Raises:
            UnresolvedReferenceError:
                If a class of the chain was never registered.
        """
        next_up_id = super_class_id
        while next_up_id != 0:
            next_up = self.get(next_up_id)
            yield next_up
            next_up_id = next_up.super_class_id

    def resolve_instance_size(self, field_types: Iterable[int], super_class_id: int) -> int:
        """
        Compute the instance size of a class about to be defined.

        Args:
            field_types (Iterable[int]):
                HPROF types of the fields the class declares itself.

            super_class_id (int):
                Its superclass id, 0 for the root class.

        Returns:
            int:
                Own field widths plus those of every ancestor.

        Raises:
            UnresolvedReferenceError:
                If the superclass chain reaches a class that was never
                registered.
        """
        instance_size = self.fields_byte_size(field_types)
        for ancestor in self.ancestors(super_class_id):
            instance_size += self.fields_byte_size(f.type for f in ancestor.fields)
        return instance_size

    def register(self, class_dump: ClassDumpRecord) -> None:
        """
        Register a class dump. Class ids come from the identifier allocator,
        so a registered record is never replaced.
        """
        self._class_dumps[class_dump.id] = class_dump
        LOG.debug("Registered class %d (instance size %d)", class_dump.id, class_dump.instance_size)

    def instance_size(self, class_id: int) -> int:
        """The resolved instance size of a registered class."""
        return self.get(class_id).instance_size

    def instance_field_types(self, class_id: int) -> list[int]:
        """
        HPROF type codes of all the fields of an instance of `class_id`, in
        the order an instance dump lays them out: the class's own fields, then
        those of each superclass in turn.
        """
        types: list[int] = []
        for class_dump in self.ancestors(class_id):
            types.extend(f.type for f in class_dump.fields)
        return types
