import io
import struct
from pathlib import Path

import numpy as np
import pytest

from hprof_fixture.hprof.errors import UnresolvedReferenceError
from hprof_fixture.hprof.field_values import decode_field_values
from hprof_fixture.hprof.hprof_config import HprofConfig
from hprof_fixture.hprof.hprof_record import (
    ClassDumpRecord,
    GcRootRecord,
    HprofRecord,
    InstanceDumpRecord,
    LoadClassRecord,
    ObjectArrayDumpRecord,
    PrimitiveArrayDumpRecord,
    StickyClass,
    StringRecord,
    Unknown,
)
from hprof_fixture.hprof.hprof_writer_helper import (
    ClassDefinition,
    HprofWriterHelper,
    InstanceAndClassDefinition,
    dump,
)
from hprof_fixture.hprof.primitive_type import PrimitiveType
from hprof_fixture.hprof.value_holder import (
    BooleanHolder,
    IntHolder,
    LongHolder,
    ReferenceHolder,
    ValueKind,
)

# pylint: disable=protected-access
# pyright: reportPrivateUsage=false


class RecordingWriter:
    """Keeps written records in memory instead of encoding them."""
    def __init__(self, id_size: int = 4, weak_ref_key_seed: int = 42):
        self.config = HprofConfig(id_size=id_size, weak_ref_key_seed=weak_ref_key_seed, heap_dump_timestamp=0)
        self.records: list[HprofRecord] = []
        self.closed = False

    @property
    def id_size(self) -> int:
        return self.config.id_size

    def write(self, record: HprofRecord) -> None:
        self.records.append(record)

    def close(self) -> None:
        self.closed = True


def _helper(id_size: int = 4, weak_ref_key_seed: int = 42) -> tuple[HprofWriterHelper, RecordingWriter]:
    writer = RecordingWriter(id_size, weak_ref_key_seed)
    return HprofWriterHelper(writer), writer  # type: ignore[arg-type]


def _of_type(writer: RecordingWriter, record_type: type) -> list:
    return [r for r in writer.records if isinstance(r, record_type)]


def _instance_dump(writer: RecordingWriter, ref: ReferenceHolder) -> InstanceDumpRecord:
    return next(r for r in _of_type(writer, InstanceDumpRecord) if r.id == ref.value)


def _decode(helper: HprofWriterHelper, instance_dump: InstanceDumpRecord) -> list:
    kinds = [ValueKind.from_hprof_type(t) for t in helper.classes.instance_field_types(instance_dump.class_id)]
    return decode_field_values(instance_dump.field_values, kinds, helper.id_size)


def _class_names(writer: RecordingWriter) -> dict[int, str]:
    strings = {r.id: r.string for r in _of_type(writer, StringRecord)}
    return {r.id: strings[r.class_name_string_id] for r in _of_type(writer, LoadClassRecord)}


def test_builtin_classes():
    helper, writer = _helper()

    names = _class_names(writer)

    assert helper.object_class_id == 2
    assert names[helper.object_class_id] == "java.lang.Object"
    assert names[helper.object_array_class_id] == "java.lang.Object[]"
    assert names[helper.string_class_id] == "java.lang.String"
    assert names[helper.reference_class_id] == "java.lang.ref.Reference"
    assert names[helper.weak_reference_class_id] == "java.lang.ref.WeakReference"
    assert names[helper.keyed_weak_reference_class_id] == "leakcanary.KeyedWeakReference"

    object_dump = helper.classes.get(helper.object_class_id)
    assert object_dump.super_class_id == 0
    assert object_dump.fields == ()
    assert object_dump.instance_size == 0


@pytest.mark.parametrize("id_size", [4, 8])
def test_builtin_instance_sizes(id_size: int):
    helper, _ = _helper(id_size)

    assert helper.classes.instance_size(helper.string_class_id) == id_size + 4
    assert helper.classes.instance_size(helper.weak_reference_class_id) == id_size
    assert helper.classes.instance_size(helper.keyed_weak_reference_class_id) == 3 * id_size + 16


def test_class_records_emitted_in_order():
    helper, writer = _helper()
    start = len(writer.records)

    class_id = helper.clazz(
        "com.example.Foo",
        static_fields=[("INSTANCES", IntHolder(3))],
        fields=[("bar", ValueKind.REFERENCE)],
    )

    emitted = writer.records[start:]
    assert [type(r) for r in emitted] == [
        StringRecord, LoadClassRecord, StringRecord, StringRecord, ClassDumpRecord, GcRootRecord,
    ]
    assert [r.string for r in emitted if isinstance(r, StringRecord)] == ["com.example.Foo", "INSTANCES", "bar"]

    class_dump = emitted[4]
    assert isinstance(class_dump, ClassDumpRecord)
    assert class_dump.id == class_id == emitted[1].id
    assert class_dump.super_class_id == helper.object_class_id
    assert class_dump.static_fields[0].name_string_id == emitted[2].id
    assert class_dump.static_fields[0].type == PrimitiveType.INT.hprof_type
    assert class_dump.static_fields[0].value == IntHolder(3)
    assert class_dump.fields[0].name_string_id == emitted[3].id
    assert class_dump.fields[0].type == 2
    assert emitted[5] == GcRootRecord(StickyClass(class_id))


def test_class_serial_numbers_are_distinct():
    _, writer = _helper()

    serials = [r.class_serial_number for r in _of_type(writer, LoadClassRecord)]

    assert len(set(serials)) == len(serials)


def test_every_class_is_a_sticky_root():
    helper, writer = _helper()
    helper.clazz("com.example.Foo")

    roots = {r.gc_root.id for r in _of_type(writer, GcRootRecord) if isinstance(r.gc_root, StickyClass)}

    assert roots == {r.id for r in _of_type(writer, ClassDumpRecord)}


def test_subclass_without_fields_inherits_size():
    helper, _ = _helper()
    parent = helper.clazz("com.example.Parent", fields=[("a", ValueKind.INT), ("b", ValueKind.LONG)])

    child = helper.clazz("com.example.Child", super_class_id=parent)

    assert helper.classes.instance_size(child) == 12 + helper.classes.instance_size(helper.object_class_id)


def test_instance_size_accumulates_own_and_inherited_fields():
    helper, _ = _helper(8)
    parent = helper.clazz("com.example.Parent", fields=[("flag", ValueKind.BOOLEAN)])

    child = helper.clazz("com.example.Child", super_class_id=parent, fields=[("next", ValueKind.REFERENCE)])

    assert helper.classes.instance_size(child) == 1 + 8


def test_unregistered_superclass_emits_nothing():
    helper, writer = _helper()
    records_before = list(writer.records)
    last_id = helper.last_id

    with pytest.raises(UnresolvedReferenceError):
        helper.clazz("com.example.Orphan", super_class_id=9999, fields=[("a", ValueKind.INT)])

    assert writer.records == records_before
    assert helper.last_id == last_id


def test_instance_round_trip():
    helper, writer = _helper()
    class_id = helper.clazz("com.example.Holder", fields=[("value", ValueKind.REFERENCE), ("count", ValueKind.INT)])
    x = helper.instance(helper.object_class_id)

    holder = helper.instance(class_id, [x, IntHolder(5)])

    instance_dump = _instance_dump(writer, holder)
    assert instance_dump.class_id == class_id
    assert _decode(helper, instance_dump) == [x, IntHolder(5)]


def test_identifiers_strictly_increase():
    helper, writer = _helper()
    helper.watched_instance("com.example.Leaky", InstanceAndClassDefinition(field={"count": IntHolder(1)}))
    helper.object_array(helper.string("a"), ReferenceHolder(0))

    ids = [
        r.id for r in writer.records
        if isinstance(r, (StringRecord, LoadClassRecord, InstanceDumpRecord,
                          ObjectArrayDumpRecord, PrimitiveArrayDumpRecord))
    ]

    assert ids == list(range(1, helper.last_id + 1))


def test_string_instance():
    helper, writer = _helper()

    ref = helper.string("héllo")

    instance_dump = _instance_dump(writer, ref)
    assert instance_dump.class_id == helper.string_class_id
    value, count = _decode(helper, instance_dump)
    assert count == IntHolder(5)

    chars = next(r for r in _of_type(writer, PrimitiveArrayDumpRecord) if r.id == value.value)
    assert chars.type is PrimitiveType.CHAR
    assert "".join(chr(c) for c in chars.elements) == "héllo"


def test_string_counts_utf16_code_units():
    helper, writer = _helper()

    ref = helper.string("\U0001F600")

    _, count = _decode(helper, _instance_dump(writer, ref))
    assert count == IntHolder(2)


def test_char_array():
    helper, writer = _helper()

    ref = helper.char_array("ab")

    array_dump = _of_type(writer, PrimitiveArrayDumpRecord)[-1]
    assert array_dump.id == ref.value
    assert array_dump.to_bytes(4)[-4:] == b"\x00a\x00b"


def test_primitive_array():
    helper, writer = _helper()

    ref = helper.primitive_array(PrimitiveType.LONG, [1, 2, 3])

    array_dump = _of_type(writer, PrimitiveArrayDumpRecord)[-1]
    assert array_dump.id == ref.value
    assert array_dump.type is PrimitiveType.LONG
    np.testing.assert_array_equal(array_dump.elements, [1, 2, 3])


def test_object_array():
    helper, writer = _helper()
    a = helper.instance(helper.object_class_id)

    ref = helper.object_array(a, ReferenceHolder(0))

    array_dump = _of_type(writer, ObjectArrayDumpRecord)[-1]
    assert array_dump.id == ref.value
    assert array_dump.array_class_id == helper.object_array_class_id
    assert array_dump.elements == (a.value, 0)


def test_object_array_of_custom_class():
    helper, writer = _helper()
    array_class_id = helper.array_class("com.example.Foo")

    ref = helper.object_array_of(array_class_id)

    array_dump = _of_type(writer, ObjectArrayDumpRecord)[-1]
    assert array_dump.id == ref.value
    assert array_dump.array_class_id == array_class_id
    assert array_dump.elements == ()
    assert _class_names(writer)[array_class_id] == "com.example.Foo[]"


def test_instance_of_derives_fields_from_values():
    helper, writer = _helper()
    other = helper.instance(helper.object_class_id)
    definition = InstanceAndClassDefinition()
    definition.field["other"] = other
    definition.field["flag"] = BooleanHolder(True)
    definition.field["count"] = LongHolder(7)
    definition.static_field["LIMIT"] = IntHolder(10)

    ref = helper.instance_of("com.example.Thing", definition)

    instance_dump = _instance_dump(writer, ref)
    class_dump = helper.classes.get(instance_dump.class_id)
    assert [f.type for f in class_dump.fields] == [2, 4, 11]
    assert [s.value for s in class_dump.static_fields] == [IntHolder(10)]
    assert len(instance_dump.field_values) == class_dump.instance_size == 4 + 1 + 8
    assert _decode(helper, instance_dump) == [other, BooleanHolder(True), LongHolder(7)]


def test_instance_of_reuses_matching_class():
    helper, writer = _helper()

    first = helper.instance_of("com.example.Thing", InstanceAndClassDefinition(field={"count": IntHolder(1)}))
    second = helper.instance_of("com.example.Thing", InstanceAndClassDefinition(field={"count": IntHolder(2)}))
    third = helper.instance_of("com.example.Thing", InstanceAndClassDefinition(field={"count": LongHolder(3)}))

    first_class = _instance_dump(writer, first).class_id
    assert _instance_dump(writer, second).class_id == first_class
    assert _instance_dump(writer, third).class_id != first_class
    assert helper.classes.instance_size(_instance_dump(writer, third).class_id) == 8


def test_class_of():
    helper, writer = _helper()

    class_id = helper.class_of("com.example.Constants", ClassDefinition(static_field={"ANSWER": IntHolder(42)}))

    class_dump = helper.classes.get(class_id)
    assert class_dump.fields == ()
    assert class_dump.static_fields[0].value == IntHolder(42)
    assert helper.class_of("com.example.Constants", ClassDefinition(static_field={"ANSWER": IntHolder(42)})) == class_id
    assert _class_names(writer)[class_id] == "com.example.Constants"


def test_watched_instance():
    helper, writer = _helper()

    leaky = helper.watched_instance("com.example.Leaky", InstanceAndClassDefinition(field={"count": IntHolder(1)}))

    weak_refs = [r for r in _of_type(writer, InstanceDumpRecord) if r.class_id == helper.keyed_weak_reference_class_id]
    assert len(weak_refs) == 1
    weak_ref = weak_refs[0]
    assert len(weak_ref.field_values) == helper.classes.instance_size(helper.keyed_weak_reference_class_id)

    key, name, watch_uptime, retained_uptime, referent = _decode(helper, weak_ref)
    assert referent == leaky
    assert watch_uptime == LongHolder(5000)
    assert retained_uptime == LongHolder(20000)
    assert _instance_dump(writer, key).class_id == helper.string_class_id
    assert _decode(helper, _instance_dump(writer, name))[1] == IntHolder(0)

    assert writer.records[-1] == GcRootRecord(Unknown(weak_ref.id))


def _weak_ref_keys(helper: HprofWriterHelper, writer: RecordingWriter, count: int) -> list[str]:
    keys = []
    for _ in range(count):
        weak_ref = helper.keyed_weak_reference(helper.instance(helper.object_class_id))
        key = _decode(helper, _instance_dump(writer, weak_ref))[0]
        chars_ref = _decode(helper, _instance_dump(writer, key))[0]
        chars = next(r for r in _of_type(writer, PrimitiveArrayDumpRecord) if r.id == chars_ref.value)
        keys.append("".join(chr(c) for c in chars.elements))
    return keys


def test_weak_ref_keys_are_deterministic():
    first = _weak_ref_keys(*_helper(), 3)
    second = _weak_ref_keys(*_helper(), 3)

    assert first == second
    assert len(set(first)) == 3
    assert _weak_ref_keys(*_helper(weak_ref_key_seed=1), 1)[0] != first[0]


def _build_fixture(sink: io.BytesIO) -> None:
    config = HprofConfig(heap_dump_timestamp=1234)
    with dump(sink, config) as helper:
        helper.watched_instance("com.example.Leaky", InstanceAndClassDefinition(field={"count": IntHolder(1)}))
        helper.object_array(helper.string("a"))


def test_same_build_is_byte_identical():
    first = io.BytesIO()
    second = io.BytesIO()

    _build_fixture(first)
    _build_fixture(second)

    assert first.getvalue() == second.getvalue()
    assert first.getvalue().startswith(b"JAVA PROFILE 1.0.3\0")


def test_helper_close_closes_writer():
    helper, writer = _helper()

    with helper:
        pass

    assert writer.closed


def test_dump_closes_on_error(tmp_path: Path):
    path = tmp_path / "broken.hprof"

    with pytest.raises(UnresolvedReferenceError):
        with dump(path, HprofConfig(heap_dump_timestamp=0)) as helper:
            helper.clazz("com.example.Orphan", super_class_id=9999)

    data = path.read_bytes()
    assert data.endswith(struct.pack(">BII", 0x2C, 0, 0))


def test_dump_to_path(tmp_path: Path):
    path = tmp_path / "fixture.hprof"

    with dump(path, HprofConfig(id_size=8, heap_dump_timestamp=0)) as helper:
        helper.string("hello")

    data = path.read_bytes()
    assert data[:len(b"JAVA PROFILE 1.0.3\0")] == b"JAVA PROFILE 1.0.3\0"
    id_size, = struct.unpack_from(">I", data, len(b"JAVA PROFILE 1.0.3\0"))
    assert id_size == 8


def test_instance_of_unregistered_class_emits_nothing():
    helper, writer = _helper()
    records_before = list(writer.records)
    last_id = helper.last_id

    with pytest.raises(UnresolvedReferenceError, match="9999"):
        helper.instance(9999, [IntHolder(1)])

    with pytest.raises(UnresolvedReferenceError, match="9999"):
        helper.object_array_ids(9999, [1])

    assert writer.records == records_before
    assert helper.last_id == last_id


def test_watched_instance_written_to_stream():
    sink = io.BytesIO()

    with dump(sink, HprofConfig(heap_dump_timestamp=0)) as helper:
        helper.watched_instance("com.example.Leaky", InstanceAndClassDefinition(field={"count": IntHolder(3)}))
        chars_id = helper.char_array("ab").value

    data = sink.getvalue()
    chars_dump = b"\x23" + struct.pack(">IIIB", chars_id, 1, 2, 5) + b"\x00a\x00b"
    assert chars_dump in data
    assert data.endswith(struct.pack(">BII", 0x2C, 0, 0))
