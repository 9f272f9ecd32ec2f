from __future__ import annotations
import logging
import os
import struct
import time
from types import TracebackType
from typing import BinaryIO, Protocol, runtime_checkable

from hprof_fixture.hprof.hprof_config import HprofConfig
from hprof_fixture.hprof.hprof_record import HeapDumpRecord, HprofRecord, HprofTag

LOG = logging.getLogger("hprof_fixture.hprof.hprof_writer")


@runtime_checkable
class SupportsWrite(Protocol):
    def write(self, data: bytes | bytearray | memoryview, /) -> int | None: ...


class HprofWriter:
    """
    Writes HPROF records to a binary stream, in the order they are given.

    The file header is written when the writer is opened. Top-level records
    are written immediately with their tag, time and length header. Heap dump
    sub-records are gathered and written as one HEAP_DUMP record, followed by
    HEAP_DUMP_END, as soon as a top-level record is written or the writer is
    closed.

    Attributes:
        config (HprofConfig):
            The settings of the heap dump.
    """

    config: HprofConfig
    _sink: SupportsWrite
    _owned_file: BinaryIO | None
    _heap_buffer: bytearray
    _closed: bool

    def __init__(self, sink: SupportsWrite, config: HprofConfig, owned_file: BinaryIO | None = None):
        self.config = config
        self._sink = sink
        self._owned_file = owned_file
        self._heap_buffer = bytearray()
        self._closed = False

    @classmethod
    def open(cls, target: str | os.PathLike[str] | SupportsWrite,
             config: HprofConfig | None = None) -> HprofWriter:
        """
        Open a writer on a file path or on a binary stream and write the
        HPROF header.

        Args:
            target (str | os.PathLike[str] | SupportsWrite):
                A path to create or truncate, or a writable binary stream.
                Streams are flushed but not closed when the writer closes.

            config (HprofConfig | None):
                The heap dump settings, defaults to `HprofConfig()`.

        Returns:
            HprofWriter:
                The open writer.
        """
        config = config if config is not None else HprofConfig()
        if isinstance(target, (str, os.PathLike)):
            file: BinaryIO = open(target, "wb")  # pylint: disable=consider-using-with
            writer = cls(file, config, owned_file=file)
        else:
            writer = cls(target, config)
        try:
            writer._write_header()
        except BaseException:
            writer.close()
            raise
        LOG.info("Opened heap dump writer on %s (identifier size %d)", target, config.id_size)
        return writer

    @property
    def id_size(self) -> int:
        """Byte width of identifiers and references."""
        return self.config.id_size

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, record: HprofRecord) -> None:
        """
        Write one record.

        Args:
            record (HprofRecord):
                A top-level or heap dump record.

        Raises:
            ValueError:
                If the writer is closed.
        """
        if self._closed:
            raise ValueError("I/O operation on closed HprofWriter")

        body = record.to_bytes(self.id_size)
        if isinstance(record, HeapDumpRecord):
            self._heap_buffer.append(record.heap_tag)
            self._heap_buffer += body
            return

        self._flush_heap_buffer()
        self._write_record_header(record.tag, len(body))
        self._sink.write(body)

    def close(self) -> None:
        """
        Write any pending heap dump records and release the stream.

        Closing an already closed writer does nothing.
        """
        if self._closed:
            return
        self._closed = True
        try:
            self._flush_heap_buffer()
        finally:
            if self._owned_file is not None:
                self._owned_file.close()
            else:
                flush = getattr(self._sink, "flush", None)
                if callable(flush):
                    flush()
            LOG.info("Closed heap dump writer")

    def __enter__(self) -> HprofWriter:
        return self

    def __exit__(self, exc_type: type[BaseException] | None,
                 exc_value: BaseException | None,
                 traceback: TracebackType | None) -> None:
        self.close()

    def _write_header(self) -> None:
        timestamp = self.config.heap_dump_timestamp
        if timestamp is None:
            timestamp = int(time.time() * 1000)
        self._sink.write(self.config.hprof_version.value.encode("utf-8") + b"\0")
        self._sink.write(struct.pack(">IQ", self.id_size, timestamp))

    def _write_record_header(self, tag: int, length: int) -> None:
        # time offset from the header timestamp, always 0
        self._sink.write(struct.pack(">BII", tag, 0, length))

    def _flush_heap_buffer(self) -> None:
        if not self._heap_buffer:
            return
        LOG.debug("Writing heap dump record of %d bytes", len(self._heap_buffer))
        self._write_record_header(HprofTag.HEAP_DUMP, len(self._heap_buffer))
        self._sink.write(self._heap_buffer)
        self._write_record_header(HprofTag.HEAP_DUMP_END, 0)
        self._heap_buffer = bytearray()
