from __future__ import annotations
from dataclasses import dataclass
from enum import Enum


class HprofVersion(Enum):
    """Version strings found at the start of HPROF files."""
    JDK1_2_BETA3 = "JAVA PROFILE 1.0"
    JDK1_2_BETA4 = "JAVA PROFILE 1.0.1"
    JDK_6 = "JAVA PROFILE 1.0.2"
    ANDROID = "JAVA PROFILE 1.0.3"


@dataclass(frozen=True, kw_only=True)
class HprofConfig:
    """
    Settings of one heap dump, fixed when the writer is opened.

    Attributes:
        id_size (int):
            Byte width of identifiers and references, 4 or 8.

        hprof_version (HprofVersion):
            Version string written in the file header.

        heap_dump_timestamp (int | None):
            Header timestamp in milliseconds since the epoch. None means the
            time the writer is opened; set it to get byte-identical files.

        weak_ref_key_seed (int):
            Seed of the generator drawing keyed weak reference keys.

        stack_trace_serial_number (int):
            Stack trace serial number stamped on every record that has one.
    """
    id_size: int = 4
    hprof_version: HprofVersion = HprofVersion.ANDROID
    heap_dump_timestamp: int | None = None
    weak_ref_key_seed: int = 42
    stack_trace_serial_number: int = 1

    def __post_init__(self):
        if self.id_size not in (4, 8):
            raise ValueError(f"Identifier size must be 4 or 8, got {self.id_size}")
