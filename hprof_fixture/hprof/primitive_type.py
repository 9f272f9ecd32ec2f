from __future__ import annotations
from enum import Enum

import numpy as np

from hprof_fixture.hprof.errors import UnrecognizedValueKindError

REFERENCE_HPROF_TYPE = 2


class PrimitiveType(Enum):
    """
    Primitive field and array element kinds of the HPROF format.

    Each member carries its HPROF type code, its byte width and the numpy
    dtype (big-endian) used to lay out primitive arrays of that kind.
    """

    BOOLEAN = (4, 1, ">u1")
    CHAR = (5, 2, ">u2")
    FLOAT = (6, 4, ">f4")
    DOUBLE = (7, 8, ">f8")
    BYTE = (8, 1, ">i1")
    SHORT = (9, 2, ">i2")
    INT = (10, 4, ">i4")
    LONG = (11, 8, ">i8")

    def __init__(self, hprof_type: int, byte_size: int, dtype: str):
        self.hprof_type = hprof_type
        self.byte_size = byte_size
        self.dtype = np.dtype(dtype)

    @classmethod
    def from_hprof_type(cls, hprof_type: int) -> PrimitiveType:
        """
        Look up the primitive kind for an HPROF type code.

        Raises:
            UnrecognizedValueKindError:
                If `hprof_type` is not a primitive type code.
        """
        for member in cls:
            if member.hprof_type == hprof_type:
                return member
        raise UnrecognizedValueKindError(f"Unknown primitive hprof type {hprof_type}")


BYTE_SIZE_BY_HPROF_TYPE: dict[int, int] = {
    member.hprof_type: member.byte_size for member in PrimitiveType
}


class TypeSizes:
    """
    Byte width of every HPROF type code for one heap dump.

    Built once from the static primitive table plus the reference entry, whose
    width is the identifier size the heap dump is written with.

    Attributes:
        id_size (int):
            The byte width of references.
    """

    id_size: int
    _sizes: dict[int, int]

    def __init__(self, id_size: int):
        self.id_size = id_size
        self._sizes = {**BYTE_SIZE_BY_HPROF_TYPE, REFERENCE_HPROF_TYPE: id_size}

    def byte_size(self, hprof_type: int) -> int:
        """
        Return the byte width of values of type `hprof_type`.

        Raises:
            UnrecognizedValueKindError:
                If `hprof_type` is not a known HPROF type code.
        """
        size = self._sizes.get(hprof_type)
        if size is None:
            raise UnrecognizedValueKindError(f"Unknown hprof type {hprof_type}")
        return size


_ID_FORMATS = {4: "I", 8: "Q"}


def id_struct_format(id_size: int) -> str:
    """
    Return the struct format character used to pack an identifier.

    Args:
        id_size (int):
            The identifier byte width of the heap dump, 4 or 8.

    Returns:
        str:
            'I' for 4-byte identifiers, 'Q' for 8-byte identifiers.

    Raises:
        ValueError:
            If `id_size` is neither 4 nor 8.
    """
    fmt = _ID_FORMATS.get(id_size)
    if fmt is None:
        raise ValueError(f"Identifier size must be 4 or 8, got {id_size}")
    return fmt
