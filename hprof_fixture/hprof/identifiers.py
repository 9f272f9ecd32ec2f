import uuid

import numpy as np


class IdentifierAllocator:
    """
    Hands out the identifiers of every string, class, instance and array
    record of one heap dump.

    Identifiers start at 1 and strictly increase; 0 stays free as the null and
    "no superclass" sentinel.

    Attributes:
        last_id (int):
            The most recently allocated identifier, 0 before the first one.
    """

    last_id: int

    def __init__(self):
        self.last_id = 0

    def next(self) -> int:
        """
        Allocate the next identifier.

        Returns:
            int:
                An identifier never returned before by this allocator.
        """
        self.last_id += 1
        return self.last_id


class WeakRefKeySource:
    """
    Deterministic source of keyed weak reference keys.

    Keys look like random UUIDs but are drawn from a seeded generator, so two
    sources built with the same seed produce the same sequence and heap dumps
    built with them are byte-identical.

    Attributes:
        seed (int):
            The seed the generator was created with.
    """

    seed: int
    _rng: np.random.Generator

    def __init__(self, seed: int = 42):
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def next_key(self) -> str:
        """
        Draw the next key.

        Returns:
            str:
                A UUID formatted string.
        """
        return str(uuid.UUID(bytes=self._rng.bytes(16)))
