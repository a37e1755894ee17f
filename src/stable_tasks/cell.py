from __future__ import annotations

import logging
import struct

from .errors import CorruptedMemory, StorageExhausted
from .memory import Memory, safe_write

logger = logging.getLogger(__name__)

MAGIC = b"SCL"
LAYOUT_VERSION = 1
U64_MAX = 2 ** 64 - 1

# magic, version, value length, value
_LAYOUT = struct.Struct("<3sBIQ")


# PUBLIC_INTERFACE
class IdCell:
    """
    A persisted u64 counter issuing strictly increasing identifiers.

    The stored value is the next identifier to hand out; it starts at 0 on
    an empty memory. The durable value is authoritative: `next_id` persists
    the increment before returning.
    """

    def __init__(self, memory: Memory, initial: int = 0) -> None:
        self._memory = memory
        if memory.size() == 0:
            self._flush(initial)
            self._value = initial
        else:
            magic, version, length, value = _LAYOUT.unpack(memory.read(0, _LAYOUT.size))
            if magic != MAGIC or version != LAYOUT_VERSION or length != 8:
                raise CorruptedMemory("identifier cell header does not match the expected layout")
            self._value = value

    def _flush(self, value: int) -> None:
        safe_write(self._memory, 0, _LAYOUT.pack(MAGIC, LAYOUT_VERSION, 8, value))

    def get(self) -> int:
        """Return the identifier the next call to next_id() will issue."""
        return self._value

    def next_id(self) -> int:
        current = self._value
        if current == U64_MAX:
            raise StorageExhausted("identifier space exhausted")
        self._flush(current + 1)
        self._value = current + 1
        return current
