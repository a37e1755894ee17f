from __future__ import annotations

import struct

from .errors import CorruptedMemory
from .memory import Memory, ensure_capacity, safe_write

MAGIC = b"BTA"
CHUNK_MAGIC = b"CHK"
LAYOUT_VERSION = 1
NULL = 0

# magic, version, allocation size, allocated chunks, free list head, first never-used address
_HEADER = struct.Struct("<3sB4xQQQQ")
HEADER_RESERVED_BYTES = 64

# magic, allocated flag, next free chunk
_CHUNK_HEADER = struct.Struct("<3sB4xQ")


class Allocator:
    """
    Fixed-size chunk allocator living inside a Memory.

    Freed chunks form a singly linked free list and are reused before the
    never-used tail of the memory is touched.
    """

    def __init__(self, memory: Memory, address: int) -> None:
        self._memory = memory
        self._address = address
        magic, version, size, allocated, free_head, next_unused = _HEADER.unpack(
            memory.read(address, _HEADER.size)
        )
        if magic != MAGIC or version != LAYOUT_VERSION:
            raise CorruptedMemory(f"no allocator found at address {address}")
        self._allocation_size = size
        self._num_allocated_chunks = allocated
        self._free_list_head = free_head
        self._next_unused = next_unused

    @classmethod
    def new(cls, memory: Memory, address: int, allocation_size: int) -> "Allocator":
        safe_write(
            memory,
            address,
            _HEADER.pack(
                MAGIC, LAYOUT_VERSION, allocation_size, 0, NULL, address + HEADER_RESERVED_BYTES
            ),
        )
        return cls(memory, address)

    @property
    def allocation_size(self) -> int:
        return self._allocation_size

    @property
    def num_allocated_chunks(self) -> int:
        return self._num_allocated_chunks

    @property
    def _chunk_size(self) -> int:
        return _CHUNK_HEADER.size + self._allocation_size

    def _save(self) -> None:
        safe_write(
            self._memory,
            self._address,
            _HEADER.pack(
                MAGIC,
                LAYOUT_VERSION,
                self._allocation_size,
                self._num_allocated_chunks,
                self._free_list_head,
                self._next_unused,
            ),
        )

    def reserve(self, chunks: int) -> None:
        """Make sure `chunks` more allocations cannot fail for lack of memory."""
        ensure_capacity(self._memory, self._next_unused + chunks * self._chunk_size)

    def allocate(self) -> int:
        """Return the address of a fresh chunk of allocation_size bytes."""
        if self._free_list_head != NULL:
            chunk = self._free_list_head
            magic, allocated, next_free = _CHUNK_HEADER.unpack(
                self._memory.read(chunk, _CHUNK_HEADER.size)
            )
            if magic != CHUNK_MAGIC or allocated:
                raise CorruptedMemory(f"free list points at a bad chunk {chunk}")
            self._free_list_head = next_free
        else:
            chunk = self._next_unused
            ensure_capacity(self._memory, chunk + self._chunk_size)
            self._next_unused += self._chunk_size

        safe_write(self._memory, chunk, _CHUNK_HEADER.pack(CHUNK_MAGIC, 1, NULL))
        self._num_allocated_chunks += 1
        self._save()
        return chunk + _CHUNK_HEADER.size

    def deallocate(self, address: int) -> None:
        chunk = address - _CHUNK_HEADER.size
        magic, allocated, _ = _CHUNK_HEADER.unpack(self._memory.read(chunk, _CHUNK_HEADER.size))
        if magic != CHUNK_MAGIC or not allocated:
            raise CorruptedMemory(f"cannot free address {address}: not an allocated chunk")
        safe_write(self._memory, chunk, _CHUNK_HEADER.pack(CHUNK_MAGIC, 0, self._free_list_head))
        self._free_list_head = chunk
        self._num_allocated_chunks -= 1
        self._save()
