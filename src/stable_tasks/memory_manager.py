"""
Virtual memories carved out of a single flat memory.

The flat memory is split into a one-page header followed by equally sized
buckets. Each bucket belongs to at most one virtual memory; a virtual memory
is the concatenation of its buckets in allocation order. Buckets are handed
out lazily when a virtual memory grows.

Header layout (little-endian):

    0     magic "MGR"
    3     layout version (u8)
    4     number of allocated buckets (u16)
    6     bucket size in pages (u16)
    8     size in pages of each virtual memory (MAX_NUM_MEMORIES x u64)
    2048  owner of each bucket (MAX_NUM_BUCKETS x u8)
"""
from __future__ import annotations

import logging
import struct
from typing import Dict, List

from .errors import CorruptedMemory, StorageFault
from .memory import PAGE_SIZE, Memory, ensure_capacity, read_u64, safe_write, write_u64

logger = logging.getLogger(__name__)

MAGIC = b"MGR"
LAYOUT_VERSION = 1
MAX_NUM_MEMORIES = 255
MAX_NUM_BUCKETS = 32768
BUCKET_SIZE_IN_PAGES = 128
UNALLOCATED_BUCKET = MAX_NUM_MEMORIES

HEADER_RESERVED_BYTES = PAGE_SIZE

_HEADER = struct.Struct("<3sBHH")
_SIZES_OFFSET = _HEADER.size
_BUCKETS_OFFSET = 2048


# PUBLIC_INTERFACE
class MemoryManager:
    """
    Hands out independent virtual memories identified by a small integer.

    Usage:
        manager = MemoryManager(InMemoryMemory())
        ids = manager.get(0)
        records = manager.get(1)
    """

    def __init__(self, memory: Memory, bucket_size_in_pages: int = BUCKET_SIZE_IN_PAGES) -> None:
        self._memory = memory
        self._buckets: Dict[int, List[int]] = {}
        if memory.size() == 0:
            self._initialize(bucket_size_in_pages)
        else:
            self._load()

    def _initialize(self, bucket_size_in_pages: int) -> None:
        if not 0 < bucket_size_in_pages < 2 ** 16:
            raise ValueError("bucket_size_in_pages must be between 1 and 65535")
        self._bucket_size = bucket_size_in_pages
        self._num_allocated_buckets = 0
        self._sizes = [0] * MAX_NUM_MEMORIES
        ensure_capacity(self._memory, HEADER_RESERVED_BYTES)
        safe_write(self._memory, 0, self._header_bytes())
        safe_write(self._memory, _BUCKETS_OFFSET, bytes([UNALLOCATED_BUCKET]) * MAX_NUM_BUCKETS)
        logger.debug("MemoryManager initialized bucket_size=%s", bucket_size_in_pages)

    def _load(self) -> None:
        magic, version, num_buckets, bucket_size = _HEADER.unpack(
            self._memory.read(0, _HEADER.size)
        )
        if magic != MAGIC:
            raise CorruptedMemory(f"bad memory manager magic {magic!r}")
        if version != LAYOUT_VERSION:
            raise CorruptedMemory(f"unsupported memory manager layout version {version}")
        self._bucket_size = bucket_size
        self._num_allocated_buckets = num_buckets
        self._sizes = [
            read_u64(self._memory, _SIZES_OFFSET + 8 * i) for i in range(MAX_NUM_MEMORIES)
        ]
        owners = self._memory.read(_BUCKETS_OFFSET, num_buckets)
        for bucket, owner in enumerate(owners):
            if owner == UNALLOCATED_BUCKET:
                raise CorruptedMemory(f"bucket {bucket} is counted as allocated but has no owner")
            self._buckets.setdefault(owner, []).append(bucket)
        logger.debug(
            "MemoryManager loaded buckets=%s bucket_size=%s", num_buckets, bucket_size
        )

    def _header_bytes(self) -> bytes:
        return _HEADER.pack(MAGIC, LAYOUT_VERSION, self._num_allocated_buckets, self._bucket_size)

    @property
    def bucket_size_in_pages(self) -> int:
        return self._bucket_size

    def get(self, memory_id: int) -> "VirtualMemory":
        if not 0 <= memory_id < MAX_NUM_MEMORIES:
            raise ValueError(f"memory id must be in [0, {MAX_NUM_MEMORIES})")
        return VirtualMemory(self, memory_id)

    def size_of(self, memory_id: int) -> int:
        return self._sizes[memory_id]

    def grow(self, memory_id: int, pages: int) -> int:
        previous = self._sizes[memory_id]
        owned = self._buckets.setdefault(memory_id, [])
        required = -(-(previous + pages) // self._bucket_size)
        new_buckets = required - len(owned)

        if new_buckets > 0:
            if self._num_allocated_buckets + new_buckets > MAX_NUM_BUCKETS:
                return -1
            needed_pages = (
                HEADER_RESERVED_BYTES // PAGE_SIZE
                + (self._num_allocated_buckets + new_buckets) * self._bucket_size
            )
            if needed_pages > self._memory.size():
                if self._memory.grow(needed_pages - self._memory.size()) == -1:
                    return -1
            for _ in range(new_buckets):
                bucket = self._num_allocated_buckets
                safe_write(self._memory, _BUCKETS_OFFSET + bucket, bytes([memory_id]))
                owned.append(bucket)
                self._num_allocated_buckets += 1
            safe_write(self._memory, 0, self._header_bytes())

        self._sizes[memory_id] = previous + pages
        write_u64(self._memory, _SIZES_OFFSET + 8 * memory_id, previous + pages)
        return previous

    def _spans(self, memory_id: int, offset: int, length: int):
        """Yield (physical_offset, length) pieces of a virtual byte range."""
        if offset < 0 or offset + length > self._sizes[memory_id] * PAGE_SIZE:
            raise StorageFault(
                f"access [{offset}, {offset + length}) outside of virtual memory {memory_id}"
            )
        bucket_bytes = self._bucket_size * PAGE_SIZE
        owned = self._buckets.get(memory_id, [])
        while length > 0:
            index, within = divmod(offset, bucket_bytes)
            n = min(length, bucket_bytes - within)
            yield HEADER_RESERVED_BYTES + owned[index] * bucket_bytes + within, n
            offset += n
            length -= n

    def read(self, memory_id: int, offset: int, length: int) -> bytes:
        return b"".join(
            self._memory.read(phys, n) for phys, n in self._spans(memory_id, offset, length)
        )

    def write(self, memory_id: int, offset: int, data: bytes) -> None:
        pos = 0
        for phys, n in self._spans(memory_id, offset, len(data)):
            self._memory.write(phys, data[pos:pos + n])
            pos += n


class VirtualMemory(Memory):
    """One region of a MemoryManager, usable anywhere a Memory is expected."""

    def __init__(self, manager: MemoryManager, memory_id: int) -> None:
        self._manager = manager
        self.memory_id = memory_id

    def size(self) -> int:
        return self._manager.size_of(self.memory_id)

    def grow(self, pages: int) -> int:
        return self._manager.grow(self.memory_id, pages)

    def read(self, offset: int, length: int) -> bytes:
        return self._manager.read(self.memory_id, offset, length)

    def write(self, offset: int, data: bytes) -> None:
        self._manager.write(self.memory_id, offset, data)
