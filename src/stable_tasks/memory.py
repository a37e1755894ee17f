from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from .errors import StorageExhausted, StorageFault

PAGE_SIZE = 65536

_U64 = struct.Struct("<Q")


# PUBLIC_INTERFACE
class Memory(ABC):
    """
    A flat, page-granular byte space.

    Implementations only ever grow; bytes that were never written read back
    as zeros.
    """

    @abstractmethod
    def size(self) -> int:
        """Return the current size in pages."""

    @abstractmethod
    def grow(self, pages: int) -> int:
        """Grow by `pages` pages. Return the previous size, or -1 if capacity is exhausted."""

    @abstractmethod
    def read(self, offset: int, length: int) -> bytes:
        """Return `length` bytes starting at `offset`."""

    @abstractmethod
    def write(self, offset: int, data: bytes) -> None:
        """Write `data` at `offset`. The range must already be within size()."""

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Group reads and writes so that they persist together or not at all.

        Nested calls join the outer transaction. The base implementation
        offers no rollback.
        """
        yield

    def _check_bounds(self, offset: int, length: int) -> None:
        if offset < 0 or offset + length > self.size() * PAGE_SIZE:
            raise StorageFault(
                f"access [{offset}, {offset + length}) outside of memory of {self.size()} pages"
            )


class InMemoryMemory(Memory):
    """
    Volatile memory suitable for testing and the default runtime.

    Pages are materialized on first write, so large sizes cost nothing
    until they are touched.
    """

    def __init__(self, max_pages: Optional[int] = None) -> None:
        self._pages: Dict[int, bytearray] = {}
        self._size = 0
        self._max_pages = max_pages
        # page_no -> image before the open transaction first touched it (None: absent)
        self._journal: Optional[Dict[int, Optional[bytes]]] = None

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        if self._journal is not None:
            yield
            return
        self._journal = {}
        size = self._size
        try:
            yield
        except BaseException:
            for page_no, image in self._journal.items():
                if image is None:
                    self._pages.pop(page_no, None)
                else:
                    self._pages[page_no] = bytearray(image)
            self._size = size
            raise
        finally:
            self._journal = None

    def size(self) -> int:
        return self._size

    def grow(self, pages: int) -> int:
        if self._max_pages is not None and self._size + pages > self._max_pages:
            return -1
        previous = self._size
        self._size += pages
        return previous

    def read(self, offset: int, length: int) -> bytes:
        self._check_bounds(offset, length)
        out = bytearray()
        for page_no, start, end in page_spans(offset, length):
            page = self._pages.get(page_no)
            out += page[start:end] if page is not None else bytes(end - start)
        return bytes(out)

    def write(self, offset: int, data: bytes) -> None:
        self._check_bounds(offset, len(data))
        pos = 0
        for page_no, start, end in page_spans(offset, len(data)):
            if self._journal is not None and page_no not in self._journal:
                existing = self._pages.get(page_no)
                self._journal[page_no] = bytes(existing) if existing is not None else None
            page = self._pages.setdefault(page_no, bytearray(PAGE_SIZE))
            page[start:end] = data[pos:pos + end - start]
            pos += end - start


def page_spans(offset: int, length: int):
    """Yield (page_no, start, end) slices covering [offset, offset + length)."""
    while length > 0:
        page_no, start = divmod(offset, PAGE_SIZE)
        end = min(PAGE_SIZE, start + length)
        yield page_no, start, end
        offset += end - start
        length -= end - start


# PUBLIC_INTERFACE
def ensure_capacity(memory: Memory, end: int) -> None:
    """
    Grow `memory` so that the byte range up to `end` is addressable.

    Raises:
        StorageExhausted if the memory refuses to grow.
    """
    available = memory.size() * PAGE_SIZE
    if end <= available:
        return
    missing = -(-(end - available) // PAGE_SIZE)
    if memory.grow(missing) == -1:
        raise StorageExhausted(f"unable to grow memory by {missing} pages")


def safe_write(memory: Memory, offset: int, data: bytes) -> None:
    ensure_capacity(memory, offset + len(data))
    memory.write(offset, data)


def read_u64(memory: Memory, offset: int) -> int:
    return _U64.unpack(memory.read(offset, _U64.size))[0]


def write_u64(memory: Memory, offset: int, value: int) -> None:
    safe_write(memory, offset, _U64.pack(value))
