from __future__ import annotations

import pytest

from stable_tasks.db import SQLiteMemory
from stable_tasks.errors import StorageExhausted, StorageFault
from stable_tasks.memory import PAGE_SIZE, InMemoryMemory, ensure_capacity, read_u64, safe_write, write_u64


@pytest.fixture(params=["memory", "sqlite"])
def make_memory(request, db_path):
    def _make(max_pages=None):
        if request.param == "sqlite":
            return SQLiteMemory(db_path, max_pages=max_pages)
        return InMemoryMemory(max_pages=max_pages)

    return _make


class TestFlatMemory:
    def test_starts_empty_and_grows(self, make_memory):
        memory = make_memory()
        assert memory.size() == 0
        assert memory.grow(2) == 0
        assert memory.grow(1) == 2
        assert memory.size() == 3

    def test_untouched_bytes_read_as_zero(self, make_memory):
        memory = make_memory()
        memory.grow(1)
        assert memory.read(100, 16) == bytes(16)

    def test_write_spanning_pages(self, make_memory):
        memory = make_memory()
        memory.grow(2)
        data = bytes(range(256)) * 4
        memory.write(PAGE_SIZE - 500, data)
        assert memory.read(PAGE_SIZE - 500, len(data)) == data
        assert memory.read(PAGE_SIZE - 501, 1) == b"\x00"

    def test_out_of_bounds_access_is_fatal(self, make_memory):
        memory = make_memory()
        memory.grow(1)
        with pytest.raises(StorageFault):
            memory.read(PAGE_SIZE - 4, 8)
        with pytest.raises(StorageFault):
            memory.write(PAGE_SIZE, b"x")

    def test_capacity_limit(self, make_memory):
        memory = make_memory(max_pages=2)
        assert memory.grow(2) == 0
        assert memory.grow(1) == -1
        assert memory.size() == 2

    def test_ensure_capacity_raises_when_exhausted(self, make_memory):
        memory = make_memory(max_pages=1)
        ensure_capacity(memory, PAGE_SIZE)
        with pytest.raises(StorageExhausted):
            ensure_capacity(memory, PAGE_SIZE + 1)

    def test_u64_helpers_grow_on_demand(self, make_memory):
        memory = make_memory()
        write_u64(memory, PAGE_SIZE + 8, 2 ** 64 - 1)
        assert memory.size() == 2
        assert read_u64(memory, PAGE_SIZE + 8) == 2 ** 64 - 1


class TestSQLiteDurability:
    def test_reopen_keeps_size_and_bytes(self, db_path):
        memory = SQLiteMemory(db_path)
        safe_write(memory, 10, b"durable")
        memory.grow(3)

        reopened = SQLiteMemory(db_path)
        assert reopened.size() == 4
        assert reopened.read(10, 7) == b"durable"


class TestTransactions:
    def test_commit_keeps_writes(self, make_memory):
        memory = make_memory()
        with memory.transaction():
            safe_write(memory, 0, b"kept")
            safe_write(memory, PAGE_SIZE + 2, b"too")
        assert memory.size() == 2
        assert memory.read(0, 4) == b"kept"
        assert memory.read(PAGE_SIZE + 2, 3) == b"too"

    def test_failure_rolls_back_writes_and_growth(self, make_memory):
        memory = make_memory()
        safe_write(memory, 0, b"before")
        with pytest.raises(RuntimeError):
            with memory.transaction():
                memory.write(0, b"during")
                safe_write(memory, 3 * PAGE_SIZE, b"new page")
                assert memory.read(0, 6) == b"during"
                raise RuntimeError("write failed")
        assert memory.size() == 1
        assert memory.read(0, 6) == b"before"
        memory.grow(3)
        assert memory.read(3 * PAGE_SIZE, 8) == bytes(8)

    def test_nested_transaction_joins_outer(self, make_memory):
        memory = make_memory()
        memory.grow(1)
        with pytest.raises(RuntimeError):
            with memory.transaction():
                with memory.transaction():
                    memory.write(0, b"inner")
                raise RuntimeError("outer failed")
        assert memory.read(0, 5) == bytes(5)

    def test_rolled_back_sqlite_file_is_unchanged(self, db_path):
        memory = SQLiteMemory(db_path)
        safe_write(memory, 0, b"before")
        with pytest.raises(RuntimeError):
            with memory.transaction():
                safe_write(memory, 2 * PAGE_SIZE, b"after")
                raise RuntimeError("write failed")

        reopened = SQLiteMemory(db_path)
        assert reopened.size() == 1
        assert reopened.read(0, 6) == b"before"
