from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Iterator, Optional

from .btreemap import BTreeMap
from .cell import IdCell
from .memory import InMemoryMemory, Memory
from .memory_manager import BUCKET_SIZE_IN_PAGES, MemoryManager
from .models import MAX_RECORD_SIZE, Task
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

ID_MEMORY_ID = 0
RECORDS_MEMORY_ID = 1


# PUBLIC_INTERFACE
class TaskRepository:
    """
    Owner of the persisted state: the identifier cell in region 0 and the
    ordered record index in region 1 of one flat memory.

    Every mutation runs inside one memory transaction, so it persists
    completely or not at all. Re-opening a repository on the same memory
    restores both structures.
    """

    def __init__(self, memory: Memory, bucket_size_in_pages: int = BUCKET_SIZE_IN_PAGES) -> None:
        self._memory = memory
        self._bucket_size_in_pages = bucket_size_in_pages
        with memory.transaction():
            self._open()
        logger.info(
            "TaskRepository ready tasks=%s next_id=%s", len(self._index), self._ids.get()
        )

    def _open(self) -> None:
        self._manager = MemoryManager(self._memory, self._bucket_size_in_pages)
        self._ids = IdCell(self._manager.get(ID_MEMORY_ID))
        self._index = BTreeMap(self._manager.get(RECORDS_MEMORY_ID), MAX_RECORD_SIZE)

    @contextmanager
    def _atomic(self) -> Generator[None, None, None]:
        try:
            with self._memory.transaction():
                yield
        except BaseException:
            # The bytes were rolled back; headers cached in memory were not.
            self._open()
            raise

    def get(self, task_id: int) -> Optional[Task]:
        data = self._index.get(task_id)
        return Task.from_bytes(data) if data is not None else None

    def add(self, build: Callable[[int], Task]) -> Task:
        """
        Store a new task built around the next identifier.

        The record is encoded and the index space reserved before the
        identifier is issued, so an oversized record or a full memory
        consumes nothing.
        """
        task = build(self._ids.get())
        encoded = task.to_bytes()
        with self._atomic():
            self._index.reserve_for_insert(task.id)
            self._ids.next_id()
            self._index.insert(task.id, encoded)
        return task

    def put(self, task: Task) -> Optional[Task]:
        """Replace the stored record for task.id. Return the previous record."""
        encoded = task.to_bytes()
        with self._atomic():
            previous = self._index.insert(task.id, encoded)
        return Task.from_bytes(previous) if previous is not None else None

    def remove(self, task_id: int) -> Optional[Task]:
        with self._atomic():
            data = self._index.remove(task_id)
        return Task.from_bytes(data) if data is not None else None

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self) -> Iterator[Task]:
        for _, data in self._index.items():
            yield Task.from_bytes(data)


# PUBLIC_INTERFACE
def open_repository(settings: Optional[Settings] = None) -> TaskRepository:
    """
    Build the repository configured by settings.
    - memory: volatile InMemoryMemory
    - sqlite: durable SQLiteMemory at settings.sqlite_db_path
    """
    settings = settings or get_settings()
    memory: Memory
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteMemory

        memory = SQLiteMemory(settings.sqlite_db_path, max_pages=settings.memory_max_pages)
    else:
        memory = InMemoryMemory(max_pages=settings.memory_max_pages)
    return TaskRepository(memory, settings.bucket_size_in_pages)
