from __future__ import annotations

import os
from pathlib import Path

import pytest

# Ensure we default to memory backend for tests to avoid filesystem dependencies
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from stable_tasks.memory import InMemoryMemory  # noqa: E402
from stable_tasks.repositories import TaskRepository  # noqa: E402
from stable_tasks.service import TaskService  # noqa: E402


@pytest.fixture()
def repository() -> TaskRepository:
    """Volatile repository with one-page buckets to keep regions small."""
    return TaskRepository(InMemoryMemory(), bucket_size_in_pages=1)


@pytest.fixture()
def service(repository: TaskRepository) -> TaskService:
    return TaskService(repository)


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "store" / "tasks.db")
