"""
Persistent task record store.

The storage stack, bottom up: a flat Memory (memory/db), virtual memories
carved from it (memory_manager), an identifier cell (cell) and a B-tree
index (allocator/btreemap), owned by a TaskRepository and driven by the
TaskService CRUD protocol. The FastAPI app lives in stable_tasks.main.
"""

from .errors import (  # noqa: F401
    AlreadyCompleted,
    AuthenticationFailed,
    NotFound,
    StorageFault,
    TaskError,
    ValidationFailed,
)
from .models import Task  # noqa: F401
from .repositories import TaskRepository, open_repository  # noqa: F401
from .schemas import TaskInput  # noqa: F401
from .service import TaskService  # noqa: F401
