from __future__ import annotations

from typing import List, Optional


# PUBLIC_INTERFACE
class TaskError(Exception):
    """
    Base class for expected outcomes the caller can recover from.

    Every subclass carries a human-readable message naming the offending id,
    field or caller, and a short `kind` used by the HTTP layer.
    """

    kind = "TaskError"

    def __init__(self, msg: str) -> None:
        super().__init__(msg)
        self.msg = msg

    @property
    def detail(self) -> Optional[List[str]]:
        return None


class NotFound(TaskError):
    kind = "NotFound"

    def __init__(self, task_id: int) -> None:
        super().__init__(f"a task with id={task_id} not found")
        self.task_id = task_id


class ValidationFailed(TaskError):
    kind = "ValidationFailed"

    def __init__(self, content: List[str]) -> None:
        super().__init__("; ".join(content))
        self.content = list(content)

    @property
    def detail(self) -> Optional[List[str]]:
        return self.content


class AuthenticationFailed(TaskError):
    kind = "AuthenticationFailed"

    def __init__(self, caller: str, task_id: int) -> None:
        super().__init__(f"caller {caller!r} is not the owner of the task with id={task_id}")
        self.caller = caller
        self.task_id = task_id


class AlreadyCompleted(TaskError):
    kind = "AlreadyCompleted"

    def __init__(self, task_id: int) -> None:
        super().__init__(f"the task with id={task_id} is already completed")
        self.task_id = task_id


# PUBLIC_INTERFACE
class StorageFault(Exception):
    """
    Unrecoverable storage condition.

    These are never folded into TaskError: they abort the triggering
    operation and propagate to the host.
    """


class StorageExhausted(StorageFault):
    """The durable memory (or the identifier space) cannot grow any further."""


class EncodingBoundExceeded(StorageFault):
    def __init__(self, size: int, bound: int) -> None:
        super().__init__(f"encoded record is {size} bytes, the bound is {bound} bytes")
        self.size = size
        self.bound = bound


class CorruptedMemory(StorageFault):
    """Stored bytes do not match the expected layout."""
