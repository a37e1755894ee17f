from __future__ import annotations

import logging
from typing import Any, Mapping, Union

from .errors import AlreadyCompleted, AuthenticationFailed, NotFound
from .models import Task
from .repositories import TaskRepository
from .schemas import TaskInput, validate_input

logger = logging.getLogger(__name__)

Payload = Union[TaskInput, Mapping[str, Any]]


# PUBLIC_INTERFACE
class TaskService:
    """
    CRUD protocol over a TaskRepository.

    Caller identity and the current time are passed explicitly to every
    operation. Each operation finishes all of its checks before it writes,
    and checks run in the order existence, ownership, lifecycle, input.

    Expected failures are raised as TaskError subclasses; StorageFault
    subclasses propagate untouched.

    The service does no locking: the host must not run two operations on
    the same service at once.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self._repo = repository

    @property
    def repository(self) -> TaskRepository:
        return self._repo

    def _get(self, task_id: int) -> Task:
        task = self._repo.get(task_id)
        if task is None:
            logger.debug("Task not found id=%s", task_id)
            raise NotFound(task_id)
        return task

    def _get_owned(self, caller: str, task_id: int) -> Task:
        task = self._get(task_id)
        if task.owner != caller:
            logger.debug("Rejected caller=%s for task id=%s owned by %s", caller, task_id, task.owner)
            raise AuthenticationFailed(caller, task_id)
        return task

    def read(self, task_id: int) -> Task:
        """Return the task; no ownership check is applied to reads."""
        return self._get(task_id)

    def create(self, caller: str, payload: Payload, now: int) -> Task:
        data = validate_input(payload, now)
        task = self._repo.add(
            lambda task_id: Task(
                id=task_id,
                owner=caller,
                title=data.title,
                description=data.description,
                due_date=data.due_date,
                completed=False,
                created_at=now,
                updated_at=None,
            )
        )
        logger.info("Task created id=%s owner=%s due_date=%s", task.id, caller, task.due_date)
        return task

    def update(self, caller: str, task_id: int, payload: Payload, now: int) -> Task:
        task = self._get_owned(caller, task_id)
        if task.completed:
            logger.debug("Rejected change to completed task id=%s", task_id)
            raise AlreadyCompleted(task_id)
        data = validate_input(payload, now)

        updated = task.model_copy(
            update={
                "title": data.title,
                "description": data.description,
                "due_date": data.due_date,
                "updated_at": now,
            }
        )
        self._repo.put(updated)
        logger.info("Task updated id=%s owner=%s", task_id, caller)
        return updated

    def complete(self, caller: str, task_id: int, now: int) -> str:
        """
        Mark the task completed and describe whether that happened on time.

        On time means due_date >= now at the moment of completion.
        """
        task = self._get_owned(caller, task_id)
        if task.completed:
            logger.debug("Rejected change to completed task id=%s", task_id)
            raise AlreadyCompleted(task_id)

        done = task.model_copy(update={"completed": True, "updated_at": now})
        self._repo.put(done)
        on_time = done.due_date >= now
        logger.info("Task completed id=%s owner=%s on_time=%s", task_id, caller, on_time)
        if on_time:
            return f"Task {task_id} was completed on time"
        return f"Task {task_id} was completed late"

    def delete(self, caller: str, task_id: int) -> Task:
        """Remove the task. Completed tasks may be deleted too."""
        self._get_owned(caller, task_id)
        removed = self._repo.remove(task_id)
        if removed is None:
            raise NotFound(task_id)
        logger.info("Task deleted id=%s owner=%s", task_id, caller)
        return removed
