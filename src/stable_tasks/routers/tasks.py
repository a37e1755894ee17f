from __future__ import annotations

import threading
import time
from typing import Optional

from fastapi import APIRouter, Depends, Path, status

from ..auth import get_caller_dependency
from ..cell import U64_MAX
from ..models import Task
from ..repositories import open_repository
from ..schemas import CompletionOut, TaskInput
from ..service import TaskService

router = APIRouter(
    prefix="/api/v1/tasks",
    tags=["tasks"],
)

caller_dependency = get_caller_dependency()

# The store expects run-to-completion calls; sync endpoints run in a threadpool.
_serial = threading.Lock()

_ERROR_RESPONSES = {
    401: {"description": "Caller identity missing or invalid"},
    403: {"description": "Caller is not the owner of the task"},
    404: {"description": "Task not found"},
}


_service: Optional[TaskService] = None


# PUBLIC_INTERFACE
def get_service() -> TaskService:
    """Return the process-wide TaskService built from settings."""
    global _service
    with _serial:
        if _service is None:
            _service = TaskService(open_repository())
        return _service


# PUBLIC_INTERFACE
def current_time() -> int:
    """Current wall-clock time in nanoseconds, as handed to the service."""
    return time.time_ns()



# PUBLIC_INTERFACE
@router.post(
    "/",
    response_model=Task,
    status_code=status.HTTP_201_CREATED,
    summary="Create Task",
    description="Create a new task owned by the caller and return it.",
    responses={
        201: {"description": "Task created successfully"},
        401: _ERROR_RESPONSES[401],
        422: {"description": "Validation error"},
    },
)
def create_task(
    payload: TaskInput,
    caller: str = Depends(caller_dependency),
    now: int = Depends(current_time),
    service: TaskService = Depends(get_service),
) -> Task:
    with _serial:
        return service.create(caller, payload, now)


# PUBLIC_INTERFACE
@router.get(
    "/{task_id}",
    response_model=Task,
    summary="Get Task",
    description="Get a single task by ID. Any caller may read any task.",
    responses={
        200: {"description": "Task found"},
        404: _ERROR_RESPONSES[404],
    },
)
def get_task(
    task_id: int = Path(..., ge=0, le=U64_MAX, description="Identifier of the task"),
    service: TaskService = Depends(get_service),
) -> Task:
    with _serial:
        return service.read(task_id)


# PUBLIC_INTERFACE
@router.put(
    "/{task_id}",
    response_model=Task,
    summary="Update Task",
    description="Replace title, description and due date of an open task owned by the caller.",
    responses={
        200: {"description": "Task updated"},
        **_ERROR_RESPONSES,
        409: {"description": "Task is already completed"},
        422: {"description": "Validation error"},
    },
)
def update_task(
    payload: TaskInput,
    task_id: int = Path(..., ge=0, le=U64_MAX, description="Identifier of the task"),
    caller: str = Depends(caller_dependency),
    now: int = Depends(current_time),
    service: TaskService = Depends(get_service),
) -> Task:
    with _serial:
        return service.update(caller, task_id, payload, now)


# PUBLIC_INTERFACE
@router.post(
    "/{task_id}/complete",
    response_model=CompletionOut,
    summary="Complete Task",
    description="Mark an open task owned by the caller as completed.",
    responses={
        200: {"description": "Task completed; outcome says whether it was on time"},
        **_ERROR_RESPONSES,
        409: {"description": "Task is already completed"},
    },
)
def complete_task(
    task_id: int = Path(..., ge=0, le=U64_MAX, description="Identifier of the task"),
    caller: str = Depends(caller_dependency),
    now: int = Depends(current_time),
    service: TaskService = Depends(get_service),
) -> CompletionOut:
    with _serial:
        outcome = service.complete(caller, task_id, now)
    return CompletionOut(id=task_id, outcome=outcome)


# PUBLIC_INTERFACE
@router.delete(
    "/{task_id}",
    response_model=Task,
    summary="Delete Task",
    description="Delete a task owned by the caller and return the removed record.",
    responses={
        200: {"description": "Task deleted"},
        **_ERROR_RESPONSES,
    },
)
def delete_task(
    task_id: int = Path(..., ge=0, le=U64_MAX, description="Identifier of the task"),
    caller: str = Depends(caller_dependency),
    service: TaskService = Depends(get_service),
) -> Task:
    with _serial:
        return service.delete(caller, task_id)
