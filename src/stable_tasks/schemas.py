from __future__ import annotations

import logging
from typing import Any, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from .cell import U64_MAX
from .errors import ValidationFailed

logger = logging.getLogger(__name__)

TITLE_MIN_LENGTH = 3
DESCRIPTION_MIN_LENGTH = 5


# PUBLIC_INTERFACE
class TaskInput(BaseModel):
    """
    The mutable fields a caller may propose for a task.

    Only types are checked here; length and due date rules depend on the
    current time and are applied by the service through validate_input().
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Buy milk",
                "description": "2% milk, 1 gallon",
                "due_date": 1735689600000000000,
            }
        }
    )

    title: str = Field(..., description=f"Title, at least {TITLE_MIN_LENGTH} characters")
    description: str = Field(
        ..., description=f"Description, at least {DESCRIPTION_MIN_LENGTH} characters"
    )
    due_date: int = Field(..., description="Due timestamp, not earlier than the current time")


class _TaskInputRules(TaskInput):
    title: str = Field(..., min_length=TITLE_MIN_LENGTH)
    description: str = Field(..., min_length=DESCRIPTION_MIN_LENGTH)
    due_date: int = Field(..., ge=0, le=U64_MAX)

    @field_validator("due_date")
    @classmethod
    def due_date_not_in_past(cls, v: int, info: ValidationInfo) -> int:
        now = (info.context or {}).get("now")
        if now is not None and v < now:
            raise ValueError(f"due_date {v} is earlier than the current time {now}")
        return v


class CompletionOut(BaseModel):
    """Response of the complete operation."""

    id: int = Field(..., description="Identifier of the completed task")
    outcome: str = Field(..., description="Whether the task was completed on time or late")


def _describe(exc: ValidationError) -> list:
    content = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err["loc"]) or "input"
        content.append(f"{where}: {err['msg']}")
    return content


# PUBLIC_INTERFACE
def validate_input(payload: Union[TaskInput, Mapping[str, Any]], now: int) -> TaskInput:
    """
    Check title/description minimum lengths and that due_date >= now.

    Returns:
        The validated TaskInput.

    Raises:
        ValidationFailed listing every violated constraint.
    """
    raw = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
    try:
        checked = _TaskInputRules.model_validate(raw, context={"now": now})
    except ValidationError as exc:
        content = _describe(exc)
        logger.debug("Rejected task input: %s", content)
        raise ValidationFailed(content) from exc
    return TaskInput(**checked.model_dump())
