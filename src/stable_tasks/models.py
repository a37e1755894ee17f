from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cell import U64_MAX
from .errors import CorruptedMemory, EncodingBoundExceeded

MAX_RECORD_SIZE = 1024


# PUBLIC_INTERFACE
class Task(BaseModel):
    """
    A persisted task record.

    Fields:
    - id: Unique identifier, never reused even after deletion
    - owner: Identity of the creating caller; immutable
    - title / description: Caller-supplied text (validated on input)
    - due_date: Timestamp (nanoseconds) the task is due
    - completed: Completion flag; once true the record never changes again
    - created_at: Creation timestamp
    - updated_at: Timestamp of the last successful mutation, if any
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 0,
                "owner": "alice",
                "title": "Buy milk",
                "description": "2% milk, 1 gallon",
                "due_date": 1735689600000000000,
                "completed": False,
                "created_at": 1735686000000000000,
                "updated_at": None,
            }
        }
    )

    id: int = Field(..., ge=0, le=U64_MAX, description="Unique identifier of the task")
    owner: str = Field(..., description="Identity of the caller that created the task")
    title: str = Field(..., description="Short title of the task")
    description: str = Field(..., description="Detailed description of the task")
    due_date: int = Field(..., ge=0, le=U64_MAX, description="Due timestamp")
    completed: bool = Field(default=False, description="Completion status flag")
    created_at: int = Field(..., ge=0, le=U64_MAX, description="Creation timestamp")
    updated_at: Optional[int] = Field(default=None, description="Last update timestamp")

    def to_bytes(self) -> bytes:
        """
        Encode the record as compact UTF-8 JSON.

        Raises:
            EncodingBoundExceeded if the encoding is longer than MAX_RECORD_SIZE.
        """
        data = self.model_dump_json().encode("utf-8")
        if len(data) > MAX_RECORD_SIZE:
            raise EncodingBoundExceeded(len(data), MAX_RECORD_SIZE)
        return data

    @classmethod
    def from_bytes(cls, data: bytes) -> "Task":
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            raise CorruptedMemory(f"stored task record cannot be decoded: {exc}") from exc
