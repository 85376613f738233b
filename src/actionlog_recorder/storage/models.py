"""Document models shared by the recorder, the API and persistence backends."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ACTION_LOG_COLLECTION = "actionlogs"
TASK_COLLECTION = "tasks"


class ActionRecord(BaseModel):
    """One unit of user activity, as stored in the actionlogs collection."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    task_id: str = Field(alias="taskId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    timestamp: datetime
    type: str = Field(min_length=1)
    code_state: str | dict[str, Any] | None = Field(default=None, alias="codeState")
    # Assigned at persistence time, never by the producer.
    log_id: int | None = Field(default=None, alias="logId", ge=0)

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def with_log_id(self, log_id: int) -> "ActionRecord":
        return self.model_copy(update={"log_id": log_id})


class TaskDocument(BaseModel):
    """A known task; action records may only reference these when filtering is on."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId", min_length=1)


class ChangeEvent(BaseModel):
    """A change notification delivered by the store's watch subscription."""

    collection: str
    operation_type: str


def describe_validation_error(exc: ValidationError) -> str:
    """Flatten a pydantic error into ``Validation error: field: kind`` form."""
    message = "Validation error"
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ())) or "record"
        message += f": {path}: {error.get('type', 'invalid')}"
    return message
