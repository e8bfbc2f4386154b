from enum import Enum
from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Section(str, Enum):
    WORK = "work"
    SCHOOL = "school"
    PERSONAL = "personal"


class Priority(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class Recurring(str, Enum):
    DAILY = "Daily"
    WEEKDAYS = "Weekdays"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class TaskStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETE = "Complete"
    DELETED = "Deleted"


def normalize_section(value):
    if isinstance(value, str):
        return value.strip().lower()
    return value


def normalize_title_case(value):
    """'high' / 'HIGH' -> 'High'; used for priority and recurring enums."""
    if isinstance(value, str):
        return value.strip().capitalize()
    return value


SectionField = Annotated[Section, BeforeValidator(normalize_section)]
PriorityField = Annotated[Priority, BeforeValidator(normalize_title_case)]
RecurringField = Annotated[Recurring, BeforeValidator(normalize_title_case)]


class TimeOfDay(BaseModel):
    """12-hour clock time: hour "1".."12", minute "00".."59", period AM|PM."""
    hour: str
    minute: str = "00"
    period: str

    @field_validator("hour", mode="before")
    @classmethod
    def _hour(cls, v):
        hour = int(str(v).strip())
        if not 1 <= hour <= 12:
            raise ValueError("hour must be between 1 and 12")
        return str(hour)

    @field_validator("minute", mode="before")
    @classmethod
    def _minute(cls, v):
        if v is None or str(v).strip() == "":
            return "00"
        minute = int(str(v).strip())
        if not 0 <= minute <= 59:
            raise ValueError("minute must be between 0 and 59")
        return f"{minute:02d}"

    @field_validator("period", mode="before")
    @classmethod
    def _period(cls, v):
        period = str(v).strip().upper().replace(".", "")
        if period not in ("AM", "PM"):
            raise ValueError("period must be AM or PM")
        return period


class Task(BaseModel):
    id: str
    title: str
    section: SectionField
    date: str  # ISO format: YYYY-MM-DD
    start_time: TimeOfDay
    end_time: Optional[TimeOfDay] = None
    priority: Optional[PriorityField] = None
    recurring: Optional[RecurringField] = None
    collaborators: list[str] = []
    status: TaskStatus = TaskStatus.PENDING
    created_by: str
    deleted_at: Optional[str] = None  # ISO datetime; set means archived
    created_at: str
    updated_at: str

    @property
    def is_archived(self) -> bool:
        return self.deleted_at is not None


class TaskCreate(BaseModel):
    title: str
    section: SectionField
    date: str
    start_time: TimeOfDay
    end_time: Optional[TimeOfDay] = None
    priority: Optional[PriorityField] = None
    recurring: Optional[RecurringField] = None
    collaborators: list[str] = []


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    section: Optional[SectionField] = None
    date: Optional[str] = None
    start_time: Optional[TimeOfDay] = None
    end_time: Optional[TimeOfDay] = None
    priority: Optional[PriorityField] = None
    recurring: Optional[RecurringField] = None
    collaborators: Optional[list[str]] = None


class User(BaseModel):
    email: str
    name: Optional[str] = None

    @property
    def username(self) -> str:
        return self.name or self.email.split("@")[0] or "unknown"


class CurrentUser(BaseModel):
    """Verified identity attached to every core call."""
    id: str
    email: str


class TaskRef(BaseModel):
    """Lightweight task reference as shown to (or sent back by) the chat client."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("_id", "id", "taskId"))
    title: str = ""
    section: Optional[str] = None
    status: Optional[str] = None
    deleted_at: Optional[str] = Field(default=None, validation_alias=AliasChoices("deletedAt", "deleted_at"))
    is_archived: bool = Field(default=False, validation_alias=AliasChoices("isArchived", "is_archived"))
    source: Optional[str] = None
    index: Optional[int] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v)

    @field_validator("deleted_at", mode="before")
    @classmethod
    def _stringify_deleted(cls, v):
        return None if v in (None, "") else str(v)

    @field_validator("is_archived", mode="before")
    @classmethod
    def _archived_flag(cls, v):
        return bool(v)

    def looks_archived(self) -> bool:
        return bool(self.deleted_at) or self.is_archived or self.status == TaskStatus.DELETED.value

    @classmethod
    def from_task(cls, task: Task) -> "TaskRef":
        return cls(
            id=task.id,
            title=task.title,
            section=task.section.value,
            status=task.status.value,
            deleted_at=task.deleted_at,
            is_archived=task.is_archived,
        )


class LastTaskContext(BaseModel):
    source: Optional[str] = None  # "active" | "archive"
    tasks: list[TaskRef] = []


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    last_task_context: Optional[LastTaskContext] = Field(default=None, alias="lastTaskContext")


class ChatReply(BaseModel):
    """Body of every chat response. Logical failures still travel as HTTP 200."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    reply: str
    suggestions: Optional[list[str]] = None
    awaiting_confirmation: Optional[bool] = None
    action: Optional[str] = None
    task_id: Optional[str] = None


# Error taxonomy
class TaskChatError(Exception):
    """Base class for errors raised inside the chat core."""

    def __init__(self, message: str, suggestions: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions


class InvalidRequest(TaskChatError):
    """User input or oracle output fails a precondition."""


class ConflictError(TaskChatError):
    """Overlap or duplicate task."""


class NotFoundError(TaskChatError):
    """No task matches the resolved reference."""


class UpstreamOracleError(TaskChatError):
    """The LLM oracle timed out, failed or returned something unusable."""


class MalformedOracleResponse(UpstreamOracleError):
    """The oracle answered, but not with a JSON object."""
