"""
Structured intents produced by the resolver.

The oracle's JSON is validated into these models (camelCase on the wire,
snake_case in Python). Anything outside the closed IntentType / ReferenceType
sets fails validation and becomes a validation_error intent upstream.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from models import PriorityField, RecurringField, Recurring, SectionField, TimeOfDay

# Sentinel for "remove the recurrence" in an edit
RECURRING_NONE = "__NONE__"


class IntentType(str, Enum):
    CREATE_TASK_DIRECT = "create_task_direct"
    CREATE_TASK_CONFIRMATION = "create_task_confirmation"
    SHOW_TASKS = "show_tasks"
    SCHEDULE_QUERY = "schedule_query"
    EDIT_TASK_CONFIRMATION = "edit_task_confirmation"
    DELETE_SINGLE_TASK_CONFIRMATION = "delete_single_task_confirmation"
    DELETE_MULTIPLE_TASKS_CONFIRMATION = "delete_multiple_tasks_confirmation"
    RESTORE_TASK_CONFIRMATION = "restore_task_confirmation"
    RESTORE_MULTIPLE_TASKS_CONFIRMATION = "restore_multiple_tasks_confirmation"
    SHOW_ARCHIVED_TASKS = "show_archived_tasks"
    LIST_COLLABORATORS = "list_collaborators"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


CREATE_TYPES = (IntentType.CREATE_TASK_DIRECT, IntentType.CREATE_TASK_CONFIRMATION)
DELETE_TYPES = (IntentType.DELETE_SINGLE_TASK_CONFIRMATION, IntentType.DELETE_MULTIPLE_TASKS_CONFIRMATION)
RESTORE_TYPES = (IntentType.RESTORE_TASK_CONFIRMATION, IntentType.RESTORE_MULTIPLE_TASKS_CONFIRMATION)


class ReferenceType(str, Enum):
    SPECIFIC_CONTEXTUAL_TASK = "specific_contextual_task"
    MULTIPLE_CONTEXTUAL_TASKS = "multiple_contextual_tasks"
    MULTIPLE_SIMILAR_TASKS = "multiple_similar_tasks"
    BY_SECTION = "by_section"
    BY_NAME = "by_name"


class _Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", coerce_numbers_to_str=True
    )


def _none_if_blank(v):
    if isinstance(v, str) and v.strip().lower() in ("", "none", "null"):
        return None
    return v


def _id_list(v):
    """Accept ["id", ...] or [{"_id": "id"}, ...]."""
    if v is None:
        return []
    ids = []
    for item in v:
        if isinstance(item, dict):
            item = item.get("_id") or item.get("id")
        if item:
            ids.append(str(item))
    return ids


class TaskData(_Payload):
    title: Optional[str] = None
    section: Optional[SectionField] = None
    date: Optional[str] = None
    start_time: Optional[TimeOfDay] = None
    end_time: Optional[TimeOfDay] = None
    priority: Optional[PriorityField] = None
    recurring: Optional[RecurringField] = None
    collaborators: Optional[list[str]] = None

    @field_validator("priority", "recurring", "end_time", mode="before")
    @classmethod
    def _blank_optional(cls, v):
        return None if v in ({}, []) else _none_if_blank(v)


class EditData(_Payload):
    type: Optional[ReferenceType] = None
    task_id: Optional[str] = None
    task_identifier: Optional[str] = None
    new_title: Optional[str] = None
    new_time: Optional[TimeOfDay] = None
    new_end_time: Optional[TimeOfDay] = None
    new_date: Optional[str] = None
    new_section: Optional[SectionField] = None
    new_priority: Optional[PriorityField] = None
    new_recurring: Optional[str] = None
    collaborators_add: Optional[list[str]] = None
    collaborators_remove: Optional[list[str]] = None
    collaborators_set: Optional[list[str]] = None

    @field_validator("new_priority", mode="before")
    @classmethod
    def _blank_priority(cls, v):
        return _none_if_blank(v)

    @field_validator("new_recurring", mode="before")
    @classmethod
    def _recurring(cls, v):
        if v is None:
            return None
        value = str(v).strip()
        if value.upper() == RECURRING_NONE or value.lower() in ("none", ""):
            return RECURRING_NONE
        return Recurring(value.capitalize()).value

    @property
    def removes_end_time(self) -> bool:
        """An explicit null newEndTime clears the end time."""
        return "new_end_time" in self.model_fields_set and self.new_end_time is None


class DeleteData(_Payload):
    type: Optional[ReferenceType] = None
    task_id: Optional[str] = None
    task_ids: list[str] = []
    task_identifier: Optional[str] = None
    task_identifiers: list[str] = []
    section: Optional[SectionField] = None

    @field_validator("task_ids", mode="before")
    @classmethod
    def _task_ids(cls, v):
        return _id_list(v)

    @field_validator("task_identifiers", mode="before")
    @classmethod
    def _identifiers(cls, v):
        return [str(name) for name in v if name] if v else []


class RestoreData(_Payload):
    type: Optional[ReferenceType] = None
    task_id: Optional[str] = None
    task_ids: list[str] = []
    task_identifier: Optional[str] = None

    @field_validator("task_ids", mode="before")
    @classmethod
    def _task_ids(cls, v):
        return _id_list(v)

    def referenced_ids(self) -> list[str]:
        ids = list(self.task_ids)
        if self.task_id:
            ids.append(self.task_id)
        return ids


class Intent(_Payload):
    type: IntentType
    message: Optional[str] = None
    suggestions: Optional[list[str]] = None
    task_data: Optional[TaskData] = None
    edit_data: Optional[EditData] = None
    delete_data: Optional[DeleteData] = None
    restore_data: Optional[RestoreData] = None
    date: Optional[str] = None
    section: Optional[str] = None

    @field_validator("section", mode="before")
    @classmethod
    def _section(cls, v):
        v = _none_if_blank(v)
        if isinstance(v, str):
            v = v.strip().lower()
            return None if v == "all" else v
        return v

    @classmethod
    def validation_error(cls, message: str, suggestions: Optional[list[str]] = None) -> "Intent":
        return cls(type=IntentType.VALIDATION_ERROR, message=message, suggestions=suggestions)
