"""
Tests for resolver.py and fallback.py - restore fast path, oracle checks, keyword fallback.
The oracle is never called for real; call_oracle is replaced per test.
"""
import asyncio
import pytest
import sys
import os
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intents import IntentType, ReferenceType
from models import LastTaskContext, MalformedOracleResponse, TaskRef, UpstreamOracleError
from resolver import IntentResolver, match_restore_command, strip_code_fence
from sessions import ContextSource
from timeutils import today, tomorrow

USER = "alice@example.com"


def archive_refs(*titles):
    return [
        TaskRef(id=f"a{i}", title=title, source="archive", is_archived=True, index=i)
        for i, title in enumerate(titles, start=1)
    ]


def show_archive(store, *titles):
    store.set_task_context(
        USER,
        [{"_id": f"a{i}", "title": title, "deletedAt": "2026-03-01T10:00:00"} for i, title in enumerate(titles, start=1)],
        source=ContextSource.ARCHIVE,
    )


def show_active(store, *titles):
    store.set_task_context(
        USER,
        [{"_id": f"t{i}", "title": title, "status": "Pending"} for i, title in enumerate(titles, start=1)],
        source=ContextSource.ACTIVE,
    )


@pytest.fixture
def resolver(store):
    resolver = IntentResolver(store)
    resolver.call_oracle = AsyncMock(side_effect=AssertionError("oracle should not be called"))
    return resolver


def with_oracle(resolver, response):
    resolver.call_oracle = AsyncMock(return_value=response)
    return resolver.call_oracle


class TestMatchRestoreCommand:
    """Tests for the deterministic restore parser."""

    ARCHIVE = archive_refs("Gym", "Read book", "Call mom", "Pay rent")

    def test_not_a_restore(self):
        assert match_restore_command("show my tasks", self.ARCHIVE) is None

    def test_empty_archive_names_zero(self):
        intent = match_restore_command("restore the first task", [])
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "0 archived tasks" in intent.message

    def test_ordinal(self):
        intent = match_restore_command("restore the second task", self.ARCHIVE)
        assert intent.type == IntentType.RESTORE_TASK_CONFIRMATION
        assert intent.restore_data.task_id == "a2"
        assert intent.restore_data.type == ReferenceType.SPECIFIC_CONTEXTUAL_TASK

    def test_last(self):
        intent = match_restore_command("restore the last one", self.ARCHIVE)
        assert intent.restore_data.task_id == "a4"

    def test_number(self):
        intent = match_restore_command("restore task 3", self.ARCHIVE)
        assert intent.restore_data.task_id == "a3"

    def test_number_out_of_range(self):
        intent = match_restore_command("restore task 9", self.ARCHIVE)
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "You have 4 archived tasks" in intent.message

    def test_range(self):
        intent = match_restore_command("restore tasks 2-4", self.ARCHIVE)
        assert intent.type == IntentType.RESTORE_MULTIPLE_TASKS_CONFIRMATION
        assert intent.restore_data.task_ids == ["a2", "a3", "a4"]

    def test_first_n_is_a_range_not_an_ordinal(self):
        intent = match_restore_command("restore the first 2 tasks", self.ARCHIVE)
        assert intent.type == IntentType.RESTORE_MULTIPLE_TASKS_CONFIRMATION
        assert intent.restore_data.task_ids == ["a1", "a2"]

    def test_first_n_words(self):
        intent = match_restore_command("restore the first three tasks", self.ARCHIVE)
        assert intent.restore_data.task_ids == ["a1", "a2", "a3"]

    def test_invalid_range(self):
        intent = match_restore_command("restore tasks 3-7", self.ARCHIVE)
        assert intent.type == IntentType.VALIDATION_ERROR
        assert intent.message.startswith("Invalid range.")

    def test_all(self):
        intent = match_restore_command("restore all", self.ARCHIVE)
        assert intent.restore_data.task_ids == ["a1", "a2", "a3", "a4"]

    def test_both(self):
        intent = match_restore_command("restore both", self.ARCHIVE)
        assert intent.restore_data.task_ids == ["a1", "a2"]

    def test_single_item_range_is_single(self):
        intent = match_restore_command("restore tasks 2-2", self.ARCHIVE)
        assert intent.type == IntentType.RESTORE_TASK_CONFIRMATION
        assert intent.restore_data.task_id == "a2"

    def test_that(self):
        intent = match_restore_command("restore that", self.ARCHIVE)
        assert intent.restore_data.task_id == "a1"

    def test_by_name(self):
        intent = match_restore_command("restore call mom", self.ARCHIVE)
        assert intent.restore_data.task_id == "a3"

    def test_by_name_quoted(self):
        intent = match_restore_command('restore "Pay rent"', self.ARCHIVE)
        assert intent.restore_data.task_id == "a4"

    def test_unknown_name(self):
        intent = match_restore_command("restore dentist", self.ARCHIVE)
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "dentist" in intent.message


class TestRestoreRouting:
    """Restore commands never reach the oracle."""

    def test_fast_path_when_viewing_archive(self, store, resolver):
        show_archive(store, "Gym", "Read book")
        intent = asyncio.run(resolver.resolve(USER, "restore the first task"))
        assert intent.type == IntentType.RESTORE_TASK_CONFIRMATION
        assert intent.restore_data.task_id == "a1"
        resolver.call_oracle.assert_not_called()

    def test_restore_outside_archive_is_rejected(self, store, resolver):
        show_active(store, "Gym")
        intent = asyncio.run(resolver.resolve(USER, "restore the first task"))
        assert intent.type == IntentType.VALIDATION_ERROR
        assert intent.message == "To restore tasks, please show your archive first."
        resolver.call_oracle.assert_not_called()

    def test_empty_archive_view(self, store, resolver):
        store.set_task_context(USER, [], source=ContextSource.ARCHIVE)
        intent = asyncio.run(resolver.resolve(USER, "restore the first task"))
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "You have 0 archived tasks" in intent.message

    def test_non_restore_in_archive_goes_to_oracle(self, store, resolver):
        show_archive(store, "Gym")
        oracle = with_oracle(resolver, {"type": "show_tasks"})
        intent = asyncio.run(resolver.resolve(USER, "show my tasks"))
        assert intent.type == IntentType.SHOW_TASKS
        oracle.assert_awaited_once()


class TestProcessResponse:
    """Tests for checking oracle output against the session."""

    def test_unknown_type_is_validation_error(self, store, resolver):
        with_oracle(resolver, {"type": "launch_rockets"})
        intent = asyncio.run(resolver.resolve(USER, "launch"))
        assert intent.type == IntentType.VALIDATION_ERROR

    @pytest.mark.parametrize("bad_type", [["show_tasks"], {"name": "show_tasks"}, 7, None])
    def test_non_string_type_is_validation_error(self, store, resolver, bad_type):
        intent = resolver.process_response(USER, {"type": bad_type}, "show tasks")
        assert intent.type == IntentType.VALIDATION_ERROR
        assert intent.message == "I didn't understand that. Can you be more specific?"

    def test_show_tasks_defaults_date_and_focus(self, store, resolver):
        show_archive(store, "Gym")
        with_oracle(resolver, {"type": "show_tasks", "section": "all"})
        intent = asyncio.run(resolver.resolve(USER, "show tasks"))
        assert intent.date == today()
        assert intent.section is None
        assert store.get(USER).viewing_archive is False

    def test_show_archived_sets_archive_focus(self, store, resolver):
        with_oracle(resolver, {"type": "show_archived_tasks"})
        asyncio.run(resolver.resolve(USER, "what's in my archive"))
        assert store.get(USER).viewing_archive is True

    def test_create_recovers_time_from_text(self, store, resolver):
        with_oracle(resolver, {
            "type": "create_task_direct",
            "taskData": {"title": "homework", "section": "School", "date": tomorrow(), "startTime": None},
        })
        intent = asyncio.run(resolver.resolve(USER, "create homework for school tomorrow at 6pm"))
        assert intent.type == IntentType.CREATE_TASK_DIRECT
        assert intent.task_data.start_time.hour == "6"
        assert intent.task_data.start_time.period == "PM"
        assert intent.task_data.section.value == "school"

    def test_create_defaults_date(self, store, resolver):
        with_oracle(resolver, {
            "type": "create_task_confirmation",
            "taskData": {"title": "Gym", "section": "personal", "startTime": {"hour": "7", "minute": "00", "period": "AM"}},
        })
        intent = asyncio.run(resolver.resolve(USER, "gym at 7am"))
        assert intent.task_data.date == today()

    def test_create_missing_fields(self, store, resolver):
        with_oracle(resolver, {"type": "create_task_direct", "taskData": {"title": "Gym"}})
        intent = asyncio.run(resolver.resolve(USER, "gym"))
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "Missing required fields" in intent.message

    def test_oracle_restore_outside_archive_blocked(self, store, resolver):
        show_archive(store, "Gym")
        store.set_focus(USER, ContextSource.ACTIVE)
        with_oracle(resolver, {"type": "restore_task_confirmation", "restoreData": {"taskId": "a1"}})
        intent = asyncio.run(resolver.resolve(USER, "bring back the gym one"))
        assert intent.type == IntentType.VALIDATION_ERROR
        assert intent.message == "To restore tasks, please show your archive first."

    def test_oracle_restore_unknown_id_rejected(self, store, resolver):
        show_archive(store, "Gym")
        with_oracle(resolver, {"type": "restore_task_confirmation", "restoreData": {"taskId": "zzz"}})
        intent = asyncio.run(resolver.resolve(USER, "bring back gym"))
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "not found in your archive" in intent.message

    def test_oracle_restore_known_ids(self, store, resolver):
        show_archive(store, "Gym", "Read book")
        with_oracle(resolver, {
            "type": "restore_multiple_tasks_confirmation",
            "restoreData": {"taskIds": [{"_id": "a1"}, "a2"]},
        })
        intent = asyncio.run(resolver.resolve(USER, "bring both back"))
        assert intent.type == IntentType.RESTORE_MULTIPLE_TASKS_CONFIRMATION
        assert intent.restore_data.task_ids == ["a1", "a2"]

    def test_edit_id_must_be_in_active_list(self, store, resolver):
        show_active(store, "Gym")
        with_oracle(resolver, {"type": "edit_task_confirmation", "editData": {"taskId": "nope"}})
        intent = asyncio.run(resolver.resolve(USER, "rename it"))
        assert intent.type == IntentType.VALIDATION_ERROR

    def test_edit_known_id(self, store, resolver):
        show_active(store, "Gym")
        with_oracle(resolver, {
            "type": "edit_task_confirmation",
            "editData": {"taskId": "t1", "newTitle": "Swim", "newRecurring": "none"},
        })
        intent = asyncio.run(resolver.resolve(USER, "rename gym to swim"))
        assert intent.type == IntentType.EDIT_TASK_CONFIRMATION
        assert intent.edit_data.new_title == "Swim"
        assert intent.edit_data.new_recurring == "__NONE__"

    def test_delete_ids_checked_against_active_list(self, store, resolver):
        show_active(store, "Gym", "Read")
        with_oracle(resolver, {
            "type": "delete_multiple_tasks_confirmation",
            "deleteData": {"type": "multiple_contextual_tasks", "taskIds": ["t1", "t9"]},
        })
        intent = asyncio.run(resolver.resolve(USER, "delete those"))
        assert intent.type == IntentType.VALIDATION_ERROR

    def test_delete_by_section(self, store, resolver):
        with_oracle(resolver, {
            "type": "delete_multiple_tasks_confirmation",
            "deleteData": {"type": "by_section", "section": "Work"},
        })
        intent = asyncio.run(resolver.resolve(USER, "delete all work tasks"))
        assert intent.type == IntentType.DELETE_MULTIPLE_TASKS_CONFIRMATION
        assert intent.delete_data.section.value == "work"


class TestOracleFailures:
    def test_malformed_response_asks_to_rephrase(self, store, resolver):
        resolver.call_oracle = AsyncMock(side_effect=MalformedOracleResponse("not json"))
        intent = asyncio.run(resolver.resolve(USER, "show my tasks"))
        assert intent.type == IntentType.VALIDATION_ERROR
        assert "rephrase" in intent.message

    def test_upstream_error_uses_fallback(self, store, resolver):
        resolver.call_oracle = AsyncMock(side_effect=UpstreamOracleError("timeout"))
        intent = asyncio.run(resolver.resolve(USER, "show my tasks"))
        assert intent.type == IntentType.SHOW_TASKS

    def test_missing_key_uses_fallback(self, store, no_oracle):
        intent = asyncio.run(IntentResolver(store).resolve(USER, "what's my schedule"))
        assert intent.type == IntentType.SHOW_TASKS

    def test_strip_code_fence(self):
        assert strip_code_fence('```json\n{"type": "unknown"}\n```') == '{"type": "unknown"}'
        assert strip_code_fence('{"type": "unknown"}') == '{"type": "unknown"}'


class TestFallback:
    """Keyword rules used when the oracle is unavailable."""

    def resolve(self, store, text):
        return asyncio.run(IntentResolver(store).resolve(USER, text))

    def test_archive_before_show_tasks(self, store, no_oracle):
        assert self.resolve(store, "show archived tasks").type == IntentType.SHOW_ARCHIVED_TASKS

    def test_collaborators(self, store, no_oracle):
        assert self.resolve(store, "who are my collaborators").type == IntentType.LIST_COLLABORATORS

    def test_create(self, store, no_oracle):
        intent = self.resolve(store, "create homework for school at 6pm")
        assert intent.type == IntentType.CREATE_TASK_DIRECT
        assert intent.task_data.title == "homework"
        assert intent.task_data.section.value == "school"
        assert intent.task_data.date == today()

    def test_create_tomorrow_with_range(self, store, no_oracle):
        intent = self.resolve(store, "add standup for work tomorrow 10am-11am")
        assert intent.task_data.date == tomorrow()
        assert intent.task_data.end_time.hour == "11"

    def test_create_without_time(self, store, no_oracle):
        intent = self.resolve(store, "create homework")
        assert intent.type == IntentType.VALIDATION_ERROR

    def test_unknown(self, store, no_oracle):
        intent = self.resolve(store, "hello there")
        assert intent.type == IntentType.UNKNOWN
        assert intent.suggestions


class TestClientContext:
    """Context protection for the task list the UI sends along."""

    def test_active_list_cannot_replace_archive_view(self, store):
        resolver = IntentResolver(store)
        show_archive(store, "Gym")
        accepted = resolver.accept_client_context(
            USER, LastTaskContext(source="active", tasks=[{"_id": "t1", "title": "Read", "status": "Pending"}])
        )
        assert accepted is False
        assert store.get(USER).viewing_archive is True
        assert [ref.id for ref in store.get(USER).archived_refs()] == ["a1"]

    def test_archived_list_always_accepted(self, store):
        resolver = IntentResolver(store)
        show_active(store, "Gym")
        accepted = resolver.accept_client_context(
            USER, LastTaskContext(tasks=[{"_id": "a7", "title": "Old", "isArchived": True}])
        )
        assert accepted is True
        assert store.get(USER).viewing_archive is True

    def test_active_list_accepted_outside_archive(self, store):
        resolver = IntentResolver(store)
        accepted = resolver.accept_client_context(
            USER, LastTaskContext(source="active", tasks=[{"_id": "t1", "title": "Read"}])
        )
        assert accepted is True
        assert [ref.id for ref in store.get(USER).active_refs()] == ["t1"]

    def test_empty_list_ignored(self, store):
        assert IntentResolver(store).accept_client_context(USER, LastTaskContext(tasks=[])) is False
