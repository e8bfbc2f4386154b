"""
Conversation tests for chat.py - full message flows with a scripted oracle.
"""
import asyncio
import pytest
import sys
import os
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from chat import ChatService
from confirmations import ConfirmationOrchestrator
from executor import TaskExecutor
from models import LastTaskContext, TimeOfDay
from resolver import IntentResolver
from timeutils import today


class ScriptedChat:
    """ChatService whose oracle answers from a queue of canned JSON responses."""

    def __init__(self, store, user):
        self.store = store
        self.user = user
        self.resolver = IntentResolver(store)
        self.oracle_responses = []
        self.resolver.call_oracle = AsyncMock(side_effect=self._next_response)
        executor = TaskExecutor(store)
        self.service = ChatService(store, self.resolver, executor, ConfirmationOrchestrator(store, executor))

    async def _next_response(self, system_prompt, text):
        assert self.oracle_responses, f"unexpected oracle call for {text!r}"
        return self.oracle_responses.pop(0)

    def send(self, message, oracle=None, last_task_context=None):
        if oracle is not None:
            self.oracle_responses.append(oracle)
        return asyncio.run(self.service.handle_message(self.user, message, last_task_context))

    @property
    def oracle_calls(self):
        return self.resolver.call_oracle.await_count


@pytest.fixture
def chat(test_db, store, user):
    return ScriptedChat(store, user)


def time_json(hour, minute="00", period="AM"):
    return {"hour": hour, "minute": minute, "period": period}


def create_json(title, section, start, end=None, intent_type="create_task_confirmation"):
    return {
        "type": intent_type,
        "taskData": {"title": title, "section": section, "date": today(), "startTime": start, "endTime": end},
    }


class TestCreateFlow:
    def test_create_confirm(self, chat, user):
        reply = chat.send("add dentist at 3pm", create_json("Dentist", "personal", time_json("3", period="PM")))
        assert reply.awaiting_confirmation is True
        assert database.get_active_tasks_db(user.email) == []

        reply = chat.send("yes")

        assert reply.success is True
        assert reply.action == "task_created"
        assert [t.title for t in database.get_active_tasks_db(user.email)] == ["Dentist"]

    def test_create_cancel(self, chat, user):
        chat.send("add dentist at 3pm", create_json("Dentist", "personal", time_json("3", period="PM")))
        reply = chat.send("no")
        assert reply.reply == "Okay, cancelled."
        assert database.get_active_tasks_db(user.email) == []

    def test_direct_create(self, chat, user):
        reply = chat.send(
            "create gym for personal at 7am",
            create_json("Gym", "personal", time_json("7"), intent_type="create_task_direct"),
        )
        assert reply.success is True
        assert "successfully created" in reply.reply

    def test_second_gym_already_exists(self, chat, user):
        oracle = create_json("Gym", "personal", time_json("7"), intent_type="create_task_direct")
        chat.send("create gym at 7am", oracle)
        reply = chat.send("create gym at 7am", dict(oracle))

        assert reply.success is False
        assert "already exists" in reply.reply
        assert len(database.get_active_tasks_db(user.email)) == 1

    def test_overlap_then_create_anyway(self, chat, user):
        chat.send(
            "create meeting 10-11am for work",
            create_json("Meeting", "work", time_json("10"), time_json("11"), intent_type="create_task_direct"),
        )
        reply = chat.send(
            "create review 10:30-11:30am for work",
            create_json("Review", "work", time_json("10", "30"), time_json("11", "30"), intent_type="create_task_direct"),
        )
        assert reply.awaiting_confirmation is True
        assert "Meeting" in reply.reply

        reply = chat.send("Yes, create anyway")

        assert reply.success is True
        assert sorted(t.title for t in database.get_active_tasks_db(user.email)) == ["Meeting", "Review"]

    def test_unrelated_message_drops_pending(self, chat, store, user):
        chat.send("add dentist at 3pm", create_json("Dentist", "personal", time_json("3", period="PM")))
        chat.send("show my tasks", {"type": "show_tasks"})
        assert store.get(user.email).pending_confirmation is None

        reply = chat.send("yes")

        assert reply.reply == "There's nothing waiting for confirmation."
        assert database.get_active_tasks_db(user.email) == []


class TestReplyWordsWithoutPending:
    """Yes/no words only answer a staged action; otherwise the message is a normal request."""

    def test_bare_no_with_nothing_pending(self, chat):
        reply = chat.send("no")
        assert reply.reply == "Okay, nothing to cancel."
        assert chat.oracle_calls == 0

    def test_ok_show_my_tasks_reaches_resolver(self, chat, store, user):
        reply = chat.send("ok, show my tasks", {"type": "show_tasks"})
        assert chat.oracle_calls == 1
        assert reply.success is True
        assert store.get(user.email).pending_confirmation is None

    def test_no_show_school_tasks_reaches_resolver(self, chat):
        reply = chat.send("no, show school tasks", {"type": "show_tasks", "section": "school"})
        assert chat.oracle_calls == 1
        assert reply.success is True
        assert reply.reply == f"No school tasks found for {today()}."

    def test_delete_it_stages_delete(self, chat, store, user):
        database.create_task_db("1", user.email, "Gym", "personal", today(), TimeOfDay(hour="7", period="AM"))
        chat.send("show my tasks", {"type": "show_tasks"})

        reply = chat.send("delete it", {
            "type": "delete_single_task_confirmation",
            "deleteData": {"type": "specific_contextual_task", "taskId": "1"},
        })

        assert chat.oracle_calls == 2
        assert reply.awaiting_confirmation is True
        assert store.get(user.email).pending_confirmation is not None
        assert database.get_task_db("1").deleted_at is None

        reply = chat.send("yes")
        assert reply.success is True
        assert database.get_task_db("1").deleted_at is not None


class TestArchiveFlow:
    def archive_two(self, user):
        for task_id, title, hour in (("1", "Gym", "7"), ("2", "Read", "9")):
            database.create_task_db(task_id, user.email, title, "personal", today(), TimeOfDay(hour=hour, period="AM"))
        database.soft_delete_tasks_db(["1", "2"])

    def test_show_archive_then_restore_first(self, chat, user):
        self.archive_two(user)
        chat.send("show my archive", {"type": "show_archived_tasks"})
        calls = chat.oracle_calls

        reply = chat.send("restore the first task")

        assert chat.oracle_calls == calls
        assert reply.awaiting_confirmation is True
        reply = chat.send("yes")
        assert reply.action == "task_restored"
        restored = [t.title for t in database.get_active_tasks_db(user.email)]
        assert len(restored) == 1

    def test_restore_it_with_nothing_pending(self, chat, store, user):
        self.archive_two(user)
        chat.send("show my archive", {"type": "show_archived_tasks"})
        calls = chat.oracle_calls

        reply = chat.send("restore it")

        assert chat.oracle_calls == calls
        assert reply.awaiting_confirmation is True
        assert store.get(user.email).pending_confirmation is not None
        reply = chat.send("yes")
        assert reply.action == "task_restored"
        assert len(database.get_active_tasks_db(user.email)) == 1

    def test_restore_range(self, chat, user):
        self.archive_two(user)
        chat.send("show my archive", {"type": "show_archived_tasks"})

        chat.send("restore tasks 1-2")
        reply = chat.send("yes, restore all")

        assert reply.action == "multiple_tasks_restored"
        assert len(database.get_active_tasks_db(user.email)) == 2

    def test_restore_without_archive_view(self, chat, user):
        self.archive_two(user)
        reply = chat.send("restore the first task")
        assert reply.success is False
        assert reply.reply == "To restore tasks, please show your archive first."
        assert chat.oracle_calls == 0

    def test_restore_from_empty_archive(self, chat, user):
        chat.send("show my archive", {"type": "show_archived_tasks"})
        reply = chat.send("restore the first task")
        assert reply.success is False
        assert "You have 0 archived tasks" in reply.reply

    def test_client_active_list_does_not_break_archive_view(self, chat, user):
        self.archive_two(user)
        chat.send("show my archive", {"type": "show_archived_tasks"})
        stale_ui = LastTaskContext(source="active", tasks=[{"_id": "zzz", "title": "Other", "status": "Pending"}])

        reply = chat.send("restore the second task", last_task_context=stale_ui)

        assert reply.awaiting_confirmation is True
        assert "Read" in reply.reply or "Gym" in reply.reply

    def test_show_tasks_leaves_archive(self, chat, store, user):
        chat.send("show my archive", {"type": "show_archived_tasks"})
        chat.send("show my tasks", {"type": "show_tasks"})
        assert store.get(user.email).viewing_archive is False


class TestDeleteFlow:
    def test_show_then_delete_both(self, chat, user):
        for task_id, title, hour in (("1", "Gym", "7"), ("2", "Read", "9")):
            database.create_task_db(task_id, user.email, title, "personal", today(), TimeOfDay(hour=hour, period="AM"))
        chat.send("show my tasks", {"type": "show_tasks"})

        reply = chat.send("delete both", {
            "type": "delete_multiple_tasks_confirmation",
            "deleteData": {"type": "multiple_contextual_tasks", "taskIds": ["1", "2"]},
        })
        assert reply.awaiting_confirmation is True
        assert database.get_task_db("1").deleted_at is None

        reply = chat.send("yes, delete all")
        assert reply.action == "multiple_tasks_deleted"
        assert database.get_active_tasks_db(user.email) == []


class TestEdgeCases:
    def test_blank_message(self, chat):
        reply = chat.send("   ")
        assert reply.success is False
        assert reply.reply == "Please provide a message."

    def test_unexpected_error_is_friendly(self, chat):
        chat.resolver.resolve = AsyncMock(side_effect=RuntimeError("boom"))
        reply = chat.send("show my tasks")
        assert reply.success is False
        assert reply.reply == "Sorry, I encountered an error. Please try again."

    def test_unknown_intent(self, chat):
        reply = chat.send("what is the meaning of life", {"type": "unknown"})
        assert reply.success is False
        assert reply.suggestions

    def test_conversation_recorded(self, chat, store, user):
        chat.send("show my tasks", {"type": "show_tasks"})
        keys = [event["key"] for event in store.get_conversation(user.email)]
        assert keys == ["user_message", "assistant_reply"]

    def test_session_info(self, chat, user):
        chat.send("show my archive", {"type": "show_archived_tasks"})
        info = chat.service.session_info(user)
        assert info["success"] is True
        assert info["sessionData"]["currentFocus"] == "archived_tasks"
        assert info["contextSource"] == "archive"

    def test_health(self, chat):
        health = chat.service.health()
        assert health["status"] == "healthy"
        assert health["version"] == "1.0.0"
