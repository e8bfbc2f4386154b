"""
Tests for confirmations.py - staging, confirm, cancel and yes/no detection.
"""
import asyncio
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from confirmations import ConfirmationOrchestrator, is_affirmative, is_bare_reply, is_negative, preview_create
from executor import TaskExecutor
from intents import DeleteData, RestoreData, TaskData
from models import Priority, TimeOfDay
from sessions import ConfirmationKind

DAY = "2026-03-10"


@pytest.fixture
def orchestrator(test_db, store):
    return ConfirmationOrchestrator(store, TaskExecutor(store))


def gym():
    return TaskData(title="Gym", section="personal", date=DAY, start_time=TimeOfDay(hour="7", period="AM"))


class TestReplyDetection:
    @pytest.mark.parametrize("text", ["yes", "Yes, create it", "yep", "sure thing", "ok", "confirm", "do it"])
    def test_affirmative(self, text):
        assert is_affirmative(text)
        assert not is_negative(text)

    @pytest.mark.parametrize("text", ["no", "No, cancel", "nope", "cancel", "never mind", "don't"])
    def test_negative(self, text):
        assert is_negative(text)
        assert not is_affirmative(text)

    @pytest.mark.parametrize("text", ["yes", "Yes!", " ok. ", "no", "Nope", "never mind"])
    def test_bare_reply(self, text):
        assert is_bare_reply(text)

    @pytest.mark.parametrize("text", ["restore it", "delete it", "ok, show my tasks", "no, show school tasks", "yes create it"])
    def test_not_bare_reply(self, text):
        assert not is_bare_reply(text)

    @pytest.mark.parametrize("text", ["show my tasks", "yesterday's tasks", "notes for work", ""])
    def test_neither(self, text):
        assert not is_affirmative(text)
        assert not is_negative(text)


class TestPreview:
    def test_preview_create(self):
        data = gym().model_copy(update={"priority": Priority.HIGH})
        text = preview_create(data)
        assert text.startswith('Create "Gym" in personal on 2026-03-10 at 7:00 AM')
        assert "Priority: High" in text
        assert text.endswith("Confirm to create this task?")


class TestStateMachine:
    """Idle -> AwaitingConfirmation -> Idle."""

    def test_stage_does_not_touch_store(self, orchestrator, store, user):
        reply = orchestrator.stage(user.email, ConfirmationKind.CREATE, gym(), preview_create(gym()))

        assert reply.success is True
        assert reply.awaiting_confirmation is True
        assert orchestrator.has_pending(user.email)
        assert database.get_active_tasks_db(user.email) == []

    def test_confirm_executes_and_clears(self, orchestrator, user):
        orchestrator.stage(user.email, ConfirmationKind.CREATE, gym(), "Create?")

        reply = asyncio.run(orchestrator.confirm(user))

        assert reply.success is True
        assert reply.action == "task_created"
        assert not orchestrator.has_pending(user.email)
        assert len(database.get_active_tasks_db(user.email)) == 1

    def test_second_confirm_is_neutral(self, orchestrator, user):
        orchestrator.stage(user.email, ConfirmationKind.CREATE, gym(), "Create?")
        asyncio.run(orchestrator.confirm(user))

        reply = asyncio.run(orchestrator.confirm(user))

        assert reply.reply == "There's nothing waiting for confirmation."
        assert len(database.get_active_tasks_db(user.email)) == 1

    def test_confirmed_create_bypasses_overlap(self, orchestrator, user):
        database.create_task_db("m1", user.email, "Run", "personal", DAY, TimeOfDay(hour="7", period="AM"))
        orchestrator.stage(user.email, ConfirmationKind.CREATE, gym(), "Create?")

        reply = asyncio.run(orchestrator.confirm(user))

        assert reply.success is True
        assert len(database.get_active_tasks_db(user.email)) == 2

    def test_cancel(self, orchestrator, user):
        orchestrator.stage(user.email, ConfirmationKind.CREATE, gym(), "Create?")
        reply = orchestrator.cancel(user.email)
        assert reply.reply == "Okay, cancelled."
        assert not orchestrator.has_pending(user.email)
        assert database.get_active_tasks_db(user.email) == []

    def test_cancel_with_nothing_pending(self, orchestrator, user):
        assert orchestrator.cancel(user.email).reply == "Okay, nothing to cancel."

    def test_discard_stale_returns_kind(self, orchestrator, user):
        orchestrator.stage(user.email, ConfirmationKind.DELETE, DeleteData(task_id="1"), "Delete?")
        assert orchestrator.discard_stale(user.email) == ConfirmationKind.DELETE
        assert orchestrator.discard_stale(user.email) is None

    def test_confirm_delete_and_restore(self, orchestrator, user):
        database.create_task_db("1", user.email, "Gym", "personal", DAY, TimeOfDay(hour="7", period="AM"))

        orchestrator.stage(user.email, ConfirmationKind.DELETE, DeleteData(task_id="1"), "Delete?")
        assert asyncio.run(orchestrator.confirm(user)).action == "task_deleted"
        assert database.get_task_db("1").is_archived

        orchestrator.stage(user.email, ConfirmationKind.RESTORE, RestoreData(task_id="1"), "Restore?")
        assert asyncio.run(orchestrator.confirm(user)).action == "task_restored"
        assert not database.get_task_db("1").is_archived

    def test_payload_type_survives_staging(self, orchestrator, store, user):
        orchestrator.stage(user.email, ConfirmationKind.RESTORE, RestoreData(task_ids=["1", "2"]), "Restore?")
        payload = store.get(user.email).pending_confirmation.payload
        assert isinstance(payload, RestoreData)
        assert payload.task_ids == ["1", "2"]
