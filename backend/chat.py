"""
Chat message handling: the one entry point behind POST /chat/message.

Flow per message:
    client task list (context protection) -> yes/no against a pending action
    -> drop a stale pending action -> resolve intent -> dispatch.

Yes/no only act on a pending action; with nothing staged, "restore it" or
"ok, show my tasks" go to the resolver like any other request. Unrelated
messages while a confirmation is pending are treated as new requests and
the pending action is dropped.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from confirmations import ConfirmationOrchestrator, is_affirmative, is_bare_reply, is_negative, preview_create
from executor import TaskExecutor
from intents import DELETE_TYPES, RESTORE_TYPES, Intent, IntentType
from models import ChatReply, CurrentUser, LastTaskContext
from resolver import IntentResolver
from sessions import ConfirmationKind, SessionStore

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

DEFAULT_SUGGESTIONS = ["What is my schedule today?", "Create homework task for school at 6pm", "Show my tasks"]
HELP_SUGGESTIONS = DEFAULT_SUGGESTIONS + ["Edit the first task"]


class ChatService:
    def __init__(
        self,
        store: SessionStore,
        resolver: IntentResolver,
        executor: TaskExecutor,
        confirmations: ConfirmationOrchestrator,
    ):
        self.store = store
        self.resolver = resolver
        self.executor = executor
        self.confirmations = confirmations

    async def handle_message(
        self, user: CurrentUser, message: str, last_task_context: Optional[LastTaskContext] = None
    ) -> ChatReply:
        """Never raises: any failure becomes a friendly success=False reply."""
        try:
            text = (message or "").strip()
            if not text:
                return ChatReply(success=False, reply="Please provide a message.", suggestions=DEFAULT_SUGGESTIONS)

            self.store.get_or_create(user.email)
            self.store.add_conversation_event(user.email, "user_message", text)
            self.resolver.accept_client_context(user.email, last_task_context)

            pending = self.confirmations.has_pending(user.email)
            if pending and is_affirmative(text):
                reply = await self.confirmations.confirm(user)
            elif pending and is_negative(text):
                reply = self.confirmations.cancel(user.email)
            elif is_bare_reply(text):
                # a lone "yes" or "no" with nothing staged
                reply = await self.confirmations.confirm(user) if is_affirmative(text) else self.confirmations.cancel(user.email)
            else:
                self.confirmations.discard_stale(user.email)
                intent = await self.resolver.resolve(user.email, text)
                reply = await self.dispatch(user, intent)

            self.store.add_conversation_event(user.email, "assistant_reply", reply.reply)
            return reply
        except Exception:
            logger.exception("Chat handling failed for %s", user.email)
            return ChatReply(
                success=False,
                reply="Sorry, I encountered an error. Please try again.",
                suggestions=["Show my tasks", "Create a task"],
            )

    async def dispatch(self, user: CurrentUser, intent: Intent) -> ChatReply:
        t = intent.type
        if t == IntentType.VALIDATION_ERROR:
            return ChatReply(
                success=False,
                reply=intent.message or "I need a bit more detail.",
                suggestions=intent.suggestions or DEFAULT_SUGGESTIONS,
            )
        if t == IntentType.CREATE_TASK_DIRECT:
            return await self.executor.create_task(user, intent.task_data, direct=True)
        if t == IntentType.CREATE_TASK_CONFIRMATION:
            return self.confirmations.stage(
                user.email, ConfirmationKind.CREATE, intent.task_data, preview_create(intent.task_data)
            )
        if t == IntentType.SHOW_TASKS:
            return await self.executor.show_tasks(user, intent.date, intent.section)
        if t == IntentType.SCHEDULE_QUERY:
            return await self.executor.schedule_query(user, intent.date, intent.section)
        if t == IntentType.SHOW_ARCHIVED_TASKS:
            return await self.executor.show_archived_tasks(user, intent.date, intent.section)
        if t == IntentType.LIST_COLLABORATORS:
            return await self.executor.list_collaborators(user)
        if t == IntentType.EDIT_TASK_CONFIRMATION:
            return self.confirmations.stage(
                user.email, ConfirmationKind.EDIT, intent.edit_data,
                intent.message or "Apply these changes?", intent.suggestions,
            )
        if t in DELETE_TYPES:
            many = t == IntentType.DELETE_MULTIPLE_TASKS_CONFIRMATION
            return self.confirmations.stage(
                user.email, ConfirmationKind.DELETE, intent.delete_data,
                intent.message or ("Delete these tasks?" if many else "Delete this task?"),
                intent.suggestions or (["Yes, delete all", "No, cancel"] if many else None),
            )
        if t in RESTORE_TYPES:
            many = t == IntentType.RESTORE_MULTIPLE_TASKS_CONFIRMATION
            return self.confirmations.stage(
                user.email, ConfirmationKind.RESTORE, intent.restore_data,
                intent.message or ("Restore these tasks?" if many else "Restore this task?"),
                intent.suggestions or (["Yes, restore all", "No, cancel"] if many else None),
            )
        return ChatReply(
            success=False,
            reply=intent.message or "I didn't understand that. Here's what I can help with:",
            suggestions=intent.suggestions or HELP_SUGGESTIONS,
        )

    def session_info(self, user: CurrentUser) -> dict:
        session = self.store.get_or_create(user.email)
        context = self.store.get_task_context(user.email)
        return {
            "success": True,
            "sessionData": {
                "sessionId": session.session_id,
                "currentFocus": session.current_focus.value,
                "lastViewedType": session.last_viewed_type.value,
                "lastActivity": datetime.fromtimestamp(session.last_activity, timezone.utc).isoformat(),
                "contextualReferences": list(session.contextual_references.keys()),
                "lastMentionedTasksCount": len(session.last_mentioned_tasks),
                "pendingConfirmation": session.pending_confirmation.kind.value if session.pending_confirmation else None,
            },
            "conversationHistoryCount": len(self.store.get_conversation(user.email)),
            "taskContextCount": len(context.tasks),
            "contextSource": context.source.value,
        }

    def health(self) -> dict:
        return {
            "success": True,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "activeSessions": len(self.store),
            "activeConversations": self.store.conversation_count,
            "version": VERSION,
        }
