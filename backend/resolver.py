"""
Intent resolution: raw chat text -> validated Intent.

Order of resolution:
1. restore commands against the archive the user is looking at (no oracle)
2. "restore ..." while not looking at the archive -> validation_error (no oracle)
3. the oracle, whose JSON is checked against the session's own task lists
4. the lexical fallback in fallback.py when the oracle is unavailable
"""
import json
import logging
import re
from typing import Optional

import anthropic
from pydantic import ValidationError

import config
from fallback import archive_first_error, fallback_parse
from intents import (
    CREATE_TYPES,
    DELETE_TYPES,
    RESTORE_TYPES,
    Intent,
    IntentType,
    ReferenceType,
    RestoreData,
)
from models import LastTaskContext, MalformedOracleResponse, TaskRef, UpstreamOracleError
from prompts import build_system_prompt
from sessions import ContextSource, Focus, Session, SessionStore, ViewType
from timeutils import parse_times_from_text, today, tomorrow

logger = logging.getLogger(__name__)

RESTORE_WORD_RE = re.compile(r"\brestore\b", re.IGNORECASE)

_RANGE_RE = re.compile(r"restore\s+(?:the\s+)?(?:tasks?\s+)?(\d+)\s*(?:-|–|to)\s*(\d+)", re.IGNORECASE)
_FIRST_N_RE = re.compile(
    r"restore\s+(?:the\s+)?first\s+(\d+|two|three|four|five)\s+(?:archived\s+)?tasks?", re.IGNORECASE
)
_BOTH_ALL_RE = re.compile(r"restore\s+(?:them\s+)?(both|all)\b", re.IGNORECASE)
_NUMBER_RE = re.compile(
    r"restore\s+(?:task\s+)?(?:number\s+|#)?(?:the\s+)?(\d+)(?:st|nd|rd|th)?(?:\s+task)?\b", re.IGNORECASE
)
_ORDINAL_RE = re.compile(r"restore\s+(?:the\s+)?(first|second|third|fourth|fifth|last)\b", re.IGNORECASE)
_THAT_RE = re.compile(r"restore\s+(?:that|this|it)(?:\s+(?:one|task))?\s*[.!?]?\s*$", re.IGNORECASE)
_NAME_RE = re.compile(r"restore\s+(?:task\s+)?[\"']?([^\"'\n]+?)[\"']?\s*$", re.IGNORECASE)

_WORD_NUMBERS = {"two": 2, "three": 3, "four": 4, "five": 5}
_ORDINALS = {"first": 0, "second": 1, "third": 2, "fourth": 3, "fifth": 4}

RESTORE_ONE_SUGGESTIONS = ["Yes, restore it", "No, cancel"]
RESTORE_ALL_SUGGESTIONS = ["Yes, restore all", "No, cancel"]
ARCHIVE_SUGGESTIONS = ["Show my archived tasks", "Restore the first task"]
REPHRASE_SUGGESTIONS = ["Show my tasks", "Create a task", "Edit the first task"]
ACTIVE_LIST_SUGGESTIONS = ["Show my tasks", "What's my schedule today?"]


def _restore_one(ref: TaskRef) -> Intent:
    return Intent(
        type=IntentType.RESTORE_TASK_CONFIRMATION,
        message=f"Restore '{ref.title}'?",
        restore_data=RestoreData(type=ReferenceType.SPECIFIC_CONTEXTUAL_TASK, task_id=ref.id),
        suggestions=RESTORE_ONE_SUGGESTIONS,
    )


def _restore_many(refs: list[TaskRef]) -> Intent:
    if len(refs) == 1:
        return _restore_one(refs[0])
    names = ", ".join(ref.title for ref in refs)
    return Intent(
        type=IntentType.RESTORE_MULTIPLE_TASKS_CONFIRMATION,
        message=f"Restore {len(refs)} tasks ({names})?",
        restore_data=RestoreData(
            type=ReferenceType.MULTIPLE_CONTEXTUAL_TASKS, task_ids=[ref.id for ref in refs]
        ),
        suggestions=RESTORE_ALL_SUGGESTIONS,
    )


def _archive_count_error(prefix: str, count: int) -> Intent:
    noun = "task" if count == 1 else "tasks"
    return Intent.validation_error(f"{prefix} You have {count} archived {noun}.", ARCHIVE_SUGGESTIONS)


def match_restore_command(text: str, archived: list[TaskRef]) -> Optional[Intent]:
    """
    Resolve "restore ..." against the archive list shown to the user.

    Precedence is range, then number or ordinal, then name, so that
    "restore the first 2 tasks" is a range and not the ordinal "first".
    Returns None when the text is not a restore command at all.
    """
    if not RESTORE_WORD_RE.search(text):
        return None
    count = len(archived)
    if count == 0:
        return Intent.validation_error(
            "There are no archived tasks to restore. You have 0 archived tasks.",
            ["Show my archived tasks", "Show my tasks"],
        )

    # Ranges
    start = end = None
    m = _RANGE_RE.search(text)
    if m:
        start, end = int(m.group(1)), int(m.group(2))
    else:
        m = _FIRST_N_RE.search(text)
        if m:
            word = m.group(1).lower()
            start, end = 1, _WORD_NUMBERS.get(word) or int(word)
        else:
            m = _BOTH_ALL_RE.search(text)
            if m:
                start, end = 1, (2 if m.group(1).lower() == "both" else count)
    if start is not None:
        if 1 <= start <= end <= count:
            return _restore_many(archived[start - 1:end])
        return _archive_count_error("Invalid range.", count)

    # Number
    m = _NUMBER_RE.search(text)
    if m:
        number = int(m.group(1))
        if 1 <= number <= count:
            return _restore_one(archived[number - 1])
        return _archive_count_error(f"Task {number} not found.", count)

    # Ordinal
    m = _ORDINAL_RE.search(text)
    if m:
        word = m.group(1).lower()
        index = count - 1 if word == "last" else _ORDINALS[word]
        if index < count:
            return _restore_one(archived[index])
        return _archive_count_error(f"There is no {word} archived task.", count)
    if _THAT_RE.search(text):
        return _restore_one(archived[0])

    # Name
    m = _NAME_RE.search(text)
    if m:
        name = m.group(1).strip().lower()
        for ref in archived:
            title = ref.title.lower()
            if name and (name in title or (title and title in name)):
                return _restore_one(ref)
        return Intent.validation_error(f'No archived task found matching "{m.group(1).strip()}".', ARCHIVE_SUGGESTIONS)

    return None


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if present."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)
    return text


class IntentResolver:
    def __init__(self, store: SessionStore, client: Optional[anthropic.AsyncAnthropic] = None):
        self.store = store
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=config.ANTHROPIC_API_KEY)
        return self._client

    def accept_client_context(self, user_id: str, last_task_context: Optional[LastTaskContext]) -> bool:
        """
        Take the list the UI says it is showing, unless that would replace an
        archive view with an active one mid-conversation.
        """
        if last_task_context is None or not last_task_context.tasks:
            return False
        tasks = last_task_context.tasks
        looks_archived = last_task_context.source == ContextSource.ARCHIVE.value or any(
            t.looks_archived() for t in tasks
        )
        looks_active = last_task_context.source == ContextSource.ACTIVE.value or all(
            not t.looks_archived() for t in tasks
        )
        session = self.store.get_or_create(user_id)
        viewing_archive = (
            session.current_focus == Focus.ARCHIVED_TASKS or session.last_viewed_type == ViewType.ARCHIVED
        )

        if looks_archived or (not viewing_archive and looks_active):
            hint = ContextSource.ARCHIVE if looks_archived else None
            self.store.set_task_context(user_id, tasks, source=hint)
            return True
        logger.info("Kept archive context for %s; ignored active task list from client", user_id)
        return False

    async def resolve(self, user_id: str, text: str) -> Intent:
        session = self.store.get_or_create(user_id)
        text = text.strip()

        if session.viewing_archive:
            intent = match_restore_command(text, session.archived_refs())
            if intent is not None:
                return intent
        elif RESTORE_WORD_RE.search(text):
            return archive_first_error()

        system_prompt = self.build_prompt(session)
        try:
            raw = await self.call_oracle(system_prompt, text)
        except MalformedOracleResponse as exc:
            logger.warning("Unusable oracle response for %s: %s", user_id, exc)
            return Intent.validation_error("I had trouble understanding that. Could you rephrase?", REPHRASE_SUGGESTIONS)
        except UpstreamOracleError as exc:
            logger.warning("Oracle unavailable for %s, using keyword fallback: %s", user_id, exc)
            return fallback_parse(text, session)
        return self.process_response(user_id, raw, text)

    def build_prompt(self, session: Session) -> str:
        source = session.context_source
        relevant = session.archived_refs() if source == ContextSource.ARCHIVE else session.active_refs()
        return build_system_prompt(
            today=today(),
            tomorrow=tomorrow(),
            focus=session.current_focus.value,
            view_type=session.last_viewed_type.value,
            source=source.value,
            tasks=relevant[:config.MAX_CONTEXT_TASKS],
        )

    async def call_oracle(self, system_prompt: str, text: str) -> dict:
        if not config.oracle_configured():
            raise UpstreamOracleError("API key not configured")
        try:
            response = await self.client.messages.create(
                model=config.ANTHROPIC_MODEL,
                max_tokens=config.ORACLE_MAX_TOKENS,
                system=system_prompt,
                messages=[{"role": "user", "content": f'Parse this message as strict JSON only (no prose): "{text}"'}],
                timeout=config.ORACLE_TIMEOUT_SECONDS,
            )
        except anthropic.APIError as e:
            raise UpstreamOracleError(f"API error: {e}") from e

        ai_text = strip_code_fence(response.content[0].text)
        logger.debug("Oracle response: %s", ai_text)
        try:
            parsed = json.loads(ai_text)
        except json.JSONDecodeError as e:
            raise MalformedOracleResponse("Failed to parse AI response") from e
        if not isinstance(parsed, dict):
            raise MalformedOracleResponse("AI response is not a JSON object")
        return parsed

    def process_response(self, user_id: str, raw: dict, original_text: str) -> Intent:
        """Check an oracle response against the closed intent set and the session's lists."""
        session = self.store.get_or_create(user_id)

        intent_type = raw.get("type")
        if not isinstance(intent_type, str) or intent_type not in {t.value for t in IntentType}:
            return Intent.validation_error(
                "I didn't understand that. Can you be more specific?",
                ["Show my tasks", "Create a task", "Delete that task"],
            )
        try:
            intent = Intent.model_validate(raw)
        except ValidationError as e:
            logger.warning("Oracle response failed validation for %s: %s", user_id, e.errors()[:3])
            return Intent.validation_error("I had trouble understanding that. Could you rephrase?", REPHRASE_SUGGESTIONS)

        if intent.type in RESTORE_TYPES:
            return self._check_restore(session, intent)
        if intent.type in CREATE_TYPES:
            return self._complete_create(intent, original_text)
        if intent.type == IntentType.EDIT_TASK_CONFIRMATION:
            return self._check_edit(session, intent)
        if intent.type in DELETE_TYPES:
            return self._check_delete(session, intent)
        if intent.type in (IntentType.SHOW_TASKS, IntentType.SCHEDULE_QUERY):
            self.store.set_focus(user_id, ContextSource.ACTIVE)
            if not intent.date:
                intent.date = today()
        elif intent.type == IntentType.SHOW_ARCHIVED_TASKS:
            self.store.set_focus(user_id, ContextSource.ARCHIVE)
        return intent

    def _check_restore(self, session: Session, intent: Intent) -> Intent:
        if not session.viewing_archive:
            logger.info("Blocked oracle restore outside archive view")
            return archive_first_error()
        data = intent.restore_data
        if data is None:
            return Intent.validation_error("Which task would you like to restore?", ARCHIVE_SUGGESTIONS)

        archived = session.archived_refs()
        by_id = {ref.id: ref for ref in archived}
        ids = data.referenced_ids()
        if not ids and data.task_identifier:
            needle = data.task_identifier.lower()
            matches = [ref for ref in archived if needle in ref.title.lower()]
            if not matches:
                return Intent.validation_error(
                    f'No archived task found matching "{data.task_identifier}".', ARCHIVE_SUGGESTIONS
                )
            return _restore_one(matches[0])
        if not ids:
            return Intent.validation_error("Which task would you like to restore?", ARCHIVE_SUGGESTIONS)

        unknown = [i for i in ids if i not in by_id]
        if unknown:
            logger.info("Oracle restore referenced ids outside the archive: %s", unknown)
            return Intent.validation_error(
                "That task was not found in your archive. Please check your archived tasks.",
                ["Show my archived tasks", "What tasks do I have in archive?"],
            )
        refs = [by_id[i] for i in dict.fromkeys(ids)]
        resolved = _restore_many(refs)
        if intent.message:
            resolved.message = intent.message
        return resolved

    def _complete_create(self, intent: Intent, original_text: str) -> Intent:
        data = intent.task_data
        if data is None:
            return Intent.validation_error(
                "Missing required fields (need title, section, and a start time).",
                ["Create homework task for school at 6pm", "Add meeting to work at 3pm tomorrow"],
            )
        if data.start_time is None:
            start, end = parse_times_from_text(original_text)
            if start is not None:
                logger.info("Recovered start time from text for create")
                data.start_time = start
                if end is not None and data.end_time is None:
                    data.end_time = end
        if not data.date:
            data.date = today()
        if not data.title or data.section is None or data.start_time is None:
            return Intent.validation_error(
                "Missing required fields (need title, section, and a start time).",
                ["Create homework task for school at 6pm", "Add meeting to work at 3pm tomorrow"],
            )
        return intent

    def _check_edit(self, session: Session, intent: Intent) -> Intent:
        data = intent.edit_data
        if data is None or not (data.task_id or data.task_identifier):
            return Intent.validation_error("Which task would you like to edit?", ["Edit the first task", "Show my tasks first"])
        if data.task_id and data.task_id not in {ref.id for ref in session.active_refs()}:
            logger.info("Oracle edit referenced id outside the active list: %s", data.task_id)
            return Intent.validation_error(
                "That task isn't in your current task list. Please show your tasks again.", ACTIVE_LIST_SUGGESTIONS
            )
        return intent

    def _check_delete(self, session: Session, intent: Intent) -> Intent:
        data = intent.delete_data
        if data is None:
            return Intent.validation_error("Which task would you like to delete?", ACTIVE_LIST_SUGGESTIONS)
        if data.type == ReferenceType.BY_SECTION:
            if data.section is None:
                return Intent.validation_error("Which section should I clear?", ["Delete all work tasks", "Show my tasks"])
            return intent

        ids = list(data.task_ids) + ([data.task_id] if data.task_id else [])
        if not ids and not (data.task_identifier or data.task_identifiers):
            return Intent.validation_error("Which task would you like to delete?", ACTIVE_LIST_SUGGESTIONS)
        active_ids = {ref.id for ref in session.active_refs()}
        unknown = [i for i in ids if i not in active_ids]
        if unknown:
            logger.info("Oracle delete referenced ids outside the active list: %s", unknown)
            return Intent.validation_error(
                "Some of those tasks aren't in your current task list. Please show your tasks again.",
                ACTIVE_LIST_SUGGESTIONS,
            )
        return intent
