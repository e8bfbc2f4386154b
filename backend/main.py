import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError

import config
import database
from auth import decode_token, get_current_user
from chat import ChatService
from confirmations import ConfirmationOrchestrator
from executor import TaskExecutor
from models import ChatReply, ChatRequest, CurrentUser, Task, TaskCreate, TaskUpdate
from notifications import ConnectionManager, NotificationService
from resolver import IntentResolver
from sessions import SessionStore, run_session_sweeper
from timeutils import display_status, is_range_valid

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

session_store = SessionStore()
connection_manager = ConnectionManager()
notifier = NotificationService(connection_manager)
executor = TaskExecutor(session_store, notifier)
resolver = IntentResolver(session_store)
confirmations = ConfirmationOrchestrator(session_store, executor)
chat_service = ChatService(session_store, resolver, executor, confirmations)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    database.init_db()
    background = []
    if config.BACKGROUND_TASKS:
        background.append(asyncio.create_task(
            run_session_sweeper(session_store, config.SESSION_SWEEP_SECONDS, config.SESSION_IDLE_SECONDS)
        ))
        background.append(asyncio.create_task(
            notifier.run(config.NOTIFICATION_CHECK_SECONDS, config.TIMEZONE_RETENTION_SECONDS)
        ))
    yield
    # Shutdown
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


NULLABLE_FIELDS = ("end_time", "priority", "recurring")


def current_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Authenticated caller, added to the collaborator directory on first use."""
    database.create_user_db(user.email)
    return user


def _with_display_status(task: Task) -> Task:
    return task.model_copy(update={"status": display_status(task)})


def _owned_task(task_id: str, user: CurrentUser, archived: bool) -> Task:
    tasks = database.get_tasks_by_ids_db(user.email, [task_id], archived=archived)
    if not tasks:
        raise HTTPException(status_code=404, detail="Task not found")
    return tasks[0]


# Chat
@app.post("/chat/message", response_model=ChatReply, response_model_exclude_none=True)
async def chat_message(chat_request: ChatRequest, user: CurrentUser = Depends(current_user)):
    reply = await chat_service.handle_message(user, chat_request.message, chat_request.last_task_context)
    if not chat_request.message.strip():
        return JSONResponse(status_code=400, content=reply.model_dump(by_alias=True, exclude_none=True))
    return reply


@app.get("/chat/session-info")
def chat_session_info(user: CurrentUser = Depends(current_user)) -> dict:
    return chat_service.session_info(user)


@app.get("/chat/health")
def chat_health() -> dict:
    return chat_service.health()


# Tasks
@app.get("/tasks")
def get_tasks(
    date: Optional[str] = None, section: Optional[str] = None, user: CurrentUser = Depends(current_user)
) -> list[Task]:
    return [_with_display_status(t) for t in database.get_active_tasks_db(user.email, date, section)]


@app.get("/tasks/archived")
def get_archived_tasks(
    date: Optional[str] = None, section: Optional[str] = None, user: CurrentUser = Depends(current_user)
) -> list[Task]:
    return database.get_archived_tasks_db(user.email, date, section)


@app.post("/tasks", status_code=201)
async def create_task(task_data: TaskCreate, user: CurrentUser = Depends(current_user)) -> Task:
    if not is_range_valid(task_data.start_time, task_data.end_time):
        raise HTTPException(status_code=400, detail="End time must be after start time")
    duplicate = database.find_duplicate_task_db(
        user.email, task_data.title, task_data.section, task_data.date, task_data.start_time, task_data.end_time
    )
    if duplicate:
        raise HTTPException(status_code=409, detail="A task with the same title and time already exists")
    task = database.create_task_db(
        str(uuid.uuid4()),
        user.email,
        task_data.title,
        task_data.section,
        task_data.date,
        task_data.start_time,
        end_time=task_data.end_time,
        priority=task_data.priority,
        recurring=task_data.recurring,
        collaborators=task_data.collaborators,
        user_id=user.id,
    )
    await notifier.check_immediate_notification(task, user.email)
    return task


@app.patch("/tasks/{task_id}")
async def update_task(task_id: str, task_data: TaskUpdate, user: CurrentUser = Depends(current_user)) -> Task:
    task = _owned_task(task_id, user, archived=False)
    updates = {
        field: getattr(task_data, field)
        for field in task_data.model_fields_set
        if getattr(task_data, field) is not None or field in NULLABLE_FIELDS
    }
    start = updates.get("start_time") or task.start_time
    end = updates["end_time"] if "end_time" in updates else task.end_time
    if not is_range_valid(start, end):
        raise HTTPException(status_code=400, detail="End time must be after start time")
    duplicate = database.find_duplicate_task_db(
        user.email,
        updates.get("title") or task.title,
        updates.get("section") or task.section,
        updates.get("date") or task.date,
        start,
        end,
        exclude_id=task.id,
    )
    if duplicate:
        raise HTTPException(status_code=409, detail="A task with the same title and time already exists")
    result = database.update_task_db(task_id, **updates)
    await notifier.check_immediate_notification(result, user.email)
    return result


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str, user: CurrentUser = Depends(current_user)) -> dict:
    _owned_task(task_id, user, archived=False)
    database.soft_delete_tasks_db([task_id])
    return {"status": "deleted"}


@app.post("/tasks/{task_id}/restore")
async def restore_task(task_id: str, user: CurrentUser = Depends(current_user)) -> Task:
    _owned_task(task_id, user, archived=True)
    database.restore_tasks_db([task_id])
    task = database.get_task_db(task_id)
    await notifier.check_immediate_notification(task, user.email)
    return task


# Notifications
@app.post("/notifications/test/{task_id}")
async def test_notification(task_id: str, user: CurrentUser = Depends(current_user)) -> dict:
    task = database.get_task_db(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if task.created_by != user.email and user.email not in task.collaborators:
        raise HTTPException(status_code=403, detail="Not authorized to test notifications for this task")
    sent = await notifier.check_immediate_notification(task, user.email)
    return {"message": "Test notification sent" if sent else "No notification needed for this task", "sent": sent}


@app.get("/notifications/history")
def notification_history(user: CurrentUser = Depends(current_user)) -> list[dict]:
    return database.get_notification_history_db(user.email)


def _token_matches(token: str, email: str) -> bool:
    try:
        return decode_token(token).email == email
    except (JWTError, ValueError):
        return False


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    First message joins a room: {"email": ..., "timezone": ..., "offset": ...} or a bare email string.

    Reminder rooms are keyed by the email the client sends. With a ?token= query
    parameter the email must match the verified token; without one the join
    is trusted as sent.
    """
    await websocket.accept()
    try:
        join = await websocket.receive_json()
        if isinstance(join, str):
            email, tz_name, offset = join, None, None
        else:
            email, tz_name, offset = join.get("email"), join.get("timezone"), join.get("offset")
        if not email:
            await websocket.close(code=1008)
            return
        if token is not None and not _token_matches(token, email):
            logger.warning("Rejected websocket join for %s: token does not match", email)
            await websocket.close(code=1008)
            return
        connection_manager.join(email, websocket)
        notifier.register_user_timezone(email, tz_name, offset)
        await websocket.send_json({"event": "joined", "data": {"email": email}})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    except ValueError:
        await websocket.close(code=1003)
    finally:
        connection_manager.leave(websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
