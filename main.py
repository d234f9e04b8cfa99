import asyncio
import hashlib
import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from activity import recent_activity, sorted_activity
from database import IS_LOCAL_DB, db, get_store
from errors import AllocationFailure, DocumentNotFound, InvalidTaskDates
from dashboard import UPCOMING_LIMIT, days_left, document_index, task_stats, team_workload, upcoming_deadlines
from financials import summarize
from normalize import normalize_user, to_instant
from permissions import (
    CREATE_TASKS,
    DELETE_TASKS,
    EDIT_TASKS,
    MANAGE_SETTINGS,
    MANAGE_USERS,
    VIEW_FINANCIALS,
    VIEW_TASKS,
    PermissionResolver,
    RuleStore,
)
from schemas import (
    COLLECTION_SESSIONS,
    COLLECTION_USERS,
    FileAttachment,
    Role,
    Task,
    TaskPriority,
    TaskStatus,
    User,
)
from store import DocumentStore
from sync import SettingsFeed, TaskDetailView, TaskSyncController, TaskView, TaskWatcher
from tasks import TaskService
from visibility import can_see, visible_tasks

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tasktrack")

SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", 7))


# -----------------------------
# Backend wiring
# -----------------------------
class Backend:
    """Everything one running service owns: the store, the rule table and its feed."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.rule_store = RuleStore()
        self.resolver = PermissionResolver(self.rule_store)
        self.settings_feed = SettingsFeed(store, self.rule_store)
        self.tasks = TaskService(store)

    def start(self):
        self.settings_feed.start()

    def stop(self):
        self.settings_feed.stop()


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend: Backend = app.state.backend
    backend.start()
    yield
    backend.stop()


app = FastAPI(title="Task Tracker API", lifespan=lifespan)
app.state.backend = Backend(get_store())

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# Helpers
# -----------------------------
def get_backend(request: Request) -> Backend:
    return request.app.state.backend


def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()


def task_json(task: Task) -> Dict[str, Any]:
    data = task.model_dump(mode="json")
    data["activity"] = [a.model_dump(mode="json") for a in sorted_activity(task.activity)]
    return data


def task_view_message(view: TaskView) -> Dict[str, Any]:
    return {
        "type": "tasks",
        "tasks": [task_json(t) for t in view.tasks],
        "loading": view.loading,
        "error": view.error,
        "state": view.state.value,
    }


def task_detail_message(view: TaskDetailView) -> Dict[str, Any]:
    return {
        "type": "task",
        "task": task_json(view.task) if view.task else None,
        "loading": view.loading,
        "error": view.error,
    }


def require(backend: Backend, user: User, action: str) -> None:
    if not backend.resolver.user_can(user, action):
        raise HTTPException(status_code=403, detail=f"Missing permission: {action}")


def resolve_user(backend: Backend, user_id: str) -> User:
    data = backend.store.get(COLLECTION_USERS, user_id)
    if data is None:
        raise HTTPException(status_code=422, detail=f"Unknown user '{user_id}'")
    return normalize_user(user_id, data)


def visible_task(backend: Backend, user: User, task_id: str) -> Task:
    """The task if it exists and this user may see it; 404 otherwise."""
    task = backend.tasks.get(task_id)
    if task is None or not can_see(task, user):
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.exception_handler(DocumentNotFound)
async def not_found_handler(request: Request, exc: DocumentNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTaskDates)
async def invalid_dates_handler(request: Request, exc: InvalidTaskDates):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(AllocationFailure)
async def allocation_failure_handler(request: Request, exc: AllocationFailure):
    logger.error("Task id allocation failed: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# -----------------------------
# Schemas (subset for requests)
# -----------------------------
Amount = Optional[Union[float, str]]


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    department: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RoleUpdate(BaseModel):
    role: Role


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    label: Optional[str] = None
    status: TaskStatus = "Pending"
    priority: TaskPriority = "Medium"
    assigneeId: Optional[str] = None
    viewerIds: List[str] = Field(default_factory=list)
    department: Optional[str] = None
    sender: Optional[str] = None
    senderLocation: Optional[str] = None
    receiver: Optional[str] = None
    receiverLocation: Optional[str] = None
    period: Optional[str] = None
    initialDemand: Amount = None
    initialDemandCurrency: Optional[str] = None
    officialSettlement: Amount = None
    officialSettlementCurrency: Optional[str] = None
    motivation: Amount = None
    motivationCurrency: Optional[str] = None
    receivedDate: Optional[datetime] = None
    entryDate: Optional[datetime] = None
    dueDate: Optional[datetime] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    label: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigneeId: Optional[str] = None
    viewerIds: Optional[List[str]] = None
    department: Optional[str] = None
    sender: Optional[str] = None
    senderLocation: Optional[str] = None
    receiver: Optional[str] = None
    receiverLocation: Optional[str] = None
    period: Optional[str] = None
    initialDemand: Amount = None
    initialDemandCurrency: Optional[str] = None
    officialSettlement: Amount = None
    officialSettlementCurrency: Optional[str] = None
    motivation: Amount = None
    motivationCurrency: Optional[str] = None
    receivedDate: Optional[datetime] = None
    entryDate: Optional[datetime] = None
    dueDate: Optional[datetime] = None


class StatusUpdate(BaseModel):
    status: TaskStatus


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class FilesAdd(BaseModel):
    files: List[FileAttachment] = Field(..., min_length=1)


class CustomFieldsUpdate(BaseModel):
    values: List[str]


class PermissionToggle(BaseModel):
    permission: str
    role: str
    allowed: bool


# -----------------------------
# Auth utilities
# -----------------------------
def user_from_token(backend: Backend, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    session = backend.store.get(COLLECTION_SESSIONS, token)
    if not session:
        return None
    expires_at = to_instant(session.get("expiresAt"))
    if expires_at and expires_at < datetime.now(timezone.utc):
        return None
    data = backend.store.get(COLLECTION_USERS, session["userId"])
    if not data:
        return None
    return normalize_user(session["userId"], data)


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    backend: Backend = Depends(get_backend),
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    user = user_from_token(backend, token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


# -----------------------------
# Auth endpoints
# -----------------------------
@app.post("/auth/register")
def register(body: RegisterRequest, backend: Backend = Depends(get_backend)):
    if backend.store.find(COLLECTION_USERS, email=body.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    # the first account bootstraps the workspace as its Admin
    role = "Admin" if not backend.store.list(COLLECTION_USERS) else "Member"
    user_id = uuid4().hex
    payload = {
        "name": body.name,
        "email": body.email,
        "role": role,
        "department": body.department or "General",
        "avatarUrl": None,
        "password": hash_password(body.password),
        "createdAt": datetime.now(timezone.utc),
    }
    backend.store.create(COLLECTION_USERS, user_id, payload)
    return normalize_user(user_id, payload).model_dump()


@app.post("/auth/login")
def login(body: LoginRequest, backend: Backend = Depends(get_backend)):
    matches = backend.store.find(COLLECTION_USERS, email=body.email)
    if not matches or matches[0][1].get("password") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user_id, data = matches[0]
    token = secrets.token_urlsafe(32)
    now = datetime.now(timezone.utc)
    backend.store.create(
        COLLECTION_SESSIONS,
        token,
        {"token": token, "userId": user_id, "createdAt": now, "expiresAt": now + timedelta(days=SESSION_TTL_DAYS)},
    )
    return {"token": token, "user": normalize_user(user_id, data).model_dump()}


@app.get("/me")
async def me(user: User = Depends(get_current_user)):
    return user.model_dump()


# -----------------------------
# Users & permissions
# -----------------------------
@app.get("/users")
async def list_users(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    return [normalize_user(uid, data).model_dump() for uid, data in backend.store.list(COLLECTION_USERS)]


@app.put("/users/{user_id}/role")
async def update_user_role(
    user_id: str,
    body: RoleUpdate,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, MANAGE_USERS)
    backend.store.update(COLLECTION_USERS, user_id, {"role": body.role})
    return resolve_user(backend, user_id).model_dump()


@app.delete("/users/{user_id}")
async def delete_user(user_id: str, user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, MANAGE_USERS)
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if backend.store.get(COLLECTION_USERS, user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    sessions = backend.store.find(COLLECTION_SESSIONS, userId=user_id)
    for token, _ in sessions:
        backend.store.delete(COLLECTION_SESSIONS, token)
    backend.store.delete(COLLECTION_USERS, user_id)
    logger.info("User %s deleted by %s (%d sessions revoked)", user_id, user.id, len(sessions))
    return {"success": True}


@app.get("/permissions")
async def my_permissions(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    return {"role": user.role, "can": backend.resolver.capabilities(user.role)}


# -----------------------------
# Settings
# -----------------------------
@app.get("/settings")
async def get_settings(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    view = backend.settings_feed.view
    return {
        "settings": view.settings.model_dump(),
        "loading": view.loading,
        "error": view.error,
        "effectiveRules": [r.model_dump() for r in backend.rule_store.effective_rules()],
    }


@app.post("/settings/initialize")
async def initialize_settings(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, MANAGE_SETTINGS)
    backend.settings_feed.initialize_defaults()
    return {"initialized": True}


@app.put("/settings/custom-fields/{category}")
async def update_custom_fields(
    category: str,
    body: CustomFieldsUpdate,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, MANAGE_SETTINGS)
    backend.settings_feed.update_custom_fields(category, body.values)
    return {"category": category, "values": body.values}


@app.put("/settings/permissions")
async def set_permission(
    body: PermissionToggle,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, MANAGE_SETTINGS)
    try:
        rules = backend.settings_feed.set_permission(body.permission, body.role, body.allowed)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"rules": [r.model_dump() for r in rules]}


# -----------------------------
# Task endpoints
# -----------------------------
@app.get("/tasks")
async def list_tasks(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, VIEW_TASKS)
    return [task_json(t) for t in visible_tasks(backend.tasks.list(), user)]


@app.get("/tasks/next-id")
async def next_task_id(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, CREATE_TASKS)
    return {"id": backend.tasks.next_id()}


@app.post("/tasks", status_code=201)
async def create_task(body: TaskCreate, user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, CREATE_TASKS)
    data = body.model_dump(exclude={"assigneeId", "viewerIds"}, exclude_none=True)
    data["assignee"] = resolve_user(backend, body.assigneeId) if body.assigneeId else None
    data["viewers"] = [resolve_user(backend, uid) for uid in body.viewerIds]
    task = backend.tasks.create(data, user)
    return task_json(task)


@app.get("/tasks/{task_id}")
async def get_task(task_id: str, user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, VIEW_TASKS)
    return task_json(visible_task(backend, user, task_id))


@app.patch("/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, EDIT_TASKS)
    visible_task(backend, user, task_id)
    patch = body.model_dump(exclude_unset=True)
    if "assigneeId" in patch:
        assignee_id = patch.pop("assigneeId")
        patch["assignee"] = resolve_user(backend, assignee_id) if assignee_id else None
    if "viewerIds" in patch:
        patch["viewers"] = [resolve_user(backend, uid) for uid in (patch.pop("viewerIds") or [])]
    return task_json(backend.tasks.update(task_id, patch, user))


@app.patch("/tasks/{task_id}/status")
async def update_task_status(
    task_id: str,
    body: StatusUpdate,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, EDIT_TASKS)
    visible_task(backend, user, task_id)
    return task_json(backend.tasks.set_status(task_id, body.status, user))


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: str, user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, DELETE_TASKS)
    visible_task(backend, user, task_id)
    backend.tasks.delete(task_id)
    return {"deleted": True}


# -----------------------------
# Comments & files
# -----------------------------
@app.post("/tasks/{task_id}/comments", status_code=201)
async def add_comment(
    task_id: str,
    body: CommentCreate,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, VIEW_TASKS)
    visible_task(backend, user, task_id)
    entry = backend.tasks.add_comment(task_id, body.content.strip(), user)
    return entry.model_dump(mode="json")


@app.post("/tasks/{task_id}/files", status_code=201)
async def add_files(
    task_id: str,
    body: FilesAdd,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, EDIT_TASKS)
    visible_task(backend, user, task_id)
    files = [f.model_dump(exclude_none=True) for f in body.files]
    return task_json(backend.tasks.add_files(task_id, files, user))


@app.delete("/tasks/{task_id}/files/{file_name}")
async def remove_file(
    task_id: str,
    file_name: str,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, EDIT_TASKS)
    visible_task(backend, user, task_id)
    return task_json(backend.tasks.remove_file(task_id, file_name, user))


# -----------------------------
# Financials & activity feed
# -----------------------------
@app.get("/financials/summary")
async def financial_summary(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, VIEW_TASKS)
    require(backend, user, VIEW_FINANCIALS)
    summary = summarize(visible_tasks(backend.tasks.list(), user))
    return {currency: totals.model_dump() for currency, totals in summary.items()}


@app.get("/activity/recent")
async def activity_feed(
    limit: int = 20,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, VIEW_TASKS)
    items = recent_activity(visible_tasks(backend.tasks.list(), user), exclude_user_id=user.id, limit=limit)
    return [{**item, "activity": item["activity"].model_dump(mode="json")} for item in items]


# -----------------------------
# Dashboard & documents
# -----------------------------
@app.get("/dashboard/stats")
async def dashboard_stats(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, VIEW_TASKS)
    return task_stats(visible_tasks(backend.tasks.list(), user)).model_dump()


@app.get("/dashboard/deadlines")
async def dashboard_deadlines(
    limit: int = UPCOMING_LIMIT,
    user: User = Depends(get_current_user),
    backend: Backend = Depends(get_backend),
):
    require(backend, user, VIEW_TASKS)
    upcoming = upcoming_deadlines(visible_tasks(backend.tasks.list(), user), limit=limit)
    return [{**task_json(t), "daysLeft": days_left(t)} for t in upcoming]


@app.get("/dashboard/workload")
async def dashboard_workload(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, VIEW_TASKS)
    return [row.model_dump() for row in team_workload(visible_tasks(backend.tasks.list(), user))]


@app.get("/documents")
async def documents(user: User = Depends(get_current_user), backend: Backend = Depends(get_backend)):
    require(backend, user, VIEW_TASKS)
    return document_index(visible_tasks(backend.tasks.list(), user)).model_dump(mode="json")


# -----------------------------
# WebSocket feeds
# -----------------------------
async def _pump(websocket: WebSocket, queue: "asyncio.Queue[Dict[str, Any]]", tick=None, interval: float = 0) -> None:
    """Forward queued messages until the client goes away; run ``tick`` every ``interval`` seconds."""

    async def sender():
        while True:
            await websocket.send_json(await queue.get())

    async def receiver():
        try:
            while True:
                # keep alive / pings from the client
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    async def ticker():
        while True:
            await asyncio.sleep(interval)
            tick()

    jobs = [asyncio.create_task(sender()), asyncio.create_task(receiver())]
    if tick is not None and interval > 0:
        jobs.append(asyncio.create_task(ticker()))
    try:
        done, pending = await asyncio.wait(jobs, return_when=asyncio.FIRST_COMPLETED)
        for job in done:
            if job.exception() is not None and not isinstance(job.exception(), WebSocketDisconnect):
                logger.warning("WebSocket feed stopped: %s", job.exception())
    finally:
        for job in jobs:
            job.cancel()


def _queue_pusher(queue: "asyncio.Queue[Dict[str, Any]]"):
    loop = asyncio.get_running_loop()

    def push(message: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, message)

    return push


@app.websocket("/ws/tasks")
async def tasks_ws(websocket: WebSocket, token: Optional[str] = None):
    backend: Backend = websocket.app.state.backend
    user = user_from_token(backend, token)
    if user is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    queue: asyncio.Queue = asyncio.Queue()
    push = _queue_pusher(queue)
    controller = TaskSyncController(backend.store, backend.resolver, on_publish=lambda view: push(task_view_message(view)))

    def on_user(data):
        if data is None:
            push({"type": "signed_out"})
            controller.set_user(None)
        else:
            controller.set_user(normalize_user(user.id, data))

    def on_user_error(exc):
        logger.warning("User feed for %s failed: %s", user.id, exc)

    remove_listener = backend.settings_feed.add_listener(lambda _view: controller.refresh_permissions())
    controller.set_user(user)
    unsubscribe_user = backend.store.subscribe_document(COLLECTION_USERS, user.id, on_user, on_user_error)
    try:
        interval = controller.stale_after / 4 if controller.stale_after > 0 else 0
        await _pump(websocket, queue, tick=controller.check_liveness, interval=interval)
    finally:
        unsubscribe_user()
        remove_listener()
        controller.teardown()


@app.websocket("/ws/tasks/{task_id}")
async def task_ws(websocket: WebSocket, task_id: str, token: Optional[str] = None):
    backend: Backend = websocket.app.state.backend
    user = user_from_token(backend, token)
    if user is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    queue: asyncio.Queue = asyncio.Queue()
    push = _queue_pusher(queue)
    watcher = TaskWatcher(backend.store, backend.resolver, task_id, user, on_publish=lambda view: push(task_detail_message(view)))

    def on_user(data):
        watcher.set_user(normalize_user(user.id, data) if data is not None else None)

    def on_user_error(exc):
        logger.warning("User feed for %s failed: %s", user.id, exc)

    remove_listener = backend.settings_feed.add_listener(lambda _view: watcher.set_user(watcher.user))
    watcher.start()
    unsubscribe_user = backend.store.subscribe_document(COLLECTION_USERS, user.id, on_user, on_user_error)
    try:
        await _pump(websocket, queue)
    finally:
        unsubscribe_user()
        remove_listener()
        watcher.stop()


# -----------------------------
# Health/Test
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Task Tracker API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if IS_LOCAL_DB:
            response["database"] = "⚠️ In-memory store (DATABASE_URL not set)"
        elif db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
