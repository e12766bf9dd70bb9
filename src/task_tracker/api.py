"""
FastAPI Backend with WebSocket Fan-out for the Task Tracker

Provides a thin REST surface over the TaskLifecycleManager and the owned
reference/notification data, plus the ``/ws/updates`` WebSocket endpoint
through which sessions join their owner's room and receive task events.

The caller identity is taken from the ``X-User-Id`` header; verifying it is
the job of the authentication layer in front of this service.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .broadcaster import EventBroadcaster
from .config import Settings, load_settings
from .database import TaskDatabase
from .errors import TaskTrackerError
from .lifecycle import TaskLifecycleManager
from .models import (
    Category,
    CategoryCreate,
    CategoryUpdate,
    HealthResponse,
    Priority,
    PriorityCreate,
    PriorityUpdate,
    SubtaskCreate,
    SubtaskUpdate,
    Tag,
    TagCreate,
    TagUpdate,
    TaskCreate,
    TaskUpdate,
    create_error_response,
    create_success_response,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# Dependencies for FastAPI dependency injection
def get_database(request: Request) -> TaskDatabase:
    """
    Provide the database instance.

    Raises:
        HTTPException: If database is not available
    """
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def get_manager(request: Request) -> TaskLifecycleManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Task service not available")
    return manager


def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None),
) -> str:
    """
    Resolve the calling user from the ``X-User-Id`` header.

    The first request of a user seeds their default categories and
    priorities when seeding is enabled.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user_id = x_user_id.strip()

    state = request.app.state
    if state.settings.seed_defaults and user_id not in state.seeded_users:
        get_database(request).seed_user_defaults(user_id)
        state.seeded_users.add(user_id)
    return user_id


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and wire the lifecycle manager for the app's lifetime."""
    settings: Settings = app.state.settings
    try:
        app.state.db = TaskDatabase(settings.database_path)
    except TaskTrackerError as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
    app.state.broadcaster = EventBroadcaster(max_connections=settings.max_connections)
    app.state.manager = TaskLifecycleManager(
        store=app.state.db,
        notifications=app.state.db,
        references=app.state.db,
        broadcaster=app.state.broadcaster,
    )
    app.state.seeded_users = set()
    logger.info(f"Task Tracker API started with database {settings.database_path}")

    yield

    app.state.manager = None
    if app.state.db:
        app.state.db.close()
        app.state.db = None
        logger.info("Database connection closed")


async def handle_task_tracker_error(request: Request, exc: TaskTrackerError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.kind, exc.message, exc.details),
    )


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=422,
        content=create_error_response(
            "validation_error",
            f"{location}: {message}" if location else message,
            {"field": location} if location else None,
        ),
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application for the given settings."""
    settings = settings or load_settings()
    app = FastAPI(
        title="Task Tracker API",
        description="Multi-user task tracking with recurrence and real-time updates",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = None
    app.state.manager = None
    app.state.broadcaster = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TaskTrackerError, handle_task_tracker_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.include_router(router)
    return app


# Health check endpoint for monitoring and load balancers
@router.get("/healthz", response_model=HealthResponse)
async def health_check(request: Request, db: TaskDatabase = Depends(get_database)):
    """Report database connectivity and WebSocket session count."""
    database_connected = True
    try:
        db.ping()
    except TaskTrackerError as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    broadcaster: EventBroadcaster = request.app.state.broadcaster
    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=broadcaster.get_connection_count() if broadcaster else 0,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


# ---- tasks ----

@router.get("/api/tasks")
async def list_tasks(
    status: Optional[str] = None,
    category_id: Optional[str] = None,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    tasks = manager.list_tasks(user_id, status=status, category_id=category_id)
    return create_success_response([manager.resolve(task) for task in tasks], count=len(tasks))


@router.post("/api/tasks", status_code=201)
async def create_task(
    body: TaskCreate,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    task = await manager.create_task(user_id, body)
    return create_success_response(manager.resolve(task))


@router.get("/api/tasks/{task_id}")
async def get_task(
    task_id: str,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    return create_success_response(manager.resolve(manager.get_task(user_id, task_id)))


@router.put("/api/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    task = await manager.update_task(user_id, task_id, body)
    return create_success_response(manager.resolve(task))


@router.delete("/api/tasks/{task_id}")
async def delete_task(
    task_id: str,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    await manager.delete_task(user_id, task_id)
    return create_success_response({})


@router.get("/api/tasks/{task_id}/successors")
async def list_successors(
    task_id: str,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    tasks = manager.list_successors(user_id, task_id)
    return create_success_response([manager.resolve(task) for task in tasks], count=len(tasks))


@router.post("/api/tasks/{task_id}/subtasks", status_code=201)
async def add_subtask(
    task_id: str,
    body: SubtaskCreate,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    task = await manager.add_subtask(user_id, task_id, body)
    return create_success_response(manager.resolve(task))


@router.put("/api/tasks/{task_id}/subtasks/{subtask_id}")
async def update_subtask(
    task_id: str,
    subtask_id: str,
    body: SubtaskUpdate,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    task = await manager.update_subtask(user_id, task_id, subtask_id, body)
    return create_success_response(manager.resolve(task))


@router.delete("/api/tasks/{task_id}/subtasks/{subtask_id}")
async def delete_subtask(
    task_id: str,
    subtask_id: str,
    user_id: str = Depends(get_current_user),
    manager: TaskLifecycleManager = Depends(get_manager),
):
    task = await manager.delete_subtask(user_id, task_id, subtask_id)
    return create_success_response(manager.resolve(task))


# ---- owned reference entities ----

@router.get("/api/categories")
async def list_categories(user_id: str = Depends(get_current_user), db: TaskDatabase = Depends(get_database)):
    categories = db.list_categories(user_id)
    return create_success_response([c.model_dump(mode="json") for c in categories], count=len(categories))


@router.post("/api/categories", status_code=201)
async def create_category(
    body: CategoryCreate,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    category = db.create_category(Category(owner_id=user_id, **body.model_dump()))
    return create_success_response(category.model_dump(mode="json"))


@router.put("/api/categories/{category_id}")
async def update_category(
    category_id: str,
    body: CategoryUpdate,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    category = db.update_category(user_id, category_id, body.model_dump(exclude_unset=True))
    return create_success_response(category.model_dump(mode="json"))


@router.delete("/api/categories/{category_id}")
async def delete_category(
    category_id: str,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    db.delete_category(user_id, category_id)
    return create_success_response({})


@router.get("/api/priorities")
async def list_priorities(user_id: str = Depends(get_current_user), db: TaskDatabase = Depends(get_database)):
    priorities = db.list_priorities(user_id)
    return create_success_response([p.model_dump(mode="json") for p in priorities], count=len(priorities))


@router.post("/api/priorities", status_code=201)
async def create_priority(
    body: PriorityCreate,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    priority = db.create_priority(Priority(owner_id=user_id, **body.model_dump()))
    return create_success_response(priority.model_dump(mode="json"))


@router.put("/api/priorities/{priority_id}")
async def update_priority(
    priority_id: str,
    body: PriorityUpdate,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    priority = db.update_priority(user_id, priority_id, body.model_dump(exclude_unset=True))
    return create_success_response(priority.model_dump(mode="json"))


@router.delete("/api/priorities/{priority_id}")
async def delete_priority(
    priority_id: str,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    db.delete_priority(user_id, priority_id)
    return create_success_response({})


@router.get("/api/tags")
async def list_tags(user_id: str = Depends(get_current_user), db: TaskDatabase = Depends(get_database)):
    tags = db.list_tags(user_id)
    return create_success_response([t.model_dump(mode="json") for t in tags], count=len(tags))


@router.post("/api/tags", status_code=201)
async def create_tag(
    body: TagCreate,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    tag = db.create_tag(Tag(owner_id=user_id, **body.model_dump()))
    return create_success_response(tag.model_dump(mode="json"))


@router.put("/api/tags/{tag_id}")
async def update_tag(
    tag_id: str,
    body: TagUpdate,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    tag = db.update_tag(user_id, tag_id, body.model_dump(exclude_unset=True))
    return create_success_response(tag.model_dump(mode="json"))


@router.delete("/api/tags/{tag_id}")
async def delete_tag(
    tag_id: str,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    db.delete_tag(user_id, tag_id)
    return create_success_response({})


# ---- notifications ----

@router.get("/api/notifications")
async def list_notifications(
    request: Request,
    unread_only: bool = False,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    limit = request.app.state.settings.notification_limit
    notifications = db.list_notifications(user_id, limit=limit, unread_only=unread_only)
    return create_success_response(
        [n.model_dump(mode="json") for n in notifications], count=len(notifications)
    )


@router.put("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    notification = db.mark_notification_read(user_id, notification_id)
    return create_success_response(notification.model_dump(mode="json"))


@router.delete("/api/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    db.delete_notification(user_id, notification_id)
    return create_success_response({})


@router.delete("/api/notifications")
async def clear_notifications(
    user_id: str = Depends(get_current_user),
    db: TaskDatabase = Depends(get_database),
):
    removed = db.clear_notifications(user_id)
    return create_success_response({"removed": removed})


# ---- WebSocket ----

async def handle_client_message(
    broadcaster: EventBroadcaster, session_id: str, message: Dict[str, Any]
) -> Dict[str, Any]:
    """Apply one client control message and build the acknowledgement."""
    message_type = message.get("type")

    if message_type == "join":
        user_id = str(message.get("user_id") or "").strip()
        if not user_id:
            return {"type": "error", "message": "join requires a user_id"}
        await broadcaster.join(session_id, user_id)
        return {"type": "joined", "user_id": user_id}

    if message_type == "leave":
        await broadcaster.leave(session_id)
        return {"type": "left"}

    if message_type == "ping":
        return {"type": "pong"}

    return {"type": "error", "message": f"Unknown message type: {message_type!r}"}


@router.websocket("/ws/updates")
async def websocket_updates(websocket: WebSocket):
    """Accept a session and process join/leave/ping messages until it closes."""
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster
    session_id = await broadcaster.connect(websocket)
    if session_id is None:
        await websocket.close(code=1013)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Messages must be JSON objects"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Messages must be JSON objects"})
                continue
            await websocket.send_json(await handle_client_message(broadcaster, session_id, message))
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.disconnect(session_id)


app = create_app()
