"""
FastAPI Backend for Task Assignment

Provides REST endpoints for personal task lists, admin task assignment, task
completion and completion analytics. The database backend is chosen once in the
application lifespan and injected into every handler through ``get_database``.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .analytics import build_analytics
from .authorization import require_admin
from .config import Settings
from .database import TaskDatabase, open_database
from .models import (
    AnalyticsResponse,
    HealthResponse,
    TaskAssignRequest,
    TaskCreateRequest,
    TaskListResponse,
    TaskResponse,
)

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
logger = logging.getLogger(__name__)

SERVER_ERROR = "server error"

# Largest id a signed 64-bit INTEGER column can hold
MAX_ID = 2**63 - 1

# Set by the lifespan handler; tests override get_database instead
db_instance: Optional[TaskDatabase] = None


def get_database() -> TaskDatabase:
    """
    FastAPI dependency to provide database instance.

    Raises:
        HTTPException: 503 if the lifespan handler has not opened the database
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="database not available")
    return db_instance


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    """
    Caller identity as forwarded by the upstream authentication layer.

    Raises:
        HTTPException: 401 when the header is missing or not an integer id
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="authentication required")
    try:
        user_id = int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="authentication required")
    if not 1 <= user_id <= MAX_ID:
        raise HTTPException(status_code=401, detail="authentication required")
    return user_id


def week_start_filter(
    week_start: Optional[str] = Query(None, description="ISO date of the reporting week")
) -> Optional[str]:
    """Optional week bucket from the query string, normalised to YYYY-MM-DD."""
    if not week_start or not week_start.strip():
        return None
    try:
        return date.fromisoformat(week_start.strip()).isoformat()
    except ValueError:
        raise HTTPException(status_code=400, detail="week_start must be an ISO date")


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the configured database on startup and close it on shutdown.

    Settings come from ``app.state.settings`` when the CLI has put them there,
    otherwise from the environment.
    """
    global db_instance

    settings = getattr(app.state, "settings", None) or Settings.from_env()
    logging.getLogger("taskboard").setLevel(settings.log_level)

    try:
        db_instance = await asyncio.to_thread(open_database, settings)
        logger.info(f"Taskboard API starting up on {settings.backend.value} backend")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    if db_instance:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    week_start: Optional[str] = Depends(week_start_filter),
    user_id: int = Depends(get_current_user_id),
    db: TaskDatabase = Depends(get_database),
):
    """
    List the caller's own tasks, newest first.

    The owner filter always comes from the caller's identity, never from the request.
    """
    try:
        tasks = await asyncio.to_thread(db.list_tasks, user_id, week_start)
    except Exception as e:
        logger.error(f"Failed to list tasks for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=SERVER_ERROR)
    return {"tasks": tasks}


@router.post("", response_model=TaskResponse)
async def create_task(
    body: Optional[TaskCreateRequest] = None,
    user_id: int = Depends(get_current_user_id),
    db: TaskDatabase = Depends(get_database),
):
    """Create a pending task owned by the caller."""
    body = body or TaskCreateRequest()
    if not body.title:
        raise HTTPException(status_code=400, detail="title required")

    try:
        task = await asyncio.to_thread(
            db.create_task, user_id, body.title, body.description, _iso(body.week_start)
        )
    except Exception as e:
        logger.error(f"Failed to create task for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail=SERVER_ERROR)

    logger.info(f"Task {task['id']} created by user {user_id}")
    return {"task": task}


@router.post("/assign", response_model=TaskResponse)
async def assign_task_to_user(
    body: Optional[TaskAssignRequest] = None,
    admin_id: int = Depends(get_current_user_id),
    db: TaskDatabase = Depends(get_database),
):
    """
    Create a task on behalf of another user.

    Field checks run first, then the admin lookup, then the insert.

    Raises:
        HTTPException: 400 for a missing user_id or title, 403 for non-admins
    """
    body = body or TaskAssignRequest()
    if not body.user_id:
        raise HTTPException(status_code=400, detail="user_id required")
    if not body.title:
        raise HTTPException(status_code=400, detail="title required")

    try:
        await asyncio.to_thread(require_admin, db, admin_id)
        task = await asyncio.to_thread(
            db.create_task,
            body.user_id,
            body.title,
            body.description,
            _iso(body.week_start),
            admin_id,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to assign task to user {body.user_id}: {e}")
        raise HTTPException(status_code=500, detail=SERVER_ERROR)

    logger.info(f"Task {task['id']} assigned to user {body.user_id} by admin {admin_id}")
    return {"task": task}


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_task_analytics(
    week_start: Optional[str] = Depends(week_start_filter),
    admin_id: int = Depends(get_current_user_id),
    db: TaskDatabase = Depends(get_database),
):
    """Overall and per-user completion figures, admin only."""
    try:
        await asyncio.to_thread(require_admin, db, admin_id)
        totals = await asyncio.to_thread(db.task_totals, week_start)
        per_user = await asyncio.to_thread(db.per_user_task_counts, week_start)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to compute task analytics: {e}")
        raise HTTPException(status_code=500, detail=SERVER_ERROR)

    return build_analytics(totals, per_user)


@router.patch("/{task_id}/complete", response_model=TaskResponse)
async def complete_task(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    db: TaskDatabase = Depends(get_database),
):
    """
    Mark one of the caller's tasks completed.

    A task that does not exist and a task owned by someone else both answer 404.
    """
    if not 1 <= task_id <= MAX_ID:
        raise HTTPException(status_code=404, detail="not found")

    try:
        task = await asyncio.to_thread(db.complete_task, task_id, user_id)
    except Exception as e:
        logger.error(f"Failed to complete task {task_id}: {e}")
        raise HTTPException(status_code=500, detail=SERVER_ERROR)

    if task is None:
        raise HTTPException(status_code=404, detail="not found")

    logger.info(f"Task {task_id} completed by user {user_id}")
    return {"task": task}


app = FastAPI(
    title="Taskboard API",
    description="Task assignment and completion tracking",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/healthz", response_model=HealthResponse)
async def health_check(db: TaskDatabase = Depends(get_database)):
    """Report whether the database answers a trivial query."""
    try:
        database_connected = await asyncio.to_thread(db.ping)
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        backend=db.backend.value,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    """Render HTTP errors as {"error": message}."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"error": SERVER_ERROR})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    """Render request validation failures as {"error": message} with status 422."""
    problems = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"error": "; ".join(problems) or "invalid request"})
