"""
Pydantic models for the taskboard API.

Request bodies keep their required fields optional at the schema level so the
handlers can answer a missing title or user_id with a 400 and a short message
instead of FastAPI's generic 422.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Task lifecycle: pending -> completed, nothing after that."""
    PENDING = "pending"
    COMPLETED = "completed"


class UserType(str, Enum):
    ADMIN = "admin"
    USER = "user"


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class TaskCreateRequest(BaseModel):
    """Body of POST /tasks."""
    title: Optional[str] = Field(None, description="Task title, required and non-empty")
    description: Optional[str] = Field(None, description="Free-form task details")
    week_start: Optional[date] = Field(None, description="ISO date of the reporting week")

    @field_validator("title", "week_start", mode="before")
    @classmethod
    def validate_blank(cls, v):
        """Treat a blank title or week like an omitted one."""
        return _blank_to_none(v)


class TaskAssignRequest(TaskCreateRequest):
    """Body of POST /tasks/assign."""
    user_id: Optional[int] = Field(None, description="User who will own the task")


class Task(BaseModel):
    """Canonical task shape returned by every task endpoint."""
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    week_start: Optional[date] = None
    assigned_by: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class TaskResponse(BaseModel):
    task: Task


class TaskListResponse(BaseModel):
    tasks: List[Task]


class AnalyticsTotals(BaseModel):
    assigned: int
    completed: int
    completion_rate: int


class UserAnalytics(BaseModel):
    user_id: int
    name: str
    assigned: int
    completed: int
    completion_rate: int


class AnalyticsResponse(BaseModel):
    totals: AnalyticsTotals
    perUser: List[UserAnalytics]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    backend: str
    timestamp: str