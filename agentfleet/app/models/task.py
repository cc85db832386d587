"""Database models for tasks."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.CANCELLED)


class TaskType(str, Enum):
    """Kinds of schedulable work."""
    TEAM_EPIC = "team_epic"
    IMPLEMENTATION = "implementation"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    BUG_FIX = "bug_fix"
    REVIEW = "review"
    RESEARCH = "research"


class TaskPriority(str, Enum):
    """Task priority. P1 is highest and sorts first."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"


class TaskModel(Base):
    """Task database model."""
    __tablename__ = "tasks"

    id = Column(String(100), primary_key=True, default=new_id)
    organization_id = Column(String(100), index=True, nullable=False)
    project_id = Column(String(100), index=True, nullable=False)
    parent_task_id = Column(String(100), index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, default="")
    type = Column(String(30), index=True, default=TaskType.IMPLEMENTATION.value)
    status = Column(String(30), index=True, default=TaskStatus.PENDING.value)
    priority = Column(String(2), index=True, default=TaskPriority.P3.value)
    depth = Column(Integer, default=0, nullable=False)
    depends_on = Column(JSON, default=list)
    affected_files = Column(JSON, default=list)
    acceptance_criteria = Column(JSON, default=list)
    required_skills = Column(JSON, default=list)
    work_items = Column(JSON, default=list)  # raw definitions aggregated into a team epic
    estimated_hours = Column(Float, default=0.0)
    assigned_worker_id = Column(String(100), index=True)
    assigned_team_id = Column(String(100), index=True)
    reviewer_worker_id = Column(String(100), index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    review_count = Column(Integer, default=0, nullable=False)
    needs_planning = Column(Boolean, default=False, nullable=False)
    output = Column(Text)
    review_feedback = Column(Text)
    error_message = Column(Text)
    blocked_until = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
