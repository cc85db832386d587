"""Database models for goals and their progress history."""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Float, String, Text
from .task import Base, new_id, utcnow


class GoalStatus(str, Enum):
    """Goal lifecycle states."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DecompositionStrategy(str, Enum):
    """How a goal was broken down."""
    TASK_BASED = "task_based"
    TEAM_BASED = "team_based"


class GoalModel(Base):
    """Goal database model."""
    __tablename__ = "goals"

    id = Column(String(100), primary_key=True, default=new_id)
    organization_id = Column(String(100), index=True, nullable=False)
    team_id = Column(String(100))
    owner_worker_id = Column(String(100))
    parent_goal_id = Column(String(100), index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, default="")
    goal_type = Column(String(50), default="objective")
    priority = Column(String(2), default="P3")
    status = Column(String(20), index=True, default=GoalStatus.ACTIVE.value)
    target_date = Column(DateTime)
    start_date = Column(DateTime)
    progress_percent = Column(Float, default=0.0, nullable=False)
    current_value = Column(Float)
    auto_decomposed = Column(Boolean, default=False, nullable=False)
    decomposition_strategy = Column(String(20))
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class GoalProgressRecordModel(Base):
    """Append-only goal progress audit entry."""
    __tablename__ = "goal_progress_records"

    id = Column(String(100), primary_key=True, default=new_id)
    goal_id = Column(String(100), index=True, nullable=False)
    progress_percent = Column(Float, nullable=False)
    current_value = Column(Float)
    note = Column(Text)
    recorded_by = Column(String(100))
    recorded_at = Column(DateTime, default=utcnow, index=True)
