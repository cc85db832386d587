"""Database models for organizations, teams and workers."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from .task import Base, new_id, utcnow


class WorkerStatus(str, Enum):
    """Worker availability."""
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


class OrganizationModel(Base):
    """Organization (tenant) database model."""
    __tablename__ = "organizations"

    id = Column(String(100), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    working_directory = Column(String(1000))
    repository_url = Column(String(1000))
    cost_limit_daily_cents = Column(Integer)
    created_at = Column(DateTime, default=utcnow)


class TeamModel(Base):
    """Team database model."""
    __tablename__ = "teams"

    id = Column(String(100), primary_key=True, default=new_id)
    organization_id = Column(String(100), index=True, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, default="")
    skills = Column(JSON, default=list)
    manager_worker_id = Column(String(100))
    created_at = Column(DateTime, default=utcnow)


class WorkerModel(Base):
    """Worker (agent) database model."""
    __tablename__ = "workers"

    id = Column(String(100), primary_key=True, default=new_id)
    organization_id = Column(String(100), index=True, nullable=False)
    team_id = Column(String(100), index=True)
    role_id = Column(String(100))
    name = Column(String(200), nullable=False)
    status = Column(String(20), index=True, default=WorkerStatus.IDLE.value)  # idle, busy, error
    max_concurrent_tasks = Column(Integer, default=1)
    skills = Column(JSON, default=list)
    is_temporary = Column(Boolean, default=False, nullable=False)
    created_by_worker_id = Column(String(100))
    tasks_completed = Column(Integer, default=0)
    tasks_failed = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)
    last_heartbeat = Column(DateTime)
