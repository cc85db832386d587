"""Database models for projects."""

from enum import Enum

from sqlalchemy import Column, DateTime, String, Text
from .task import Base, new_id, utcnow


class ProjectStatus(str, Enum):
    """Project lifecycle states."""
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"


class ProjectModel(Base):
    """Project database model."""
    __tablename__ = "projects"

    id = Column(String(100), primary_key=True, default=new_id)
    organization_id = Column(String(100), index=True, nullable=False)
    goal_id = Column(String(100), index=True)
    name = Column(String(500), nullable=False)
    description = Column(Text, default="")
    status = Column(String(20), default=ProjectStatus.ACTIVE.value)
    working_directory = Column(String(1000))
    repository_url = Column(String(1000))
    created_at = Column(DateTime, default=utcnow)
