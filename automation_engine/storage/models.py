"""SQLAlchemy database models for the automation engine."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from ..core.clock import utc_now
from .database import Base


class WorkflowModel(Base):
    """Database model for workflow definitions."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    definition = Column(JSON, nullable=False)  # nodes and edges as submitted
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    executions = relationship("ExecutionModel", back_populates="workflow")


class ExecutionModel(Base):
    """Database model for workflow executions."""
    __tablename__ = "executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    status = Column(String, nullable=False)  # running, waiting, completed, failed
    context = Column(JSON, nullable=False, default=dict)
    current_step_id = Column(String)
    execution_path = Column(JSON, default=list)
    error_message = Column(Text)
    started_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)
    completed_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="executions")
    queue_items = relationship("QueueItemModel", back_populates="execution")


class QueueItemModel(Base):
    """Database model for scheduled resumptions."""
    __tablename__ = "queue_items"

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False, index=True)
    step_id = Column(String, nullable=False)
    resume_at = Column(DateTime)  # NULL waits for input only
    status = Column(String, nullable=False, default="pending")  # pending, processing, completed, failed
    error_message = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utc_now)
    claimed_at = Column(DateTime)
    completed_at = Column(DateTime)

    execution = relationship("ExecutionModel", back_populates="queue_items")

    __table_args__ = (
        Index("idx_queue_items_status_resume_at", "status", "resume_at"),
    )
