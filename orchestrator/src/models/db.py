"""
Database models for the run state store.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False)
    status = Column(String(50), default="pending", index=True)
    config = Column(JSON, nullable=False)
    artifacts = Column(JSON, nullable=False, default=dict)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    stages = relationship(
        "StageRecord",
        back_populates="run",
        order_by="StageRecord.stage_order",
        cascade="all, delete-orphan",
    )

class StageRecord(Base):
    __tablename__ = "stage_results"
    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_stage_run_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    skip_reason = Column(String(50))
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(JSON)
    output_ref = Column(JSON)
    logs = Column(Text)
    completed_steps = Column(JSON, nullable=False, default=list)
    hook_errors = Column(JSON, nullable=False, default=list)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    run = relationship("PipelineRun", back_populates="stages")
