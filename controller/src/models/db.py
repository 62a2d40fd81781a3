"""
Database models for controller (sync version).
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Float
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(UUID(as_uuid=True))
    commit_sha = Column(String(40), nullable=False)
    branch = Column(String(255), nullable=False)
    event_type = Column(String(20), default="push")
    status = Column(String(50), default="pending")
    triggered_by = Column(String(255))
    config = Column(JSONB)
    failure_kind = Column(String(50))
    exit_code = Column(Integer)
    detail = Column(JSONB)
    artifact_digest = Column(String(100))
    image_tag = Column(String(128))
    registry_url = Column(String(500))
    published_at = Column(DateTime)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class PipelineStage(Base):
    __tablename__ = "pipeline_stages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.id"))
    name = Column(String(50), nullable=False)
    stage_order = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False)
    exit_code = Column(Integer)
    duration_seconds = Column(Float)
    log_ref = Column(String(500))
    logs = Column(Text)
    detail = Column(JSONB)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
