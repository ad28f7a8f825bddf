"""Generation job model."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class GenerationJob(Base):
    """One fashion generation request and its per-slot results."""

    __tablename__ = "generation_jobs"
    __table_args__ = (Index("ix_generation_jobs_account_created", "account_id", "created_at"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    original_url = Column(Text, nullable=False)
    requested_image_count = Column(Integer, nullable=False)
    prompt = Column(Text, nullable=False)
    aspect_ratio = Column(String, nullable=False, default="portrait")
    style = Column(String, nullable=True)
    camera_angle = Column(String, nullable=True)
    lighting = Column(String, nullable=True)
    status = Column(String, nullable=False, default="processing", index=True)
    image_urls = Column(JSON, nullable=False, default=list)
    error_message = Column(String, nullable=True)
    model_used = Column(String, nullable=True)
    queue_job_id = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    processing_time_ms = Column(Integer, nullable=True)
    is_favorite = Column(Boolean, nullable=False, default=False)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    account = relationship("Account", back_populates="generation_jobs")

    __mapper_args__ = {"version_id_col": version_id}
