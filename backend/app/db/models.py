############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# models.py: SQLAlchemy ORM models
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""SQLAlchemy database models for GenRouter."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.jobs.states import JobState
from backend.app.db.base import Base, TimestampMixin

# Use enum values (lowercase) for database storage, not enum names (uppercase)
_enum_values = lambda obj: [e.value for e in obj]


class GenerationJob(Base, TimestampMixin):
    """A queued image/video generation request and its backend assignment."""

    __tablename__ = "generation_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Opaque workflow payload, forwarded to the backend as-is
    prompt: Mapped[Any] = mapped_column(JSON, nullable=False)

    state: Mapped[JobState] = mapped_column(
        Enum(JobState, values_callable=_enum_values, name="jobstate"),
        nullable=False,
        default=JobState.PENDING,
    )

    # Set together when a backend accepts the job
    backend_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    backend_prompt_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_generation_jobs_state_created", "state", "created_at"),
        Index("ix_generation_jobs_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<GenerationJob {self.id} {self.state.value}>"
