"""Job model: the inbox of workflows launched for connectors."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from connectors.db.base import Base
from connectors.db.models.enums import JobStatus, JobType


class Job(Base):
    """One launched sync workflow, from QUEUED until a worker finishes it.

    Launch parameters and the workflow's summary are JSON text columns.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_type_priority", "status", "type", "priority"),
        Index("ix_jobs_connector_id", "connector_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    type: Mapped[JobType] = mapped_column(Enum(JobType), nullable=False)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), default=JobStatus.QUEUED)
    # Claimed highest first, then oldest first
    priority: Mapped[int] = mapped_column(Integer, default=0)
    connector_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("connectors.id", ondelete="CASCADE"), nullable=True
    )

    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    # A failed job goes back to QUEUED while attempts < max_attempts
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.type.value} {self.status.value} connector={self.connector_id}>"
