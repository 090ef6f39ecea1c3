from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import relationship

from devops_insights.models.base import (
    GUID,
    Base,
    created_at_column,
    updated_at_column,
)


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncJob(Base):
    """One row per sync attempt of a repository.

    pending -> running -> completed | failed. Terminal rows are not touched
    again, except for a user cancel that fails a running job.
    """

    __tablename__ = "sync_jobs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    repository_id = Column(
        GUID(), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(Text, nullable=False, default=SyncJobStatus.PENDING.value)
    sync_type = Column(Text, nullable=False, default=SyncType.INCREMENTAL.value)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    repository = relationship("Repository", back_populates="sync_jobs")

    __table_args__ = (
        Index("ix_sync_jobs_repository_created", "repository_id", "created_at"),
        Index("ix_sync_jobs_status", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            SyncJobStatus.COMPLETED.value,
            SyncJobStatus.FAILED.value,
        )

    def __repr__(self) -> str:
        return f"<SyncJob {self.id} {self.status}>"
