"""Repository activity mirrored from Azure DevOps.

Every synced row carries ``azure_id``, the identifier assigned upstream.
Upserts are keyed on it, so re-running a sync only updates mutable fields.
"""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import relationship

from devops_insights.models.base import (
    GUID,
    Base,
    created_at_column,
    updated_at_column,
)


class PullRequestStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    COMPLETED = "completed"


class ReviewStatus(str, Enum):
    APPROVED = "approved"
    APPROVED_WITH_SUGGESTIONS = "approved_with_suggestions"
    WAITING_FOR_AUTHOR = "waiting_for_author"
    REJECTED = "rejected"
    NO_RESPONSE = "no_response"


class Repository(Base):
    __tablename__ = "repositories"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    organization = Column(Text, nullable=False)
    project = Column(Text, nullable=False)
    url = Column(Text, nullable=False, unique=True)
    azure_id = Column(Text, nullable=True)
    # Per-repository PAT override, Fernet-encrypted
    access_token = Column(Text, nullable=True)
    team_id = Column(
        GUID(), ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True
    )
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = created_at_column()
    updated_at = updated_at_column()

    team = relationship("Team", back_populates="repositories")
    pull_requests = relationship(
        "PullRequest",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    commits = relationship(
        "Commit",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    sync_jobs = relationship(
        "SyncJob",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Repository {self.organization}/{self.project}/{self.name}>"


class PullRequest(Base):
    __tablename__ = "pull_requests"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    azure_id = Column(Integer, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Text, nullable=False, default=PullRequestStatus.ACTIVE.value)
    source_branch = Column(Text, nullable=False)
    target_branch = Column(Text, nullable=False)

    repository_id = Column(
        GUID(), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    created_by_id = Column(
        GUID(), ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    merged_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    cycle_time_days = Column(Float, nullable=True)
    review_time_days = Column(Float, nullable=True)
    lead_time_days = Column(Float, nullable=True)
    is_draft = Column(Boolean, nullable=False, default=False)

    files_changed = Column(Integer, nullable=True)
    lines_added = Column(Integer, nullable=True)
    lines_deleted = Column(Integer, nullable=True)

    repository = relationship("Repository", back_populates="pull_requests")
    created_by = relationship("Developer")
    reviews = relationship(
        "Review",
        back_populates="pull_request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    comments = relationship(
        "Comment",
        back_populates="pull_request",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_pull_requests_repository_created", "repository_id", "created_at"),
        Index("ix_pull_requests_created_by", "created_by_id"),
        Index("ix_pull_requests_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<PullRequest {self.azure_id}>"


class Commit(Base):
    __tablename__ = "commits"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    azure_id = Column(Text, nullable=False, unique=True)
    hash = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    repository_id = Column(
        GUID(), ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    author_id = Column(
        GUID(), ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime(timezone=True), nullable=False)

    repository = relationship("Repository", back_populates="commits")
    author = relationship("Developer")

    __table_args__ = (
        Index("ix_commits_repository_created", "repository_id", "created_at"),
        Index("ix_commits_author", "author_id"),
    )


class Review(Base):
    __tablename__ = "reviews"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    azure_id = Column(Text, nullable=False, unique=True)
    status = Column(Text, nullable=False)
    vote = Column(Integer, nullable=False, default=0)
    pull_request_id = Column(
        GUID(), ForeignKey("pull_requests.id", ondelete="CASCADE"), nullable=False
    )
    reviewer_id = Column(
        GUID(), ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    created_at = created_at_column()
    updated_at = updated_at_column()

    pull_request = relationship("PullRequest", back_populates="reviews")
    reviewer = relationship("Developer")

    __table_args__ = (
        Index("ix_reviews_pull_request", "pull_request_id"),
        Index("ix_reviews_reviewer", "reviewer_id"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    azure_id = Column(Text, nullable=False, unique=True)
    content = Column(Text, nullable=False)
    pull_request_id = Column(
        GUID(), ForeignKey("pull_requests.id", ondelete="CASCADE"), nullable=False
    )
    author_id = Column(
        GUID(), ForeignKey("developers.id", ondelete="CASCADE"), nullable=False
    )
    created_at = created_at_column()
    updated_at = updated_at_column()

    pull_request = relationship("PullRequest", back_populates="comments")
    author = relationship("Developer")

    __table_args__ = (
        Index("ix_comments_pull_request", "pull_request_id"),
        Index("ix_comments_author", "author_id"),
    )
