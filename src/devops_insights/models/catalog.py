"""Organisation catalog: teams, job roles, stacks and developers.

Developers are the people behind pull requests, commits, reviews and
comments. Sync creates them on first sight with no team or role; an admin
assigns those later.
"""

from __future__ import annotations

import uuid

from sqlalchemy import Column, ForeignKey, Table, Text
from sqlalchemy.orm import relationship

from devops_insights.models.base import (
    GUID,
    Base,
    created_at_column,
    updated_at_column,
)

developer_stacks = Table(
    "developer_stacks",
    Base.metadata,
    Column(
        "developer_id",
        GUID(),
        ForeignKey("developers.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "stack_id",
        GUID(),
        ForeignKey("stacks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Team(Base):
    __tablename__ = "teams"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    management = Column(Text, nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    developers = relationship(
        "Developer", back_populates="team", passive_deletes=True
    )
    repositories = relationship(
        "Repository", back_populates="team", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Team {self.name}>"


class Role(Base):
    """Job role of a developer (backend, QA, ...), not an access role."""

    __tablename__ = "roles"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    developers = relationship(
        "Developer", back_populates="role", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Role {self.name}>"


class Stack(Base):
    __tablename__ = "stacks"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    color = Column(Text, nullable=True)
    created_at = created_at_column()
    updated_at = updated_at_column()

    developers = relationship(
        "Developer",
        secondary=developer_stacks,
        back_populates="stacks",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Stack {self.name}>"


class Developer(Base):
    __tablename__ = "developers"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    login = Column(Text, nullable=False, unique=True, index=True)
    email = Column(Text, nullable=True, unique=True)
    azure_id = Column(Text, nullable=True, unique=True)

    team_id = Column(
        GUID(), ForeignKey("teams.id", ondelete="SET NULL"), nullable=True, index=True
    )
    role_id = Column(
        GUID(), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = created_at_column()
    updated_at = updated_at_column()

    team = relationship("Team", back_populates="developers")
    role = relationship("Role", back_populates="developers")
    stacks = relationship(
        "Stack",
        secondary=developer_stacks,
        back_populates="developers",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Developer {self.login}>"
