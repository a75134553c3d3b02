"""
Agent and AgentVersion models.

An agent is a named configuration users address from Slack with
``@tamamo <agent_id> ...``.  Each agent has immutable versions carrying the
system prompt and the LLM provider/model to use; ``latest`` points at the
version new threads bind to.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class AgentStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in {s.value for s in cls}


class Agent(Base):
    """Agent metadata."""

    __tablename__ = "agents"
    __table_args__ = (
        Index("ix_agents_status_created_at", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Public, human-typed identifier (e.g. "code-helper")
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    author: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgentStatus.ACTIVE.value
    )
    latest: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    image_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def is_active(self) -> bool:
        return self.status == AgentStatus.ACTIVE.value


class AgentVersion(Base):
    """One immutable version of an agent's prompt and model selection."""

    __tablename__ = "agent_versions"

    agent_uuid: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True
    )
    version: Mapped[str] = mapped_column(String(50), primary_key=True)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    llm_provider: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    llm_model: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
