"""
Slack thread, thread message and history record models.

A thread is keyed by (team_id, channel_id, thread_ts) and is bound to the
agent that answered its first mention.  The binding is stored as
``agent_kind`` + ``agent_uuid``:

- agent_kind='agent':   a concrete agent, agent_uuid set
- agent_kind='general': general (guide) mode, agent_uuid NULL
- agent_kind NULL:      legacy thread created before agent binding existed
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base

AgentKind = Literal["agent", "general"]


class InvalidRecordError(ValueError):
    """Raised when a thread/message/history record fails validation."""


class InvalidThreadError(InvalidRecordError):
    pass


class InvalidMessageError(InvalidRecordError):
    pass


class InvalidHistoryError(InvalidRecordError):
    pass


@dataclass(frozen=True)
class AgentIdentity:
    """Who answers in a thread: a concrete agent, or general mode."""

    kind: AgentKind
    uuid: Optional[uuid.UUID] = None

    def __post_init__(self) -> None:
        if self.kind == "agent" and self.uuid is None:
            raise ValueError("agent identity requires a uuid")
        if self.kind == "general" and self.uuid is not None:
            raise ValueError("general mode identity must not carry a uuid")
        if self.kind not in ("agent", "general"):
            raise ValueError(f"unknown agent kind: {self.kind!r}")

    @classmethod
    def general(cls) -> AgentIdentity:
        return cls(kind="general")

    @classmethod
    def of(cls, agent_uuid: uuid.UUID) -> AgentIdentity:
        return cls(kind="agent", uuid=agent_uuid)

    @property
    def is_general(self) -> bool:
        return self.kind == "general"

    def __str__(self) -> str:
        return "general" if self.is_general else str(self.uuid)


GENERAL_MODE = AgentIdentity.general()


class Thread(Base):
    """A Slack conversation thread the bot participates in."""

    __tablename__ = "slack_threads"
    __table_args__ = (
        UniqueConstraint("team_id", "channel_id", "thread_ts", name="uq_slack_threads_key"),
        Index("ix_slack_threads_channel_ts", "channel_id", "thread_ts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    team_id: Mapped[str] = mapped_column(String(50), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(50), nullable=False)
    # Empty for threads started from a channel-level message without ts
    thread_ts: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    agent_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    agent_uuid: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )
    agent_version: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def agent_identity(self) -> AgentIdentity | None:
        """The bound agent, or None for legacy threads without a binding."""
        if self.agent_kind is None:
            return None
        if self.agent_kind == "general":
            return GENERAL_MODE
        return AgentIdentity.of(self.agent_uuid)

    def validate(self) -> None:
        if not isinstance(self.id, uuid.UUID):
            raise InvalidThreadError("invalid thread ID")
        if not self.team_id:
            raise InvalidThreadError("team ID is empty")
        if not self.channel_id:
            raise InvalidThreadError("channel ID is empty")
        if self.agent_kind not in (None, "agent", "general"):
            raise InvalidThreadError(f"invalid agent kind: {self.agent_kind}")
        if self.agent_kind == "agent" and not isinstance(self.agent_uuid, uuid.UUID):
            raise InvalidThreadError("invalid agent UUID")


def binding_columns(identity: AgentIdentity | None, version: str) -> dict[str, Any]:
    """Column values for a thread bound to ``identity``."""
    if identity is None:
        return {"agent_kind": None, "agent_uuid": None, "agent_version": version}
    return {
        "agent_kind": identity.kind,
        "agent_uuid": identity.uuid,
        "agent_version": version,
    }


class ThreadMessage(Base):
    """One message recorded in a thread. Append only."""

    __tablename__ = "slack_thread_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("slack_threads.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id: Mapped[str] = mapped_column(String(50), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    @classmethod
    def create(
        cls,
        thread_id: uuid.UUID,
        user_id: str,
        user_name: str,
        text: str,
        timestamp: str,
    ) -> ThreadMessage:
        return cls(
            id=uuid.uuid4(),
            thread_id=thread_id,
            user_id=user_id,
            user_name=user_name,
            text=text,
            timestamp=timestamp,
            created_at=datetime.utcnow(),
        )

    def validate(self) -> None:
        if not isinstance(self.id, uuid.UUID):
            raise InvalidMessageError("message ID is empty")
        if not isinstance(self.thread_id, uuid.UUID):
            raise InvalidMessageError("invalid thread ID")
        if not self.user_id:
            raise InvalidMessageError("user ID is empty")
        if not self.text:
            raise InvalidMessageError("message text is empty")
        if not self.timestamp:
            raise InvalidMessageError("message timestamp is empty")


class HistoryRecord(Base):
    """
    Pointer to one serialized conversation history blob.

    A new record is written per successful generation; the newest one for a
    thread is the one loaded on the next turn.
    """

    __tablename__ = "slack_histories"
    __table_args__ = (
        Index("ix_slack_histories_thread_created", "thread_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    thread_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("slack_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    @classmethod
    def create(cls, thread_id: uuid.UUID) -> HistoryRecord:
        return cls(id=uuid.uuid4(), thread_id=thread_id, created_at=datetime.utcnow())

    def validate(self) -> None:
        if not isinstance(self.id, uuid.UUID):
            raise InvalidHistoryError("invalid history ID")
        if not isinstance(self.thread_id, uuid.UUID):
            raise InvalidHistoryError("invalid thread ID")
