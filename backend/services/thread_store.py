"""
Thread store: Slack threads, their messages and history records in Postgres.

Threads are keyed by (team_id, channel_id, thread_ts).  Creation uses
``INSERT ... ON CONFLICT DO NOTHING`` against the unique key followed by a
select, so two first mentions racing on the same thread end up with the same
row and the binding of whichever insert won.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import get_session
from models.thread import AgentIdentity, HistoryRecord, Thread, ThreadMessage, binding_columns

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class ThreadNotFoundError(LookupError):
    """No thread exists for the requested channel/thread_ts."""


class HistoryNotFoundError(LookupError):
    """A thread has no stored history yet."""


class ThreadStore:
    """SQLAlchemy-backed thread repository."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def get_or_create_thread(
        self,
        team_id: str,
        channel_id: str,
        thread_ts: str,
    ) -> Thread:
        """Get or create a thread without an agent binding."""
        return await self._get_or_create(team_id, channel_id, thread_ts, None, "")

    async def get_or_create_thread_with_agent(
        self,
        team_id: str,
        channel_id: str,
        thread_ts: str,
        identity: AgentIdentity,
        agent_version: str,
    ) -> Thread:
        """
        Get or create a thread bound to ``identity``.

        The binding is only written when this call creates the row; an
        existing thread keeps the agent it was created with.
        """
        return await self._get_or_create(team_id, channel_id, thread_ts, identity, agent_version)

    async def _get_or_create(
        self,
        team_id: str,
        channel_id: str,
        thread_ts: str,
        identity: AgentIdentity | None,
        agent_version: str,
    ) -> Thread:
        now = datetime.utcnow()
        candidate = Thread(
            id=uuid.uuid4(),
            team_id=team_id,
            channel_id=channel_id,
            thread_ts=thread_ts,
            created_at=now,
            updated_at=now,
            **binding_columns(identity, agent_version),
        )
        candidate.validate()

        async with self._session() as session:
            stmt = (
                pg_insert(Thread)
                .values(
                    id=candidate.id,
                    team_id=candidate.team_id,
                    channel_id=candidate.channel_id,
                    thread_ts=candidate.thread_ts,
                    agent_kind=candidate.agent_kind,
                    agent_uuid=candidate.agent_uuid,
                    agent_version=candidate.agent_version,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(constraint="uq_slack_threads_key")
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(Thread)
                .where(Thread.team_id == team_id)
                .where(Thread.channel_id == channel_id)
                .where(Thread.thread_ts == thread_ts)
            )
            thread: Thread = result.scalar_one()

        if thread.id == candidate.id:
            logger.info(
                "[thread_store] Created thread %s team=%s channel=%s thread_ts=%s agent=%s version=%s",
                thread.id,
                team_id,
                channel_id,
                thread_ts,
                identity,
                agent_version,
            )
        else:
            logger.debug(
                "[thread_store] Found existing thread %s for %s:%s",
                thread.id,
                channel_id,
                thread_ts,
            )
        return thread

    async def get_thread_by_ts(self, channel_id: str, thread_ts: str) -> Thread:
        async with self._session() as session:
            result = await session.execute(
                select(Thread)
                .where(Thread.channel_id == channel_id)
                .where(Thread.thread_ts == thread_ts)
                .order_by(Thread.created_at)
                .limit(1)
            )
            thread: Thread | None = result.scalar_one_or_none()
        if thread is None:
            raise ThreadNotFoundError(f"thread not found: {channel_id}:{thread_ts}")
        return thread

    async def append_message(self, thread_id: UUID, message: ThreadMessage) -> None:
        message.thread_id = thread_id
        message.validate()
        async with self._session() as session:
            session.add(message)
            await session.commit()

    async def get_latest_history(self, thread_id: UUID) -> HistoryRecord:
        async with self._session() as session:
            result = await session.execute(
                select(HistoryRecord)
                .where(HistoryRecord.thread_id == thread_id)
                .order_by(HistoryRecord.created_at.desc())
                .limit(1)
            )
            record: HistoryRecord | None = result.scalar_one_or_none()
        if record is None:
            raise HistoryNotFoundError(f"no history for thread {thread_id}")
        return record

    async def put_history(self, record: HistoryRecord) -> None:
        record.validate()
        async with self._session() as session:
            session.add(record)
            await session.commit()
