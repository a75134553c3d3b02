"""
Read-only agent directory over the ``agents`` / ``agent_versions`` tables.
"""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select

from models.agent import Agent, AgentStatus, AgentVersion
from models.database import get_session
from services.thread_store import SessionFactory

logger = logging.getLogger(__name__)


class AgentNotFoundError(LookupError):
    """No (active) agent matches the requested id."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"agent not found: {agent_id}")
        self.agent_id = agent_id


class AgentVersionNotFoundError(LookupError):
    def __init__(self, agent_uuid: UUID, version: str | None = None) -> None:
        label = version or "latest"
        super().__init__(f"agent version not found: {agent_uuid}@{label}")
        self.agent_uuid = agent_uuid
        self.version = version


class AgentDirectory:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def get_agent(self, agent_uuid: UUID) -> Agent:
        async with self._session() as session:
            agent: Agent | None = await session.get(Agent, agent_uuid)
        if agent is None:
            raise AgentNotFoundError(str(agent_uuid))
        return agent

    async def get_active_agent_by_agent_id(self, agent_id: str) -> Agent:
        """Look up an agent by its public id; archived agents are not found."""
        async with self._session() as session:
            result = await session.execute(
                select(Agent)
                .where(Agent.agent_id == agent_id)
                .where(Agent.status == AgentStatus.ACTIVE.value)
            )
            agent: Agent | None = result.scalar_one_or_none()
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def get_agent_version(self, agent_uuid: UUID, version: str) -> AgentVersion:
        async with self._session() as session:
            found: AgentVersion | None = await session.get(AgentVersion, (agent_uuid, version))
        if found is None:
            raise AgentVersionNotFoundError(agent_uuid, version)
        return found

    async def get_latest_agent_version(self, agent_uuid: UUID) -> AgentVersion:
        """The version ``agents.latest`` points at, else the newest row."""
        async with self._session() as session:
            agent: Agent | None = await session.get(Agent, agent_uuid)
            if agent is None:
                raise AgentNotFoundError(str(agent_uuid))

            found: AgentVersion | None = None
            if agent.latest:
                found = await session.get(AgentVersion, (agent_uuid, agent.latest))
            if found is None:
                result = await session.execute(
                    select(AgentVersion)
                    .where(AgentVersion.agent_uuid == agent_uuid)
                    .order_by(AgentVersion.created_at.desc())
                    .limit(1)
                )
                found = result.scalar_one_or_none()
        if found is None:
            raise AgentVersionNotFoundError(agent_uuid)
        return found

    async def list_active_agents(self, offset: int = 0, limit: int = 50) -> tuple[list[Agent], int]:
        async with self._session() as session:
            total: int = (
                await session.execute(
                    select(func.count())
                    .select_from(Agent)
                    .where(Agent.status == AgentStatus.ACTIVE.value)
                )
            ).scalar_one()
            result = await session.execute(
                select(Agent)
                .where(Agent.status == AgentStatus.ACTIVE.value)
                .order_by(Agent.created_at)
                .offset(offset)
                .limit(limit)
            )
            agents: list[Agent] = list(result.scalars().all())
        return agents, total
