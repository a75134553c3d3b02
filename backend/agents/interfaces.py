"""
Collaborator interfaces consumed by the mention pipeline.

The concrete implementations live in ``connectors.slack`` and ``services.*``;
tests substitute small in-memory fakes.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol
from uuid import UUID

from models.agent import Agent, AgentVersion
from models.slack import ChannelInfo, SlackMessageOptions
from models.thread import AgentIdentity, HistoryRecord, Thread, ThreadMessage
from services.llm import ConversationHistory, LLMResponse


class MessagingClient(Protocol):
    def is_bot_user(self, user_id: str) -> bool: ...

    async def post_message(
        self, channel: str, text: str, thread_ts: Optional[str] = None
    ) -> dict[str, Any]: ...

    async def post_message_with_options(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str],
        options: SlackMessageOptions,
    ) -> dict[str, Any]: ...

    async def get_user_info(self, user_id: str) -> dict[str, Any]: ...

    async def get_channel_info(self, channel_id: str) -> ChannelInfo: ...


class ThreadRepository(Protocol):
    async def get_or_create_thread(self, team_id: str, channel_id: str, thread_ts: str) -> Thread: ...

    async def get_or_create_thread_with_agent(
        self,
        team_id: str,
        channel_id: str,
        thread_ts: str,
        identity: AgentIdentity,
        agent_version: str,
    ) -> Thread: ...

    async def get_thread_by_ts(self, channel_id: str, thread_ts: str) -> Thread: ...

    async def append_message(self, thread_id: UUID, message: ThreadMessage) -> None: ...

    async def get_latest_history(self, thread_id: UUID) -> HistoryRecord: ...

    async def put_history(self, record: HistoryRecord) -> None: ...


class HistoryRepository(Protocol):
    async def load_history(self, thread_id: UUID, history_id: UUID) -> ConversationHistory: ...

    async def save_history(
        self, thread_id: UUID, history_id: UUID, history: ConversationHistory
    ) -> None: ...


class AgentRepository(Protocol):
    async def get_agent(self, agent_uuid: UUID) -> Agent: ...

    async def get_active_agent_by_agent_id(self, agent_id: str) -> Agent: ...

    async def get_agent_version(self, agent_uuid: UUID, version: str) -> AgentVersion: ...

    async def get_latest_agent_version(self, agent_uuid: UUID) -> AgentVersion: ...

    async def list_active_agents(self, offset: int = 0, limit: int = 50) -> tuple[list[Agent], int]: ...


class Session(Protocol):
    async def generate_content(self, text: str) -> LLMResponse: ...

    def history(self) -> ConversationHistory: ...


class ChatClient(Protocol):
    def new_session(
        self,
        system_prompt: str = "",
        history: Optional[ConversationHistory] = None,
    ) -> Session: ...


class ChatClientFactory(Protocol):
    default_client: Optional[ChatClient]

    async def create_client(self, provider: str, model: str) -> ChatClient: ...

    async def get_fallback_client(self) -> ChatClient: ...
