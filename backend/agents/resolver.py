"""
Agent resolution.

Given the parsed mention and the thread context, decide which system prompt
and provider/model answer this turn.  Priority:

1. Existing thread bound to general mode   -> general-mode prompt
2. Existing thread bound to an agent       -> that agent at the bound version
3. Existing thread without a binding       -> legacy assistant prompt
4. New thread, no agent id                 -> general mode ("general-v1")
5. New thread, agent id                    -> latest version of that active agent

Once a thread is bound it keeps its agent and version even if the directory
changes later; a directory failure for a bound agent is reported rather than
silently switching agents mid-thread.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from agents.interfaces import AgentRepository
from agents.thread_context import ThreadContext
from models.slack import AgentMention
from models.thread import GENERAL_MODE, AgentIdentity

logger = logging.getLogger(__name__)

GENERAL_MODE_VERSION = "general-v1"
LEGACY_VERSION = "legacy"

GENERAL_MODE_SYSTEM_PROMPT = """You are Tamamo's Guide Assistant. Your primary role is to help users understand and effectively use the Tamamo agent system.

Your main responsibilities:
1. Explain how to use Tamamo and its agents
2. Guide users to the specialized agent that fits their task
3. Explain how to address an agent: @tamamo <agent_id> [message]
4. Describe the available agents and what each one is for
5. Explain that a thread keeps talking to the same agent, so follow-up messages do not need the agent id again

When a user contacts you without specifying an agent id, start by explaining:
- How the Tamamo agent system works
- How to specify an agent id for specialized tasks
- Which kinds of agents exist and when to use them
- That conversations continue in the same thread without repeating the agent id

Always answer in the language of the user's message. Act as a knowledgeable guide rather than a general chat assistant: after giving guidance you may answer questions about Tamamo itself, but steer users toward the right specialized agent for their actual work."""

LEGACY_SYSTEM_PROMPT = (
    "You are a helpful Slack bot assistant. "
    "Respond concisely and helpfully to user questions."
)


@dataclass(frozen=True)
class AgentContext:
    """Resolved answering agent for one request. Never cached."""

    identity: AgentIdentity
    version: str
    system_prompt: str
    llm_provider: str = ""
    llm_model: str = ""

    @property
    def is_general(self) -> bool:
        return self.identity.is_general

    @property
    def has_model_selection(self) -> bool:
        return bool(self.llm_provider and self.llm_model)


@dataclass(frozen=True)
class ResolveOk:
    context: AgentContext


@dataclass(frozen=True)
class ResolveNotFound:
    agent_id: str


@dataclass(frozen=True)
class ResolveFailed:
    reason: str
    cause: Optional[BaseException] = None


ResolveResult = Union[ResolveOk, ResolveNotFound, ResolveFailed]


def general_mode_context(version: str = GENERAL_MODE_VERSION) -> AgentContext:
    return AgentContext(
        identity=GENERAL_MODE,
        version=version,
        system_prompt=GENERAL_MODE_SYSTEM_PROMPT,
    )


def legacy_context() -> AgentContext:
    return AgentContext(
        identity=GENERAL_MODE,
        version=LEGACY_VERSION,
        system_prompt=LEGACY_SYSTEM_PROMPT,
    )


class AgentResolver:
    def __init__(self, agent_directory: Optional[AgentRepository]) -> None:
        self._agent_directory = agent_directory

    async def resolve(
        self,
        agent_mention: Optional[AgentMention],
        thread_context: ThreadContext,
    ) -> ResolveResult:
        if not thread_context.is_new_thread and thread_context.existing_thread is not None:
            return await self._resolve_existing_thread(thread_context)
        return await self._resolve_new_thread(agent_mention)

    async def _resolve_existing_thread(self, thread_context: ThreadContext) -> ResolveResult:
        thread = thread_context.existing_thread
        try:
            identity = thread.agent_identity
        except ValueError as exc:
            return ResolveFailed(f"invalid agent binding on thread {thread.id}", cause=exc)

        if identity is not None and identity.is_general:
            logger.debug(
                "[resolver] Existing thread %s is in general mode version=%s",
                thread.id,
                thread.agent_version,
            )
            return ResolveOk(general_mode_context(thread.agent_version))

        if identity is not None and self._agent_directory is not None:
            logger.debug(
                "[resolver] Using agent from existing thread %s agent=%s version=%s",
                thread.id,
                identity,
                thread.agent_version,
            )
            try:
                await self._agent_directory.get_agent(identity.uuid)
            except Exception as exc:
                return ResolveFailed(f"failed to get agent {identity.uuid}", cause=exc)
            try:
                version = await self._agent_directory.get_agent_version(identity.uuid, thread.agent_version)
            except Exception as exc:
                return ResolveFailed(
                    f"failed to get agent version {identity.uuid}@{thread.agent_version}",
                    cause=exc,
                )
            return ResolveOk(
                AgentContext(
                    identity=identity,
                    version=thread.agent_version,
                    system_prompt=version.system_prompt,
                    llm_provider=version.llm_provider,
                    llm_model=version.llm_model,
                )
            )

        # Thread stored before agent binding existed
        logger.debug("[resolver] Thread %s has no agent binding, using legacy prompt", thread.id)
        return ResolveOk(legacy_context())

    async def _resolve_new_thread(self, agent_mention: Optional[AgentMention]) -> ResolveResult:
        if agent_mention is None or not agent_mention.agent_id:
            logger.debug("[resolver] No agent specified, using general mode")
            return ResolveOk(general_mode_context())

        agent_id = agent_mention.agent_id
        if self._agent_directory is None:
            return ResolveFailed("agent directory not available")

        try:
            agent = await self._agent_directory.get_active_agent_by_agent_id(agent_id)
        except Exception as exc:
            logger.info("[resolver] Agent %s not found or archived: %s", agent_id, exc)
            return ResolveNotFound(agent_id)

        try:
            latest = await self._agent_directory.get_latest_agent_version(agent.id)
        except Exception as exc:
            return ResolveFailed(f"failed to get latest version of agent {agent_id}", cause=exc)

        logger.debug(
            "[resolver] Resolved agent_id=%s uuid=%s version=%s",
            agent_id,
            agent.id,
            latest.version,
        )
        return ResolveOk(
            AgentContext(
                identity=AgentIdentity.of(agent.id),
                version=latest.version,
                system_prompt=latest.system_prompt,
                llm_provider=latest.llm_provider,
                llm_model=latest.llm_model,
            )
        )
