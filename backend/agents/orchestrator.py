"""
Conversation orchestrator for Slack mentions.

Responsibilities:
- Filter mentions addressed to the bot
- Resolve the answering agent for the thread
- Record the thread and the triggering message
- Load conversation history (best effort)
- Pick an LLM client, falling back to the configured fallback provider
- Generate and post the reply
- Persist the updated history (best effort)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from agents.errors import ConfigurationError
from agents.interfaces import (
    AgentRepository,
    ChatClient,
    ChatClientFactory,
    HistoryRepository,
    MessagingClient,
    ThreadRepository,
)
from agents.resolver import (
    AgentContext,
    AgentResolver,
    ResolveFailed,
    ResolveNotFound,
)
from agents.thread_context import ThreadContextAnalyzer
from models.slack import AgentMention, Mention, SlackMessage, SlackMessageOptions, parse_agent_mention
from models.thread import HistoryRecord, ThreadMessage
from services.llm import ConversationHistory, LLMClientError
from services.slack_metadata import ChannelInfoSource, lookup_channel_info, lookup_user_name
from services.thread_store import HistoryNotFoundError, ThreadNotFoundError

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "(no response)"
AGENT_LIST_LIMIT = 10

LLM_NOT_CONFIGURED_MESSAGE = (
    "❌ *LLM not configured*\n\n"
    "I'm unable to process your request because no Large Language Model (LLM) has been "
    "configured for this bot. Please contact your administrator to configure an LLM provider "
    "(such as Claude or OpenAI) to enable AI-powered responses.\n\n"
    "Available LLM providers:\n"
    "• Anthropic Claude\n"
    "• OpenAI GPT"
)
RESOLUTION_ERROR_MESSAGE = "An error occurred while processing your request. Please try again later."
APOLOGY_MESSAGE = "I apologize, but I'm experiencing issues processing your request. Please try again later."
FALLBACK_WARNING_TEMPLATE = "⚠️ Failed to use {provider}/{model}, falling back to default provider"


@dataclass
class OrchestratorConfig:
    """
    Collaborators for :class:`ConversationOrchestrator`.

    Everything except ``slack_client`` is optional; missing stores simply
    disable thread tracking, history or agent lookups.  ``llm_client`` is the
    single client used when no provider/model was resolved (or no factory is
    configured); when omitted it defaults to the factory's default client.
    """

    slack_client: Optional[MessagingClient] = None
    thread_store: Optional[ThreadRepository] = None
    history_storage: Optional[HistoryRepository] = None
    agent_directory: Optional[AgentRepository] = None
    llm_factory: Optional[ChatClientFactory] = None
    llm_client: Optional[ChatClient] = None
    channel_cache: Optional[ChannelInfoSource] = None
    server_base_url: str = ""

    def validate(self) -> None:
        if self.slack_client is None:
            if self.llm_factory is not None or self.llm_client is not None:
                raise ConfigurationError("LLM configured without a Slack client")
            raise ConfigurationError("Slack client not configured")


def build_agent_help_message(agent_id: str, available_agents: list[str]) -> str:
    lines: list[str] = []
    if agent_id:
        lines.append(f"Agent ID '{agent_id}' not found.")
    else:
        lines.append("Invalid agent specification.")
    lines.append("")
    lines.append("Usage: @tamamo <agent_id> [message]")
    lines.append("")
    if available_agents:
        lines.append("Available agents:")
        lines.extend(available_agents)
        lines.append("")
    lines.append("Or use @tamamo [message] for general mode to get help with using Tamamo.")
    return "\n".join(lines)


class ConversationOrchestrator:
    """Handles Slack mention and message events end to end."""

    def __init__(self, config: OrchestratorConfig) -> None:
        config.validate()
        self.config = config
        self._slack = config.slack_client
        self._thread_store = config.thread_store
        self._history_storage = config.history_storage
        self._agent_directory = config.agent_directory
        self._llm_factory = config.llm_factory
        self._llm_client: Optional[ChatClient] = config.llm_client
        if self._llm_client is None and self._llm_factory is not None:
            self._llm_client = self._llm_factory.default_client
        self._server_base_url = config.server_base_url.rstrip("/")
        self._thread_context = ThreadContextAnalyzer(config.thread_store)
        self._resolver = AgentResolver(config.agent_directory)

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------

    async def handle_mention(self, message: SlackMessage) -> None:
        logger.debug(
            "[orchestrator] app_mention channel=%s thread_ts=%s user=%s",
            message.channel,
            message.thread_key,
            message.user_id,
        )
        if self._slack is None:
            raise ConfigurationError("Slack client not configured")

        if self._llm_client is None and self._llm_factory is None:
            logger.warning("[orchestrator] LLM not configured, falling back to static response")
            await self._handle_llm_not_configured(message)
            return

        bot_mention = self._find_first_bot_mention(message.mentions)
        if bot_mention is None:
            return

        agent_mention = self._parse_agent_mention(bot_mention)
        thread_context = await self._thread_context.analyze(
            message.team_id, message.channel, message.thread_key
        )

        result = await self._resolver.resolve(agent_mention, thread_context)
        if isinstance(result, ResolveNotFound):
            logger.info(
                "[orchestrator] Agent %s not found, posting help channel=%s user=%s",
                result.agent_id,
                message.channel,
                message.user_id,
            )
            help_text = await self._agent_help_message(result.agent_id)
            await self._slack.post_message(message.channel, help_text, message.thread_key)
            return
        if isinstance(result, ResolveFailed):
            logger.error(
                "[orchestrator] Agent resolution failed channel=%s thread_ts=%s: %s",
                message.channel,
                message.thread_key,
                result.reason,
                exc_info=result.cause,
            )
            await self._slack.post_message(message.channel, RESOLUTION_ERROR_MESSAGE, message.thread_key)
            return

        agent = result.context
        user_message = agent_mention.message if agent_mention is not None else ""
        await self._log_request_context(message, agent)
        thread_id = await self._store_thread_with_agent(message, agent)

        try:
            await self._chat_with_agent(message, thread_id, user_message, agent)
        except Exception as exc:
            logger.error(
                "[orchestrator] Failed to answer mention thread=%s channel=%s user=%s agent=%s: %s",
                thread_id,
                message.channel,
                message.user_id,
                agent.identity,
                exc,
                exc_info=True,
            )
            try:
                await self._slack.post_message(message.channel, APOLOGY_MESSAGE, message.thread_key)
            except Exception as post_exc:
                logger.error(
                    "[orchestrator] Failed to post error message to Slack: %s (original error: %s)",
                    post_exc,
                    exc,
                )
            raise

    async def handle_message(self, message: SlackMessage) -> None:
        """Record a message posted in a thread the bot already participates in."""
        logger.debug(
            "[orchestrator] message channel=%s thread_ts=%s",
            message.channel,
            message.thread_ts,
        )
        if self._thread_store is None or not message.thread_ts:
            return

        try:
            thread = await self._thread_store.get_thread_by_ts(message.channel, message.thread_ts)
        except ThreadNotFoundError:
            # Not a participating thread
            return
        except Exception as exc:
            logger.warning(
                "[orchestrator] Thread lookup failed channel=%s thread_ts=%s: %s",
                message.channel,
                message.thread_ts,
                exc,
                exc_info=True,
            )
            return

        message.thread_id = thread.id
        record = ThreadMessage.create(
            thread_id=thread.id,
            user_id=message.user_id or message.bot_id,
            user_name=message.user_name,
            text=message.text,
            timestamp=message.timestamp,
        )
        try:
            await self._thread_store.append_message(thread.id, record)
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to save message in participating thread %s thread_ts=%s: %s",
                thread.id,
                message.thread_ts,
                exc,
                exc_info=True,
            )
            return
        logger.debug(
            "[orchestrator] Recorded message in participating thread %s user=%s",
            thread.id,
            message.user_id,
        )

    # ------------------------------------------------------------------
    # Mention filtering and replies that bypass the LLM
    # ------------------------------------------------------------------

    def _find_first_bot_mention(self, mentions: list[Mention]) -> Optional[Mention]:
        for mention in mentions:
            if self._slack.is_bot_user(mention.user_id):
                return mention
        return None

    @staticmethod
    def _parse_agent_mention(mention: Mention) -> Optional[AgentMention]:
        parsed = parse_agent_mention(f"<@{mention.user_id}> {mention.message}")
        return parsed[0] if parsed else None

    async def _handle_llm_not_configured(self, message: SlackMessage) -> None:
        bot_mention = self._find_first_bot_mention(message.mentions)
        if bot_mention is None:
            return

        await self._store_thread(message)
        await self._slack.post_message(message.channel, LLM_NOT_CONFIGURED_MESSAGE, message.thread_key)
        logger.info(
            "[orchestrator] Responded with LLM configuration error channel=%s thread_ts=%s user=%s",
            message.channel,
            message.thread_key,
            message.user_id,
        )

    async def _agent_help_message(self, agent_id: str) -> str:
        available: list[str] = []
        if self._agent_directory is not None:
            try:
                agents, _total = await self._agent_directory.list_active_agents(0, AGENT_LIST_LIMIT)
            except Exception as exc:
                logger.warning("[orchestrator] Failed to list active agents: %s", exc, exc_info=True)
            else:
                available = [f"- {agent.agent_id}: {agent.description}" for agent in agents]
        return build_agent_help_message(agent_id, available)

    async def _log_request_context(self, message: SlackMessage, agent: AgentContext) -> None:
        source = self.config.channel_cache or self._slack
        channel = await lookup_channel_info(source, message.channel)
        logger.info(
            "[orchestrator] Handling mention channel=%s (#%s, %s) thread_ts=%s user=%s agent=%s version=%s",
            message.channel,
            channel.info.name,
            channel.info.type.value,
            message.thread_key,
            message.user_id,
            agent.identity,
            agent.version,
        )

    # ------------------------------------------------------------------
    # Thread bookkeeping
    # ------------------------------------------------------------------

    async def _new_thread_message(self, message: SlackMessage, thread_id: UUID) -> ThreadMessage:
        user = await lookup_user_name(self._slack, message.user_id)
        message.user_name = user.name
        return ThreadMessage.create(
            thread_id=thread_id,
            user_id=message.user_id,
            user_name=user.name,
            text=message.text,
            timestamp=message.timestamp,
        )

    async def _store_thread(self, message: SlackMessage) -> Optional[UUID]:
        if self._thread_store is None:
            return None
        try:
            thread = await self._thread_store.get_or_create_thread(
                message.team_id, message.channel, message.thread_key
            )
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to get or create thread team=%s channel=%s thread_ts=%s: %s",
                message.team_id,
                message.channel,
                message.thread_key,
                exc,
                exc_info=True,
            )
            return None
        await self._append_message(message, thread.id)
        return thread.id

    async def _store_thread_with_agent(self, message: SlackMessage, agent: AgentContext) -> Optional[UUID]:
        if self._thread_store is None:
            return None
        try:
            thread = await self._thread_store.get_or_create_thread_with_agent(
                message.team_id,
                message.channel,
                message.thread_key,
                agent.identity,
                agent.version,
            )
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to get or create thread team=%s channel=%s thread_ts=%s agent=%s version=%s: %s",
                message.team_id,
                message.channel,
                message.thread_key,
                agent.identity,
                agent.version,
                exc,
                exc_info=True,
            )
            return None
        await self._append_message(message, thread.id)
        return thread.id

    async def _append_message(self, message: SlackMessage, thread_id: UUID) -> None:
        message.thread_id = thread_id
        record = await self._new_thread_message(message, thread_id)
        try:
            await self._thread_store.append_message(thread_id, record)
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to save message thread=%s message=%s: %s",
                thread_id,
                record.id,
                exc,
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _can_persist_history(self, thread_id: Optional[UUID]) -> bool:
        return thread_id is not None and self._thread_store is not None and self._history_storage is not None

    async def _load_history(self, thread_id: Optional[UUID]) -> Optional[ConversationHistory]:
        if not self._can_persist_history(thread_id):
            logger.debug(
                "[orchestrator] Skipped history load thread=%s has_thread_store=%s has_history_storage=%s",
                thread_id,
                self._thread_store is not None,
                self._history_storage is not None,
            )
            return None

        try:
            record = await self._thread_store.get_latest_history(thread_id)
        except HistoryNotFoundError:
            logger.debug("[orchestrator] No existing history for thread %s", thread_id)
            return None
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to get latest history for thread %s, starting new conversation: %s",
                thread_id,
                exc,
                exc_info=True,
            )
            return None

        try:
            history = await self._history_storage.load_history(thread_id, record.id)
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to load history %s for thread %s, starting without history: %s",
                record.id,
                thread_id,
                exc,
                exc_info=True,
            )
            return None

        logger.debug(
            "[orchestrator] Loaded history %s for thread %s (%d messages)",
            record.id,
            thread_id,
            history.count(),
        )
        return history

    async def _get_llm_client(self, agent: AgentContext, message: SlackMessage) -> ChatClient:
        if self._llm_factory is not None and agent.has_model_selection:
            try:
                return await self._llm_factory.create_client(agent.llm_provider, agent.llm_model)
            except Exception as exc:
                logger.warning(
                    "[orchestrator] Failed to create LLM client %s/%s, attempting fallback: %s",
                    agent.llm_provider,
                    agent.llm_model,
                    exc,
                )
                try:
                    fallback = await self._llm_factory.get_fallback_client()
                except Exception as fallback_exc:
                    raise LLMClientError(
                        "Failed to create LLM client and fallback also failed",
                        provider=agent.llm_provider,
                        model=agent.llm_model,
                        fallback_error=fallback_exc,
                    ) from exc

                warning = FALLBACK_WARNING_TEMPLATE.format(
                    provider=agent.llm_provider, model=agent.llm_model
                )
                try:
                    await self._slack.post_message(message.channel, warning, message.thread_key)
                except Exception as post_exc:
                    logger.warning(
                        "[orchestrator] Failed to post fallback warning: %s", post_exc, exc_info=True
                    )
                return fallback

        if self._llm_client is not None:
            return self._llm_client

        raise ConfigurationError("No LLM client available")

    async def _chat_with_agent(
        self,
        message: SlackMessage,
        thread_id: Optional[UUID],
        user_message: str,
        agent: AgentContext,
    ) -> None:
        history = await self._load_history(thread_id)
        client = await self._get_llm_client(agent, message)

        session = client.new_session(system_prompt=agent.system_prompt, history=history)
        response = await session.generate_content(user_message)

        response_text = response.texts[0] if response is not None and response.texts else ""
        if not response_text:
            response_text = NO_RESPONSE_TEXT

        await self._post_with_agent_display(message, response_text, agent)
        logger.info(
            "[orchestrator] Responded to mention channel=%s thread_ts=%s user=%s agent=%s version=%s",
            message.channel,
            message.thread_key,
            message.user_id,
            agent.identity,
            agent.version,
        )

        await self._save_history(thread_id, session.history())

    async def _save_history(self, thread_id: Optional[UUID], history: Optional[ConversationHistory]) -> None:
        if not self._can_persist_history(thread_id) or history is None or history.count() == 0:
            return

        record = HistoryRecord.create(thread_id)
        try:
            await self._history_storage.save_history(thread_id, record.id, history)
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to save history %s for thread %s: %s",
                record.id,
                thread_id,
                exc,
                exc_info=True,
            )
            return

        try:
            await self._thread_store.put_history(record)
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to save history record %s for thread %s: %s",
                record.id,
                thread_id,
                exc,
                exc_info=True,
            )
            return

        logger.debug(
            "[orchestrator] Saved history %s for thread %s (%d messages)",
            record.id,
            thread_id,
            history.count(),
        )

    # ------------------------------------------------------------------
    # Agent display
    # ------------------------------------------------------------------

    async def _agent_display_options(self, agent: AgentContext) -> Optional[SlackMessageOptions]:
        """Custom name and icon for a concrete agent with an image, if available."""
        if agent.is_general or not self._server_base_url or self._agent_directory is None:
            return None
        try:
            agent_info = await self._agent_directory.get_agent(agent.identity.uuid)
        except Exception as exc:
            logger.warning(
                "[orchestrator] Failed to get agent display info for %s, using default identity: %s",
                agent.identity,
                exc,
                exc_info=True,
            )
            return None
        if agent_info.image_id is None:
            return None

        icon_url = f"{self._server_base_url}/api/agents/{agent_info.id}/image?size=72"
        logger.debug("[orchestrator] Using agent image %s for %s", icon_url, agent_info.agent_id)
        return SlackMessageOptions(username=agent_info.name, icon_url=icon_url)

    async def _post_with_agent_display(self, message: SlackMessage, text: str, agent: AgentContext) -> None:
        options = await self._agent_display_options(agent)
        if options is None:
            await self._slack.post_message(message.channel, text, message.thread_key)
            return
        await self._slack.post_message_with_options(message.channel, text, message.thread_key, options)
