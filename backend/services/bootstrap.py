"""
Composition root: build a ConversationOrchestrator from settings.

    orchestrator = await build_orchestrator()
    await dispatch_event(orchestrator, payload)
"""
from __future__ import annotations

import logging
from typing import Optional

from agents.orchestrator import ConversationOrchestrator, OrchestratorConfig
from config import Settings, configure_logging, load_providers_config, log_missing_env_vars, settings as default_settings
from connectors.slack import SlackConnector
from models.database import close_db, init_db
from services.agent_directory import AgentDirectory
from services.history_storage import FileSystemStorageAdapter, HistoryStorage, MemoryStorageAdapter, StorageAdapter
from services.llm import Credential, LLMFactory
from services.slack_metadata import ChannelCache
from services.thread_store import ThreadStore

logger = logging.getLogger(__name__)


def build_history_storage(app_settings: Settings) -> HistoryStorage:
    adapter: StorageAdapter
    if app_settings.HISTORY_STORAGE_DIR:
        adapter = FileSystemStorageAdapter(app_settings.HISTORY_STORAGE_DIR)
        logger.info("[bootstrap] History storage: filesystem dir=%s", app_settings.HISTORY_STORAGE_DIR)
    else:
        adapter = MemoryStorageAdapter()
        logger.info("[bootstrap] History storage: in-memory")
    return HistoryStorage(adapter)


def build_llm_factory(app_settings: Settings) -> Optional[LLMFactory]:
    """LLM factory for the configured credentials, or None when no provider has a key."""
    credentials: dict[str, Credential] = {}
    if app_settings.ANTHROPIC_API_KEY:
        credentials["claude"] = Credential(api_key=app_settings.ANTHROPIC_API_KEY)
    if app_settings.OPENAI_API_KEY:
        credentials["openai"] = Credential(api_key=app_settings.OPENAI_API_KEY)
    if not credentials:
        logger.warning("[bootstrap] No LLM credentials configured, mentions get a static reply")
        return None

    config = load_providers_config(
        app_settings.LLM_PROVIDERS_FILE,
        default_provider=app_settings.LLM_DEFAULT_PROVIDER,
        default_model=app_settings.LLM_DEFAULT_MODEL,
    )
    return LLMFactory(config, credentials)


async def build_orchestrator(
    app_settings: Optional[Settings] = None,
    create_tables: bool = False,
) -> ConversationOrchestrator:
    app_settings = app_settings or default_settings
    configure_logging(app_settings.LOG_LEVEL)
    log_missing_env_vars(logger)

    if create_tables:
        await init_db()

    if not app_settings.SLACK_BOT_TOKEN:
        raise ValueError("SLACK_BOT_TOKEN is required")
    slack = SlackConnector(app_settings.SLACK_BOT_TOKEN)
    await slack.auth_test()

    config = OrchestratorConfig(
        slack_client=slack,
        thread_store=ThreadStore(),
        history_storage=build_history_storage(app_settings),
        agent_directory=AgentDirectory(),
        llm_factory=build_llm_factory(app_settings),
        channel_cache=ChannelCache(slack, ttl_seconds=app_settings.CHANNEL_CACHE_TTL_SECONDS),
        server_base_url=app_settings.SERVER_BASE_URL or "",
    )
    return ConversationOrchestrator(config)


async def shutdown() -> None:
    await close_db()
