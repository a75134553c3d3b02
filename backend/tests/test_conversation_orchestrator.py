import asyncio
import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest

from agents.errors import ConfigurationError
from agents.orchestrator import (
    APOLOGY_MESSAGE,
    RESOLUTION_ERROR_MESSAGE,
    ConversationOrchestrator,
    OrchestratorConfig,
)
from agents.resolver import GENERAL_MODE_SYSTEM_PROMPT, LEGACY_SYSTEM_PROMPT
from models.slack import ChannelInfo, SlackMessage
from models.thread import Thread, binding_columns
from services.agent_directory import AgentNotFoundError, AgentVersionNotFoundError
from services.history_storage import HistoryStorage, MemoryStorageAdapter
from services.llm import LLMClientError, LLMSession
from services.thread_store import HistoryNotFoundError, ThreadNotFoundError

BOT = "UBOT"
TEAM = "T1"
CHANNEL = "C1"


def _mention(text, ts="100.1", thread_ts="", user="U1"):
    event = {"type": "app_mention", "text": text, "user": user, "ts": ts, "channel": CHANNEL}
    if thread_ts:
        event["thread_ts"] = thread_ts
    return SlackMessage.from_event(event, TEAM)


class _FakeSlack:
    def __init__(self, fail_user_lookup=False, fail_channel_lookup=False):
        self.posts = []
        self.fail_user_lookup = fail_user_lookup
        self.fail_channel_lookup = fail_channel_lookup

    def is_bot_user(self, user_id):
        return user_id == BOT

    async def post_message(self, channel, text, thread_ts=None):
        self.posts.append(SimpleNamespace(channel=channel, text=text, thread_ts=thread_ts, options=None))
        return {"ok": True}

    async def post_message_with_options(self, channel, text, thread_ts, options):
        self.posts.append(SimpleNamespace(channel=channel, text=text, thread_ts=thread_ts, options=options))
        return {"ok": True}

    async def get_user_info(self, user_id):
        if self.fail_user_lookup:
            raise RuntimeError("users.info failed")
        return {"name": "jane", "profile": {"display_name": "Jane"}}

    async def get_channel_info(self, channel_id):
        if self.fail_channel_lookup:
            raise RuntimeError("conversations.info failed")
        return ChannelInfo(id=channel_id, name="general")


class _FakeThreadStore:
    def __init__(self):
        self.threads = {}
        self.messages = []
        self.histories = []
        self.calls = []

    async def _get_or_create(self, team_id, channel_id, thread_ts, identity, version):
        key = (team_id, channel_id, thread_ts)
        if key not in self.threads:
            self.threads[key] = Thread(
                id=uuid.uuid4(),
                team_id=team_id,
                channel_id=channel_id,
                thread_ts=thread_ts,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
                **binding_columns(identity, version),
            )
        return self.threads[key]

    async def get_or_create_thread(self, team_id, channel_id, thread_ts):
        self.calls.append("get_or_create_thread")
        return await self._get_or_create(team_id, channel_id, thread_ts, None, "")

    async def get_or_create_thread_with_agent(self, team_id, channel_id, thread_ts, identity, agent_version):
        self.calls.append("get_or_create_thread_with_agent")
        return await self._get_or_create(team_id, channel_id, thread_ts, identity, agent_version)

    async def get_thread_by_ts(self, channel_id, thread_ts):
        self.calls.append("get_thread_by_ts")
        for (_team, channel, ts), thread in self.threads.items():
            if channel == channel_id and ts == thread_ts:
                return thread
        raise ThreadNotFoundError(thread_ts)

    async def append_message(self, thread_id, message):
        self.calls.append("append_message")
        message.thread_id = thread_id
        message.validate()
        self.messages.append(message)

    async def get_latest_history(self, thread_id):
        self.calls.append("get_latest_history")
        records = [r for r in self.histories if r.thread_id == thread_id]
        if not records:
            raise HistoryNotFoundError(str(thread_id))
        return records[-1]

    async def put_history(self, record):
        self.calls.append("put_history")
        record.validate()
        self.histories.append(record)


class _FakeAgentDirectory:
    def __init__(self):
        self.agents = {}
        self.versions = {}
        self.calls = []

    def add(self, agent_id, version, system_prompt, provider="", model="", image_id=None, status="active"):
        agent = next((a for a in self.agents.values() if a.agent_id == agent_id), None)
        if agent is None:
            agent = SimpleNamespace(
                id=uuid.uuid4(),
                agent_id=agent_id,
                name=f"{agent_id} bot",
                description=f"{agent_id} description",
                image_id=image_id,
                status=status,
                latest=version,
            )
            self.agents[agent.id] = agent
        agent.latest = version
        self.versions[(agent.id, version)] = SimpleNamespace(
            agent_uuid=agent.id,
            version=version,
            system_prompt=system_prompt,
            llm_provider=provider,
            llm_model=model,
        )
        return agent

    async def get_agent(self, agent_uuid):
        self.calls.append("get_agent")
        if agent_uuid not in self.agents:
            raise AgentNotFoundError(str(agent_uuid))
        return self.agents[agent_uuid]

    async def get_active_agent_by_agent_id(self, agent_id):
        self.calls.append("get_active_agent_by_agent_id")
        for agent in self.agents.values():
            if agent.agent_id == agent_id and agent.status == "active":
                return agent
        raise AgentNotFoundError(agent_id)

    async def get_agent_version(self, agent_uuid, version):
        self.calls.append("get_agent_version")
        if (agent_uuid, version) not in self.versions:
            raise AgentVersionNotFoundError(agent_uuid, version)
        return self.versions[(agent_uuid, version)]

    async def get_latest_agent_version(self, agent_uuid):
        self.calls.append("get_latest_agent_version")
        return self.versions[(agent_uuid, self.agents[agent_uuid].latest)]

    async def list_active_agents(self, offset=0, limit=50):
        self.calls.append("list_active_agents")
        active = [a for a in self.agents.values() if a.status == "active"]
        return active[offset:offset + limit], len(active)


class _ScriptedSession(LLMSession):
    llm_type = "fake"

    def __init__(self, replies, error=None, **kwargs):
        super().__init__("fake-model", **kwargs)
        self._replies = replies
        self._error = error
        self.initial_history = kwargs.get("history")

    async def _complete(self, messages):
        if self._error is not None:
            raise self._error
        return list(self._replies)


class _FakeLLMClient:
    def __init__(self, name="default", replies=("hello from llm",), error=None):
        self.name = name
        self.replies = replies
        self.error = error
        self.sessions = []

    def new_session(self, system_prompt="", history=None):
        session = _ScriptedSession(self.replies, error=self.error, system_prompt=system_prompt, history=history)
        self.sessions.append(session)
        return session


class _FakeLLMFactory:
    def __init__(self, default_client=None, fallback_client=None, failing=()):
        self.default_client = default_client
        self.fallback_client = fallback_client
        self.failing = set(failing)
        self.clients = {}
        self.requested = []

    async def create_client(self, provider, model):
        self.requested.append((provider, model))
        if (provider, model) in self.failing:
            raise LLMClientError(f"cannot create {provider}/{model}", provider=provider, model=model)
        return self.clients.setdefault((provider, model), _FakeLLMClient(name=f"{provider}/{model}"))

    async def get_fallback_client(self):
        if self.fallback_client is None:
            raise LLMClientError("Fallback is not enabled")
        return self.fallback_client


def _orchestrator(
    slack=None, store=None, directory=None, factory=None, llm_client=None, server_base_url="", history_storage=None
):
    if history_storage is None and store is not None:
        history_storage = HistoryStorage(MemoryStorageAdapter())
    config = OrchestratorConfig(
        slack_client=slack or _FakeSlack(),
        thread_store=store,
        history_storage=history_storage,
        agent_directory=directory,
        llm_factory=factory,
        llm_client=llm_client,
        server_base_url=server_base_url,
    )
    return ConversationOrchestrator(config)


def test_config_without_slack_client_is_rejected():
    with pytest.raises(ConfigurationError):
        ConversationOrchestrator(OrchestratorConfig(llm_client=_FakeLLMClient()))

    with pytest.raises(ConfigurationError):
        ConversationOrchestrator(OrchestratorConfig())


def test_new_thread_without_agent_id_binds_general_mode():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    client = _FakeLLMClient(replies=("Here is how to use Tamamo",))
    orchestrator = _orchestrator(slack=slack, store=store, directory=_FakeAgentDirectory(), llm_client=client)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> ")))

    assert len(store.threads) == 1
    thread = next(iter(store.threads.values()))
    assert thread.agent_kind == "general"
    assert thread.agent_uuid is None
    assert thread.agent_version == "general-v1"
    assert client.sessions[0].system_prompt == GENERAL_MODE_SYSTEM_PROMPT
    assert [p.text for p in slack.posts] == ["Here is how to use Tamamo"]
    assert slack.posts[0].thread_ts == "100.1"


def test_unknown_agent_posts_help_and_creates_no_thread():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    directory = _FakeAgentDirectory()
    directory.add("code-helper", "v1", "You write code.")
    orchestrator = _orchestrator(slack=slack, store=store, directory=directory, llm_client=_FakeLLMClient())

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> nope do something")))

    assert len(slack.posts) == 1
    text = slack.posts[0].text
    assert "Agent ID 'nope' not found" in text
    assert "Usage: @tamamo <agent_id> [message]" in text
    assert "- code-helper: code-helper description" in text
    assert store.threads == {}
    assert store.messages == []


def test_archived_agent_is_reported_as_not_found():
    slack = _FakeSlack()
    directory = _FakeAgentDirectory()
    directory.add("old-bot", "v1", "Old.", status="archived")
    orchestrator = _orchestrator(slack=slack, store=_FakeThreadStore(), directory=directory, llm_client=_FakeLLMClient())

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> old-bot hi")))

    assert len(slack.posts) == 1
    assert "Agent ID 'old-bot' not found" in slack.posts[0].text
    assert "Available agents" not in slack.posts[0].text


def test_llm_not_configured_replies_statically_without_resolution():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    directory = _FakeAgentDirectory()
    orchestrator = _orchestrator(slack=slack, store=store, directory=directory)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> code-helper hi")))

    assert len(slack.posts) == 1
    assert "LLM not configured" in slack.posts[0].text
    assert directory.calls == []
    assert "get_thread_by_ts" not in store.calls
    assert "get_latest_history" not in store.calls
    assert "put_history" not in store.calls
    thread = next(iter(store.threads.values()))
    assert thread.agent_kind is None
    assert len(store.messages) == 1


def test_mention_not_addressed_to_bot_is_ignored():
    slack = _FakeSlack()
    client = _FakeLLMClient()
    orchestrator = _orchestrator(slack=slack, store=_FakeThreadStore(), llm_client=client)

    asyncio.run(orchestrator.handle_mention(_mention("<@USOMEONE> hello")))

    assert slack.posts == []
    assert client.sessions == []


def test_thread_keeps_first_bound_agent_and_version():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    directory = _FakeAgentDirectory()
    factory = _FakeLLMFactory(default_client=_FakeLLMClient())
    helper = directory.add("code-helper", "v1", "Prompt v1", provider="claude", model="claude-sonnet-4-5")
    directory.add("other-bot", "v1", "Other prompt", provider="openai", model="gpt-4.1")
    orchestrator = _orchestrator(slack=slack, store=store, directory=directory, factory=factory)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> code-helper first")))
    directory.add("code-helper", "v2", "Prompt v2", provider="openai", model="gpt-4.1")
    asyncio.run(
        orchestrator.handle_mention(_mention(f"<@{BOT}> other-bot second", ts="100.2", thread_ts="100.1"))
    )

    assert len(store.threads) == 1
    thread = next(iter(store.threads.values()))
    assert thread.agent_uuid == helper.id
    assert thread.agent_version == "v1"
    assert factory.requested == [("claude", "claude-sonnet-4-5"), ("claude", "claude-sonnet-4-5")]
    sessions = factory.clients[("claude", "claude-sonnet-4-5")].sessions
    assert [s.system_prompt for s in sessions] == ["Prompt v1", "Prompt v1"]


def test_history_is_saved_per_turn_and_reloaded():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    client = _FakeLLMClient(replies=("answer",))
    orchestrator = _orchestrator(slack=slack, store=store, llm_client=client)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> first question")))
    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> second question", ts="100.2", thread_ts="100.1")))

    assert len(store.histories) == 2
    first, second = store.histories
    assert first.id != second.id
    assert client.sessions[0].initial_history is None
    loaded = client.sessions[1].initial_history
    assert [(m.role, m.content) for m in loaded.messages] == [
        ("user", "first question"),
        ("assistant", "answer"),
    ]

    saved = asyncio.run(orchestrator.config.history_storage.load_history(second.thread_id, second.id))
    assert saved.count() == 4


def test_history_load_failure_does_not_block_generation():
    class _BrokenHistoryStore(_FakeThreadStore):
        async def get_latest_history(self, thread_id):
            raise RuntimeError("db down")

    slack = _FakeSlack()
    client = _FakeLLMClient(replies=("still works",))
    orchestrator = _orchestrator(slack=slack, store=_BrokenHistoryStore(), llm_client=client)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert [p.text for p in slack.posts] == ["still works"]


class _FlakyStorageAdapter(MemoryStorageAdapter):
    def __init__(self, fail_get=False, fail_put=False):
        super().__init__()
        self.fail_get = fail_get
        self.fail_put = fail_put

    async def get(self, key):
        if self.fail_get:
            raise OSError("disk unavailable")
        return await super().get(key)

    async def put(self, key, data):
        if self.fail_put:
            raise OSError("disk full")
        await super().put(key, data)


def test_history_payload_load_failure_generates_without_history():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    adapter = _FlakyStorageAdapter()
    client = _FakeLLMClient(replies=("answer",))
    orchestrator = _orchestrator(slack=slack, store=store, llm_client=client, history_storage=HistoryStorage(adapter))
    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> first question")))
    adapter.fail_get = True

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> second question", ts="100.2", thread_ts="100.1")))

    assert [p.text for p in slack.posts] == ["answer", "answer"]
    assert client.sessions[1].initial_history is None
    assert len(store.histories) == 2


def test_history_payload_save_failure_still_replies_without_record():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    adapter = _FlakyStorageAdapter(fail_put=True)
    orchestrator = _orchestrator(
        slack=slack,
        store=store,
        llm_client=_FakeLLMClient(replies=("answer",)),
        history_storage=HistoryStorage(adapter),
    )

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert [p.text for p in slack.posts] == ["answer"]
    assert store.histories == []
    assert "put_history" not in store.calls
    assert adapter.keys() == []


def test_history_record_save_failure_still_replies():
    class _BrokenRecordStore(_FakeThreadStore):
        async def put_history(self, record):
            self.calls.append("put_history")
            raise RuntimeError("db down")

    slack = _FakeSlack()
    store = _BrokenRecordStore()
    orchestrator = _orchestrator(slack=slack, store=store, llm_client=_FakeLLMClient(replies=("answer",)))

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert [p.text for p in slack.posts] == ["answer"]
    assert "put_history" in store.calls
    assert store.histories == []


def test_fallback_client_is_used_when_provider_fails():
    slack = _FakeSlack()
    directory = _FakeAgentDirectory()
    directory.add("code-helper", "v1", "Prompt", provider="claude", model="claude-haiku-4-5")
    fallback = _FakeLLMClient(name="fallback", replies=("fallback answer",))
    factory = _FakeLLMFactory(
        default_client=_FakeLLMClient(),
        fallback_client=fallback,
        failing=[("claude", "claude-haiku-4-5")],
    )
    orchestrator = _orchestrator(slack=slack, store=_FakeThreadStore(), directory=directory, factory=factory)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> code-helper hi")))

    assert [p.text for p in slack.posts] == [
        "⚠️ Failed to use claude/claude-haiku-4-5, falling back to default provider",
        "fallback answer",
    ]
    assert fallback.sessions[0].system_prompt == "Prompt"


def test_provider_and_fallback_failure_reports_and_raises():
    slack = _FakeSlack()
    directory = _FakeAgentDirectory()
    directory.add("code-helper", "v1", "Prompt", provider="claude", model="claude-haiku-4-5")
    factory = _FakeLLMFactory(default_client=_FakeLLMClient(), failing=[("claude", "claude-haiku-4-5")])
    orchestrator = _orchestrator(slack=slack, store=_FakeThreadStore(), directory=directory, factory=factory)

    with pytest.raises(LLMClientError) as exc_info:
        asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> code-helper hi")))

    assert exc_info.value.provider == "claude"
    assert exc_info.value.model == "claude-haiku-4-5"
    assert exc_info.value.fallback_error is not None
    assert [p.text for p in slack.posts] == [APOLOGY_MESSAGE]


def test_generation_failure_posts_apology_and_raises():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    client = _FakeLLMClient(error=RuntimeError("model overloaded"))
    orchestrator = _orchestrator(slack=slack, store=store, llm_client=client)

    with pytest.raises(RuntimeError, match="model overloaded"):
        asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert [p.text for p in slack.posts] == [APOLOGY_MESSAGE]
    assert store.histories == []


def test_empty_generation_posts_placeholder():
    slack = _FakeSlack()
    orchestrator = _orchestrator(slack=slack, llm_client=_FakeLLMClient(replies=()))

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert [p.text for p in slack.posts] == ["(no response)"]


def test_metadata_lookup_failures_fall_back_to_defaults():
    slack = _FakeSlack(fail_user_lookup=True, fail_channel_lookup=True)
    store = _FakeThreadStore()
    orchestrator = _orchestrator(slack=slack, store=store, llm_client=_FakeLLMClient(replies=("ok",)))

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert [p.text for p in slack.posts] == ["ok"]
    assert store.messages[0].user_name == ""


def test_message_records_user_display_name():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    orchestrator = _orchestrator(slack=slack, store=store, llm_client=_FakeLLMClient())

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert store.messages[0].user_name == "Jane"
    assert store.messages[0].text == f"<@{BOT}> hi"


def test_bound_agent_lookup_failure_posts_generic_error():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    directory = _FakeAgentDirectory()
    client = _FakeLLMClient()
    orchestrator = _orchestrator(slack=slack, store=store, directory=directory, llm_client=client)
    missing = uuid.uuid4()
    store.threads[(TEAM, CHANNEL, "100.1")] = Thread(
        id=uuid.uuid4(),
        team_id=TEAM,
        channel_id=CHANNEL,
        thread_ts="100.1",
        agent_kind="agent",
        agent_uuid=missing,
        agent_version="v1",
    )

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi", ts="100.2", thread_ts="100.1")))

    assert [p.text for p in slack.posts] == [RESOLUTION_ERROR_MESSAGE]
    assert client.sessions == []


def test_legacy_thread_uses_generic_prompt():
    slack = _FakeSlack()
    store = _FakeThreadStore()
    client = _FakeLLMClient()
    orchestrator = _orchestrator(slack=slack, store=store, directory=_FakeAgentDirectory(), llm_client=client)
    asyncio.run(store.get_or_create_thread(TEAM, CHANNEL, "100.1"))

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi", ts="100.2", thread_ts="100.1")))

    assert client.sessions[0].system_prompt == LEGACY_SYSTEM_PROMPT


def test_agent_with_image_posts_with_display_override():
    slack = _FakeSlack()
    directory = _FakeAgentDirectory()
    agent = directory.add("code-helper", "v1", "Prompt", image_id=uuid.uuid4())
    orchestrator = _orchestrator(
        slack=slack,
        store=_FakeThreadStore(),
        directory=directory,
        llm_client=_FakeLLMClient(replies=("done",)),
        server_base_url="https://tamamo.example.com/",
    )

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> code-helper hi")))

    options = slack.posts[0].options
    assert options.username == "code-helper bot"
    assert options.icon_url == f"https://tamamo.example.com/api/agents/{agent.id}/image?size=72"


def test_agent_without_image_posts_as_default_identity():
    slack = _FakeSlack()
    directory = _FakeAgentDirectory()
    directory.add("code-helper", "v1", "Prompt")
    orchestrator = _orchestrator(
        slack=slack,
        store=_FakeThreadStore(),
        directory=directory,
        llm_client=_FakeLLMClient(replies=("done",)),
        server_base_url="https://tamamo.example.com",
    )

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> code-helper hi")))

    assert slack.posts[0].options is None


def test_factory_default_client_answers_general_mode():
    slack = _FakeSlack()
    default = _FakeLLMClient(replies=("from default",))
    factory = _FakeLLMFactory(default_client=default)
    orchestrator = _orchestrator(slack=slack, store=_FakeThreadStore(), factory=factory)

    asyncio.run(orchestrator.handle_mention(_mention(f"<@{BOT}> hi")))

    assert factory.requested == []
    assert [p.text for p in slack.posts] == ["from default"]


def test_handle_message_records_only_participating_threads():
    store = _FakeThreadStore()
    orchestrator = _orchestrator(store=store, llm_client=_FakeLLMClient())
    thread = asyncio.run(store.get_or_create_thread(TEAM, CHANNEL, "100.1"))

    known = SlackMessage.from_event(
        {"type": "message", "text": "follow up", "user": "U2", "ts": "100.5", "thread_ts": "100.1", "channel": CHANNEL},
        TEAM,
    )
    unknown = SlackMessage.from_event(
        {"type": "message", "text": "elsewhere", "user": "U2", "ts": "200.5", "thread_ts": "200.1", "channel": CHANNEL},
        TEAM,
    )
    top_level = SlackMessage.from_event(
        {"type": "message", "text": "top", "user": "U2", "ts": "300.1", "channel": CHANNEL},
        TEAM,
    )

    asyncio.run(orchestrator.handle_message(known))
    asyncio.run(orchestrator.handle_message(unknown))
    asyncio.run(orchestrator.handle_message(top_level))

    assert [m.text for m in store.messages] == ["follow up"]
    assert store.messages[0].thread_id == thread.id
    assert known.thread_id == thread.id
