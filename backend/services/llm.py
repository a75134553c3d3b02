"""
LLM provider gateway.

Wraps the Anthropic and OpenAI SDKs behind one small session interface:

    client = await factory.create_client("claude", "claude-sonnet-4-5")
    session = client.new_session(system_prompt, history)
    response = await session.generate_content("hello")
    history = session.history()

Histories use a provider-neutral ``{"role", "content"}`` message list so a
thread can move to the fallback provider without losing context.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from config import ProvidersConfig, normalize_provider

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
HISTORY_FORMAT_VERSION = 1
EMPTY_TURN_PLACEHOLDER = "(empty message)"


class LLMClientError(RuntimeError):
    """Raised when an LLM client cannot be created (and fallback failed too)."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        model: str = "",
        fallback_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.fallback_error = fallback_error


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ConversationHistory(BaseModel):
    """Serializable multi-turn conversation state."""

    version: int = HISTORY_FORMAT_VERSION
    llm_type: str = ""
    messages: list[HistoryMessage] = Field(default_factory=list)

    def count(self) -> int:
        return len(self.messages)


@dataclass
class LLMResponse:
    texts: list[str] = field(default_factory=list)


class LLMSession(ABC):
    """A stateful conversation with one provider/model."""

    llm_type: str = ""

    def __init__(
        self,
        model: str,
        system_prompt: str = "",
        history: Optional[ConversationHistory] = None,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self._messages: list[HistoryMessage] = (
            [m.model_copy() for m in history.messages] if history else []
        )

    @abstractmethod
    async def _complete(self, messages: list[dict[str, str]]) -> list[str]:
        """Send the full message list to the provider and return the reply texts."""

    async def generate_content(self, text: str) -> LLMResponse:
        request = [m.model_dump() for m in self._messages]
        request.append({"role": "user", "content": text})

        texts = await self._complete(request)

        # Only a completed turn becomes part of the history; empty replies are not stored
        self._messages.append(HistoryMessage(role="user", content=text))
        reply = "\n".join(t for t in texts if t)
        if reply.strip():
            self._messages.append(HistoryMessage(role="assistant", content=reply))
        return LLMResponse(texts=texts)

    def history(self) -> ConversationHistory:
        return ConversationHistory(
            llm_type=self.llm_type,
            messages=[m.model_copy() for m in self._messages],
        )


def _anthropic_messages(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    """
    Messages in the shape the Anthropic API accepts.

    Empty turns are rejected by the API, so they are dropped, and the final
    user turn gets placeholder text when it is blank.  Turns that end up next
    to a turn of the same role are merged, and the list always starts with a
    user turn.
    """
    *prior, last = messages
    cleaned: list[dict[str, str]] = []
    for message in prior:
        if not message["content"].strip():
            continue
        if cleaned and cleaned[-1]["role"] == message["role"]:
            cleaned[-1] = {
                "role": message["role"],
                "content": f"{cleaned[-1]['content']}\n\n{message['content']}",
            }
        else:
            cleaned.append(dict(message))

    content = last["content"] if last["content"].strip() else EMPTY_TURN_PLACEHOLDER
    if cleaned and cleaned[-1]["role"] == "user":
        cleaned[-1] = {"role": "user", "content": f"{cleaned[-1]['content']}\n\n{content}"}
    else:
        cleaned.append({"role": "user", "content": content})

    if cleaned[0]["role"] != "user":
        cleaned.insert(0, {"role": "user", "content": EMPTY_TURN_PLACEHOLDER})
    return cleaned


class AnthropicSession(LLMSession):
    llm_type = "claude"

    def __init__(self, client: AsyncAnthropic, model: str, **kwargs: Any) -> None:
        super().__init__(model, **kwargs)
        self._client = client

    async def _complete(self, messages: list[dict[str, str]]) -> list[str]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": _anthropic_messages(messages),
        }
        if self.system_prompt:
            kwargs["system"] = self.system_prompt
        response = await self._client.messages.create(**kwargs)
        return [block.text for block in response.content if block.type == "text"]


class OpenAISession(LLMSession):
    llm_type = "openai"

    def __init__(self, client: AsyncOpenAI, model: str, **kwargs: Any) -> None:
        super().__init__(model, **kwargs)
        self._client = client

    async def _complete(self, messages: list[dict[str, str]]) -> list[str]:
        request: list[dict[str, str]] = []
        if self.system_prompt:
            request.append({"role": "system", "content": self.system_prompt})
        request.extend(messages)
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=request,
        )
        return [
            choice.message.content
            for choice in response.choices
            if choice.message and choice.message.content
        ]


class LLMClient(ABC):
    """Creates sessions for one provider/model pair."""

    def __init__(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model

    @abstractmethod
    def new_session(
        self,
        system_prompt: str = "",
        history: Optional[ConversationHistory] = None,
    ) -> LLMSession:
        """Start a session, optionally continuing ``history``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider}:{self.model})"


class AnthropicLLMClient(LLMClient):
    def __init__(self, api_key: str, model: str) -> None:
        super().__init__("claude", model)
        self._client = AsyncAnthropic(api_key=api_key)

    def new_session(self, system_prompt: str = "", history: Optional[ConversationHistory] = None) -> LLMSession:
        return AnthropicSession(self._client, self.model, system_prompt=system_prompt, history=history)


class OpenAILLMClient(LLMClient):
    def __init__(self, api_key: str, model: str) -> None:
        super().__init__("openai", model)
        self._client = AsyncOpenAI(api_key=api_key)

    def new_session(self, system_prompt: str = "", history: Optional[ConversationHistory] = None) -> LLMSession:
        return OpenAISession(self._client, self.model, system_prompt=system_prompt, history=history)


@dataclass(frozen=True)
class Credential:
    api_key: str = ""


def _has_credentials(provider: str, credential: Credential | None) -> bool:
    if credential is None:
        return False
    if provider in ("claude", "openai"):
        return bool(credential.api_key)
    return False


class LLMFactory:
    """
    Creates (and caches) LLM clients by provider/model.

    The default client is created at construction so broken credentials fail
    at startup instead of on the first mention.
    """

    def __init__(
        self,
        config: ProvidersConfig,
        credentials: dict[str, Credential],
    ) -> None:
        self.config = config
        self._credentials: dict[str, Credential] = {
            normalize_provider(name): cred for name, cred in credentials.items()
        }
        self._clients: dict[str, LLMClient] = {}
        self.default_client: Optional[LLMClient] = None

        ready_providers: list[str] = sorted(
            name for name, cred in self._credentials.items() if _has_credentials(name, cred)
        )

        defaults = config.defaults
        if defaults.provider and defaults.model:
            provider = normalize_provider(defaults.provider)
            if provider not in self._credentials:
                raise LLMClientError(
                    f"No credentials configured for default provider {defaults.provider}",
                    provider=defaults.provider,
                    model=defaults.model,
                )
            try:
                self.default_client = self._build_client(defaults.provider, defaults.model)
            except LLMClientError:
                logger.error(
                    "[llm] Failed to create default LLM client provider=%s model=%s",
                    defaults.provider,
                    defaults.model,
                )
                raise

        logger.info(
            "[llm] LLM factory initialized ready_providers=%s default_client=%s:%s",
            ready_providers,
            defaults.provider,
            defaults.model,
        )

    def _build_client(self, provider: str, model: str) -> LLMClient:
        if not self.config.validate_provider_model(provider, model):
            raise LLMClientError(
                f"Invalid provider/model combination: {provider}/{model}",
                provider=provider,
                model=model,
            )

        provider_key = normalize_provider(provider)
        cache_key = f"{provider_key}:{model}"
        cached = self._clients.get(cache_key)
        if cached is not None:
            return cached

        credential = self._credentials.get(provider_key)
        if credential is None:
            raise LLMClientError(
                f"No credentials configured for provider {provider}",
                provider=provider,
                model=model,
            )

        if provider_key == "claude":
            if not credential.api_key:
                raise LLMClientError("Claude requires an API key", provider=provider, model=model)
            client: LLMClient = AnthropicLLMClient(credential.api_key, model)
        elif provider_key == "openai":
            if not credential.api_key:
                raise LLMClientError("OpenAI requires an API key", provider=provider, model=model)
            client = OpenAILLMClient(credential.api_key, model)
        else:
            raise LLMClientError(f"Unsupported provider: {provider}", provider=provider, model=model)

        self._clients[cache_key] = client
        return client

    async def create_client(self, provider: str, model: str) -> LLMClient:
        return self._build_client(provider, model)

    async def get_fallback_client(self) -> LLMClient:
        fallback = self.config.fallback
        if not fallback.enabled:
            raise LLMClientError("Fallback is not enabled")
        if not fallback.provider or not fallback.model:
            raise LLMClientError("Fallback provider/model not configured")
        return self._build_client(fallback.provider, fallback.model)
