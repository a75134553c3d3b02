"""
Slack event value objects and mention parsing.

These are plain dataclasses built from Events API payloads; nothing here
touches the network or the database.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

MENTION_PATTERN = re.compile(r"<@([A-Z0-9]+)>")
_AGENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")


@dataclass(frozen=True)
class Mention:
    user_id: str
    message: str


@dataclass(frozen=True)
class AgentMention:
    """A bot mention split into an optional agent id and the free text."""

    user_id: str
    agent_id: str = ""
    message: str = ""


def _text_after(text: str, token: str) -> str:
    idx = text.find(token)
    if idx < 0:
        return text.strip()
    return text[idx + len(token):].strip()


def is_valid_agent_id(value: str) -> bool:
    """
    Agent ids are ASCII letters, digits and dashes, and either contain a dash
    ("a-b", "code-helper") or are at least two characters long ("gpt").
    """
    if not value or not _AGENT_ID_PATTERN.match(value):
        return False
    return "-" in value or len(value) >= 2


def parse_mentions(text: str) -> list[Mention]:
    """Extract every ``<@USER>`` mention with the text that follows it."""
    return [
        Mention(user_id=match.group(1), message=_text_after(text, match.group(0)))
        for match in MENTION_PATTERN.finditer(text or "")
    ]


def parse_agent_mention(text: str) -> list[AgentMention]:
    """
    Extract agent mentions from raw Slack text.

    ``"<@BOT> code-helper fix this"`` -> agent_id="code-helper", message="fix this".
    When the first word is not a valid agent id the whole trailing text is the
    message.  An empty trailing text still yields a mention with empty fields.
    """
    mentions: list[AgentMention] = []
    for match in MENTION_PATTERN.finditer(text or ""):
        message = _text_after(text, match.group(0))
        agent_id = ""
        parts = message.split()
        if parts and is_valid_agent_id(parts[0]):
            agent_id = parts[0]
            message = " ".join(parts[1:])
        mentions.append(
            AgentMention(user_id=match.group(1), agent_id=agent_id, message=message)
        )
    return mentions


@dataclass
class SlackMessage:
    """A Slack message as received from the Events API."""

    id: uuid.UUID
    text: str
    user_id: str
    timestamp: str
    channel: str
    team_id: str
    user_name: str = ""
    bot_id: str = ""
    thread_ts: str = ""
    mentions: list[Mention] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    # Set once the message has been attached to a stored thread
    thread_id: Optional[uuid.UUID] = None

    @property
    def thread_key(self) -> str:
        """Thread timestamp; top-level messages start a thread at their own ts."""
        return self.thread_ts or self.timestamp

    @property
    def in_thread(self) -> bool:
        return bool(self.thread_ts) or self.thread_id is not None

    @classmethod
    def from_event(cls, event: dict[str, Any], team_id: str) -> Optional[SlackMessage]:
        """
        Build a message from an ``app_mention`` or ``message`` event payload.

        Returns None for other event types.
        """
        event_type = event.get("type")
        if event_type not in ("app_mention", "message"):
            return None

        text: str = event.get("text") or ""
        user_id: str = event.get("user") or ""
        # App mentions always come from users
        bot_id: str = (event.get("bot_id") or "") if event_type == "message" else ""
        return cls(
            id=uuid.uuid4(),
            text=text,
            user_id=user_id,
            user_name=user_id or bot_id or "unknown",
            bot_id=bot_id,
            timestamp=event.get("ts") or "",
            thread_ts=event.get("thread_ts") or "",
            channel=event.get("channel") or "",
            team_id=team_id,
            mentions=parse_mentions(text),
        )


class ChannelType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    IM = "im"
    MPIM = "mpim"


@dataclass
class ChannelInfo:
    id: str
    name: str
    type: ChannelType = ChannelType.PUBLIC
    is_private: bool = False
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_api(cls, channel: dict[str, Any]) -> ChannelInfo:
        """Build from a ``conversations.info`` channel object."""
        if channel.get("is_im"):
            channel_type = ChannelType.IM
        elif channel.get("is_mpim"):
            channel_type = ChannelType.MPIM
        elif channel.get("is_private"):
            channel_type = ChannelType.PRIVATE
        else:
            channel_type = ChannelType.PUBLIC
        channel_id: str = channel.get("id", "")
        return cls(
            id=channel_id,
            name=channel.get("name") or channel_id,
            type=channel_type,
            is_private=bool(channel.get("is_private")),
        )


@dataclass(frozen=True)
class SlackMessageOptions:
    """Per-message display override (custom bot name/icon)."""

    username: str = ""
    icon_url: str = ""
    icon_emoji: str = ""
