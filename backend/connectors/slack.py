"""
Slack Web API client used by the bot.

Responsibilities:
- Authenticate with the bot token
- Post replies into threads, optionally with a per-agent display override
- Look up user and channel metadata
- Tell whether a mentioned user id is this bot
"""

import logging
import re
from typing import Any, Optional

import httpx

from models.slack import ChannelInfo, SlackMessageOptions

SLACK_API_BASE = "https://slack.com/api"
logger = logging.getLogger(__name__)

_TABLE_PATTERN = re.compile(r"((?:^\|.+\|$\n?)+)", re.MULTILINE)
_TABLE_SEPARATOR = re.compile(r"^\|[\s\-:|]+\|$")


class SlackAPIError(RuntimeError):
    """Raised when the Slack API answers ``ok: false``."""

    def __init__(self, endpoint: str, error: str) -> None:
        super().__init__(f"Slack API error on {endpoint}: {error}")
        self.endpoint = endpoint
        self.error = error


def markdown_to_mrkdwn(text: str) -> str:
    """
    Convert the Markdown LLMs produce into Slack mrkdwn.

    - Bold: **text** -> *text*
    - Links: [text](url) -> <url|text>
    - Headers: # Header -> *Header*
    - Tables: wrapped in a code block, separator rows dropped
    """

    def _table_to_code_block(match: re.Match[str]) -> str:
        rows = [
            row for row in match.group(1).strip().split("\n")
            if not _TABLE_SEPARATOR.match(row.strip())
        ]
        return "```\n" + "\n".join(rows) + "\n```"

    text = _TABLE_PATTERN.sub(_table_to_code_block, text)
    text = re.sub(r"\*\*(.+?)\*\*", r"*\1*", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r"<\2|\1>", text)
    text = re.sub(r"^#{1,6}\s+(.+)$", r"*\1*", text, flags=re.MULTILINE)
    return text


class SlackConnector:
    """Bot-token Slack client."""

    def __init__(
        self,
        token: str,
        bot_user_id: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        if not token:
            raise ValueError("Slack bot token is required")
        self._token = token
        self._timeout = timeout
        self.bot_user_id: Optional[str] = bot_user_id
        self.bot_id: Optional[str] = None
        self.team_id: Optional[str] = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Make an authenticated request to the Slack API."""
        url = f"{SLACK_API_BASE}/{endpoint}"

        async with httpx.AsyncClient() as client:
            if method == "GET":
                response = await client.get(
                    url, headers=self._headers(), params=params, timeout=self._timeout
                )
            else:
                response = await client.post(
                    url, headers=self._headers(), json=json_data, timeout=self._timeout
                )

            response.raise_for_status()
            data: dict[str, Any] = response.json()

            if not data.get("ok"):
                raise SlackAPIError(endpoint, data.get("error", "unknown"))

            return data

    async def auth_test(self) -> dict[str, Any]:
        """Resolve the bot's own user id via ``auth.test``."""
        data = await self._make_request("POST", "auth.test")
        self.bot_user_id = data.get("user_id")
        self.bot_id = data.get("bot_id")
        self.team_id = data.get("team_id")
        logger.info(
            "[slack] Authenticated as bot user=%s bot=%s team=%s",
            self.bot_user_id,
            self.bot_id,
            self.team_id,
        )
        return data

    def is_bot_user(self, user_id: str) -> bool:
        return bool(self.bot_user_id) and user_id == self.bot_user_id

    async def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str] = None,
    ) -> dict[str, Any]:
        """Post a message as the default bot identity."""
        return await self._post(channel=channel, text=text, thread_ts=thread_ts)

    async def post_message_with_options(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str],
        options: SlackMessageOptions,
    ) -> dict[str, Any]:
        """Post a message with a custom display name and icon."""
        extra: dict[str, Any] = {}
        if options.username:
            extra["username"] = options.username
        if options.icon_url:
            extra["icon_url"] = options.icon_url
        elif options.icon_emoji:
            extra["icon_emoji"] = options.icon_emoji
        return await self._post(channel=channel, text=text, thread_ts=thread_ts, extra=extra)

    async def _post(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str],
        extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "channel": channel,
            "text": markdown_to_mrkdwn(text),
        }
        if thread_ts:
            payload["thread_ts"] = thread_ts
        if extra:
            payload.update(extra)

        data = await self._make_request("POST", "chat.postMessage", json_data=payload)
        logger.debug(
            "[slack] Posted message channel=%s thread=%s ts=%s",
            channel,
            thread_ts,
            data.get("ts"),
        )
        return {
            "ok": data.get("ok"),
            "channel": data.get("channel"),
            "ts": data.get("ts"),
        }

    async def get_user_info(self, user_id: str) -> dict[str, Any]:
        """Get details for a specific Slack user via users.info."""
        data = await self._make_request("GET", "users.info", params={"user": user_id})
        return data.get("user", {})

    async def get_channel_info(self, channel_id: str) -> ChannelInfo:
        """Get channel metadata via conversations.info."""
        data = await self._make_request(
            "GET", "conversations.info", params={"channel": channel_id}
        )
        return ChannelInfo.from_api(data.get("channel", {}))
