"""
Best-effort Slack channel/user metadata.

Lookups here never raise: a failed lookup is logged and replaced by a
default, and the result says so via ``defaulted`` so callers (and tests) can
tell the two paths apart.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Protocol

from models.slack import ChannelInfo, ChannelType

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_CACHE_TTL_SECONDS = 3600.0


class ChannelInfoSource(Protocol):
    async def get_channel_info(self, channel_id: str) -> ChannelInfo: ...


class UserInfoSource(Protocol):
    async def get_user_info(self, user_id: str) -> dict[str, Any]: ...


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    expired_entries: int
    active_entries: int
    ttl_seconds: float


class ChannelCache:
    """TTL cache in front of ``conversations.info``."""

    def __init__(
        self,
        client: ChannelInfoSource,
        ttl_seconds: float = DEFAULT_CHANNEL_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl = ttl_seconds if ttl_seconds > 0 else DEFAULT_CHANNEL_CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: dict[str, tuple[ChannelInfo, float]] = {}

    def _is_expired(self, stored_at: float) -> bool:
        return self._clock() - stored_at > self._ttl

    async def get_channel_info(self, channel_id: str) -> ChannelInfo:
        if not channel_id:
            raise ValueError("channel_id cannot be empty")

        cached = self._entries.get(channel_id)
        if cached is not None and not self._is_expired(cached[1]):
            return replace(cached[0])

        removed = self.clean_expired_entries()
        if removed:
            logger.debug("[slack_metadata] Pruned %d expired channel cache entries", removed)

        info = await self._client.get_channel_info(channel_id)
        self._entries[channel_id] = (replace(info), self._clock())
        return replace(info)

    def invalidate_channel(self, channel_id: str) -> None:
        self._entries.pop(channel_id, None)

    def invalidate_all(self) -> None:
        self._entries.clear()

    def clean_expired_entries(self) -> int:
        expired = [key for key, (_, stored_at) in self._entries.items() if self._is_expired(stored_at)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def stats(self) -> CacheStats:
        expired = sum(1 for _, stored_at in self._entries.values() if self._is_expired(stored_at))
        return CacheStats(
            total_entries=len(self._entries),
            expired_entries=expired,
            active_entries=len(self._entries) - expired,
            ttl_seconds=self._ttl,
        )


@dataclass(frozen=True)
class ChannelLookup:
    info: ChannelInfo
    defaulted: bool = False


@dataclass(frozen=True)
class UserLookup:
    name: str
    defaulted: bool = False


def default_channel_info(channel_id: str) -> ChannelInfo:
    return ChannelInfo(
        id=channel_id,
        name=channel_id,
        type=ChannelType.PUBLIC,
        is_private=False,
    )


async def lookup_channel_info(source: Optional[ChannelInfoSource], channel_id: str) -> ChannelLookup:
    """Channel info, or the channel id as name and type "public" on failure."""
    if source is None:
        return ChannelLookup(info=default_channel_info(channel_id), defaulted=True)
    try:
        info = await source.get_channel_info(channel_id)
    except Exception as exc:
        logger.warning(
            "[slack_metadata] Failed to get channel info for %s, using defaults: %s",
            channel_id,
            exc,
            exc_info=True,
        )
        return ChannelLookup(info=default_channel_info(channel_id), defaulted=True)
    return ChannelLookup(info=info)


def extract_display_name(slack_user: dict[str, Any] | None) -> str:
    if not slack_user:
        return ""
    profile = slack_user.get("profile", {}) or {}
    return (
        profile.get("display_name")
        or profile.get("real_name")
        or slack_user.get("real_name")
        or slack_user.get("name")
        or ""
    ).strip()


async def lookup_user_name(source: Optional[UserInfoSource], user_id: str) -> UserLookup:
    """Display name for a Slack user, or "" when the lookup fails."""
    if source is None or not user_id:
        return UserLookup(name="", defaulted=True)
    try:
        slack_user = await source.get_user_info(user_id)
    except Exception as exc:
        logger.warning(
            "[slack_metadata] Failed Slack users.info lookup for user=%s: %s",
            user_id,
            exc,
            exc_info=True,
        )
        return UserLookup(name="", defaulted=True)
    return UserLookup(name=extract_display_name(slack_user))

