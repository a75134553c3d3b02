"""Decides whether a mention starts a new thread or continues a known one."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from agents.interfaces import ThreadRepository
from models.thread import Thread
from services.thread_store import ThreadNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThreadContext:
    is_new_thread: bool
    existing_thread: Optional[Thread] = None
    # Existing threads already carry their agent binding
    requires_agent_resolution: bool = True

    @classmethod
    def new_thread(cls) -> ThreadContext:
        return cls(is_new_thread=True, existing_thread=None, requires_agent_resolution=True)

    @classmethod
    def existing(cls, thread: Thread) -> ThreadContext:
        return cls(is_new_thread=False, existing_thread=thread, requires_agent_resolution=False)


class ThreadContextAnalyzer:
    """Read-only lookup of the thread a mention belongs to."""

    def __init__(self, thread_store: Optional[ThreadRepository]) -> None:
        self._thread_store = thread_store

    async def analyze(self, team_id: str, channel_id: str, thread_ts: str) -> ThreadContext:
        if self._thread_store is None:
            # Without persistence every mention looks like a new thread
            return ThreadContext.new_thread()

        try:
            thread = await self._thread_store.get_thread_by_ts(channel_id, thread_ts)
        except ThreadNotFoundError:
            logger.debug(
                "[thread_context] Thread not found, treating as new thread team=%s channel=%s thread_ts=%s",
                team_id,
                channel_id,
                thread_ts,
            )
            return ThreadContext.new_thread()
        except Exception as exc:
            logger.warning(
                "[thread_context] Thread lookup failed, treating as new thread channel=%s thread_ts=%s: %s",
                channel_id,
                thread_ts,
                exc,
                exc_info=True,
            )
            return ThreadContext.new_thread()

        logger.debug(
            "[thread_context] Found existing thread %s channel=%s thread_ts=%s",
            thread.id,
            channel_id,
            thread_ts,
        )
        return ThreadContext.existing(thread)
