"""
Conversation history blob storage.

Histories are serialized to JSON, gzip-compressed and stored under
``{thread_id}/history/{history_id}.json.gz`` through a pluggable adapter
(in-memory for development and tests, local filesystem otherwise).
"""
from __future__ import annotations

import asyncio
import gzip
import json
import logging
from pathlib import Path
from typing import Protocol
from uuid import UUID

from pydantic import ValidationError

from services.llm import ConversationHistory

logger = logging.getLogger(__name__)


class StorageKeyNotFoundError(KeyError):
    """Raised by adapters when a key does not exist."""


class HistoryStorageError(RuntimeError):
    """Raised when a history blob cannot be written, read or decoded."""

    def __init__(self, message: str, thread_id: UUID, history_id: UUID) -> None:
        super().__init__(f"{message} (thread_id={thread_id}, history_id={history_id})")
        self.thread_id = thread_id
        self.history_id = history_id


class StorageAdapter(Protocol):
    async def put(self, key: str, data: bytes) -> None: ...

    async def get(self, key: str) -> bytes: ...


class MemoryStorageAdapter:
    """Keeps blobs in a dict; copies on the way in and out."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def put(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        try:
            return bytes(self._data[key])
        except KeyError:
            raise StorageKeyNotFoundError(key) from None

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileSystemStorageAdapter:
    """Stores blobs as files below ``base_dir``."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir).resolve()

    def _path_for(self, key: str) -> Path:
        path = (self._base_dir / key).resolve()
        if self._base_dir not in path.parents:
            raise ValueError(f"storage key escapes base directory: {key}")
        return path

    async def put(self, key: str, data: bytes) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)

        await asyncio.to_thread(_write)

    async def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise StorageKeyNotFoundError(key) from None


def build_history_key(thread_id: UUID, history_id: UUID) -> str:
    return f"{thread_id}/history/{history_id}.json.gz"


class HistoryStorage:
    """Saves and loads :class:`ConversationHistory` blobs."""

    def __init__(self, adapter: StorageAdapter) -> None:
        self._adapter = adapter

    async def save_history(
        self,
        thread_id: UUID,
        history_id: UUID,
        history: ConversationHistory,
    ) -> None:
        key = build_history_key(thread_id, history_id)
        payload = history.model_dump_json().encode("utf-8")
        try:
            await self._adapter.put(key, gzip.compress(payload))
        except Exception as exc:
            raise HistoryStorageError("failed to save history to storage", thread_id, history_id) from exc

        logger.debug(
            "[history_storage] Saved history key=%s messages=%d bytes=%d",
            key,
            history.count(),
            len(payload),
        )

    async def load_history(self, thread_id: UUID, history_id: UUID) -> ConversationHistory:
        key = build_history_key(thread_id, history_id)
        try:
            compressed = await self._adapter.get(key)
        except StorageKeyNotFoundError:
            raise
        except Exception as exc:
            raise HistoryStorageError("failed to load history from storage", thread_id, history_id) from exc

        try:
            raw = json.loads(gzip.decompress(compressed))
            return ConversationHistory.model_validate(raw)
        except (OSError, EOFError, ValueError, ValidationError) as exc:
            raise HistoryStorageError("failed to decode history data", thread_id, history_id) from exc
