"""
Chunked conversation store.

Each phone number owns one metadata record and a run of chunk records:

    metadata:<phone>          ChatMetadata (message and chunk counts)
    chunk:<phone>:<index>     ChatChunk with up to MESSAGES_PER_CHUNK messages

Chunks are dense: indices are contiguous from 0 and every chunk but the
last is full, so the chunk holding message N is N // MESSAGES_PER_CHUNK.
Every write refreshes the TTL of the records it touches.

Error policy: write paths (store_message, delete_old_messages) raise
StorageError. Read accessors log and fall back to None / 0 / False / [].
delete_all_messages reports failure as False.

Writes for one phone number are serialized by a per-phone asyncio.Lock,
so concurrent store_message calls cannot lose each other's updates within
a process.
"""

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError

from whatsapp_ai.errors import StorageError
from whatsapp_ai.schemas import (
    ChatChunk,
    ChatMessage,
    ChatMetadata,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from whatsapp_ai.storage import KeyValueBackend
from whatsapp_ai.utils import normalize_phone_number

logger = logging.getLogger(__name__)

MESSAGES_PER_CHUNK = 50
TTL_DAYS = 90

METADATA_PREFIX = "metadata:"
CHUNK_PREFIX = "chunk:"

ROLE_LABELS = {"user": "User", "assistant": "AI"}


def metadata_key(phone_number: str) -> str:
    return f"{METADATA_PREFIX}{phone_number}"


def chunk_key(phone_number: str, chunk_index: int) -> str:
    return f"{CHUNK_PREFIX}{phone_number}:{chunk_index}"


class ChatStore:
    def __init__(
        self,
        backend: KeyValueBackend,
        ttl_days: int = TTL_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self._clock = clock
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, phone_number: str) -> asyncio.Lock:
        return self._locks.setdefault(phone_number, asyncio.Lock())

    # -------------------------------------------------------------------------
    # Strict record access (raises StorageError)
    # -------------------------------------------------------------------------

    async def _load(self, key: str, model: type[BaseModel]):
        raw = await self.backend.get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"corrupt record: {e}", key=key) from e

    async def _load_metadata(self, phone_number: str) -> Optional[ChatMetadata]:
        return await self._load(metadata_key(phone_number), ChatMetadata)

    async def _load_chunk(self, phone_number: str, chunk_index: int) -> Optional[ChatChunk]:
        return await self._load(chunk_key(phone_number, chunk_index), ChatChunk)

    async def _save(self, key: str, record: BaseModel) -> None:
        await self.backend.put(
            key,
            record.model_dump_json(by_alias=True),
            expire_after_seconds=self.ttl_seconds,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def store_message(self, phone_number: str, content: str, is_from_user: bool) -> ChatMessage:
        """
        Append one message to the phone number's history.

        Not idempotent: callers must dedupe upstream message ids themselves.

        Raises:
            StorageError: if any read or write against the backend fails
        """
        phone = normalize_phone_number(phone_number)
        timestamp = format_timestamp(self._clock())
        message = ChatMessage(
            role="user" if is_from_user else "assistant",
            content=content,
            timestamp=timestamp,
            message_id=str(uuid.uuid4()),
        )

        async with self._lock_for(phone):
            metadata = await self._load_metadata(phone) or ChatMetadata(
                phone_number=phone,
                total_messages=0,
                total_chunks=0,
                last_message_timestamp=timestamp,
                last_updated=timestamp,
            )

            chunk_index = metadata.total_messages // MESSAGES_PER_CHUNK
            chunk = await self._load_chunk(phone, chunk_index)
            if chunk is None:
                chunk = ChatChunk(phone_number=phone, chunk_index=chunk_index, created_at=timestamp)
                metadata.total_chunks += 1

            chunk.messages.append(message)
            chunk.message_count = len(chunk.messages)

            metadata.total_messages += 1
            metadata.last_message_timestamp = timestamp
            metadata.last_updated = timestamp

            await asyncio.gather(
                self._save(chunk_key(phone, chunk_index), chunk),
                self._save(metadata_key(phone), metadata),
            )

        logger.info(
            f"Message stored for {phone}: {message.role} message "
            f"(chunk {chunk_index}, total: {metadata.total_messages})"
        )
        return message

    async def delete_old_messages(self, phone_number: str, days_to_keep: int = 30) -> int:
        """
        Remove messages older than now - days_to_keep.

        Surviving messages are repacked into contiguous, dense chunks starting
        at index 0. Only chunks whose content changed are rewritten and stale
        trailing chunks are deleted. If nothing survives, the metadata record
        is deleted as well.

        Returns:
            Number of messages removed

        Raises:
            StorageError: if any read or write against the backend fails
        """
        phone = normalize_phone_number(phone_number)

        async with self._lock_for(phone):
            metadata = await self._load_metadata(phone)
            if metadata is None or metadata.total_messages == 0:
                return 0

            now = self._clock()
            cutoff = now - timedelta(days=days_to_keep)
            logger.debug(f"Pruning {phone}: cutoff={format_timestamp(cutoff)}, chunks={metadata.total_chunks}")

            existing: dict[int, ChatChunk] = {}
            survivors: list[ChatMessage] = []
            deleted = 0
            for index in range(metadata.total_chunks):
                chunk = await self._load_chunk(phone, index)
                if chunk is None:
                    continue
                existing[index] = chunk
                kept = [m for m in chunk.messages if parse_timestamp(m.timestamp) >= cutoff]
                deleted += len(chunk.messages) - len(kept)
                survivors.extend(kept)

            if deleted == 0:
                logger.info(f"Deleted 0 old messages for {phone}")
                return 0

            packed = [
                survivors[start:start + MESSAGES_PER_CHUNK]
                for start in range(0, len(survivors), MESSAGES_PER_CHUNK)
            ]
            updated_at = format_timestamp(now)

            writes = []
            for index, messages in enumerate(packed):
                previous = existing.get(index)
                if previous is not None and previous.messages == messages:
                    continue
                writes.append(self._save(
                    chunk_key(phone, index),
                    ChatChunk(
                        phone_number=phone,
                        chunk_index=index,
                        messages=messages,
                        message_count=len(messages),
                        created_at=previous.created_at if previous else updated_at,
                    ),
                ))
            for index in existing:
                if index >= len(packed):
                    writes.append(self.backend.delete(chunk_key(phone, index)))
            await asyncio.gather(*writes)

            if survivors:
                metadata.total_messages = len(survivors)
                metadata.total_chunks = len(packed)
                metadata.last_updated = updated_at
                await self._save(metadata_key(phone), metadata)
            else:
                await self.backend.delete(metadata_key(phone))

        logger.info(f"Deleted {deleted} old messages for {phone}")
        return deleted

    async def delete_all_messages(self, phone_number: str) -> bool:
        """Delete every chunk and the metadata. Returns False on storage failure."""
        phone = normalize_phone_number(phone_number)

        async with self._lock_for(phone):
            try:
                metadata = await self._load_metadata(phone)
                if metadata is None:
                    return True

                for index in range(metadata.total_chunks):
                    await self.backend.delete(chunk_key(phone, index))
                await self.backend.delete(metadata_key(phone))
            except StorageError as e:
                logger.error(f"Error deleting all messages for {phone}: {e}")
                return False

        logger.info(f"All messages deleted for {phone}")
        return True

    # -------------------------------------------------------------------------
    # Reads (never raise)
    # -------------------------------------------------------------------------

    async def get_metadata(self, phone_number: str) -> Optional[ChatMetadata]:
        phone = normalize_phone_number(phone_number)
        try:
            return await self._load_metadata(phone)
        except StorageError as e:
            logger.error(f"Error retrieving metadata for {phone}: {e}")
            return None

    async def get_chunk(self, phone_number: str, chunk_index: int) -> Optional[ChatChunk]:
        phone = normalize_phone_number(phone_number)
        try:
            return await self._load_chunk(phone, chunk_index)
        except StorageError as e:
            logger.error(f"Error retrieving chunk {chunk_index} for {phone}: {e}")
            return None

    async def get_message_count(self, phone_number: str) -> int:
        metadata = await self.get_metadata(phone_number)
        return metadata.total_messages if metadata else 0

    async def has_chat_history(self, phone_number: str) -> bool:
        metadata = await self.get_metadata(phone_number)
        return metadata is not None and metadata.total_messages > 0

    async def get_last_message(self, phone_number: str) -> Optional[ChatMessage]:
        metadata = await self.get_metadata(phone_number)
        if not metadata or metadata.total_messages == 0 or metadata.total_chunks == 0:
            return None

        last_chunk = await self.get_chunk(phone_number, metadata.total_chunks - 1)
        if not last_chunk or not last_chunk.messages:
            return None
        return last_chunk.messages[-1]

    async def get_messages_for_ai(self, phone_number: str, limit: int = 10) -> list[ChatMessage]:
        """
        Most recent `limit` messages, oldest first.

        Only the trailing chunks that hold those messages are read, so the
        cost is bounded by ceil(limit / MESSAGES_PER_CHUNK) + 1 chunk reads
        whatever the size of the history.
        """
        if limit <= 0:
            return []

        metadata = await self.get_metadata(phone_number)
        if not metadata or metadata.total_messages == 0 or metadata.total_chunks == 0:
            return []

        first_needed = max(0, metadata.total_messages - limit)
        start_chunk = min(first_needed // MESSAGES_PER_CHUNK, metadata.total_chunks - 1)

        chunks = await asyncio.gather(*(
            self.get_chunk(phone_number, index)
            for index in range(start_chunk, metadata.total_chunks)
        ))

        messages: list[ChatMessage] = []
        for chunk in chunks:
            if chunk:
                messages.extend(chunk.messages)
        return messages[-limit:]

    async def get_conversation_history_for_ai(self, phone_number: str, limit: int = 5) -> str:
        """Recent history as "User: ..." / "AI: ..." lines, oldest first."""
        messages = await self.get_messages_for_ai(phone_number, limit)
        return "\n".join(f"{ROLE_LABELS[m.role]}: {m.content}" for m in messages)

    async def list_phone_numbers(self) -> list[str]:
        """Phone numbers that currently have a metadata record."""
        try:
            keys = await self.backend.list_keys(METADATA_PREFIX)
        except StorageError as e:
            logger.error(f"Error listing conversations: {e}")
            return []
        return [key[len(METADATA_PREFIX):] for key in keys]
