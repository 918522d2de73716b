"""Ordered, append-only log adapters.

The orchestrator only writes and the consumer only reads, so the two halves
are separate protocols. ``InMemoryOrderedLog`` implements both and stands in
for a Hedera Consensus Service topic in tests and local runs.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol

from .codec import LogEntry

logger = logging.getLogger(__name__)


class LogPublishError(Exception):
    """An entry could not be appended to the log."""


class LogReadError(Exception):
    """Entries could not be fetched from the log."""


class TopicNotFoundError(LookupError):
    """The requested topic does not exist."""


class OrderedLogWriter(Protocol):
    """Write side of an ordered log."""

    async def create_topic(self, memo: str) -> str:
        """Create a topic and return its id."""
        ...

    async def publish(self, topic_id: str, payload: bytes) -> int:
        """Append a payload and return the sequence number the log assigned."""
        ...


class OrderedLogReader(Protocol):
    """Read side of an ordered log."""

    async def read_from(self, topic_id: str, after_sequence: int) -> list[LogEntry]:
        """Return entries with sequence number > after_sequence, ascending."""
        ...


class InMemoryOrderedLog:
    """Process-local ordered log.

    Sequence numbers start at 1 and are contiguous per topic. Timestamps use
    the Hedera ``seconds.nanoseconds`` format.
    """

    def __init__(self, max_entry_size: int | None = None, shard: str = "0.0") -> None:
        self._max_entry_size = max_entry_size
        self._shard = shard
        self._topics: dict[str, list[LogEntry]] = {}
        self._memos: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._next_topic_num = 1000

    async def create_topic(self, memo: str = "") -> str:
        topic_id = f"{self._shard}.{self._next_topic_num}"
        self._next_topic_num += 1
        self._topics[topic_id] = []
        self._memos[topic_id] = memo
        self._locks[topic_id] = asyncio.Lock()
        logger.info("Created topic. TopicId: %s, Memo: %s", topic_id, memo)
        return topic_id

    async def publish(self, topic_id: str, payload: bytes) -> int:
        entries = self._entries(topic_id)
        if self._max_entry_size is not None and len(payload) > self._max_entry_size:
            raise LogPublishError(
                f"Payload of {len(payload)} bytes exceeds entry limit of {self._max_entry_size}"
            )

        async with self._locks[topic_id]:
            sequence_number = len(entries) + 1
            entries.append(LogEntry(
                topic_id=topic_id,
                sequence_number=sequence_number,
                consensus_timestamp=_consensus_timestamp(),
                payload=bytes(payload),
            ))
        return sequence_number

    async def read_from(self, topic_id: str, after_sequence: int) -> list[LogEntry]:
        entries = self._entries(topic_id)
        return [e for e in entries if e.sequence_number > after_sequence]

    def memo(self, topic_id: str) -> str:
        self._entries(topic_id)
        return self._memos[topic_id]

    def entries(self, topic_id: str) -> list[LogEntry]:
        """All entries of a topic, in order."""
        return list(self._entries(topic_id))

    def _entries(self, topic_id: str) -> list[LogEntry]:
        try:
            return self._topics[topic_id]
        except KeyError:
            raise TopicNotFoundError(topic_id) from None


def _consensus_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return f"{int(now.timestamp())}.{now.microsecond * 1000:09d}"
