"""Chunking codec between typed events and ordered log entries.

A serialized event that fits within the size threshold is published as a
single entry. A larger one is published as a header entry whose body is
``1/N`` followed by N content entries holding consecutive byte shards of the
JSON payload. Readers reassemble by position: after a header, the next N
entries are content no matter what they look like.
"""

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from .config import DEFAULT_CHUNK_THRESHOLD
from .messages import ErrorEvent, EnvelopeError, LogEvent, event_from_dict

logger = logging.getLogger(__name__)

CHUNK_HEADER_PATTERN = re.compile(r"^(\d+)/(\d+)$")

# Characters of raw payload kept in decoder error messages
PREVIEW_LENGTH = 200

# agentName of error events produced while decoding
DECODER_NAME = "decoder"


@dataclass(frozen=True)
class LogEntry:
    """A raw entry as returned by the ordered log."""

    topic_id: str
    sequence_number: int
    consensus_timestamp: str
    payload: bytes


@dataclass(frozen=True)
class LogMessage:
    """A decoded message; reassembled messages carry their header's position."""

    topic_id: str
    sequence_number: int
    consensus_timestamp: str
    payload: bytes
    event: LogEvent

    @property
    def key(self) -> tuple[str, int]:
        return (self.topic_id, self.sequence_number)


@dataclass
class ChunkGroup:
    """Content entries collected after a chunk header."""

    header: LogEntry
    expected: int
    parts: list[LogEntry] = field(default_factory=list)

    @property
    def key(self) -> int:
        return self.header.sequence_number

    @property
    def last_sequence(self) -> int:
        if self.parts:
            return self.parts[-1].sequence_number
        return self.header.sequence_number

    @property
    def is_complete(self) -> bool:
        return len(self.parts) >= self.expected

    def payload(self) -> bytes:
        return b"".join(part.payload for part in self.parts)


def serialize_event(event: LogEvent) -> bytes:
    """Serialize an event envelope to compact UTF-8 JSON."""
    return json.dumps(
        event.to_dict(), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def split_payload(payload: bytes, threshold: int = DEFAULT_CHUNK_THRESHOLD) -> list[bytes]:
    """
    Split a payload into log entries.

    Args:
        payload: Serialized JSON
        threshold: Largest payload published as a single entry (bytes)

    Returns:
        ``[payload]`` if it fits, else ``[b"1/N", shard_1, ..., shard_N]``
    """
    if threshold <= 0:
        raise ValueError(f"Chunk threshold must be positive, got {threshold}")
    if len(payload) <= threshold:
        return [payload]

    shards = [payload[i:i + threshold] for i in range(0, len(payload), threshold)]
    header = f"1/{len(shards)}".encode("ascii")
    return [header, *shards]


def encode_event(event: LogEvent, threshold: int = DEFAULT_CHUNK_THRESHOLD) -> list[bytes]:
    """Serialize and split an event into the entries to append, in order."""
    return split_payload(serialize_event(event), threshold)


def _preview(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")[:PREVIEW_LENGTH]


def _error_message(entry: LogEntry, payload: bytes, error: str) -> LogMessage:
    return LogMessage(
        topic_id=entry.topic_id,
        sequence_number=entry.sequence_number,
        consensus_timestamp=entry.consensus_timestamp,
        payload=payload,
        event=ErrorEvent(error=error, preview=_preview(payload), agent_name=DECODER_NAME),
    )


def decode_payload(entry: LogEntry, payload: bytes) -> LogMessage:
    """
    Parse a complete payload into a typed message.

    Never raises: undecodable payloads become ErrorEvent messages.
    """
    try:
        envelope = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(
            "Undecodable log payload. Topic: %s, Sequence: %d, Error: %s",
            entry.topic_id, entry.sequence_number, e,
        )
        return _error_message(entry, payload, f"Invalid JSON payload: {e}")

    try:
        event = event_from_dict(envelope)
    except EnvelopeError as e:
        logger.warning(
            "Unrecognized envelope. Topic: %s, Sequence: %d, Error: %s",
            entry.topic_id, entry.sequence_number, e,
        )
        return _error_message(entry, payload, str(e))

    return LogMessage(
        topic_id=entry.topic_id,
        sequence_number=entry.sequence_number,
        consensus_timestamp=entry.consensus_timestamp,
        payload=payload,
        event=event,
    )


class MessageDecoder:
    """Incremental reader-side decoder.

    Feed entries in sequence order, across as many calls as needed; a chunk
    group may straddle two reads. Only the entries themselves are trusted for
    ordering: a sequence gap inside a group abandons it.
    """

    def __init__(self) -> None:
        self._pending: ChunkGroup | None = None

    @property
    def pending_group(self) -> ChunkGroup | None:
        return self._pending

    def feed(self, entries: Iterable[LogEntry]) -> list[LogMessage]:
        """Decode a window of entries, returning every message it completes."""
        messages: list[LogMessage] = []

        for entry in entries:
            group = self._pending
            if group is not None:
                if entry.sequence_number <= group.last_sequence:
                    continue  # already collected
                if entry.sequence_number == group.last_sequence + 1:
                    group.parts.append(entry)
                    if group.is_complete:
                        self._pending = None
                        messages.append(decode_payload(group.header, group.payload()))
                    continue
                messages.append(self._abandon(
                    group,
                    f"Chunk group interrupted at sequence {entry.sequence_number} "
                    f"after {len(group.parts)}/{group.expected} parts",
                ))

            expected = self._match_header(entry)
            if expected is None:
                messages.append(decode_payload(entry, entry.payload))
                continue
            if expected == 0:
                messages.append(_error_message(entry, entry.payload, "Chunk header declares zero parts"))
                continue
            self._pending = ChunkGroup(header=entry, expected=expected)

        return messages

    def flush(self) -> list[LogMessage]:
        """Abandon an incomplete trailing group, if any."""
        group = self._pending
        if group is None:
            return []
        return [self._abandon(
            group,
            f"Incomplete chunk group: {len(group.parts)}/{group.expected} parts",
        )]

    def _abandon(self, group: ChunkGroup, reason: str) -> LogMessage:
        self._pending = None
        logger.warning(
            "Abandoning chunk group. Topic: %s, HeaderSequence: %d, Reason: %s",
            group.header.topic_id, group.key, reason,
        )
        return _error_message(group.header, group.payload(), reason)

    @staticmethod
    def _match_header(entry: LogEntry) -> int | None:
        text = entry.payload.decode("utf-8", errors="replace").strip()
        match = CHUNK_HEADER_PATTERN.match(text)
        if match is None:
            return None
        return int(match.group(2))


def decode_entries(entries: Iterable[LogEntry]) -> list[LogMessage]:
    """Decode a complete, ordered list of entries in one pass."""
    decoder = MessageDecoder()
    messages = decoder.feed(entries)
    messages.extend(decoder.flush())
    return messages
