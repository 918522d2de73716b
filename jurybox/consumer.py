"""Reader-side view of an evaluation topic.

The consumer polls the ordered log, decodes entries (reassembling chunk
groups that may straddle polls) and keeps a deduplicated, ordered list of
typed messages. Observers either call ``poll()`` themselves or iterate
``stream()``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from .codec import LogMessage, MessageDecoder
from .config import DEFAULT_POLL_INTERVAL
from .log import LogReadError, OrderedLogReader
from .messages import FinalEvent

logger = logging.getLogger(__name__)


class LogConsumer:
    """Incremental, idempotent reader for one topic."""

    def __init__(
        self,
        reader: OrderedLogReader,
        topic_id: str,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.reader = reader
        self.topic_id = topic_id
        self.poll_interval = poll_interval
        self.last_sequence_seen = 0
        self._decoder = MessageDecoder()
        self._messages: dict[tuple[str, int], LogMessage] = {}

    @property
    def messages(self) -> list[LogMessage]:
        """All decoded messages, ascending by sequence number."""
        return sorted(self._messages.values(), key=lambda m: m.sequence_number)

    @property
    def highest_round(self) -> int:
        return max((m.event.round_number for m in self._messages.values()), default=0)

    @property
    def final_message(self) -> LogMessage | None:
        for message in self.messages:
            if isinstance(message.event, FinalEvent):
                return message
        return None

    @property
    def final_event(self) -> FinalEvent | None:
        """The authoritative consensus, once published."""
        message = self.final_message
        if message is None:
            return None
        return message.event

    @property
    def consensus_score(self) -> float | None:
        final = self.final_event
        return final.score if final is not None else None

    @property
    def is_complete(self) -> bool:
        return self.final_event is not None

    def rounds(self) -> dict[int, list[LogMessage]]:
        """Messages grouped by round number, each group in sequence order."""
        grouped: dict[int, list[LogMessage]] = {}
        for message in self.messages:
            grouped.setdefault(message.event.round_number, []).append(message)
        return dict(sorted(grouped.items()))

    async def poll(self) -> list[LogMessage]:
        """
        Fetch and decode entries after ``last_sequence_seen``.

        Returns:
            Messages not seen before, in sequence order. Empty if the read
            failed; the next poll picks up from the same point.
        """
        try:
            entries = await self.reader.read_from(self.topic_id, self.last_sequence_seen)
        except LogReadError as e:
            logger.warning("Log poll failed. TopicId: %s, After: %d, Error: %s",
                           self.topic_id, self.last_sequence_seen, e)
            return []

        fresh = sorted(
            (e for e in entries if e.sequence_number > self.last_sequence_seen),
            key=lambda e: e.sequence_number,
        )
        if not fresh:
            return []

        added = []
        for message in self._decoder.feed(fresh):
            if message.key in self._messages:
                continue
            self._messages[message.key] = message
            added.append(message)

        self.last_sequence_seen = max(self.last_sequence_seen, fresh[-1].sequence_number)
        if added:
            logger.debug(
                "Decoded log messages. TopicId: %s, New: %d, LastSequence: %d",
                self.topic_id, len(added), self.last_sequence_seen,
            )
        return added

    async def stream(
        self,
        stop_on_final: bool = True,
        max_polls: int | None = None,
    ) -> AsyncIterator[LogMessage]:
        """
        Yield new messages as they appear, polling at a fixed interval.

        Args:
            stop_on_final: Finish after the final message has been yielded
            max_polls: Finish after this many polls (None polls until cancelled)
        """
        polls = 0
        while max_polls is None or polls < max_polls:
            polls += 1
            for message in await self.poll():
                yield message
            if stop_on_final and self.is_complete:
                return
            if max_polls is not None and polls >= max_polls:
                return
            await asyncio.sleep(self.poll_interval)
