"""Hedera mirror node reader for evaluation topics."""

import base64
import binascii
import logging
from typing import Any

import httpx

from . import config
from .codec import LogEntry
from .log import LogReadError
from .telemetry import setup_telemetry

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 100
# Guards against a mirror node that keeps returning a next link
MAX_PAGES_PER_READ = 50


class MirrorNodeReader:
    """OrderedLogReader backed by the mirror node REST API.

    Entries arrive base64-encoded in the ``message`` field; they are decoded
    to raw bytes here so the codec never sees the transport encoding.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = (base_url or config.MIRROR_NODE_URL).rstrip("/")
        self._page_limit = page_limit
        if client is None:
            setup_telemetry()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def read_from(self, topic_id: str, after_sequence: int) -> list[LogEntry]:
        """
        Fetch all entries after a sequence number.

        Args:
            topic_id: Topic id, e.g. "0.0.4567"
            after_sequence: Only entries with a greater sequence number

        Returns:
            Entries in ascending sequence order

        Raises:
            LogReadError: On HTTP failure or a malformed response
        """
        url: str | None = f"{self._base_url}/api/v1/topics/{topic_id}/messages"
        params: dict[str, Any] | None = {
            "sequencenumber": f"gt:{after_sequence}",
            "limit": self._page_limit,
            "order": "asc",
        }
        entries: list[LogEntry] = []

        for _ in range(MAX_PAGES_PER_READ):
            try:
                response = await self._client.get(url, params=params)
                response.raise_for_status()
                body = response.json()
            except httpx.HTTPError as e:
                logger.warning("Mirror node request failed. TopicId: %s, Error: %s", topic_id, e)
                raise LogReadError(f"Mirror node request failed for {topic_id}: {e}") from e
            except ValueError as e:
                raise LogReadError(f"Mirror node returned invalid JSON for {topic_id}") from e
            if not isinstance(body, dict):
                raise LogReadError(f"Mirror node returned an unexpected body for {topic_id}")

            for message in body.get("messages") or []:
                entry = _parse_message(topic_id, message)
                if entry is not None:
                    entries.append(entry)
            url = _next_url(self._base_url, body)
            params = None
            if url is None:
                break
        else:
            logger.warning(
                "Mirror node page limit reached. TopicId: %s, Entries: %d",
                topic_id, len(entries),
            )

        entries.sort(key=lambda e: e.sequence_number)
        return [e for e in entries if e.sequence_number > after_sequence]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _parse_message(topic_id: str, message: Any) -> LogEntry | None:
    """Convert one mirror node record, or None when it has no usable sequence number.

    A record whose payload is not valid base64 keeps its raw text as the
    payload, so the codec reports it as an error message at its position.
    """
    if not isinstance(message, dict):
        logger.warning("Skipping malformed mirror node record. TopicId: %s", topic_id)
        return None
    try:
        sequence_number = int(message["sequence_number"])
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping mirror node record without sequence number. TopicId: %s, Error: %s", topic_id, e)
        return None

    raw = message.get("message")
    try:
        payload = base64.b64decode(raw, validate=True)
    except (TypeError, ValueError, binascii.Error) as e:
        logger.warning(
            "Undecodable mirror node payload. TopicId: %s, Sequence: %d, Error: %s",
            topic_id, sequence_number, e,
        )
        payload = str(raw if raw is not None else "").encode("utf-8")

    return LogEntry(
        topic_id=str(message.get("topic_id", topic_id)),
        sequence_number=sequence_number,
        consensus_timestamp=str(message.get("consensus_timestamp", "")),
        payload=payload,
    )


def _next_url(base_url: str, body: dict[str, Any]) -> str | None:
    next_link = (body.get("links") or {}).get("next")
    if not next_link:
        return None
    if next_link.startswith("http"):
        return next_link
    return f"{base_url}{next_link}"
