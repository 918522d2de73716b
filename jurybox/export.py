"""Export evaluation transcripts to various formats."""

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from .codec import LogMessage
from .messages import (
    AdjustmentEvent,
    DiscussionEvent,
    ErrorEvent,
    FinalEvent,
    InitialEvent,
    ScoreEvent,
)


def format_consensus_timestamp(timestamp: str) -> str:
    """Format a ``seconds.nanoseconds`` timestamp for display.

    Args:
        timestamp: Consensus timestamp as assigned by the log

    Returns:
        Formatted UTC time, or the input unchanged if it cannot be parsed
    """
    try:
        seconds = float(timestamp)
    except (TypeError, ValueError):
        return timestamp
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _round_title(round_number: int) -> str:
    if round_number == 0:
        return "Round 0: Independent Scoring"
    return f"Round {round_number}: Discussion"


def export_to_markdown(
    messages: Iterable[LogMessage],
    title: str = "Evaluation Transcript",
) -> str:
    """Export a topic's decoded messages to Markdown.

    Args:
        messages: Decoded messages, in sequence order
        title: Document heading

    Returns:
        Markdown-formatted string
    """
    messages = sorted(messages, key=lambda m: m.sequence_number)
    lines: list[str] = []

    lines.append(f"# {title}")
    lines.append("")
    if messages:
        started = format_consensus_timestamp(messages[0].consensus_timestamp)
        lines.append(f"*Topic {messages[0].topic_id}, started {started}*")
        lines.append("")

    current_round: int | None = None
    for message in messages:
        event = message.event

        if isinstance(event, InitialEvent):
            lines.append("## Evaluation Setup")
            lines.append("")
            lines.append(f"**Request:** {event.request_id}")
            if event.agents:
                lines.append(f"**Judges:** {', '.join(event.agents)}")
            if event.criteria:
                lines.append("**Criteria:**")
                for criterion in event.criteria:
                    lines.append(f"- {criterion}")
            lines.append("")
            continue

        if isinstance(event, FinalEvent):
            lines.append("## Consensus")
            lines.append("")
            lines.append(f"**Final Score:** {event.score:.2f}")
            lines.append(f"**Confidence:** {event.confidence:.2f}")
            lines.append(f"**Variance:** {event.variance:.3f}")
            lines.append(f"**Algorithm:** {event.algorithm}")
            lines.append(f"**Rounds Used:** {event.convergence_rounds}")
            if event.individual_scores:
                lines.append("")
                lines.append("| Judge | Score |")
                lines.append("|-------|-------|")
                for agent_id, score in sorted(event.individual_scores.items()):
                    lines.append(f"| {agent_id} | {score:.2f} |")
            lines.append("")
            continue

        if event.round_number != current_round and not isinstance(event, ErrorEvent):
            current_round = event.round_number
            lines.append(f"## {_round_title(current_round)}")
            lines.append("")

        if isinstance(event, ScoreEvent):
            lines.append(f"### {event.agent_name or event.agent_id}: {event.score:.2f} "
                         f"(confidence {event.confidence:.2f})")
            lines.append("")
            if event.reasoning:
                lines.append(event.reasoning)
                lines.append("")
            if event.aspects:
                for aspect, value in sorted(event.aspects.items()):
                    lines.append(f"- {aspect}: {value:.1f}")
                lines.append("")

        elif isinstance(event, AdjustmentEvent):
            lines.append(f"### {event.agent_name or event.agent_id}: "
                         f"{event.original_score:.2f} -> {event.adjusted_score:.2f}")
            lines.append("")
            if event.reasoning:
                lines.append(event.reasoning)
                lines.append("")

        elif isinstance(event, DiscussionEvent):
            lines.append(f"### {event.agent_name or event.agent_id}")
            lines.append("")
            lines.append(event.content)
            lines.append("")

        elif isinstance(event, ErrorEvent):
            lines.append(f"> **Error** (sequence {message.sequence_number}): {event.error}")
            lines.append("")

    return "\n".join(lines)


def export_to_json(messages: Iterable[LogMessage]) -> dict[str, Any]:
    """Export decoded messages as a clean JSON-serializable dict.

    Args:
        messages: Decoded messages

    Returns:
        Dict with topic id, ordered envelopes and the consensus if present
    """
    messages = sorted(messages, key=lambda m: m.sequence_number)
    final = next((m.event for m in reversed(messages) if isinstance(m.event, FinalEvent)), None)

    return {
        "topicId": messages[0].topic_id if messages else None,
        "exportedAt": datetime.now(timezone.utc).isoformat(),
        "messages": [
            {
                "sequenceNumber": m.sequence_number,
                "consensusTimestamp": m.consensus_timestamp,
                **m.event.to_dict(),
            }
            for m in messages
        ],
        "consensus": {
            "score": final.score,
            "confidence": final.confidence,
            "variance": final.variance,
            "algorithm": final.algorithm,
            "convergenceRounds": final.convergence_rounds,
            "individualScores": dict(final.individual_scores),
        } if final else None,
    }


def dump_json(messages: Iterable[LogMessage]) -> str:
    """Export decoded messages as an indented JSON string."""
    return json.dumps(export_to_json(messages), indent=2, ensure_ascii=False)
