"""Typed log events published during an evaluation.

Every event travels as the envelope::

    {"type": ..., "agentName": ..., "roundNumber": ..., "data": {...}}

Each ``type`` maps to exactly one frozen dataclass below. ``event_from_dict``
dispatches on the tag and rejects anything it does not recognize.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# agentName used for events the orchestrator publishes on its own behalf
ORCHESTRATOR_NAME = "orchestrator"


class EventType(str, Enum):
    """Envelope type tags."""

    INITIAL = "initial"
    SCORE = "score"
    DISCUSSION = "discussion"
    ADJUSTMENT = "adjustment"
    FINAL = "final"
    ERROR = "error"


class EnvelopeError(ValueError):
    """Raised when a decoded payload is not a valid event envelope."""


class _Envelope:
    """Shared envelope serialization for all event variants."""

    event_type: EventType
    agent_name: str
    round_number: int

    def data(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire envelope."""
        return {
            "type": self.event_type.value,
            "agentName": self.agent_name,
            "roundNumber": self.round_number,
            "data": self.data(),
        }


@dataclass(frozen=True)
class InitialEvent(_Envelope):
    """Start marker published once per evaluation."""

    request_id: str
    criteria: list[str] = field(default_factory=list)
    agents: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    agent_name: str = ORCHESTRATOR_NAME
    round_number: int = 0

    event_type = EventType.INITIAL

    def data(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "criteria": list(self.criteria),
            "agents": list(self.agents),
            "config": dict(self.config),
        }


@dataclass(frozen=True)
class ScoreEvent(_Envelope):
    """An agent's independent score (round 0)."""

    agent_name: str
    round_number: int
    agent_id: str
    score: float
    confidence: float
    reasoning: str = ""
    aspects: dict[str, float] = field(default_factory=dict)

    event_type = EventType.SCORE

    def data(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "score": self.score,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "aspects": dict(self.aspects),
        }


@dataclass(frozen=True)
class DiscussionEvent(_Envelope):
    """Commentary on peers without a score change."""

    agent_name: str
    round_number: int
    agent_id: str
    content: str

    event_type = EventType.DISCUSSION

    def data(self) -> dict[str, Any]:
        return {"agentId": self.agent_id, "content": self.content}


@dataclass(frozen=True)
class AdjustmentEvent(_Envelope):
    """A revised score after seeing peer opinions."""

    agent_name: str
    round_number: int
    agent_id: str
    original_score: float
    adjusted_score: float
    confidence: float
    reasoning: str = ""

    event_type = EventType.ADJUSTMENT

    def data(self) -> dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "originalScore": self.original_score,
            "adjustedScore": self.adjusted_score,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class FinalEvent(_Envelope):
    """The consensus result.

    Individual scores travel as JSON text in ``reasoning`` so older readers
    that only display reasoning still show them.
    """

    score: float
    confidence: float
    variance: float
    algorithm: str
    convergence_rounds: int
    individual_scores: dict[str, float] = field(default_factory=dict)
    agent_name: str = ORCHESTRATOR_NAME
    round_number: int = 0

    event_type = EventType.FINAL

    def data(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "variance": self.variance,
            "algorithm": self.algorithm,
            "convergenceRounds": self.convergence_rounds,
            "reasoning": json.dumps(self.individual_scores, sort_keys=True),
        }


@dataclass(frozen=True)
class ErrorEvent(_Envelope):
    """A failure report, either published or produced by the decoder."""

    error: str
    preview: str = ""
    agent_name: str = ORCHESTRATOR_NAME
    round_number: int = 0

    event_type = EventType.ERROR

    def data(self) -> dict[str, Any]:
        return {"error": self.error, "preview": self.preview}


LogEvent = (
    InitialEvent
    | ScoreEvent
    | DiscussionEvent
    | AdjustmentEvent
    | FinalEvent
    | ErrorEvent
)


def _parse_individual_scores(reasoning: Any) -> dict[str, float]:
    if not isinstance(reasoning, str) or not reasoning:
        return {}
    try:
        parsed = json.loads(reasoning)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k): float(v) for k, v in parsed.items() if isinstance(v, (int, float))}


def _object_field(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EnvelopeError(f"Field {key!r} must be an object, got {type(value).__name__}")
    return value


def _list_field(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise EnvelopeError(f"Field {key!r} must be a list, got {type(value).__name__}")
    return value


def event_from_dict(envelope: Any) -> LogEvent:
    """
    Build a typed event from a decoded envelope.

    Args:
        envelope: Parsed JSON value

    Returns:
        The matching event variant

    Raises:
        EnvelopeError: If the value is not an envelope, the type is unknown,
            or a required data field is missing
    """
    if not isinstance(envelope, dict):
        raise EnvelopeError(f"Envelope must be an object, got {type(envelope).__name__}")

    data = envelope.get("data") or {}
    if not isinstance(data, dict):
        raise EnvelopeError("Envelope data must be an object")

    try:
        agent_name = str(envelope.get("agentName", ""))
        round_number = int(envelope.get("roundNumber", 0) or 0)
        match envelope.get("type"):
            case EventType.INITIAL.value:
                return InitialEvent(
                    request_id=str(data["requestId"]),
                    criteria=[str(c) for c in _list_field(data, "criteria")],
                    agents=[str(a) for a in _list_field(data, "agents")],
                    config=dict(_object_field(data, "config")),
                    agent_name=agent_name,
                    round_number=round_number,
                )
            case EventType.SCORE.value:
                return ScoreEvent(
                    agent_name=agent_name,
                    round_number=round_number,
                    agent_id=str(data.get("agentId", agent_name)),
                    score=float(data["score"]),
                    confidence=float(data.get("confidence", 0.0)),
                    reasoning=str(data.get("reasoning", "")),
                    aspects={str(k): float(v) for k, v in _object_field(data, "aspects").items()},
                )
            case EventType.DISCUSSION.value:
                return DiscussionEvent(
                    agent_name=agent_name,
                    round_number=round_number,
                    agent_id=str(data.get("agentId", agent_name)),
                    content=str(data.get("content", "")),
                )
            case EventType.ADJUSTMENT.value:
                return AdjustmentEvent(
                    agent_name=agent_name,
                    round_number=round_number,
                    agent_id=str(data.get("agentId", agent_name)),
                    original_score=float(data["originalScore"]),
                    adjusted_score=float(data["adjustedScore"]),
                    confidence=float(data.get("confidence", 0.0)),
                    reasoning=str(data.get("reasoning", "")),
                )
            case EventType.FINAL.value:
                return FinalEvent(
                    score=float(data["score"]),
                    confidence=float(data.get("confidence", 0.0)),
                    variance=float(data.get("variance", 0.0)),
                    algorithm=str(data.get("algorithm", "")),
                    convergence_rounds=int(data.get("convergenceRounds", 0)),
                    individual_scores=_parse_individual_scores(data.get("reasoning")),
                    agent_name=agent_name,
                    round_number=round_number,
                )
            case EventType.ERROR.value:
                return ErrorEvent(
                    error=str(data.get("error", "")),
                    preview=str(data.get("preview", "")),
                    agent_name=agent_name,
                    round_number=round_number,
                )
            case other:
                raise EnvelopeError(f"Unknown event type: {other!r}")
    except KeyError as e:
        raise EnvelopeError(f"Missing data field {e.args[0]!r} in {envelope.get('type')} event") from e
    except (AttributeError, TypeError, ValueError) as e:
        if isinstance(e, EnvelopeError):
            raise
        raise EnvelopeError(f"Malformed {envelope.get('type')} event: {e}") from e
