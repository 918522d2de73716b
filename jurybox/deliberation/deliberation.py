"""Evaluation data models shared by the orchestrator and its callers."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..messages import LogEvent


class EvaluationStatus(str, Enum):
    """Lifecycle of an evaluation request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Reason codes carried by failed evaluations."""

    NO_USABLE_SCORES = "no_usable_scores"
    LOG_UNAVAILABLE = "log_unavailable"
    INTERNAL_ERROR = "internal_error"


@dataclass
class EvaluationRequest:
    """Content to evaluate and the judges requested for it."""

    id: str
    content: str
    criteria: list[str] = field(default_factory=list)
    agent_ids: list[str] = field(default_factory=list)
    status: EvaluationStatus = EvaluationStatus.PENDING
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "content": self.content,
            "criteria": list(self.criteria),
            "agent_ids": list(self.agent_ids),
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvaluationRequest":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            content=data.get("content", ""),
            criteria=list(data.get("criteria", [])),
            agent_ids=list(data.get("agent_ids", data.get("requestedAgentIds", []))),
            status=EvaluationStatus(data.get("status", "pending")),
            created_at=data.get("created_at", time.time()),
        )


@dataclass(frozen=True)
class AgentScore:
    """One agent's score for one round. Immutable once recorded."""

    agent_id: str
    score: float
    confidence: float
    reasoning: str = ""
    aspects: dict[str, float] = field(default_factory=dict)
    agent_name: str = ""
    round_number: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "score": self.score,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "round_number": self.round_number,
        }
        if self.aspects:
            result["aspects"] = dict(self.aspects)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentScore":
        """Create from dictionary."""
        return cls(
            agent_id=data["agent_id"],
            score=float(data["score"]),
            confidence=float(data.get("confidence", 0.0)),
            reasoning=data.get("reasoning", ""),
            aspects=dict(data.get("aspects", {})),
            agent_name=data.get("agent_name", ""),
            round_number=data.get("round_number", 0),
        )


@dataclass(frozen=True)
class PublishedEvent:
    """An event together with the sequence number the log assigned to it."""

    sequence_number: int
    event: LogEvent

    def to_dict(self) -> dict[str, Any]:
        return {"sequenceNumber": self.sequence_number, **self.event.to_dict()}


@dataclass
class Round:
    """A single round of deliberation. Round 0 is independent scoring."""

    round_number: int
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    messages: list[PublishedEvent] = field(default_factory=list)
    scores: dict[str, AgentScore] = field(default_factory=dict)
    abstentions: dict[str, str] = field(default_factory=dict)  # agent id -> reason

    @property
    def duration(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def close(self) -> None:
        self.end_time = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Convert to the caller-facing round shape."""
        result: dict[str, Any] = {
            "roundNumber": self.round_number,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.abstentions:
            result["abstentions"] = dict(self.abstentions)
        return result


@dataclass(frozen=True)
class ConsensusResult:
    """Final reduction of an evaluation's scores. Computed exactly once."""

    final_score: float
    confidence: float
    variance: float
    algorithm: str
    convergence_rounds: int
    individual_scores: dict[str, float] = field(default_factory=dict)
    excluded_agents: tuple[str, ...] = ()
    variance_history: tuple[float, ...] = ()  # Per round, delphi_method only

    def to_dict(self) -> dict[str, Any]:
        """Convert to the caller-facing consensus shape."""
        result = {
            "finalScore": self.final_score,
            "confidence": self.confidence,
            "variance": self.variance,
            "algorithm": self.algorithm,
            "convergenceRounds": self.convergence_rounds,
            "individualScores": dict(self.individual_scores),
        }
        if self.excluded_agents:
            result["excludedAgents"] = list(self.excluded_agents)
        if self.variance_history:
            result["varianceHistory"] = list(self.variance_history)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsensusResult":
        """Create from dictionary."""
        return cls(
            final_score=float(data["finalScore"]),
            confidence=float(data.get("confidence", 0.0)),
            variance=float(data.get("variance", 0.0)),
            algorithm=data.get("algorithm", ""),
            convergence_rounds=int(data.get("convergenceRounds", 0)),
            individual_scores=dict(data.get("individualScores", {})),
            excluded_agents=tuple(data.get("excludedAgents", ())),
            variance_history=tuple(float(v) for v in data.get("varianceHistory", ())),
        )


@dataclass
class EvaluationResult:
    """Structured outcome returned to the caller, success or failure."""

    request_id: str
    status: EvaluationStatus
    topic_id: str | None = None
    consensus_result: ConsensusResult | None = None
    rounds: list[Round] = field(default_factory=list)
    reason: FailureReason | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is EvaluationStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        """Convert to the caller-facing result shape."""
        result: dict[str, Any] = {
            "requestId": self.request_id,
            "status": self.status.value,
            "topicId": self.topic_id,
            "consensusResult": self.consensus_result.to_dict() if self.consensus_result else None,
            "evaluationRounds": [r.to_dict() for r in self.rounds],
        }
        if self.reason:
            result["reason"] = self.reason.value
        if self.error:
            result["error"] = self.error
        if self.warnings:
            result["warnings"] = list(self.warnings)
        return result
