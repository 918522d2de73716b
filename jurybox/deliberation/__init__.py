"""Evaluation data models for the deliberation core."""

from .deliberation import (
    AgentScore,
    ConsensusResult,
    EvaluationRequest,
    EvaluationResult,
    EvaluationStatus,
    FailureReason,
    PublishedEvent,
    Round,
)

__all__ = [
    "AgentScore",
    "ConsensusResult",
    "EvaluationRequest",
    "EvaluationResult",
    "EvaluationStatus",
    "FailureReason",
    "PublishedEvent",
    "Round",
]
