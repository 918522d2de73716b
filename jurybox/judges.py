"""Judge agent clients.

A judge scores content against criteria and, in discussion rounds, may
revise its score after seeing the prior round. The orchestrator only relies
on the JudgeAgentClient protocol; OpenRouterJudge is the LLM-backed
implementation.
"""

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from . import config
from .consensus import mean, median, population_variance
from .deliberation import AgentScore
from .openrouter import ModelError, query_model

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """A judge failed to produce a usable verdict."""

    def __init__(self, agent_id: str, message: str) -> None:
        super().__init__(message)
        self.agent_id = agent_id


class AgentTimeout(AgentError):
    """A judge did not answer in time."""


@dataclass(frozen=True)
class JudgeVerdict:
    """A judge's answer for one round."""

    score: float
    confidence: float
    reasoning: str = ""
    aspects: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PeerContext:
    """What a judge sees of the previous round before a discussion round.

    ``peers`` is empty when identities are hidden (Delphi rounds); the
    distribution summary is always present.
    """

    round_number: int
    own_score: AgentScore | None
    peers: tuple[AgentScore, ...] = ()
    distribution: dict[str, float] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        round_number: int,
        agent_id: str,
        scores: dict[str, AgentScore],
        *,
        anonymous: bool = False,
    ) -> "PeerContext":
        """Build the context shown to ``agent_id`` from the current scores."""
        values = [s.score for s in scores.values()]
        distribution: dict[str, float] = {}
        if values:
            distribution = {
                "count": float(len(values)),
                "mean": mean(values),
                "median": median(values),
                "min": min(values),
                "max": max(values),
                "variance": population_variance(values),
            }
        peers: tuple[AgentScore, ...] = ()
        if not anonymous:
            peers = tuple(
                scores[other] for other in sorted(scores) if other != agent_id
            )
        return cls(
            round_number=round_number,
            own_score=scores.get(agent_id),
            peers=peers,
            distribution=distribution,
        )

    def to_prompt_text(self) -> str:
        """Render the context for inclusion in a judge prompt."""
        lines = [f"Discussion round {self.round_number}."]
        if self.own_score is not None:
            lines.append(
                f"Your previous score: {self.own_score.score:.2f} "
                f"(confidence {self.own_score.confidence:.2f})"
            )
            if self.own_score.reasoning:
                lines.append(f"Your previous reasoning: {self.own_score.reasoning}")

        if self.peers:
            lines.append("")
            lines.append("Peer evaluations from the previous round:")
            for peer in self.peers:
                name = peer.agent_name or peer.agent_id
                lines.append(f"- {name}: {peer.score:.2f} (confidence {peer.confidence:.2f})")
                if peer.reasoning:
                    lines.append(f"  Reasoning: {peer.reasoning}")

        if self.distribution:
            d = self.distribution
            lines.append("")
            lines.append(
                f"Group distribution: {int(d['count'])} scores, median {d['median']:.2f}, "
                f"mean {d['mean']:.2f}, range {d['min']:.2f}-{d['max']:.2f}, "
                f"variance {d['variance']:.3f}"
            )
        return "\n".join(lines)


class JudgeAgentClient(Protocol):
    """Anything that can score content for the orchestrator."""

    agent_id: str
    name: str

    async def evaluate(
        self,
        content: str,
        criteria: Sequence[str],
        prior_round_context: PeerContext | None = None,
    ) -> JudgeVerdict:
        """Score content; raises AgentTimeout or AgentError on failure."""
        ...


JUDGE_SYSTEM_PROMPT = """You are an expert judge on an evaluation panel. Score the submitted content honestly against the stated criteria on a scale from 0 to 10.

GUIDELINES:
- Judge the content, not the author
- Be specific: tie every strength and weakness to a criterion
- Use the full scale; reserve 9-10 for genuinely exceptional work
- State your confidence honestly (0.0 to 1.0)
- In discussion rounds, change your score only if a peer's argument actually persuades you

Respond with a single JSON object and nothing else:
{"score": <0-10>, "confidence": <0-1>, "reasoning": "<2-4 sentences>", "aspects": {"<criterion>": <0-10>, ...}}"""


def _format_criteria(criteria: Sequence[str]) -> str:
    if not criteria:
        return "- Overall quality"
    return "\n".join(f"- {c}" for c in criteria)


def build_judge_messages(
    content: str,
    criteria: Sequence[str],
    prior_round_context: PeerContext | None = None,
    system_prompt: str = JUDGE_SYSTEM_PROMPT,
) -> list[dict[str, str]]:
    """Build the chat messages for a scoring or discussion round."""
    prompt = f"""Content to evaluate:

{content}

Criteria:
{_format_criteria(criteria)}"""

    if prior_round_context is not None:
        prompt += f"""

---

{prior_round_context.to_prompt_text()}

Reconsider your evaluation in light of the above. Keep your score if you are not persuaded."""

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": prompt},
    ]


class _VerdictPayload(BaseModel):
    score: float = Field(ge=config.SCORE_MIN, le=config.SCORE_MAX)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""
    aspects: dict[str, float] = Field(default_factory=dict)


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_BARE_JSON = re.compile(r"\{.*\}", re.DOTALL)
_SCORE_LINE = re.compile(r"SCORE:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_CONFIDENCE_LINE = re.compile(r"CONFIDENCE:\s*(\d+(?:\.\d+)?)", re.IGNORECASE)


def parse_verdict_from_text(text: str) -> JudgeVerdict:
    """
    Extract a verdict from a model response.

    Looks for a fenced JSON block, then a bare JSON object, then a
    ``SCORE: n`` line.

    Args:
        text: The full text response from the model

    Returns:
        JudgeVerdict

    Raises:
        ValueError: If no valid verdict can be found
    """
    candidates = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    bare = _BARE_JSON.search(text)
    if bare:
        candidates.append(bare.group(0))

    for candidate in candidates:
        try:
            payload = _VerdictPayload.model_validate(json.loads(candidate))
        except (json.JSONDecodeError, ValidationError):
            continue
        return JudgeVerdict(
            score=payload.score,
            confidence=payload.confidence,
            reasoning=payload.reasoning.strip(),
            aspects=dict(payload.aspects),
        )

    score_match = _SCORE_LINE.search(text)
    if score_match:
        confidence_match = _CONFIDENCE_LINE.search(text)
        try:
            payload = _VerdictPayload(
                score=float(score_match.group(1)),
                confidence=float(confidence_match.group(1)) if confidence_match else 0.5,
                reasoning=text.strip(),
            )
        except ValidationError as e:
            raise ValueError(f"Score out of range: {e}") from e
        return JudgeVerdict(score=payload.score, confidence=payload.confidence, reasoning=payload.reasoning)

    raise ValueError("No verdict found in model response")


class OpenRouterJudge:
    """A judge backed by a single OpenRouter model."""

    def __init__(
        self,
        agent_id: str,
        name: str,
        model: str | None = None,
        *,
        system_prompt: str = JUDGE_SYSTEM_PROMPT,
        timeout: float = 120.0,
    ) -> None:
        self.agent_id = agent_id
        self.name = name
        self.model = model or config.DEFAULT_JUDGE_MODEL
        self.system_prompt = system_prompt
        self.timeout = timeout

    async def evaluate(
        self,
        content: str,
        criteria: Sequence[str],
        prior_round_context: PeerContext | None = None,
    ) -> JudgeVerdict:
        messages = build_judge_messages(content, criteria, prior_round_context, self.system_prompt)
        result: dict[str, Any] | ModelError = await query_model(self.model, messages, timeout=self.timeout)

        if isinstance(result, ModelError):
            if result.category == "timeout":
                raise AgentTimeout(self.agent_id, f"{self.model} timed out: {result.message}")
            raise AgentError(self.agent_id, f"{self.model} failed ({result.category}): {result.message}")

        text = result.get('content') or ''
        try:
            return parse_verdict_from_text(text)
        except ValueError as e:
            logger.warning(
                "Unparseable judge response. AgentId: %s, Model: %s, Error: %s",
                self.agent_id, self.model, e,
            )
            raise AgentError(self.agent_id, f"Unparseable response from {self.model}: {e}") from e
