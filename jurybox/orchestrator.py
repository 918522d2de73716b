"""Round orchestrator: drives one evaluation from initial scoring to consensus.

Every state change of an evaluation is appended to its topic as a typed event,
so any reader of the ordered log can reconstruct the deliberation.

State machine::

    initializing -> scoring -> converging -> (discussing -> converging)* -> completed

Any non-terminal state may move to ``failed``.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from types import ModuleType
from typing import Any

from .codec import encode_event
from .config import (
    PUBLISH_MAX_RETRIES,
    PUBLISH_RETRY_BASE_DELAY,
    SCORE_MAX,
    SCORE_MIN,
    OrchestratorConfig,
    get_orchestrator_config,
)
from .consensus import (
    ConsensusAlgorithm,
    ConsensusOutcome,
    ScoreSample,
    aggregate,
    is_converging,
)
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
from .judges import AgentError, AgentTimeout, JudgeAgentClient, JudgeVerdict, PeerContext
from .log import LogPublishError, OrderedLogWriter
from .logging_config import set_evaluation_context, set_topic_id
from .messages import (
    AdjustmentEvent,
    DiscussionEvent,
    ErrorEvent,
    FinalEvent,
    InitialEvent,
    LogEvent,
    ScoreEvent,
)
from .telemetry import (
    evaluation_span,
    publish_span,
    record_span_error,
    round_span,
    setup_telemetry,
)

logger = logging.getLogger(__name__)

# Smallest change between rounds that counts as an adjustment
SCORE_EPSILON = 1e-9


class OrchestratorState(str, Enum):
    """States of a single evaluation."""

    INITIALIZING = "initializing"
    SCORING = "scoring"
    DISCUSSING = "discussing"
    CONVERGING = "converging"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({OrchestratorState.COMPLETED, OrchestratorState.FAILED})

_TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.INITIALIZING: frozenset({OrchestratorState.SCORING}),
    OrchestratorState.SCORING: frozenset({OrchestratorState.CONVERGING}),
    OrchestratorState.CONVERGING: frozenset({OrchestratorState.DISCUSSING, OrchestratorState.COMPLETED}),
    OrchestratorState.DISCUSSING: frozenset({OrchestratorState.CONVERGING}),
    OrchestratorState.COMPLETED: frozenset(),
    OrchestratorState.FAILED: frozenset(),
}


class InvalidTransition(RuntimeError):
    """The state machine was asked to make a move it does not allow."""


class TopicPublisher:
    """Appends encoded events to one topic.

    All entries of one event (a single entry or a header plus its content
    entries) are appended under one lock, so no other event can interleave
    with a chunk group. Each append is retried with exponential backoff.
    """

    def __init__(self, log: OrderedLogWriter, topic_id: str, chunk_threshold: int) -> None:
        self._log = log
        self.topic_id = topic_id
        self.chunk_threshold = chunk_threshold
        self._lock = asyncio.Lock()

    async def publish(self, event: LogEvent) -> int:
        """
        Publish an event.

        Returns:
            Sequence number of the event's first entry (the header for a
            chunked event)

        Raises:
            LogPublishError: If an entry could not be appended after retries
        """
        entries = encode_event(event, self.chunk_threshold)
        with publish_span(
            self.topic_id,
            event_type=event.event_type.value,
            round_number=event.round_number,
            parts=len(entries),
        ) as span:
            try:
                async with self._lock:
                    sequence_numbers = [await self._append(payload) for payload in entries]
            except LogPublishError as e:
                record_span_error(span, e)
                raise
            span.set_attribute("log.sequence", sequence_numbers[0])
        if len(entries) > 1:
            logger.debug(
                "Published chunked event. Type: %s, Parts: %d, HeaderSequence: %d",
                event.event_type.value, len(entries) - 1, sequence_numbers[0],
            )
        return sequence_numbers[0]

    async def _append(self, payload: bytes) -> int:
        for attempt in range(1, PUBLISH_MAX_RETRIES + 1):
            try:
                return await self._log.publish(self.topic_id, payload)
            except LogPublishError as e:
                if attempt == PUBLISH_MAX_RETRIES:
                    logger.error(
                        "Giving up on log append. TopicId: %s, Attempts: %d, Error: %s",
                        self.topic_id, attempt, e,
                    )
                    raise
                delay = PUBLISH_RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.info(
                    "Retrying log append. TopicId: %s, Attempt: %d, Delay: %.1fs, Error: %s",
                    self.topic_id, attempt, delay, e,
                )
                await asyncio.sleep(delay)
        raise LogPublishError(f"No append attempts made to {self.topic_id}")


class EvaluationSession:
    """Owns the state of exactly one evaluation while it runs."""

    def __init__(
        self,
        request: EvaluationRequest,
        log: OrderedLogWriter,
        judges: Mapping[str, JudgeAgentClient],
        config: OrchestratorConfig,
        *,
        storage: ModuleType | None = None,
        topic_id: str | None = None,
        deadline: float | None = None,
    ) -> None:
        self.request = request
        self.config = config
        self.topic_id = topic_id
        self.state = OrchestratorState.INITIALIZING
        self.state_history: list[OrchestratorState] = [self.state]
        self.rounds: list[Round] = []
        self.best_scores: dict[str, AgentScore] = {}
        self.score_history: list[dict[str, float]] = []
        self.warnings: list[str] = []

        self._log = log
        self._judges = judges
        self._storage = storage
        self._publisher: TopicPublisher | None = None
        self._deadline = time.monotonic() + deadline if deadline is not None else None
        # Preserve request order, drop repeats
        self._agent_ids = list(dict.fromkeys(request.agent_ids or judges.keys()))

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: OrchestratorState) -> None:
        allowed = _TRANSITIONS[self.state]
        if new_state is OrchestratorState.FAILED and self.state not in TERMINAL_STATES:
            allowed = allowed | {OrchestratorState.FAILED}
        if new_state not in allowed:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug("Evaluation state change. From: %s, To: %s", self.state.value, new_state.value)
        self.state = new_state
        self.state_history.append(new_state)

    async def run(self) -> EvaluationResult:
        """Run the evaluation to a terminal state. Never raises for evaluation failures."""
        set_evaluation_context(self.request.id, self.topic_id)
        self.request.status = EvaluationStatus.PROCESSING
        start = time.monotonic()
        logger.info(
            "Beginning evaluation. Agents: %d, Algorithm: %s, MaxRounds: %d",
            len(self._agent_ids), self.config.consensus_algorithm.value,
            self.config.max_discussion_rounds,
        )

        with evaluation_span(
            self.request.id,
            agents=len(self._agent_ids),
            algorithm=self.config.consensus_algorithm.value,
            topic_id=self.topic_id,
        ) as span:
            try:
                await self._initialize()
                span.set_attribute("log.topic.id", self.topic_id)

                self._transition(OrchestratorState.SCORING)
                await self._scoring_round()
                if not self.best_scores:
                    return await self._fail(
                        FailureReason.NO_USABLE_SCORES,
                        "No agent produced a usable score in round 0",
                    )

                outcome = self._converge()
                while not self._should_stop(outcome):
                    self._transition(OrchestratorState.DISCUSSING)
                    await self._discussion_round(len(self.rounds))
                    outcome = self._converge()

                result = await self._complete(outcome)
                logger.info(
                    "Evaluation complete. Score: %.3f, Variance: %.3f, Rounds: %d, Duration: %.1fs",
                    outcome.final_score, outcome.variance, len(self.rounds),
                    time.monotonic() - start,
                )
                return result

            except LogPublishError as e:
                logger.error("Ordered log unavailable. Error: %s", e)
                record_span_error(span, e)
                return await self._fail(FailureReason.LOG_UNAVAILABLE, f"Log unavailable: {e}")

            except Exception as e:
                logger.exception("Evaluation failed unexpectedly")
                record_span_error(span, e)
                return await self._fail(FailureReason.INTERNAL_ERROR, f"Internal error: {e}")

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        if self.topic_id is None:
            self.topic_id = await self._log.create_topic(f"jurybox evaluation {self.request.id}")
        set_topic_id(self.topic_id)
        self._publisher = TopicPublisher(self._log, self.topic_id, self.config.chunk_threshold)
        self._persist_start()

        self.rounds.append(Round(round_number=0))
        await self._publish(InitialEvent(
            request_id=self.request.id,
            criteria=list(self.request.criteria),
            agents=list(self._agent_ids),
            config=self.config.to_dict(),
        ))

    async def _scoring_round(self) -> None:
        round_ = self.rounds[0]
        with round_span(0, agents=len(self._agent_ids), topic_id=self.topic_id):
            participants = []
            for agent_id in self._agent_ids:
                if agent_id in self._judges:
                    participants.append(agent_id)
                else:
                    logger.warning("Unknown agent requested. AgentId: %s", agent_id)
                    round_.abstentions[agent_id] = "unknown agent"

            await self._run_round(round_, participants, lambda agent_id: None, self._record_score)

        self.score_history.append({a: s.score for a, s in self.best_scores.items()})
        logger.info(
            "Scoring round complete. Scores: %d, Abstentions: %d",
            len(round_.scores), len(round_.abstentions),
        )

    async def _discussion_round(self, round_number: int) -> None:
        round_ = Round(round_number=round_number)
        self.rounds.append(round_)
        snapshot = dict(self.best_scores)
        anonymous = self.config.consensus_algorithm is ConsensusAlgorithm.DELPHI_METHOD

        def context_for(agent_id: str) -> PeerContext:
            return PeerContext.build(round_number, agent_id, snapshot, anonymous=anonymous)

        with round_span(round_number, agents=len(snapshot), topic_id=self.topic_id):
            await self._run_round(round_, sorted(snapshot), context_for, self._record_revision)

        self.score_history.append({a: s.score for a, s in self.best_scores.items()})
        logger.info(
            "Discussion round complete. Round: %d, Adjustments: %d, Abstentions: %d",
            round_number,
            sum(1 for m in round_.messages if isinstance(m.event, AdjustmentEvent)),
            len(round_.abstentions),
        )

    def _converge(self) -> ConsensusOutcome:
        self._transition(OrchestratorState.CONVERGING)
        samples = [
            ScoreSample(
                agent_id=agent_id,
                score=score.score,
                confidence=score.confidence,
                weight=self.config.agent_weights.get(agent_id),
            )
            for agent_id, score in sorted(self.best_scores.items())
        ]
        outcome = aggregate(
            samples,
            self.config.consensus_algorithm,
            outlier_detection=self.config.outlier_detection,
            mad_multiplier=self.config.outlier_mad_multiplier,
            trim_fraction=self.config.trim_fraction,
            history=self.score_history[:-1],
        )
        if outcome.outliers:
            logger.info("Excluding outliers from consensus. Agents: %s", ", ".join(outcome.outliers))
        if outcome.variance_history:
            self._check_delphi_variance(outcome.variance_history)
        return outcome

    def _check_delphi_variance(self, variance_history: tuple[float, ...]) -> None:
        logger.info(
            "Delphi variance by round. Variances: %s",
            ", ".join(f"{v:.3f}" for v in variance_history),
        )
        if not is_converging(variance_history[-2:]):
            logger.warning(
                "Delphi variance grew. Round: %d, From: %.3f, To: %.3f",
                len(self.rounds) - 1, variance_history[-2], variance_history[-1],
            )
            self.warnings.append(
                f"Variance grew from {variance_history[-2]:.3f} to {variance_history[-1]:.3f} "
                f"in round {len(self.rounds) - 1}"
            )

    def _should_stop(self, outcome: ConsensusOutcome) -> bool:
        if outcome.variance <= self.config.convergence_threshold:
            return True
        if len(self.rounds) >= self.config.max_discussion_rounds:
            logger.info(
                "Round limit reached without convergence. Variance: %.3f, Threshold: %.3f",
                outcome.variance, self.config.convergence_threshold,
            )
            return True
        if not self.config.enable_discussion or len(self.best_scores) < 2:
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            logger.warning("Evaluation deadline reached. Rounds: %d", len(self.rounds))
            self.warnings.append(
                f"Deadline reached after {len(self.rounds)} round(s); "
                "consensus uses the scores gathered so far"
            )
            return True
        return False

    async def _complete(self, outcome: ConsensusOutcome) -> EvaluationResult:
        rounds_used = len(self.rounds)
        individual_scores = {a: s.score for a, s in sorted(self.best_scores.items())}
        consensus = ConsensusResult(
            final_score=outcome.final_score,
            confidence=outcome.confidence,
            variance=outcome.variance,
            algorithm=outcome.algorithm,
            convergence_rounds=rounds_used,
            individual_scores=individual_scores,
            excluded_agents=outcome.outliers,
            variance_history=outcome.variance_history,
        )
        await self._publish(FinalEvent(
            score=consensus.final_score,
            confidence=consensus.confidence,
            variance=consensus.variance,
            algorithm=consensus.algorithm,
            convergence_rounds=rounds_used,
            individual_scores=individual_scores,
            round_number=rounds_used - 1,
        ))
        self._transition(OrchestratorState.COMPLETED)
        self.request.status = EvaluationStatus.COMPLETED

        summary = {
            "status": EvaluationStatus.COMPLETED.value,
            "consensus_score": consensus.final_score,
            "confidence": consensus.confidence,
            "variance": consensus.variance,
            "convergence_rounds": consensus.convergence_rounds,
            "algorithm": consensus.algorithm,
            "hcs_topic_id": self.topic_id,
        }
        if consensus.variance_history:
            summary["variance_history"] = list(consensus.variance_history)
        self._persist(summary)
        return EvaluationResult(
            request_id=self.request.id,
            status=EvaluationStatus.COMPLETED,
            topic_id=self.topic_id,
            consensus_result=consensus,
            rounds=self.rounds,
            warnings=self.warnings,
        )

    async def _fail(self, reason: FailureReason, error: str) -> EvaluationResult:
        logger.warning("Evaluation failed. Reason: %s, Error: %s", reason.value, error)
        if self.state not in TERMINAL_STATES:
            self._transition(OrchestratorState.FAILED)
        self.request.status = EvaluationStatus.FAILED

        # Best effort: the log itself may be what failed
        if self._publisher is not None and reason is not FailureReason.LOG_UNAVAILABLE:
            try:
                await self._publish(ErrorEvent(error=error, round_number=max(len(self.rounds) - 1, 0)))
            except LogPublishError as e:
                logger.warning("Could not publish error event. Error: %s", e)
                self.warnings.append(f"Error event not published: {e}")

        self._persist({
            "status": EvaluationStatus.FAILED.value,
            "reason": reason.value,
            "hcs_topic_id": self.topic_id,
        })
        return EvaluationResult(
            request_id=self.request.id,
            status=EvaluationStatus.FAILED,
            topic_id=self.topic_id,
            rounds=self.rounds,
            reason=reason,
            error=error,
            warnings=self.warnings,
        )

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def _round_timeout(self) -> float:
        timeout = self.config.round_timeout
        if self._deadline is not None:
            timeout = min(timeout, max(0.0, self._deadline - time.monotonic()))
        return timeout

    async def _run_round(
        self,
        round_: Round,
        agent_ids: Iterable[str],
        context_for: Callable[[str], PeerContext | None],
        on_verdict: Callable[[Round, str, JudgeVerdict], Any],
    ) -> None:
        """Query judges concurrently; publish each verdict as it arrives.

        Judge tasks only call judges. Publishing happens here, in the session
        task, so cancelling a late judge can never interrupt a chunk group.
        """
        round_deadline = time.monotonic() + self._round_timeout()
        tasks: dict[asyncio.Task, str] = {}
        for agent_id in agent_ids:
            judge = self._judges[agent_id]
            coro = judge.evaluate(self.request.content, list(self.request.criteria), context_for(agent_id))
            tasks[asyncio.create_task(coro, name=f"judge:{agent_id}")] = agent_id

        pending = set(tasks)
        try:
            while pending:
                remaining = round_deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in sorted(done, key=lambda t: tasks[t]):
                    agent_id = tasks[task]
                    verdict = self._verdict_or_abstain(round_, agent_id, task)
                    if verdict is not None:
                        await on_verdict(round_, agent_id, verdict)
        finally:
            for task in pending:
                task.cancel()
                round_.abstentions.setdefault(tasks[task], "timeout")
            if pending:
                logger.warning(
                    "Round timed out waiting for agents. Round: %d, Agents: %s",
                    round_.round_number, ", ".join(sorted(tasks[t] for t in pending)),
                )
                await asyncio.gather(*pending, return_exceptions=True)
            round_.close()

    def _verdict_or_abstain(
        self, round_: Round, agent_id: str, task: asyncio.Task
    ) -> JudgeVerdict | None:
        if task.cancelled():
            round_.abstentions[agent_id] = "cancelled"
            return None
        try:
            verdict = task.result()
        except AgentTimeout as e:
            logger.warning("Agent timed out. AgentId: %s, Error: %s", agent_id, e)
            round_.abstentions[agent_id] = "timeout"
            return None
        except AgentError as e:
            logger.warning("Agent failed. AgentId: %s, Error: %s", agent_id, e)
            round_.abstentions[agent_id] = f"error: {e}"
            return None
        except Exception as e:
            logger.warning("Agent raised unexpectedly. AgentId: %s, Error: %s", agent_id, e)
            round_.abstentions[agent_id] = f"error: {e}"
            return None

        if not math.isfinite(verdict.score) or not SCORE_MIN <= verdict.score <= SCORE_MAX:
            logger.warning("Discarding out-of-range score. AgentId: %s, Score: %s", agent_id, verdict.score)
            round_.abstentions[agent_id] = f"invalid score: {verdict.score}"
            return None
        return verdict

    def _agent_score(self, round_: Round, agent_id: str, verdict: JudgeVerdict) -> AgentScore:
        confidence = verdict.confidence
        if not math.isfinite(confidence):
            confidence = 0.0
        return AgentScore(
            agent_id=agent_id,
            score=verdict.score,
            confidence=min(1.0, max(0.0, confidence)),
            reasoning=verdict.reasoning,
            aspects=dict(verdict.aspects),
            agent_name=self._judges[agent_id].name,
            round_number=round_.round_number,
        )

    async def _record_score(self, round_: Round, agent_id: str, verdict: JudgeVerdict) -> None:
        score = self._agent_score(round_, agent_id, verdict)
        await self._publish(ScoreEvent(
            agent_name=score.agent_name,
            round_number=round_.round_number,
            agent_id=agent_id,
            score=score.score,
            confidence=score.confidence,
            reasoning=score.reasoning,
            aspects=score.aspects,
        ), round_)
        round_.scores[agent_id] = score
        self.best_scores[agent_id] = score

    async def _record_revision(self, round_: Round, agent_id: str, verdict: JudgeVerdict) -> None:
        previous = self.best_scores[agent_id]
        score = self._agent_score(round_, agent_id, verdict)
        event: LogEvent
        if abs(score.score - previous.score) > SCORE_EPSILON:
            event = AdjustmentEvent(
                agent_name=score.agent_name,
                round_number=round_.round_number,
                agent_id=agent_id,
                original_score=previous.score,
                adjusted_score=score.score,
                confidence=score.confidence,
                reasoning=score.reasoning,
            )
        else:
            event = DiscussionEvent(
                agent_name=score.agent_name,
                round_number=round_.round_number,
                agent_id=agent_id,
                content=score.reasoning or f"Maintains score of {previous.score:g}",
            )
        await self._publish(event, round_)
        round_.scores[agent_id] = score
        self.best_scores[agent_id] = score

    async def _publish(self, event: LogEvent, round_: Round | None = None) -> int:
        if self._publisher is None:
            raise RuntimeError("Session has no topic yet")
        sequence_number = await self._publisher.publish(event)
        target = round_ if round_ is not None else self.rounds[-1]
        target.messages.append(PublishedEvent(sequence_number=sequence_number, event=event))
        return sequence_number

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_start(self) -> None:
        if self._storage is None:
            return
        try:
            if self._storage.get_evaluation(self.request.id) is None:
                self._storage.create_evaluation(self.request)
            self._storage.update_evaluation(self.request.id, {
                "status": EvaluationStatus.PROCESSING.value,
                "hcs_topic_id": self.topic_id,
            })
        except Exception as e:
            logger.warning("Failed to record evaluation start. Error: %s", e)
            self.warnings.append(f"Persistence failed: {e}")

    def _persist(self, updates: dict[str, Any]) -> None:
        if self._storage is None:
            return
        try:
            found = self._storage.update_evaluation(self.request.id, updates)
        except Exception as e:
            logger.warning("Failed to persist evaluation. Error: %s", e)
            self.warnings.append(f"Persistence failed: {e}")
            return
        if not found:
            logger.warning("Evaluation record missing; result not persisted")
            self.warnings.append(f"Evaluation {self.request.id} not found in storage")


class RoundOrchestrator:
    """Runs evaluations against an ordered log with a fixed panel of judges.

    Each call to ``execute_evaluation`` gets its own EvaluationSession, so
    concurrent evaluations never share mutable state.
    """

    def __init__(
        self,
        log: OrderedLogWriter,
        judges: Iterable[JudgeAgentClient] | Mapping[str, JudgeAgentClient],
        config: OrchestratorConfig | None = None,
        *,
        storage: ModuleType | None = None,
    ) -> None:
        if isinstance(judges, Mapping):
            self.judges = dict(judges)
        else:
            self.judges = {judge.agent_id: judge for judge in judges}
        self.log = log
        self.config = config or get_orchestrator_config()
        self.storage = storage
        setup_telemetry()

    async def execute_evaluation(
        self,
        request: EvaluationRequest,
        *,
        topic_id: str | None = None,
        deadline: float | None = None,
        config: OrchestratorConfig | None = None,
    ) -> EvaluationResult:
        """
        Run one evaluation to completion.

        Args:
            request: Content, criteria and requested agent ids (empty means
                every registered judge)
            topic_id: Existing topic to publish to; a new one is created if None
            deadline: Overall time budget in seconds
            config: Per-evaluation config, defaults to the orchestrator's

        Returns:
            EvaluationResult with status completed or failed
        """
        session = EvaluationSession(
            request,
            self.log,
            self.judges,
            config or self.config,
            storage=self.storage,
            topic_id=topic_id,
            deadline=deadline,
        )
        return await session.run()
