"""Tests for the round orchestrator state machine."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from jurybox.codec import decode_entries
from jurybox.config import PUBLISH_MAX_RETRIES, OrchestratorConfig
from jurybox.consumer import LogConsumer
from jurybox.deliberation import EvaluationRequest, EvaluationStatus, FailureReason
from jurybox.judges import AgentError, AgentTimeout, JudgeVerdict, PeerContext
from jurybox.log import InMemoryOrderedLog, LogPublishError
from jurybox.messages import (
    AdjustmentEvent,
    DiscussionEvent,
    ErrorEvent,
    FinalEvent,
    InitialEvent,
    ScoreEvent,
)
from jurybox.orchestrator import (
    EvaluationSession,
    InvalidTransition,
    OrchestratorState,
    RoundOrchestrator,
    TopicPublisher,
)


class FakeJudge:
    """Judge returning scripted scores; the last score repeats."""

    def __init__(
        self,
        agent_id: str,
        scores: list[float] | float = 7.0,
        *,
        confidence: float = 0.8,
        delays: list[float] | float = 0.0,
        error: Exception | None = None,
        reasoning: str | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.name = f"Judge {agent_id.upper()}"
        self.scores = scores if isinstance(scores, list) else [scores]
        self.delays = delays if isinstance(delays, list) else [delays]
        self.confidence = confidence
        self.error = error
        self.reasoning = reasoning
        self.contexts: list[PeerContext | None] = []
        self.cancelled = False

    async def evaluate(self, content, criteria, prior_round_context=None) -> JudgeVerdict:
        call = len(self.contexts)
        self.contexts.append(prior_round_context)
        delay = self.delays[min(call, len(self.delays) - 1)]
        try:
            if delay:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        score = self.scores[min(call, len(self.scores) - 1)]
        return JudgeVerdict(
            score=score,
            confidence=self.confidence,
            reasoning=self.reasoning if self.reasoning is not None else f"{self.agent_id} gives {score}",
        )


class FlakyLog(InMemoryOrderedLog):
    """In-memory log whose first ``failures`` publishes raise."""

    def __init__(self, failures: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.publish_calls = 0

    async def publish(self, topic_id: str, payload: bytes) -> int:
        self.publish_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise LogPublishError("node busy")
        return await super().publish(topic_id, payload)


def make_config(**overrides) -> OrchestratorConfig:
    """Factory for configs with fast defaults."""
    defaults = {"round_timeout_ms": 1000, "outlier_detection": False}
    defaults.update(overrides)
    return OrchestratorConfig(**defaults)


def make_request(agent_ids: list[str], request_id: str = "eval-1") -> EvaluationRequest:
    return EvaluationRequest(
        id=request_id,
        content="The mitochondria is the powerhouse of the cell.",
        criteria=["accuracy", "clarity"],
        agent_ids=agent_ids,
    )


def make_orchestrator(judges, log=None, storage=None, **config) -> tuple[RoundOrchestrator, InMemoryOrderedLog]:
    log = log or InMemoryOrderedLog()
    return RoundOrchestrator(log, judges, make_config(**config), storage=storage), log


def published_events(log: InMemoryOrderedLog, topic_id: str) -> list:
    return [m.event for m in decode_entries(log.entries(topic_id))]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestExecuteEvaluation:
    """End-to-end runs against the in-memory log."""

    @pytest.mark.asyncio
    async def test_converges_after_scoring_round(self):
        """[7, 8, 9] with simple_average converges immediately at threshold 1.0."""
        judges = [FakeJudge("a", 7), FakeJudge("b", 8), FakeJudge("c", 9)]
        orchestrator, log = make_orchestrator(
            judges, consensus_algorithm="simple_average", convergence_threshold=1.0,
        )

        result = await orchestrator.execute_evaluation(make_request(["a", "b", "c"]))

        assert result.status is EvaluationStatus.COMPLETED
        consensus = result.consensus_result
        assert consensus.final_score == pytest.approx(8.0)
        assert consensus.variance == pytest.approx(0.667, abs=1e-3)
        assert consensus.convergence_rounds == 1
        assert consensus.individual_scores == {"a": 7, "b": 8, "c": 9}

        events = published_events(log, result.topic_id)
        assert isinstance(events[0], InitialEvent)
        assert events[0].agents == ["a", "b", "c"]
        assert events[0].config["consensusAlgorithm"] == "simple_average"
        assert {e.agent_id for e in events[1:4]} == {"a", "b", "c"}
        assert all(isinstance(e, ScoreEvent) and e.round_number == 0 for e in events[1:4])
        assert isinstance(events[-1], FinalEvent)
        assert events[-1].round_number == 0
        assert events[-1].individual_scores == {"a": 7.0, "b": 8.0, "c": 9.0}
        assert len(events) == 5

    @pytest.mark.asyncio
    async def test_result_dict_shape(self):
        orchestrator, _ = make_orchestrator([FakeJudge("a", 7), FakeJudge("b", 7)])

        result = (await orchestrator.execute_evaluation(make_request(["a", "b"]))).to_dict()

        assert result["status"] == "completed"
        assert result["topicId"] == "0.0.1000"
        assert result["consensusResult"]["finalScore"] == pytest.approx(7.0)
        assert result["consensusResult"]["convergenceRounds"] == 1
        round0 = result["evaluationRounds"][0]
        assert round0["roundNumber"] == 0
        assert [m["type"] for m in round0["messages"]] == ["initial", "score", "score", "final"]
        assert [m["sequenceNumber"] for m in round0["messages"]] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_slow_agent_abstains_at_round_timeout(self):
        """Agent b misses the round deadline; consensus uses a and c only."""
        slow = FakeJudge("b", 1, delays=10.0)
        judges = [FakeJudge("a", 7), slow, FakeJudge("c", 8)]
        orchestrator, log = make_orchestrator(judges, round_timeout_ms=50)

        result = await orchestrator.execute_evaluation(make_request(["a", "b", "c"]))

        assert result.succeeded
        assert result.consensus_result.individual_scores == {"a": 7, "c": 8}
        assert result.consensus_result.variance == pytest.approx(0.25)
        assert result.rounds[0].abstentions == {"b": "timeout"}
        assert slow.cancelled is True
        assert not any(
            isinstance(e, ScoreEvent) and e.agent_id == "b"
            for e in published_events(log, result.topic_id)
        )

    @pytest.mark.asyncio
    async def test_single_round_cap(self):
        """maxDiscussionRounds=1 uses exactly one round even without convergence."""
        judges = [FakeJudge("a", 2), FakeJudge("b", 9)]
        orchestrator, _ = make_orchestrator(judges, max_discussion_rounds=1)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.consensus_result.convergence_rounds == 1
        assert len(result.rounds) == 1
        assert all(len(j.contexts) == 1 for j in judges)

    @pytest.mark.asyncio
    async def test_outlier_kept_in_individual_scores(self):
        """Outlier 2 in [2, 8, 9, 8] is excluded from the median but reported."""
        judges = [FakeJudge("a", 2), FakeJudge("b", 8), FakeJudge("c", 9), FakeJudge("d", 8)]
        orchestrator, _ = make_orchestrator(
            judges, consensus_algorithm="median", outlier_detection=True, convergence_threshold=1.0,
        )

        result = await orchestrator.execute_evaluation(make_request(["a", "b", "c", "d"]))

        consensus = result.consensus_result
        assert consensus.final_score == pytest.approx(8.0)
        assert consensus.individual_scores["a"] == 2
        assert consensus.excluded_agents == ("a",)

    @pytest.mark.asyncio
    async def test_empty_agent_list_uses_every_judge(self):
        orchestrator, _ = make_orchestrator([FakeJudge("a", 5), FakeJudge("b", 5)])

        result = await orchestrator.execute_evaluation(make_request([]))

        assert set(result.consensus_result.individual_scores) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_reuses_existing_topic(self):
        log = InMemoryOrderedLog()
        topic_id = await log.create_topic("preexisting")
        orchestrator, _ = make_orchestrator([FakeJudge("a", 5)], log=log)

        result = await orchestrator.execute_evaluation(make_request(["a"]), topic_id=topic_id)

        assert result.topic_id == topic_id
        assert len(log.entries(topic_id)) == 3

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_are_isolated(self):
        orchestrator, log = make_orchestrator([FakeJudge("a", 4), FakeJudge("b", 4)])

        first, second = await asyncio.gather(
            orchestrator.execute_evaluation(make_request(["a"], "eval-1")),
            orchestrator.execute_evaluation(make_request(["b"], "eval-2")),
        )

        assert first.topic_id != second.topic_id
        assert first.consensus_result.individual_scores == {"a": 4}
        assert second.consensus_result.individual_scores == {"b": 4}
        assert published_events(log, first.topic_id)[0].request_id == "eval-1"


# ---------------------------------------------------------------------------
# Discussion rounds
# ---------------------------------------------------------------------------

class TestDiscussion:
    """Tests for discussion rounds and convergence."""

    @pytest.mark.asyncio
    async def test_adjustment_and_discussion_events(self):
        judges = [FakeJudge("a", [4, 6]), FakeJudge("b", [8, 8])]
        orchestrator, log = make_orchestrator(judges, max_discussion_rounds=3)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        # Variance stays at 1.0 after round 1, so the round cap ends it
        assert result.consensus_result.convergence_rounds == 3
        round1 = {m.event.agent_id: m.event for m in result.rounds[1].messages}
        assert isinstance(round1["a"], AdjustmentEvent)
        assert round1["a"].original_score == 4
        assert round1["a"].adjusted_score == 6
        assert isinstance(round1["b"], DiscussionEvent)
        assert result.consensus_result.individual_scores == {"a": 6, "b": 8}

        final = published_events(log, result.topic_id)[-1]
        assert final.round_number == 2
        assert final.convergence_rounds == 3

    @pytest.mark.asyncio
    async def test_stops_when_variance_reaches_threshold(self):
        judges = [FakeJudge("a", [4, 7.8]), FakeJudge("b", 8)]
        orchestrator, _ = make_orchestrator(judges, max_discussion_rounds=5)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.consensus_result.convergence_rounds == 2
        assert result.consensus_result.variance == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_peers_see_prior_round(self):
        a, b = FakeJudge("a", [4, 6]), FakeJudge("b", 8)
        orchestrator, _ = make_orchestrator([a, b], max_discussion_rounds=2)

        await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert a.contexts[0] is None
        context = a.contexts[1]
        assert context.round_number == 1
        assert context.own_score.score == 4
        assert [p.agent_id for p in context.peers] == ["b"]

    @pytest.mark.asyncio
    async def test_delphi_hides_peer_identities(self):
        a, b = FakeJudge("a", [4, 6]), FakeJudge("b", 8)
        orchestrator, _ = make_orchestrator([a, b], consensus_algorithm="delphi_method", max_discussion_rounds=2)

        await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert a.contexts[1].peers == ()
        assert a.contexts[1].distribution["count"] == 2

    @pytest.mark.asyncio
    async def test_delphi_reports_variance_by_round(self):
        a, b = FakeJudge("a", [4, 6]), FakeJudge("b", 8)
        storage = MagicMock()
        orchestrator, _ = make_orchestrator(
            [a, b], storage=storage, consensus_algorithm="delphi_method", max_discussion_rounds=2,
        )

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        consensus = result.consensus_result
        assert consensus.variance_history == pytest.approx((4.0, 1.0))
        assert consensus.to_dict()["varianceHistory"] == pytest.approx([4.0, 1.0])
        assert storage.update_evaluation.call_args.args[1]["variance_history"] == pytest.approx([4.0, 1.0])
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_delphi_warns_when_variance_grows(self):
        a, b = FakeJudge("a", [4, 6, 2]), FakeJudge("b", 8)
        orchestrator, _ = make_orchestrator([a, b], consensus_algorithm="delphi_method", max_discussion_rounds=3)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.consensus_result.variance_history == pytest.approx((4.0, 1.0, 9.0))
        assert result.consensus_result.final_score == pytest.approx(5.0)
        assert result.warnings == ["Variance grew from 1.000 to 9.000 in round 2"]

    @pytest.mark.asyncio
    async def test_variance_history_only_for_delphi(self):
        a, b = FakeJudge("a", [4, 6]), FakeJudge("b", 8)
        orchestrator, _ = make_orchestrator([a, b], max_discussion_rounds=2)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.consensus_result.variance_history == ()
        assert "varianceHistory" not in result.consensus_result.to_dict()

    @pytest.mark.asyncio
    async def test_discussion_disabled(self):
        judges = [FakeJudge("a", 2), FakeJudge("b", 9)]
        orchestrator, _ = make_orchestrator(judges, enable_discussion=False)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.consensus_result.convergence_rounds == 1

    @pytest.mark.asyncio
    async def test_single_agent_never_discusses(self):
        orchestrator, _ = make_orchestrator([FakeJudge("a", 3)], convergence_threshold=0.0)

        result = await orchestrator.execute_evaluation(make_request(["a"]))

        assert result.consensus_result.convergence_rounds == 1

    @pytest.mark.asyncio
    async def test_abstaining_agent_keeps_prior_score(self):
        a = FakeJudge("a", [4, 4], delays=[0.0, 10.0])
        b = FakeJudge("b", [8, 7])
        orchestrator, _ = make_orchestrator([a, b], max_discussion_rounds=2, round_timeout_ms=100)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.rounds[1].abstentions == {"a": "timeout"}
        assert result.consensus_result.individual_scores == {"a": 4, "b": 7}

    @pytest.mark.asyncio
    async def test_convergence_rounds_never_exceed_cap(self):
        for cap in (1, 2, 4):
            judges = [FakeJudge("a", 0), FakeJudge("b", 10)]
            orchestrator, _ = make_orchestrator(judges, max_discussion_rounds=cap)
            result = await orchestrator.execute_evaluation(make_request(["a", "b"]))
            assert result.consensus_result.convergence_rounds <= cap
            assert len(result.rounds) == result.consensus_result.convergence_rounds

    @pytest.mark.asyncio
    async def test_overall_deadline_completes_with_gathered_scores(self):
        judges = [FakeJudge("a", 2, delays=[0.0, 10.0]), FakeJudge("b", 9, delays=[0.0, 10.0])]
        orchestrator, _ = make_orchestrator(judges, round_timeout_ms=60000)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]), deadline=0.1)

        assert result.succeeded
        assert result.consensus_result.individual_scores == {"a": 2, "b": 9}
        assert result.consensus_result.convergence_rounds == 2
        assert any("Deadline" in w for w in result.warnings)


# ---------------------------------------------------------------------------
# Partial failure and failure
# ---------------------------------------------------------------------------

class TestFailures:
    """Tests for abstentions and failed evaluations."""

    @pytest.mark.asyncio
    async def test_errors_and_bad_scores_are_abstentions(self):
        judges = [
            FakeJudge("a", 11),
            FakeJudge("b", 7),
            FakeJudge("c", error=AgentError("c", "model exploded")),
            FakeJudge("d", error=AgentTimeout("d", "too slow")),
            FakeJudge("e", float("nan")),
        ]
        orchestrator, _ = make_orchestrator(judges)

        result = await orchestrator.execute_evaluation(make_request(["a", "b", "c", "d", "e", "ghost"]))

        assert result.succeeded
        assert result.consensus_result.individual_scores == {"b": 7}
        abstentions = result.rounds[0].abstentions
        assert set(abstentions) == {"a", "c", "d", "e", "ghost"}
        assert abstentions["d"] == "timeout"
        assert abstentions["ghost"] == "unknown agent"
        assert abstentions["a"].startswith("invalid score")

    @pytest.mark.asyncio
    async def test_no_usable_scores_fails(self):
        judges = [FakeJudge("a", error=AgentError("a", "down")), FakeJudge("b", error=RuntimeError("bug"))]
        storage = MagicMock()
        orchestrator, log = make_orchestrator(judges, storage=storage)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.status is EvaluationStatus.FAILED
        assert result.reason is FailureReason.NO_USABLE_SCORES
        assert result.consensus_result is None
        events = published_events(log, result.topic_id)
        assert isinstance(events[-1], ErrorEvent)
        assert not any(isinstance(e, FinalEvent) for e in events)
        updates = storage.update_evaluation.call_args.args[1]
        assert updates["status"] == "failed"
        assert updates["hcs_topic_id"] == result.topic_id

    @pytest.mark.asyncio
    async def test_log_unavailable_fails_after_retries(self):
        log = FlakyLog(failures=100)
        orchestrator, _ = make_orchestrator([FakeJudge("a", 5)], log=log)

        with patch("jurybox.orchestrator.PUBLISH_RETRY_BASE_DELAY", 0):
            result = await orchestrator.execute_evaluation(make_request(["a"]))

        assert result.status is EvaluationStatus.FAILED
        assert result.reason is FailureReason.LOG_UNAVAILABLE
        assert log.publish_calls == PUBLISH_MAX_RETRIES

    @pytest.mark.asyncio
    async def test_transient_publish_failure_is_retried(self):
        log = FlakyLog(failures=2)
        orchestrator, _ = make_orchestrator([FakeJudge("a", 5)], log=log)

        with patch("jurybox.orchestrator.PUBLISH_RETRY_BASE_DELAY", 0):
            result = await orchestrator.execute_evaluation(make_request(["a"]))

        assert result.succeeded
        assert len(log.entries(result.topic_id)) == 3

    @pytest.mark.asyncio
    async def test_persistence_failure_becomes_warning(self):
        storage = MagicMock()
        storage.update_evaluation.side_effect = OSError("disk full")
        orchestrator, _ = make_orchestrator([FakeJudge("a", 5), FakeJudge("b", 6)], storage=storage)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        assert result.succeeded
        assert result.consensus_result.final_score == pytest.approx(5.5, abs=0.1)
        assert any("disk full" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_persists_consensus_summary(self):
        storage = MagicMock()
        orchestrator, _ = make_orchestrator(
            [FakeJudge("a", 6), FakeJudge("b", 6)], storage=storage, consensus_algorithm="median",
        )

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))

        evaluation_id, updates = storage.update_evaluation.call_args.args
        assert evaluation_id == "eval-1"
        assert updates == {
            "status": "completed",
            "consensus_score": 6.0,
            "confidence": 1.0,
            "variance": 0.0,
            "convergence_rounds": 1,
            "algorithm": "median",
            "hcs_topic_id": result.topic_id,
        }
        assert result.warnings == []


# ---------------------------------------------------------------------------
# Publishing and state machine
# ---------------------------------------------------------------------------

class TestTopicPublisher:
    """Tests for TopicPublisher."""

    @pytest.mark.asyncio
    async def test_concurrent_chunked_publishes_do_not_interleave(self):
        log = InMemoryOrderedLog(max_entry_size=64)
        topic_id = await log.create_topic("t")
        publisher = TopicPublisher(log, topic_id, chunk_threshold=64)
        events = [
            DiscussionEvent(agent_name=f"J{i}", round_number=1, agent_id=f"j{i}", content=str(i) * 500)
            for i in range(4)
        ]

        sequence_numbers = await asyncio.gather(*(publisher.publish(e) for e in events))

        decoded = decode_entries(log.entries(topic_id))
        assert sorted(m.sequence_number for m in decoded) == sorted(sequence_numbers)
        assert {m.event for m in decoded} == set(events)

    @pytest.mark.asyncio
    async def test_long_reasoning_round_trips_through_consumer(self):
        judges = [FakeJudge("a", 7, reasoning="detailed " * 200), FakeJudge("b", 7, reasoning="short")]
        orchestrator, log = make_orchestrator(judges, chunk_threshold=100)

        result = await orchestrator.execute_evaluation(make_request(["a", "b"]))
        consumer = LogConsumer(log, result.topic_id, poll_interval=0)
        await consumer.poll()

        scores = {m.event.agent_id: m.event for m in consumer.messages if isinstance(m.event, ScoreEvent)}
        assert scores["a"].reasoning == "detailed " * 200
        assert consumer.consensus_score == pytest.approx(7.0)
        assert not any(isinstance(m.event, ErrorEvent) for m in consumer.messages)


class TestEvaluationSession:
    """Tests for the session state machine."""

    @pytest.mark.asyncio
    async def test_state_history(self):
        judges = {"a": FakeJudge("a", [4, 8]), "b": FakeJudge("b", 8)}
        session = EvaluationSession(make_request(["a", "b"]), InMemoryOrderedLog(), judges, make_config())

        await session.run()

        assert session.state_history == [
            OrchestratorState.INITIALIZING,
            OrchestratorState.SCORING,
            OrchestratorState.CONVERGING,
            OrchestratorState.DISCUSSING,
            OrchestratorState.CONVERGING,
            OrchestratorState.COMPLETED,
        ]
        assert session.request.status is EvaluationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_state(self):
        judges = {"a": FakeJudge("a", error=AgentError("a", "down"))}
        session = EvaluationSession(make_request(["a"]), InMemoryOrderedLog(), judges, make_config())

        await session.run()

        assert session.state is OrchestratorState.FAILED
        assert session.request.status is EvaluationStatus.FAILED

    def test_invalid_transition(self):
        session = EvaluationSession(make_request(["a"]), InMemoryOrderedLog(), {}, make_config())
        with pytest.raises(InvalidTransition):
            session._transition(OrchestratorState.COMPLETED)
