"""Tests for judge clients, verdict parsing and peer context."""

from unittest.mock import AsyncMock, patch

import pytest

from jurybox.deliberation import AgentScore
from jurybox.judges import (
    JUDGE_SYSTEM_PROMPT,
    AgentError,
    AgentTimeout,
    JudgeVerdict,
    OpenRouterJudge,
    PeerContext,
    build_judge_messages,
    parse_verdict_from_text,
)
from jurybox.openrouter import ModelError


def make_scores() -> dict[str, AgentScore]:
    return {
        "a": AgentScore(agent_id="a", score=6.0, confidence=0.8, reasoning="Too long", agent_name="Alpha"),
        "b": AgentScore(agent_id="b", score=9.0, confidence=0.9, reasoning="Excellent", agent_name="Beta"),
        "c": AgentScore(agent_id="c", score=7.5, confidence=0.5, agent_name="Gamma"),
    }


# ---------------------------------------------------------------------------
# parse_verdict_from_text
# ---------------------------------------------------------------------------

class TestParseVerdict:
    """Tests for parse_verdict_from_text."""

    def test_bare_json(self):
        verdict = parse_verdict_from_text(
            '{"score": 7.5, "confidence": 0.8, "reasoning": " Clear. ", "aspects": {"clarity": 8}}'
        )
        assert verdict == JudgeVerdict(score=7.5, confidence=0.8, reasoning="Clear.", aspects={"clarity": 8.0})

    def test_fenced_json_with_prose(self):
        text = 'Here is my verdict:\n```json\n{"score": 6, "confidence": 0.4}\n```\nThanks.'
        verdict = parse_verdict_from_text(text)
        assert verdict.score == 6.0
        assert verdict.confidence == 0.4

    def test_missing_confidence_defaults(self):
        assert parse_verdict_from_text('{"score": 3}').confidence == 0.5

    def test_score_line_fallback(self):
        verdict = parse_verdict_from_text("Decent work overall.\nSCORE: 7\nCONFIDENCE: 0.6")
        assert verdict.score == 7.0
        assert verdict.confidence == 0.6

    def test_out_of_range_json_falls_through_to_error(self):
        with pytest.raises(ValueError):
            parse_verdict_from_text('{"score": 42, "confidence": 0.5}')

    def test_out_of_range_score_line(self):
        with pytest.raises(ValueError):
            parse_verdict_from_text("SCORE: 11")

    def test_no_verdict(self):
        with pytest.raises(ValueError):
            parse_verdict_from_text("I cannot evaluate this.")


# ---------------------------------------------------------------------------
# PeerContext
# ---------------------------------------------------------------------------

class TestPeerContext:
    """Tests for PeerContext."""

    def test_build_excludes_self_from_peers(self):
        context = PeerContext.build(1, "a", make_scores())
        assert context.own_score.score == 6.0
        assert [p.agent_id for p in context.peers] == ["b", "c"]
        assert context.distribution["count"] == 3
        assert context.distribution["median"] == 7.5
        assert context.distribution["min"] == 6.0
        assert context.distribution["max"] == 9.0

    def test_anonymous_hides_peers(self):
        context = PeerContext.build(2, "a", make_scores(), anonymous=True)
        assert context.peers == ()
        text = context.to_prompt_text()
        assert "Beta" not in text
        assert "median 7.50" in text

    def test_prompt_text_includes_peer_reasoning(self):
        text = PeerContext.build(1, "a", make_scores()).to_prompt_text()
        assert "Discussion round 1." in text
        assert "Your previous score: 6.00" in text
        assert "- Beta: 9.00" in text
        assert "Reasoning: Excellent" in text


class TestBuildJudgeMessages:
    """Tests for build_judge_messages."""

    def test_scoring_round(self):
        messages = build_judge_messages("An essay", ["clarity", "accuracy"])
        assert messages[0] == {"role": "system", "content": JUDGE_SYSTEM_PROMPT}
        assert "An essay" in messages[1]["content"]
        assert "- clarity\n- accuracy" in messages[1]["content"]
        assert "Discussion round" not in messages[1]["content"]

    def test_no_criteria(self):
        messages = build_judge_messages("An essay", [])
        assert "- Overall quality" in messages[1]["content"]

    def test_discussion_round_appends_context(self):
        context = PeerContext.build(1, "a", make_scores())
        messages = build_judge_messages("An essay", ["clarity"], context)
        assert "Discussion round 1." in messages[1]["content"]
        assert "Reconsider your evaluation" in messages[1]["content"]


# ---------------------------------------------------------------------------
# OpenRouterJudge
# ---------------------------------------------------------------------------

class TestOpenRouterJudge:
    """Tests for OpenRouterJudge.evaluate."""

    @pytest.mark.asyncio
    async def test_returns_parsed_verdict(self):
        judge = OpenRouterJudge("a", "Alpha", model="model-a")
        response = {"content": '{"score": 8, "confidence": 0.7, "reasoning": "Good"}', "metrics": {}}

        with patch("jurybox.judges.query_model", AsyncMock(return_value=response)) as query:
            verdict = await judge.evaluate("Content", ["clarity"])

        assert verdict.score == 8.0
        assert query.call_args.args[0] == "model-a"

    def test_uses_default_model(self):
        with patch("jurybox.config.DEFAULT_JUDGE_MODEL", "default/model"):
            assert OpenRouterJudge("a", "Alpha").model == "default/model"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_agent_timeout(self):
        judge = OpenRouterJudge("a", "Alpha", model="model-a")
        error = ModelError(model="model-a", status_code=None, category="timeout", message="timed out")

        with patch("jurybox.judges.query_model", AsyncMock(return_value=error)):
            with pytest.raises(AgentTimeout) as exc_info:
                await judge.evaluate("Content", [])

        assert exc_info.value.agent_id == "a"

    @pytest.mark.asyncio
    async def test_other_model_errors_map_to_agent_error(self):
        judge = OpenRouterJudge("a", "Alpha", model="model-a")
        error = ModelError(model="model-a", status_code=402, category="billing", message="no credits")

        with patch("jurybox.judges.query_model", AsyncMock(return_value=error)):
            with pytest.raises(AgentError) as exc_info:
                await judge.evaluate("Content", [])

        assert not isinstance(exc_info.value, AgentTimeout)
        assert "billing" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unparseable_response_is_agent_error(self):
        judge = OpenRouterJudge("a", "Alpha", model="model-a")

        with patch("jurybox.judges.query_model", AsyncMock(return_value={"content": "no idea", "metrics": {}})):
            with pytest.raises(AgentError):
                await judge.evaluate("Content", [])
