"""Tests for JSON evaluation storage."""

from unittest.mock import patch

import pytest

from jurybox import storage
from jurybox.deliberation import EvaluationRequest


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path):
    """Point storage at a fresh directory for each test."""
    with patch("jurybox.config.EVALUATIONS_DIR", str(tmp_path / "evaluations")):
        yield


def make_request(request_id: str = "eval-1", created_at: float = 1700000000.0) -> EvaluationRequest:
    return EvaluationRequest(
        id=request_id,
        content="Essay text",
        criteria=["clarity"],
        agent_ids=["a", "b"],
        created_at=created_at,
    )


class TestEvaluationStorage:
    """Tests for create/get/update/list."""

    def test_create_and_get(self):
        storage.create_evaluation(make_request())

        record = storage.get_evaluation("eval-1")

        assert record["id"] == "eval-1"
        assert record["status"] == "pending"
        assert record["agent_ids"] == ["a", "b"]
        assert record["consensus_score"] is None

    def test_get_missing_returns_none(self):
        assert storage.get_evaluation("nope") is None

    def test_update_merges_fields(self):
        storage.create_evaluation(make_request())

        assert storage.update_evaluation("eval-1", {"status": "completed", "consensus_score": 7.5}) is True

        record = storage.get_evaluation("eval-1")
        assert record["status"] == "completed"
        assert record["consensus_score"] == 7.5
        assert record["content"] == "Essay text"
        assert "updated_at" in record

    def test_update_missing_returns_false(self):
        assert storage.update_evaluation("nope", {"status": "failed"}) is False

    def test_list_newest_first(self):
        storage.create_evaluation(make_request("old", created_at=1.0))
        storage.create_evaluation(make_request("new", created_at=2.0))

        evaluations = storage.list_evaluations()

        assert [e["id"] for e in evaluations] == ["new", "old"]
        assert set(evaluations[0]) == {"id", "status", "created_at", "consensus_score", "hcs_topic_id"}

    def test_list_empty(self):
        assert storage.list_evaluations() == []
