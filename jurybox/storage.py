"""JSON-based storage for evaluation summary records."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import config
from .deliberation import EvaluationRequest


def get_data_dir() -> str:
    """Get the evaluations data directory."""
    return config.EVALUATIONS_DIR


def ensure_data_dir() -> None:
    """Ensure the data directory exists."""
    Path(get_data_dir()).mkdir(parents=True, exist_ok=True)


def get_evaluation_path(evaluation_id: str) -> str:
    """Get the file path for an evaluation.

    Args:
        evaluation_id: Unique evaluation identifier

    Returns:
        Full path to the evaluation JSON file
    """
    return os.path.join(get_data_dir(), f"{evaluation_id}.json")


def _write(record: dict[str, Any]) -> None:
    ensure_data_dir()
    with open(get_evaluation_path(record["id"]), "w") as f:
        json.dump(record, f, indent=2)


def create_evaluation(request: EvaluationRequest) -> dict[str, Any]:
    """Create a new evaluation record.

    Args:
        request: The evaluation request being stored

    Returns:
        New evaluation dict
    """
    record = {
        **request.to_dict(),
        "stored_at": datetime.now(timezone.utc).isoformat(),
        "consensus_score": None,
        "confidence": None,
        "variance": None,
        "convergence_rounds": None,
        "algorithm": None,
        "hcs_topic_id": None,
    }
    _write(record)
    return record


def get_evaluation(evaluation_id: str) -> dict[str, Any] | None:
    """Load an evaluation from storage.

    Args:
        evaluation_id: Unique evaluation identifier

    Returns:
        Evaluation dict or None if not found
    """
    path = get_evaluation_path(evaluation_id)
    if not os.path.exists(path):
        return None

    with open(path, "r") as f:
        return json.load(f)


def update_evaluation(evaluation_id: str, updates: dict[str, Any]) -> bool:
    """Merge fields into a stored evaluation.

    Args:
        evaluation_id: Unique evaluation identifier
        updates: Fields to overwrite

    Returns:
        False if the evaluation does not exist
    """
    record = get_evaluation(evaluation_id)
    if record is None:
        return False

    record.update(updates)
    record["updated_at"] = datetime.now(timezone.utc).isoformat()
    _write(record)
    return True


def list_evaluations() -> list[dict[str, Any]]:
    """List all evaluations (metadata only), newest first."""
    ensure_data_dir()
    data_dir = get_data_dir()

    evaluations = []
    for filename in os.listdir(data_dir):
        if not filename.endswith(".json"):
            continue
        with open(os.path.join(data_dir, filename), "r") as f:
            record = json.load(f)
        evaluations.append({
            "id": record["id"],
            "status": record.get("status"),
            "created_at": record.get("created_at"),
            "consensus_score": record.get("consensus_score"),
            "hcs_topic_id": record.get("hcs_topic_id"),
        })

    evaluations.sort(key=lambda e: e.get("created_at") or 0, reverse=True)
    return evaluations
