"""Configuration for the JuryBox deliberation core."""

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .consensus import (
    DEFAULT_MAD_MULTIPLIER,
    DEFAULT_TRIM_FRACTION,
    ConsensusAlgorithm,
)

logger = logging.getLogger(__name__)

load_dotenv()

# OpenRouter API key used by LLM-backed judges
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")

# OpenRouter API endpoint
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

# Default model for LLM-backed judges
DEFAULT_JUDGE_MODEL = os.getenv("JURYBOX_JUDGE_MODEL", "openai/gpt-4o-mini")

# Hedera mirror node used by readers of the ordered log
MIRROR_NODE_URL = os.getenv(
    "JURYBOX_MIRROR_NODE_URL", "https://testnet.mirrornode.hedera.com"
)

# Base data directory - configurable via environment
DATA_BASE_DIR = os.getenv("JURYBOX_DATA_DIR", "data")

# Evaluation summary records
EVALUATIONS_DIR = os.path.join(DATA_BASE_DIR, "evaluations")

# User config file path
USER_CONFIG_FILE = os.path.join(DATA_BASE_DIR, "orchestrator_config.json")

# Largest serialized payload published as a single log entry (bytes).
# Hedera Consensus Service accepts at most 1024 bytes per message.
DEFAULT_CHUNK_THRESHOLD = int(os.getenv("JURYBOX_CHUNK_THRESHOLD", "1024"))

# Seconds between consumer polls
DEFAULT_POLL_INTERVAL = float(os.getenv("JURYBOX_POLL_INTERVAL", "3.0"))

# Log publishing retries
PUBLISH_MAX_RETRIES = 3
PUBLISH_RETRY_BASE_DELAY = 0.5

# Judge score bounds
SCORE_MIN = 0.0
SCORE_MAX = 10.0

# Discussion round limits
DEFAULT_MAX_DISCUSSION_ROUNDS = 3
MIN_DISCUSSION_ROUNDS = 1
MAX_DISCUSSION_ROUNDS = 10

DEFAULT_ROUND_TIMEOUT_MS = 60000
DEFAULT_CONVERGENCE_THRESHOLD = 0.5


class OrchestratorConfig(BaseModel):
    """Per-evaluation orchestrator settings.

    Accepts both snake_case field names and the camelCase keys used by the
    orchestrator configuration documents (``maxDiscussionRounds``,
    ``roundTimeout``, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_discussion_rounds: int = Field(
        default=DEFAULT_MAX_DISCUSSION_ROUNDS,
        ge=MIN_DISCUSSION_ROUNDS,
        le=MAX_DISCUSSION_ROUNDS,
        alias="maxDiscussionRounds",
        description="Total rounds including round 0 (independent scoring)",
    )
    round_timeout_ms: int = Field(
        default=DEFAULT_ROUND_TIMEOUT_MS, gt=0, alias="roundTimeout"
    )
    consensus_algorithm: ConsensusAlgorithm = Field(
        default=ConsensusAlgorithm.WEIGHTED_AVERAGE, alias="consensusAlgorithm"
    )
    enable_discussion: bool = Field(default=True, alias="enableDiscussion")
    convergence_threshold: float = Field(
        default=DEFAULT_CONVERGENCE_THRESHOLD, ge=0.0, alias="convergenceThreshold"
    )
    outlier_detection: bool = Field(default=True, alias="outlierDetection")
    outlier_mad_multiplier: float = Field(
        default=DEFAULT_MAD_MULTIPLIER, gt=0.0, alias="outlierMadMultiplier"
    )
    trim_fraction: float = Field(
        default=DEFAULT_TRIM_FRACTION, ge=0.0, lt=0.5, alias="trimFraction"
    )
    chunk_threshold: int = Field(
        default=DEFAULT_CHUNK_THRESHOLD, gt=0, alias="chunkThreshold"
    )
    agent_weights: dict[str, float] = Field(
        default_factory=dict, alias="agentWeights"
    )

    @field_validator("agent_weights")
    @classmethod
    def _weights_non_negative(cls, value: dict[str, float]) -> dict[str, float]:
        for agent_id, weight in value.items():
            if weight < 0:
                raise ValueError(f"Negative weight for agent {agent_id}")
        return value

    @property
    def round_timeout(self) -> float:
        """Round timeout in seconds."""
        return self.round_timeout_ms / 1000.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase document published in the initial event."""
        return self.model_dump(mode="json", by_alias=True)


def load_user_config() -> dict[str, Any]:
    """
    Load user configuration from file.

    Returns:
        Dict with user config or empty dict if not found
    """
    config_path = Path(USER_CONFIG_FILE)
    if config_path.exists():
        try:
            with open(config_path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError):
            return {}
    return {}


def save_user_config(config: dict[str, Any]) -> None:
    """
    Save user configuration to file.

    Args:
        config: Configuration dict to save
    """
    config_path = Path(USER_CONFIG_FILE)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        json.dump(config, f, indent=2)


def _set_fields(values: dict[str, Any]) -> dict[str, Any]:
    """Validate a partial config and return only the given fields, by field name."""
    partial = OrchestratorConfig.model_validate(values)
    return partial.model_dump(by_alias=False, exclude_unset=True)


def get_orchestrator_config(**overrides: Any) -> OrchestratorConfig:
    """
    Get effective orchestrator config (defaults, then user config, then overrides).

    An invalid user config file is ignored with a warning; invalid overrides
    raise ``pydantic.ValidationError``.

    Returns:
        Validated OrchestratorConfig
    """
    user_config = load_user_config().get('orchestrator', {})
    try:
        base = OrchestratorConfig.model_validate(user_config)
    except ValidationError as e:
        logger.warning("Ignoring invalid orchestrator config. Path: %s, Error: %s", USER_CONFIG_FILE, e)
        base = OrchestratorConfig()

    if not overrides:
        return base
    merged = base.model_dump(by_alias=False)
    merged.update(_set_fields(overrides))
    return OrchestratorConfig.model_validate(merged)


def update_orchestrator_config(updates: dict[str, Any]) -> dict[str, Any]:
    """
    Validate and persist orchestrator overrides.

    Args:
        updates: Partial config using either snake_case or camelCase keys

    Returns:
        Updated config dict (camelCase)
    """
    config = load_user_config()
    merged = _set_fields(config.get('orchestrator', {}))
    merged.update(_set_fields(updates))
    validated = OrchestratorConfig.model_validate(merged)

    config['orchestrator'] = validated.to_dict()
    save_user_config(config)
    return config['orchestrator']


def reload_config() -> dict[str, Any]:
    """
    Reload configuration from .env and user config files.

    Returns:
        Dict with reload status and current config
    """
    global OPENROUTER_API_KEY, MIRROR_NODE_URL

    load_dotenv(override=True)

    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
    MIRROR_NODE_URL = os.getenv(
        "JURYBOX_MIRROR_NODE_URL", "https://testnet.mirrornode.hedera.com"
    )

    logger.info("Configuration reloaded")

    return {
        "status": "reloaded",
        "openrouter_configured": bool(OPENROUTER_API_KEY),
        "mirror_node_url": MIRROR_NODE_URL,
        "orchestrator": get_orchestrator_config().to_dict(),
    }
