"""Score reduction algorithms for multi-judge consensus.

Every function here is pure: it receives the current score per agent and
returns a ConsensusOutcome. Outlier handling uses the median absolute
deviation (MAD); excluded agents are reported in ``outliers`` but their
scores are never modified.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

DEFAULT_MAD_MULTIPLIER = 3.0
DEFAULT_TRIM_FRACTION = 0.1

# Outlier detection is meaningless below this many samples
MIN_OUTLIER_SAMPLES = 3

ITERATIVE_MAX_PASSES = 20
ITERATIVE_TOLERANCE = 1e-6


class ConsensusAlgorithm(str, Enum):
    """Available score reduction algorithms."""

    SIMPLE_AVERAGE = "simple_average"
    WEIGHTED_AVERAGE = "weighted_average"
    MEDIAN = "median"
    TRIMMED_MEAN = "trimmed_mean"
    ITERATIVE_CONVERGENCE = "iterative_convergence"
    DELPHI_METHOD = "delphi_method"


@dataclass(frozen=True)
class ScoreSample:
    """One agent's score as seen by the aggregator."""

    agent_id: str
    score: float
    confidence: float | None = None
    weight: float | None = None  # Historical reputation weight

    @property
    def effective_weight(self) -> float:
        if self.weight is not None:
            return self.weight
        if self.confidence is not None:
            return self.confidence
        return 1.0


@dataclass(frozen=True)
class ConsensusOutcome:
    """Result of reducing a score set."""

    final_score: float
    confidence: float
    variance: float
    algorithm: str
    included: tuple[str, ...]
    outliers: tuple[str, ...] = ()
    variance_history: tuple[float, ...] = ()


def median(values: Sequence[float]) -> float:
    """Middle value; the mean of the two central values for even counts."""
    if not values:
        raise ValueError("median of empty sequence")
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def mean(values: Sequence[float]) -> float:
    if not values:
        raise ValueError("mean of empty sequence")
    return sum(values) / len(values)


def population_variance(values: Sequence[float]) -> float:
    if not values:
        raise ValueError("variance of empty sequence")
    center = mean(values)
    return sum((v - center) ** 2 for v in values) / len(values)


def confidence_from_variance(variance: float) -> float:
    """Map variance to a [0, 1] confidence: 1 / (1 + variance)."""
    confidence = 1.0 / (1.0 + max(variance, 0.0))
    return min(1.0, max(0.0, confidence))


def median_absolute_deviation(values: Sequence[float]) -> float:
    center = median(values)
    return median([abs(v - center) for v in values])


def detect_outliers(
    scores: Mapping[str, float],
    multiplier: float = DEFAULT_MAD_MULTIPLIER,
) -> set[str]:
    """
    Find agents whose score lies farther than ``multiplier * MAD`` from the median.

    With a MAD of zero any score that differs from the median is an outlier.

    Args:
        scores: Agent id -> score
        multiplier: MAD multiple beyond which a score is excluded

    Returns:
        Set of outlier agent ids (empty below MIN_OUTLIER_SAMPLES samples)
    """
    if len(scores) < MIN_OUTLIER_SAMPLES:
        return set()

    values = list(scores.values())
    center = median(values)
    limit = multiplier * median_absolute_deviation(values)
    outliers = {
        agent_id for agent_id, score in scores.items()
        if abs(score - center) > limit
    }
    if len(outliers) == len(scores):
        return set()
    return outliers


def _sorted_samples(samples: Sequence[ScoreSample]) -> list[ScoreSample]:
    # Ties break toward the lower index of the sorted array
    return sorted(samples, key=lambda s: (s.score, s.agent_id))


def simple_average(samples: Sequence[ScoreSample]) -> float:
    return mean([s.score for s in samples])


def weighted_average(samples: Sequence[ScoreSample]) -> float:
    total_weight = sum(s.effective_weight for s in samples)
    if total_weight <= 0:
        return simple_average(samples)
    return sum(s.score * s.effective_weight for s in samples) / total_weight


def median_score(samples: Sequence[ScoreSample]) -> float:
    return median([s.score for s in _sorted_samples(samples)])


def trimmed_mean(
    samples: Sequence[ScoreSample],
    fraction: float = DEFAULT_TRIM_FRACTION,
) -> float:
    """Drop ``floor(n * fraction)`` samples from each end, then average."""
    ordered = _sorted_samples(samples)
    trim = int(len(ordered) * fraction)
    if trim == 0 or len(ordered) - 2 * trim < 1:
        return simple_average(ordered)
    return simple_average(ordered[trim:len(ordered) - trim])


def iterative_convergence(
    samples: Sequence[ScoreSample],
    max_passes: int = ITERATIVE_MAX_PASSES,
    tolerance: float = ITERATIVE_TOLERANCE,
) -> float:
    """
    Iteratively re-weighted mean.

    Each pass shrinks every agent's weight by its squared distance from the
    current group estimate, so agents far from the group lose influence
    gradually rather than being cut off in a single step.
    """
    base_weights = [s.effective_weight for s in samples]
    if sum(base_weights) <= 0:
        base_weights = [1.0] * len(samples)

    estimate = sum(s.score * w for s, w in zip(samples, base_weights)) / sum(base_weights)
    for _ in range(max_passes):
        weights = [
            w / (1.0 + (s.score - estimate) ** 2)
            for s, w in zip(samples, base_weights)
        ]
        updated = sum(s.score * w for s, w in zip(samples, weights)) / sum(weights)
        if abs(updated - estimate) < tolerance:
            return updated
        estimate = updated
    return estimate


def _as_samples(
    scores: Mapping[str, float] | Mapping[str, ScoreSample] | Sequence[ScoreSample],
) -> list[ScoreSample]:
    if isinstance(scores, Mapping):
        samples = []
        for agent_id, value in scores.items():
            if isinstance(value, ScoreSample):
                samples.append(value)
            else:
                samples.append(ScoreSample(agent_id=agent_id, score=float(value)))
        return samples
    return list(scores)


def aggregate(
    scores: Mapping[str, float] | Mapping[str, ScoreSample] | Sequence[ScoreSample],
    algorithm: ConsensusAlgorithm | str = ConsensusAlgorithm.SIMPLE_AVERAGE,
    *,
    outlier_detection: bool = False,
    mad_multiplier: float = DEFAULT_MAD_MULTIPLIER,
    trim_fraction: float = DEFAULT_TRIM_FRACTION,
    history: Sequence[Mapping[str, float]] = (),
) -> ConsensusOutcome:
    """
    Reduce a set of per-agent scores to a consensus.

    Args:
        scores: Agent id -> score, agent id -> ScoreSample, or a list of samples
        algorithm: Reduction algorithm
        outlier_detection: Exclude MAD outliers from the reduction
        mad_multiplier: MAD multiple used by outlier detection
        trim_fraction: Fraction trimmed from each end by trimmed_mean
        history: Prior rounds' scores, oldest first (used by delphi_method)

    Returns:
        ConsensusOutcome; variance is the population variance of the
        included scores

    Raises:
        ValueError: If no scores are given or the algorithm is unknown
    """
    algorithm = ConsensusAlgorithm(algorithm)
    samples = _as_samples(scores)
    if not samples:
        raise ValueError("Cannot aggregate an empty score set")

    outliers: set[str] = set()
    if outlier_detection:
        outliers = detect_outliers(
            {s.agent_id: s.score for s in samples}, mad_multiplier
        )
    included = [s for s in samples if s.agent_id not in outliers]

    variance_history: tuple[float, ...] = ()
    match algorithm:
        case ConsensusAlgorithm.SIMPLE_AVERAGE:
            final_score = simple_average(included)
        case ConsensusAlgorithm.WEIGHTED_AVERAGE:
            final_score = weighted_average(included)
        case ConsensusAlgorithm.MEDIAN:
            final_score = median_score(included)
        case ConsensusAlgorithm.TRIMMED_MEAN:
            final_score = trimmed_mean(included, trim_fraction)
        case ConsensusAlgorithm.ITERATIVE_CONVERGENCE:
            final_score = iterative_convergence(included)
        case ConsensusAlgorithm.DELPHI_METHOD:
            final_score = median_score(included)
            variance_history = tuple(
                population_variance(list(round_scores.values()))
                for round_scores in history
                if round_scores
            )

    variance = population_variance([s.score for s in included])
    if algorithm is ConsensusAlgorithm.DELPHI_METHOD:
        variance_history = variance_history + (variance,)

    return ConsensusOutcome(
        final_score=final_score,
        confidence=confidence_from_variance(variance),
        variance=variance,
        algorithm=algorithm.value,
        included=tuple(sorted(s.agent_id for s in included)),
        outliers=tuple(sorted(outliers)),
        variance_history=variance_history,
    )


def is_converging(variance_history: Sequence[float]) -> bool:
    """True when variance has not grown from one round to the next."""
    return all(
        later <= earlier
        for earlier, later in zip(variance_history, variance_history[1:])
    )
