"""Confidence vectors and the evidence-driven update rule.

A confidence vector always has four components, in this order:

    [empirical_support, theoretical_basis, methodological_rigor, consensus_alignment]

Each component lies in [0, 1]. Aggregation for display is the arithmetic
mean, clamped to [0, 1].

Evidence signals (p-value, sample size, effect size, study design, peer review)
are parsed from the structured model output into ``EvidenceSignals``. Fields
the model does not supply keep their documented defaults, and a default never
moves a vector.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

CONFIDENCE_DIMENSIONS = (
    "empirical_support",
    "theoretical_basis",
    "methodological_rigor",
    "consensus_alignment",
)

DEFAULT_ROOT_CONFIDENCE = [0.8, 0.8, 0.8, 0.8]
DEFAULT_HYPOTHESIS_CONFIDENCE = [0.7, 0.7, 0.7, 0.7]
DEFAULT_EVIDENCE_CONFIDENCE = [0.8, 0.7, 0.8, 0.7]

# Lower bound for the cost term of the confidence-to-cost ratio
MIN_COST = 0.01

StudyDesign = Literal[
    "meta_analysis",
    "rct",
    "cohort",
    "case_control",
    "cross_sectional",
    "case_study",
    "unspecified",
]

_DESIGN_RIGOR = {
    "meta_analysis": 0.2,
    "rct": 0.15,
    "cohort": 0.1,
    "case_study": -0.2,
}

_DESIGN_EMPIRICAL = {
    "meta_analysis": 0.3,
    "rct": 0.25,
    "cohort": 0.2,
    "case_study": -0.2,
}


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp ``value`` into ``[low, high]``. NaN collapses to ``low``."""
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def validate_confidence(vector: Sequence[float]) -> list[float]:
    """Check that ``vector`` is a 4-component confidence vector.

    Returns:
        A fresh list of floats

    Raises:
        TypeError: If the vector is not a sequence of numbers
        ValueError: If the length is not 4 or a component is outside [0, 1]
    """
    if isinstance(vector, (str, bytes)) or not isinstance(vector, Sequence):
        raise TypeError(f"Confidence must be a sequence of 4 floats, got: {type(vector).__name__}")
    if len(vector) != len(CONFIDENCE_DIMENSIONS):
        raise ValueError(f"Confidence must have exactly 4 components, got: {len(vector)}")
    result = []
    for name, value in zip(CONFIDENCE_DIMENSIONS, vector):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"Confidence component {name} must be a number, got: {value!r}")
        if math.isnan(value) or not 0.0 <= value <= 1.0:
            raise ValueError(f"Confidence component {name} must be between 0.0 and 1.0, got: {value}")
        result.append(float(value))
    return result


def aggregate_confidence(vector: Sequence[float]) -> float:
    """Arithmetic mean of the components, clamped to [0, 1]."""
    if not vector:
        return 0.0
    return clamp(sum(vector) / len(vector))


def weighted_average(
    first: Sequence[float],
    second: Sequence[float],
    first_weight: float = 1.0,
    second_weight: float = 1.0,
) -> list[float]:
    """Component-wise weighted average of two confidence vectors."""
    total = first_weight + second_weight
    if total <= 0:
        raise ValueError("Weights must sum to a positive number")
    return [
        clamp((a * first_weight + b * second_weight) / total)
        for a, b in zip(first, second)
    ]


def uniform_confidence(value: float) -> list[float]:
    """A vector with every component set to ``value``."""
    return [clamp(value)] * len(CONFIDENCE_DIMENSIONS)


# ---------------------------------------------------------------------------
# Evidence signals
# ---------------------------------------------------------------------------


class EvidenceSignals(BaseModel):
    """Signal strength extracted from one piece of evidence.

    Every field defaults to "not reported", which adds no adjustment.
    """

    p_value: float | None = Field(default=None, ge=0.0, le=1.0)
    sample_size: int | None = Field(default=None, ge=0)
    effect_size: float | None = Field(default=None, ge=0.0)
    study_design: StudyDesign = "unspecified"
    peer_reviewed: bool = False


def significance_bucket(p_value: float) -> str:
    if p_value < 0.01:
        return "high"
    if p_value < 0.05:
        return "significant"
    if p_value < 0.1:
        return "marginal"
    return "not_significant"


def sample_size_bucket(sample_size: int) -> str:
    if sample_size > 1000:
        return "very_large"
    if sample_size > 300:
        return "large"
    if sample_size > 100:
        return "moderate"
    if sample_size < 30:
        return "small"
    return "adequate"


_SIGNIFICANCE_ADJUSTMENT = {
    "high": 0.15,
    "significant": 0.10,
    "marginal": 0.05,
    "not_significant": -0.10,
}

_SAMPLE_ADJUSTMENT = {
    "very_large": 0.2,
    "large": 0.15,
    "moderate": 0.1,
    "adequate": 0.0,
    "small": -0.2,
}


def _effect_adjustment(effect_size: float) -> float:
    if effect_size > 0.8:
        return 0.15
    if effect_size > 0.5:
        return 0.1
    if effect_size > 0.2:
        return 0.05
    return -0.1


def _sample_adjustment(signals: EvidenceSignals) -> float:
    if signals.sample_size is None:
        return 0.0
    return _SAMPLE_ADJUSTMENT[sample_size_bucket(signals.sample_size)]


def methodological_rigor(signals: EvidenceSignals) -> float:
    """Target value for the methodological_rigor component."""
    score = 0.5
    if signals.p_value is not None:
        score += _SIGNIFICANCE_ADJUSTMENT[significance_bucket(signals.p_value)]
    score += _sample_adjustment(signals)
    score += _DESIGN_RIGOR.get(signals.study_design, 0.0)
    if signals.effect_size is not None:
        score += _effect_adjustment(signals.effect_size)
    return clamp(score)


def empirical_support(signals: EvidenceSignals) -> float:
    """Target value for the empirical_support component."""
    score = 0.5 + _DESIGN_EMPIRICAL.get(signals.study_design, 0.0) + _sample_adjustment(signals)
    return clamp(score)


def statistical_power(signals: EvidenceSignals) -> float:
    """Overall statistical power estimate for one piece of evidence."""
    power = 0.5
    if signals.p_value is not None:
        power += _SIGNIFICANCE_ADJUSTMENT[significance_bucket(signals.p_value)]
    power += _sample_adjustment(signals)
    if signals.effect_size is not None:
        power += _effect_adjustment(signals.effect_size)
    power += _DESIGN_RIGOR.get(signals.study_design, 0.0)
    if signals.peer_reviewed:
        power += 0.1
    return clamp(power)


def implied_confidence(signals: EvidenceSignals, current: Sequence[float]) -> list[float]:
    """The vector that ``signals`` pull toward.

    Only empirical_support and methodological_rigor are signal-driven.
    Peer review lifts consensus_alignment. Theoretical basis keeps its
    current value.
    """
    target = list(current)
    target[0] = empirical_support(signals)
    target[2] = methodological_rigor(signals)
    if signals.peer_reviewed:
        target[3] = clamp(current[3] + 0.1)
    return target


def update_confidence(
    current: Sequence[float],
    signals: EvidenceSignals,
    impact_score: float,
    cost: float,
) -> list[float]:
    """Nudge ``current`` toward the vector implied by ``signals``.

    The step size grows with the confidence-to-cost ratio and is capped by
    ``impact_score``. An impact of 0 leaves the vector unchanged.

    Args:
        current: Existing confidence vector
        signals: Parsed evidence signals
        impact_score: Estimated impact of this evidence, in [0, 1]
        cost: Estimated price of obtaining the evidence (USD)

    Returns:
        The updated vector, every component clamped to [0, 1]
    """
    current = validate_confidence(current)
    ratio = aggregate_confidence(current) / max(cost, MIN_COST)
    step = clamp(impact_score) * ratio / (1.0 + ratio)
    target = implied_confidence(signals, current)
    return [clamp(c + step * (t - c)) for c, t in zip(current, target)]


def weaken_confidence(
    current: Sequence[float],
    evidence: Sequence[float],
    impact_score: float,
) -> list[float]:
    """Contradicting evidence lowers empirical support and consensus alignment."""
    current = validate_confidence(current)
    impact = clamp(impact_score)
    weakened = list(current)
    weakened[0] = clamp(current[0] * (1.0 - 0.5 * impact * evidence[0]))
    weakened[3] = clamp(current[3] * (1.0 - 0.25 * impact * evidence[3]))
    return weakened
