"""Schemas for structured model output, with documented defaults.

Each stage that consumes structured output parses it with
``llm_client.parse_structured(text, Schema, DEFAULT)``. Output that does not
match yields the default below, and the stage continues:

- ``InitializationAnalysis``: field "interdisciplinary science", no objectives
- ``DecompositionOutput``: the seven default dimensions
- ``HypothesisGenerationOutput``: no hypotheses. The stage then creates two
  placeholder hypotheses per dimension *without* falsification criteria, so
  the falsifiability validator reports them.
- ``EvidenceAnalysisOutput``: no assessments. Each hypothesis then receives a
  default assessment (supporting, unspecified signals, medium quality).
  Assessments are also validated one at a time, so a single malformed item
  only costs its own hypothesis the analysed assessment.
- ``CompositionOutput``: empty title, summary and findings
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from asrgot.engine.confidence import EvidenceSignals
from asrgot.engine.relations import CausalAssessment

logger = logging.getLogger(__name__)

DEFAULT_FIELD = "interdisciplinary science"

# Common near-miss labels for evidence direction and quality
_LABEL_ALIASES = {
    "support": "supports",
    "supporting": "supports",
    "contradict": "contradicts",
    "contradicting": "contradicts",
    "refutes": "contradicts",
    "moderate": "medium",
}

DEFAULT_DIMENSIONS = (
    "Scope",
    "Objectives",
    "Constraints",
    "Data Needs",
    "Use Cases",
    "Potential Biases",
    "Knowledge Gaps",
)

ANALYSIS_COMPONENTS = {
    "field_analysis": "Field Analysis & Research Objectives",
    "background": "Current Background & Recent Developments",
    "key_researchers": "Key Researchers & Institutional Networks",
    "methodologies": "Methodological Approaches & Frameworks",
    "breakthroughs": "Recent Breakthroughs & Innovation Trends",
}


class InitializationAnalysis(BaseModel):
    field: str = DEFAULT_FIELD
    objectives: list[str] = Field(default_factory=list)
    field_analysis: str = ""
    background: str = ""
    key_researchers: str = ""
    methodologies: str = ""
    breakthroughs: str = ""


class DimensionSpec(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class DecompositionOutput(BaseModel):
    dimensions: list[DimensionSpec] = Field(min_length=1)


DEFAULT_DECOMPOSITION = DecompositionOutput(
    dimensions=[DimensionSpec(name=name) for name in DEFAULT_DIMENSIONS]
)


class HypothesisSpec(BaseModel):
    dimension: str
    statement: str = Field(min_length=1)
    falsification_criteria: str | None = None
    impact_score: float = Field(default=0.7, ge=0.0, le=1.0)
    disciplinary_tags: list[str] = Field(default_factory=list)
    confidence: list[float] | None = None
    # 1-based positions of rival hypotheses within the same dimension
    competes_with: list[int] = Field(default_factory=list)


class HypothesisGenerationOutput(BaseModel):
    hypotheses: list[HypothesisSpec] = Field(default_factory=list)


class EvidenceAssessment(BaseModel):
    hypothesis_id: str
    summary: str = ""
    direction: Literal["supports", "contradicts"] = "supports"
    quality: Literal["high", "medium", "low"] = "medium"
    impact_score: float = Field(default=0.8, ge=0.0, le=1.0)
    signals: EvidenceSignals = Field(default_factory=EvidenceSignals)
    causal: CausalAssessment = Field(default_factory=CausalAssessment)
    disciplinary_tags: list[str] = Field(default_factory=list)
    knowledge_gaps: list[str] = Field(default_factory=list)

    @field_validator("direction", "quality", mode="before")
    @classmethod
    def _normalize_label(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return _LABEL_ALIASES.get(value, value)
        return value


class EvidenceAnalysisOutput(BaseModel):
    """Assessments are validated one by one; a malformed item is dropped
    and its hypothesis falls back to the default assessment."""

    assessments: list[EvidenceAssessment] = Field(default_factory=list)

    @field_validator("assessments", mode="before")
    @classmethod
    def _drop_invalid(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        kept = []
        for position, item in enumerate(value):
            try:
                kept.append(EvidenceAssessment.model_validate(item))
            except ValidationError as exc:
                logger.warning("Dropping evidence assessment %d: %s", position, exc)
        return kept


class CompositionOutput(BaseModel):
    title: str = ""
    summary: str = ""
    key_findings: list[str] = Field(default_factory=list)
