"""Falsifiability validation for hypothesis nodes."""

from __future__ import annotations

from pydantic import BaseModel, Field

from asrgot.engine.graph import GraphStore

MIN_CRITERIA_WORDS = 3


class FalsifiabilityReport(BaseModel):
    """Which hypotheses lack usable falsification criteria.

    ``missing`` lists hypotheses whose criteria are absent or blank; those
    make the report invalid. ``weak`` lists criteria too short to state a
    testable outcome; those only produce warnings.
    """

    valid: bool
    checked: int
    missing: list[str] = Field(default_factory=list)
    weak: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class FalsifiabilityValidator:
    """Requires every hypothesis to state how it could be disproven.

    Absent criteria are reported and never filled in.
    """

    def __init__(self, min_words: int = MIN_CRITERIA_WORDS) -> None:
        self.min_words = min_words

    def validate(self, store: GraphStore) -> FalsifiabilityReport:
        hypotheses = store.get_nodes_by_type("hypothesis")
        missing: list[str] = []
        weak: list[str] = []
        issues: list[str] = []
        warnings: list[str] = []
        for node in hypotheses:
            criteria = node.metadata.get("falsification_criteria")
            if not isinstance(criteria, str) or not criteria.strip():
                missing.append(node.id)
                issues.append(f"Hypothesis '{node.id}' has no falsification criteria")
            elif len(criteria.split()) < self.min_words:
                weak.append(node.id)
                warnings.append(
                    f"Hypothesis '{node.id}' falsification criteria are too brief: {criteria!r}"
                )
        return FalsifiabilityReport(
            valid=not missing,
            checked=len(hypotheses),
            missing=missing,
            weak=weak,
            issues=issues,
            warnings=warnings,
        )
