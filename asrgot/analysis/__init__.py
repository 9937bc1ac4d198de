"""Independent analyzers that read (and, for gaps, annotate) a session graph."""

from asrgot.analysis.competition import (
    CompetitionResult,
    HypothesisCompetitionFramework,
    HypothesisScore,
)
from asrgot.analysis.falsifiability import FalsifiabilityReport, FalsifiabilityValidator
from asrgot.analysis.gaps import KnowledgeGap, KnowledgeGapDetector, KnowledgeGapReport

__all__ = [
    "CompetitionResult",
    "FalsifiabilityReport",
    "FalsifiabilityValidator",
    "HypothesisCompetitionFramework",
    "HypothesisScore",
    "KnowledgeGap",
    "KnowledgeGapDetector",
    "KnowledgeGapReport",
]
