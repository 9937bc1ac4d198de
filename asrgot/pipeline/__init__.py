"""The ten-stage ASR-GoT pipeline."""

from asrgot.pipeline.context import StageContext
from asrgot.pipeline.engine import StagePipeline
from asrgot.pipeline.result import StageResult, SubstageOutcome
from asrgot.pipeline.stages import STAGE_NAMES, STAGES, StageDefinition

__all__ = [
    "STAGES",
    "STAGE_NAMES",
    "StageContext",
    "StageDefinition",
    "StagePipeline",
    "StageResult",
    "SubstageOutcome",
]
