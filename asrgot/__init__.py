"""ASR-GoT: staged scientific reasoning over a graph of thoughts."""

__version__ = "0.1.0"

from asrgot.abstraction import AbstractionConfig, HierarchicalStructure, build_hierarchical_abstraction
from asrgot.config import AsrGotSettings, Credentials
from asrgot.errors import (
    AsrGotError,
    CredentialError,
    ExecutionError,
    GraphIntegrityError,
    RoutingError,
    StageCancelled,
    ValidationError,
)
from asrgot.models import CostDashboard, GraphState, ResearchContext, StageModelAssignment
from asrgot.pipeline.result import StageResult
from asrgot.session import ResearchSession

__all__ = [
    "AbstractionConfig",
    "AsrGotError",
    "AsrGotSettings",
    "CostDashboard",
    "CredentialError",
    "Credentials",
    "ExecutionError",
    "GraphIntegrityError",
    "GraphState",
    "HierarchicalStructure",
    "ResearchContext",
    "ResearchSession",
    "RoutingError",
    "StageCancelled",
    "StageModelAssignment",
    "StageResult",
    "ValidationError",
    "build_hierarchical_abstraction",
    "__version__",
]
