"""Error taxonomy for the ASR-GoT pipeline.

Preconditions raise ``ValidationError`` and the stage is never attempted.
``CredentialError`` is raised before any external call is made.
``RoutingError`` is normally recovered by the orchestrator's fallback path.
``ExecutionError`` wraps every other failure at a stage boundary.
``GraphIntegrityError`` is raised by the graph store on a dangling reference or
a duplicate id.
"""

from __future__ import annotations


class AsrGotError(Exception):
    """Base class for all ASR-GoT errors."""


class ValidationError(AsrGotError):
    """Missing or empty research topic, or a missing prior stage result."""


class CredentialError(AsrGotError):
    """A required API key is absent.

    Attributes:
        code: Stable machine-readable code, e.g. ``PERPLEXITY_KEY_REQUIRED``
    """

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or code)


class RoutingError(AsrGotError):
    """Orchestration lookup or external call failure."""


class ExecutionError(AsrGotError):
    """Any other failure raised while a stage runs."""


class GraphIntegrityError(AsrGotError):
    """Dangling edge/hyperedge reference, duplicate id or stage-counter regression."""


class StageCancelled(AsrGotError):
    """The caller cancelled an in-flight stage."""
