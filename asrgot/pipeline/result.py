"""Result types returned by stages and sub-stages."""

from __future__ import annotations

from dataclasses import dataclass, field

from asrgot.errors import AsrGotError

ERROR_PREFIX = "Error: "


@dataclass(frozen=True)
class StageResult:
    """Outcome of one ``execute_stage`` call.

    Exactly one of ``text`` (success) or ``error`` (failure) is meaningful.
    The caller decides whether a failure halts the session.

    Attributes:
        stage: Stage index (0-based)
        ok: True on success
        text: Narrative text on success, the recorded error text on failure
        error: The failure, if any
        substages: Sub-stage ids in merge order
    """

    stage: int
    ok: bool
    text: str
    error: AsrGotError | None = None
    substages: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls, stage: int, text: str, substages: tuple[str, ...] = ()) -> StageResult:
        return cls(stage=stage, ok=True, text=text, substages=substages)

    @classmethod
    def failure(cls, stage: int, error: AsrGotError) -> StageResult:
        return cls(stage=stage, ok=False, text=format_error(error), error=error)

    @property
    def error_kind(self) -> str | None:
        return type(self.error).__name__ if self.error is not None else None


@dataclass(frozen=True)
class SubstageOutcome:
    """Outcome of one lettered sub-stage task."""

    substage_id: str
    text: str = ""
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def format_error(error: BaseException) -> str:
    return f"{ERROR_PREFIX}{type(error).__name__}: {error}"


def is_error_text(text: str) -> bool:
    return text.startswith(ERROR_PREFIX)
