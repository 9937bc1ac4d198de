"""Cost-aware routing of external model calls.

Each pipeline stage or sub-stage id (e.g. ``"3B_hypothesis_planning"``) maps
to a model, a capability and an estimated price. ``route_api_call`` performs
these steps in order:

1. Resolve the assignment.
2. Check the credential the model needs. Nothing is sent when it is missing.
3. Call the assigned capability under a timeout.
4. On failure, fall back to a conservative default.
5. Add the price to the session total.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from typing import Any

import httpx

from asrgot.config import Credentials
from asrgot.errors import CredentialError, RoutingError
from asrgot.llm_client import ExternalCall, provider_for
from asrgot.models import CallParams, CostDashboard, CostEntry, StageModelAssignment

logger = logging.getLogger(__name__)

FLASH = "gemini-2.5-flash"
PRO = "gemini-2.5-pro"
SONAR = "sonar"
SONAR_DEEP = "sonar-deep-research"


def _assignment(
    stage_id: str,
    model: str,
    capability: str,
    price: float,
    max_tokens: int | None = None,
    thinking_budget: int | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> StageModelAssignment:
    return StageModelAssignment(
        stage_id=stage_id,
        model=model,
        capability=capability,
        max_tokens=max_tokens,
        thinking_budget=thinking_budget,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_price=price,
        requires=provider_for(model),
    )


STAGE_MODEL_ASSIGNMENTS: dict[str, StageModelAssignment] = {
    a.stage_id: a
    for a in (
        _assignment("1_initialization", FLASH, "STRUCTURED_OUTPUTS", 0.073, 5000, 2048, 12000, 5000),
        _assignment("2_decomposition", FLASH, "STRUCTURED_OUTPUTS", 0.115, 10000, 2048, 30000, 10000),
        _assignment("3A_hypothesis_generation", FLASH, "STRUCTURED_OUTPUTS", 0.115, 10000, 2048),
        _assignment("3B_hypothesis_planning", PRO, "SEARCH_GROUNDING", 0.111, 8000, 4096),
        _assignment("3C_micro_service_decision", PRO, "FUNCTION_CALLING", 0.058, 4000),
        _assignment("4_1_evidence_harvest_web", SONAR_DEEP, "SEARCH_GROUNDING", 1.0, 1_000_000, None, 500_000, 0),
        _assignment("4_2_evidence_harvest_citations", SONAR, "STRUCTURED_OUTPUTS", 0.8, 100_000),
        _assignment("4_3_evidence_analysis", PRO, "CODE_EXECUTION", 0.2, 15000, 16384),
        _assignment("4_4_graph_update", PRO, "STRUCTURED_OUTPUTS", 0.262, 20000, 8192),
        _assignment("5A_prune_merge_reasoning", FLASH, "THINKING", 0.1, 5000, None, 30000, 5000),
        _assignment("5B_graph_mutation_persist", FLASH, "STRUCTURED_OUTPUTS", 0.095, 8000),
        _assignment("6A_subgraph_metrics", PRO, "CODE_EXECUTION", 0.175, 10000, 16384),
        _assignment("6B_subgraph_emit", FLASH, "STRUCTURED_OUTPUTS", 0.08, 8000),
        _assignment("7_narrative_composition", PRO, "STRUCTURED_OUTPUTS", 0.325, 25000),
        _assignment("8A_audit_script", PRO, "CODE_EXECUTION", 0.162, 10000, 8192),
        _assignment("8B_audit_outputs", PRO, "STRUCTURED_OUTPUTS", 0.13, 8000, 4096),
        _assignment("9_final_analysis", PRO, "STRUCTURED_OUTPUTS", 0.3, 20000, 8192),
        _assignment("9A_abstract", PRO, "STRUCTURED_OUTPUTS", 0.08, 6000),
        _assignment("9B_introduction", PRO, "STRUCTURED_OUTPUTS", 0.1, 8000),
        _assignment("9C_methodology", PRO, "STRUCTURED_OUTPUTS", 0.1, 8000),
        _assignment("9D_results", PRO, "STRUCTURED_OUTPUTS", 0.12, 10000),
        _assignment("9E_discussion", PRO, "STRUCTURED_OUTPUTS", 0.12, 10000),
        _assignment("9F_conclusions", PRO, "STRUCTURED_OUTPUTS", 0.08, 6000),
        _assignment("9G_references", FLASH, "STRUCTURED_OUTPUTS", 0.05, 6000),
        _assignment("S_session_cache", FLASH, "CACHING", 0.4),
    )
}

# Used when routing is bypassed (stage 0) and when a routed call fails
DEFAULT_MODEL = FLASH
DEFAULT_CAPABILITY = "STRUCTURED_OUTPUTS"
FALLBACK_MAX_TOKENS = 8000
FALLBACK_TEMPERATURE = 0.1
INITIALIZATION_MAX_TOKENS = 2000

# USD per million (input, output) tokens, for calls priced from token counts
MODEL_TOKEN_PRICES = {
    FLASH: (0.30, 2.50),
    PRO: (1.25, 10.0),
    SONAR: (1.0, 1.0),
    SONAR_DEEP: (2.0, 8.0),
}

HALLUCINATION_INDICATORS = (
    "i don't have access",
    "i cannot access",
    "i'm not able to browse",
    "i don't have real-time",
    "fictional",
    "made up",
    "hypothetical",
)
HALLUCINATION_RATE = 0.1

# Failures that trigger the fallback path rather than failing the stage
_RECOVERABLE = (RoutingError, httpx.HTTPError, asyncio.TimeoutError, OSError)


def estimate_tokens(text: str) -> int:
    """Rough token count, four characters per token."""
    return max(1, len(text) // 4)


def estimate_price(model: str, prompt_tokens: int, output_tokens: int) -> float:
    input_rate, output_rate = MODEL_TOKEN_PRICES.get(model, MODEL_TOKEN_PRICES[PRO])
    return (prompt_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def detect_hallucination(text: str) -> bool:
    """True when at least 10% of the indicator phrases occur in ``text``."""
    lowered = text.lower()
    hits = sum(1 for phrase in HALLUCINATION_INDICATORS if phrase in lowered)
    return hits / len(HALLUCINATION_INDICATORS) >= HALLUCINATION_RATE


def estimated_total_cost() -> float:
    """Sum of the estimated prices of every routed stage."""
    return sum(
        a.estimated_price for key, a in STAGE_MODEL_ASSIGNMENTS.items() if key != "S_session_cache"
    )


def _is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    message = str(exc).lower()
    return "429" in message or "rate limit" in message or "rate-limit" in message


class CostAwareOrchestrator:
    """Routes stage calls to models and tracks session spend.

    One instance per session; it holds the session's cost ledger and
    response cache.

    Args:
        call: The external text-generation capability
        credentials: Default credentials, overridable per call
        timeout: Seconds before a call is abandoned in favour of the fallback
        cache_ttl_minutes: Lifetime of cached responses for very large prompts
        cache_threshold_chars: Prompt length at which responses are cached
    """

    def __init__(
        self,
        call: ExternalCall,
        credentials: Credentials | None = None,
        timeout: float = 120.0,
        cache_ttl_minutes: int = 1440,
        cache_threshold_chars: int = 200_000,
    ) -> None:
        self._call = call
        self.credentials = credentials or Credentials()
        self.timeout = timeout
        self.cache_ttl_minutes = cache_ttl_minutes
        self.cache_threshold_chars = cache_threshold_chars
        self._entries: list[CostEntry] = []
        self._cache: dict[str, tuple[float, str]] = {}

    # ========== Assignments ==========

    def get_stage_model_assignment(self, stage_id: str) -> StageModelAssignment:
        """Model, capability and estimated price for ``stage_id``.

        Raises:
            RoutingError: If the stage id has no assignment
        """
        assignment = STAGE_MODEL_ASSIGNMENTS.get(stage_id)
        if assignment is None:
            raise RoutingError(f"No model assignment for stage '{stage_id}'")
        return assignment

    def get_estimated_total_cost(self) -> float:
        return estimated_total_cost()

    # ========== Routing ==========

    async def route_api_call(
        self,
        stage_id: str,
        prompt: str,
        credentials: Credentials | None = None,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Send ``prompt`` through the capability assigned to ``stage_id``.

        Args:
            stage_id: Routing key, e.g. ``"4_1_evidence_harvest_web"``
            prompt: Opaque prompt text
            credentials: Overrides the orchestrator's default credentials
            params: Optional overrides (``max_tokens``, ``temperature``)

        Returns:
            The model's text output

        Raises:
            CredentialError: If the assigned model's key is missing; no call is made
            RoutingError: If both the routed call and the fallback fail
        """
        credentials = credentials or self.credentials
        params = params or {}

        try:
            assignment = self.get_stage_model_assignment(stage_id)
        except RoutingError as exc:
            logger.warning("Routing lookup failed for %s: %s", stage_id, exc)
            return await self._fallback(stage_id, prompt, credentials, params, exc)

        if not credentials.has(assignment.requires):
            code = f"{assignment.requires.upper()}_KEY_REQUIRED"
            logger.error("Stage %s needs a %s key; no call made", stage_id, assignment.requires)
            raise CredentialError(code, f"{code}: stage {stage_id} uses {assignment.model}")

        cached = self._cache_lookup(stage_id, prompt)
        if cached is not None:
            logger.info("Cache hit for stage %s", stage_id)
            return cached

        call_params = CallParams(
            stage_id=stage_id,
            model=assignment.model,
            capability=assignment.capability,
            max_tokens=params.get("max_tokens") or assignment.max_tokens or FALLBACK_MAX_TOKENS,
            temperature=params.get("temperature", 0.1),
            thinking_budget=assignment.thinking_budget,
        )
        try:
            text = await self._invoke(prompt, call_params)
        except _RECOVERABLE as exc:
            logger.warning("Routed call for %s failed: %s", stage_id, exc)
            return await self._fallback(stage_id, prompt, credentials, params, exc)

        self._track(stage_id, assignment.model, prompt, text, assignment.estimated_price)

        if assignment.model == FLASH and detect_hallucination(text):
            logger.warning("Flash output for %s looks hallucinated, escalating to %s", stage_id, PRO)
            escalated = call_params.model_copy(update={"model": PRO})
            try:
                text = await self._invoke(prompt, escalated)
            except _RECOVERABLE as exc:
                logger.warning("Escalation for %s failed, keeping Flash output: %s", stage_id, exc)
            else:
                self._track(stage_id, PRO, prompt, text, fallback=True)

        self._cache_store(stage_id, prompt, text)
        return text

    async def call_default(
        self,
        stage_id: str,
        prompt: str,
        max_tokens: int = INITIALIZATION_MAX_TOKENS,
        credentials: Credentials | None = None,
    ) -> str:
        """Call the default capability directly, bypassing the routing table.

        Raises:
            CredentialError: If the default model's key is missing
            RoutingError: If the call fails
        """
        credentials = credentials or self.credentials
        credentials.require(provider_for(DEFAULT_MODEL))
        params = CallParams(
            stage_id=stage_id,
            model=DEFAULT_MODEL,
            capability=DEFAULT_CAPABILITY,
            max_tokens=max_tokens,
            temperature=FALLBACK_TEMPERATURE,
        )
        try:
            text = await self._invoke(prompt, params)
        except _RECOVERABLE as exc:
            raise RoutingError(f"Default capability failed for {stage_id}: {exc}") from exc
        self._track(stage_id, DEFAULT_MODEL, prompt, text)
        return text

    async def _invoke(self, prompt: str, params: CallParams) -> str:
        return await asyncio.wait_for(self._call(prompt, params), timeout=self.timeout)

    async def _fallback(
        self,
        stage_id: str,
        prompt: str,
        credentials: Credentials,
        params: dict[str, Any],
        error: BaseException,
    ) -> str:
        if "evidence_harvest" in stage_id and _is_rate_limited(error):
            logger.info("Search model rate limited for %s, using %s with grounding", stage_id, PRO)
            fallback = CallParams(
                stage_id=stage_id,
                model=PRO,
                capability="SEARCH_GROUNDING",
                max_tokens=15000,
                temperature=FALLBACK_TEMPERATURE,
                thinking_budget=8192,
            )
        else:
            fallback = CallParams(
                stage_id=stage_id,
                model=DEFAULT_MODEL,
                capability=DEFAULT_CAPABILITY,
                max_tokens=params.get("max_tokens") or FALLBACK_MAX_TOKENS,
                temperature=FALLBACK_TEMPERATURE,
            )
        if not credentials.has(provider_for(fallback.model)):
            raise RoutingError(
                f"Fallback for {stage_id} needs a {provider_for(fallback.model)} key: {error}"
            ) from error
        try:
            text = await self._invoke(prompt, fallback)
        except _RECOVERABLE as exc:
            raise RoutingError(f"Routing and fallback both failed for {stage_id}: {exc}") from exc
        self._track(stage_id, fallback.model, prompt, text, fallback=True)
        return text

    # ========== Cache ==========

    def _cache_key(self, stage_id: str, prompt: str) -> str:
        return hashlib.sha256(f"{stage_id}\x00{prompt}".encode()).hexdigest()

    def _cache_lookup(self, stage_id: str, prompt: str) -> str | None:
        if len(prompt) < self.cache_threshold_chars:
            return None
        key = self._cache_key(stage_id, prompt)
        hit = self._cache.get(key)
        if hit is None:
            return None
        expires_at, text = hit
        if time.monotonic() >= expires_at:
            del self._cache[key]
            return None
        return text

    def _cache_store(self, stage_id: str, prompt: str, text: str) -> None:
        if len(prompt) < self.cache_threshold_chars or self.cache_ttl_minutes <= 0:
            return
        expires_at = time.monotonic() + self.cache_ttl_minutes * 60
        self._cache[self._cache_key(stage_id, prompt)] = (expires_at, text)

    # ========== Cost Tracking ==========

    def _track(
        self,
        stage_id: str,
        model: str,
        prompt: str,
        text: str,
        price: float | None = None,
        fallback: bool = False,
    ) -> None:
        prompt_tokens = estimate_tokens(prompt)
        output_tokens = estimate_tokens(text)
        if price is None:
            price = estimate_price(model, prompt_tokens, output_tokens)
        self._entries.append(
            CostEntry(
                stage=stage_id,
                model=model,
                prompt_tokens=prompt_tokens,
                output_tokens=output_tokens,
                price_usd=price,
                fallback=fallback,
            )
        )
        logger.info("Cost tracked: stage=%s model=%s price=$%.4f", stage_id, model, price)

    def get_cost_dashboard(self) -> CostDashboard:
        """Cumulative spend. ``total_cost`` never decreases within a session
        unless ``reset_cost_tracking`` is called."""
        per_stage: dict[str, float] = defaultdict(float)
        for entry in self._entries:
            per_stage[entry.stage] += entry.price_usd
        total = sum(entry.price_usd for entry in self._entries)
        return CostDashboard(
            total_cost=total,
            per_stage_cost=dict(per_stage),
            entries=list(self._entries),
            average_cost_per_stage=total / len(per_stage) if per_stage else 0.0,
        )

    def reset_cost_tracking(self) -> None:
        self._entries.clear()
