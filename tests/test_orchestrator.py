"""Tests for cost-aware routing, fallback, cost tracking and the HTTP model client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from pydantic import BaseModel

from asrgot.config import Credentials
from asrgot.errors import CredentialError, RoutingError
from asrgot.llm_client import ModelClient, extract_json, parse_structured, provider_for
from asrgot.models import CallParams
from asrgot.orchestrator import (
    FLASH,
    PRO,
    SONAR,
    SONAR_DEEP,
    STAGE_MODEL_ASSIGNMENTS,
    CostAwareOrchestrator,
    detect_hallucination,
    estimated_total_cost,
)

from conftest import FakeCall

GEMINI_ONLY = Credentials(gemini="g-key")
BOTH = Credentials(gemini="g-key", perplexity="p-key")


def _rate_limited() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.perplexity.ai/chat/completions")
    response = httpx.Response(429, request=request)
    return httpx.HTTPStatusError("429 Too Many Requests", request=request, response=response)


class TestAssignments:
    def test_known_assignments(self):
        orchestrator = CostAwareOrchestrator(FakeCall(), BOTH)
        web = orchestrator.get_stage_model_assignment("4_1_evidence_harvest_web")
        assert web.model == SONAR_DEEP
        assert web.capability == "SEARCH_GROUNDING"
        assert web.estimated_price == pytest.approx(1.0)
        assert web.requires == "perplexity"
        assert orchestrator.get_stage_model_assignment("4_2_evidence_harvest_citations").model == SONAR
        assert orchestrator.get_stage_model_assignment("5A_prune_merge_reasoning").capability == "THINKING"

    def test_unknown_stage(self):
        orchestrator = CostAwareOrchestrator(FakeCall(), BOTH)
        with pytest.raises(RoutingError, match="No model assignment"):
            orchestrator.get_stage_model_assignment("42_unknown")

    def test_every_assignment_names_its_provider(self):
        for stage_id, assignment in STAGE_MODEL_ASSIGNMENTS.items():
            assert assignment.stage_id == stage_id
            assert assignment.requires == provider_for(assignment.model)

    def test_estimated_total_excludes_cache(self):
        total = sum(a.estimated_price for a in STAGE_MODEL_ASSIGNMENTS.values())
        assert estimated_total_cost() == pytest.approx(total - 0.4)


class TestCredentials:
    @pytest.mark.asyncio
    async def test_missing_perplexity_key_makes_no_call(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, GEMINI_ONLY)
        with pytest.raises(CredentialError, match="PERPLEXITY_KEY_REQUIRED") as excinfo:
            await orchestrator.route_api_call("4_1_evidence_harvest_web", "find evidence")
        assert excinfo.value.code == "PERPLEXITY_KEY_REQUIRED"
        assert call.calls == []
        assert orchestrator.get_cost_dashboard().total_cost == 0.0

    @pytest.mark.asyncio
    async def test_per_call_credentials_override(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, GEMINI_ONLY)
        await orchestrator.route_api_call("4_2_evidence_harvest_citations", "cite", credentials=BOTH)
        assert call.models == [SONAR]

    @pytest.mark.asyncio
    async def test_blank_key_counts_as_missing(self):
        orchestrator = CostAwareOrchestrator(FakeCall(), Credentials(gemini="  "))
        with pytest.raises(CredentialError, match="GEMINI_KEY_REQUIRED"):
            await orchestrator.call_default("1_initialization", "topic")


class TestRouting:
    @pytest.mark.asyncio
    async def test_routed_call_uses_assignment(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, BOTH)
        text = await orchestrator.route_api_call("3B_hypothesis_planning", "plan")
        assert text == "Narrative output for 3B_hypothesis_planning."
        _, params = call.calls[0]
        assert params.model == PRO
        assert params.capability == "SEARCH_GROUNDING"
        assert params.max_tokens == 8000
        assert params.thinking_budget == 4096
        dashboard = orchestrator.get_cost_dashboard()
        assert dashboard.per_stage_cost == {"3B_hypothesis_planning": pytest.approx(0.111)}

    @pytest.mark.asyncio
    async def test_params_override_max_tokens(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, BOTH)
        await orchestrator.route_api_call("8B_audit_outputs", "audit", params={"max_tokens": 123})
        assert call.calls[0][1].max_tokens == 123

    @pytest.mark.asyncio
    async def test_unknown_stage_falls_back_to_default(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, BOTH)
        text = await orchestrator.route_api_call("X_custom", "anything")
        assert text == "Narrative output for X_custom."
        _, params = call.calls[0]
        assert params.model == FLASH
        assert params.capability == "STRUCTURED_OUTPUTS"
        assert params.max_tokens == 8000
        assert params.temperature == pytest.approx(0.1)
        assert orchestrator.get_cost_dashboard().entries[0].fallback is True

    @pytest.mark.asyncio
    async def test_failure_falls_back(self):
        call = FakeCall(errors={"6A_subgraph_metrics": [httpx.ConnectError("down")]})
        orchestrator = CostAwareOrchestrator(call, BOTH)
        text = await orchestrator.route_api_call("6A_subgraph_metrics", "metrics")
        assert text == "Narrative output for 6A_subgraph_metrics."
        assert call.models == [PRO, FLASH]

    @pytest.mark.asyncio
    async def test_rate_limited_harvest_uses_grounded_pro(self):
        call = FakeCall(errors={"4_1_evidence_harvest_web": [_rate_limited()]})
        orchestrator = CostAwareOrchestrator(call, BOTH)
        await orchestrator.route_api_call("4_1_evidence_harvest_web", "harvest")
        _, fallback = call.calls[1]
        assert fallback.model == PRO
        assert fallback.capability == "SEARCH_GROUNDING"
        assert fallback.max_tokens == 15000
        assert fallback.thinking_budget == 8192

    @pytest.mark.asyncio
    async def test_fallback_failure_is_routing_error(self):
        call = FakeCall(errors={"2_decomposition": httpx.ConnectError("down")})
        orchestrator = CostAwareOrchestrator(call, BOTH)
        with pytest.raises(RoutingError, match="both failed"):
            await orchestrator.route_api_call("2_decomposition", "decompose")
        assert len(call.calls) == 2
        assert orchestrator.get_cost_dashboard().total_cost == 0.0

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        class SlowFirstCall(FakeCall):
            async def __call__(self, prompt, params):
                if not self.calls:
                    self.calls.append((prompt, params))
                    await asyncio.sleep(10)
                return await super().__call__(prompt, params)

        call = SlowFirstCall()
        orchestrator = CostAwareOrchestrator(call, BOTH, timeout=0.05)
        text = await orchestrator.route_api_call("7_narrative_composition", "compose")
        assert json.loads(text)["title"] == "Microplastics and reef diversity"
        assert call.models == [PRO, FLASH]

    @pytest.mark.asyncio
    async def test_hallucinated_flash_output_escalates_to_pro(self):
        call = FakeCall(responses={"9G_references": "These references are fictional examples."})
        orchestrator = CostAwareOrchestrator(call, BOTH)
        await orchestrator.route_api_call("9G_references", "references")
        assert call.models == [FLASH, PRO]
        entries = orchestrator.get_cost_dashboard().entries
        assert [e.model for e in entries] == [FLASH, PRO]

    def test_detect_hallucination(self):
        assert detect_hallucination("I don't have access to that database")
        assert not detect_hallucination("Coral cover fell by 12% between surveys")


class TestDefaultCall:
    @pytest.mark.asyncio
    async def test_call_default_params(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, GEMINI_ONLY)
        await orchestrator.call_default("1_initialization", "topic")
        _, params = call.calls[0]
        assert params.model == FLASH
        assert params.max_tokens == 2000
        assert params.temperature == pytest.approx(0.1)
        assert orchestrator.get_cost_dashboard().total_cost > 0

    @pytest.mark.asyncio
    async def test_call_default_failure(self):
        call = FakeCall(errors={"1_initialization": httpx.ReadTimeout("slow")})
        orchestrator = CostAwareOrchestrator(call, GEMINI_ONLY)
        with pytest.raises(RoutingError, match="Default capability failed"):
            await orchestrator.call_default("1_initialization", "topic")


class TestCache:
    @pytest.mark.asyncio
    async def test_large_prompts_are_cached(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, BOTH, cache_threshold_chars=100)
        prompt = "x" * 200
        first = await orchestrator.route_api_call("6A_subgraph_metrics", prompt)
        second = await orchestrator.route_api_call("6A_subgraph_metrics", prompt)
        assert first == second
        assert len(call.calls) == 1

    @pytest.mark.asyncio
    async def test_small_prompts_are_not_cached(self):
        call = FakeCall()
        orchestrator = CostAwareOrchestrator(call, BOTH, cache_threshold_chars=100)
        await orchestrator.route_api_call("6A_subgraph_metrics", "short")
        await orchestrator.route_api_call("6A_subgraph_metrics", "short")
        assert len(call.calls) == 2


class TestCostDashboard:
    @pytest.mark.asyncio
    async def test_total_is_monotonic_and_resettable(self):
        orchestrator = CostAwareOrchestrator(FakeCall(), BOTH)
        totals = []
        for stage_id in ("2_decomposition", "3C_micro_service_decision", "8A_audit_script"):
            await orchestrator.route_api_call(stage_id, "prompt")
            totals.append(orchestrator.get_cost_dashboard().total_cost)
        assert totals == sorted(totals)
        assert totals[-1] == pytest.approx(0.115 + 0.058 + 0.162)
        dashboard = orchestrator.get_cost_dashboard()
        assert dashboard.average_cost_per_stage == pytest.approx(totals[-1] / 3)
        orchestrator.reset_cost_tracking()
        assert orchestrator.get_cost_dashboard().total_cost == 0.0


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def _gemini_reply(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class TestModelClient:
    @pytest.mark.asyncio
    async def test_gemini_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_gemini_reply("ok"))

        client = ModelClient(BOTH, transport=httpx.MockTransport(handler))
        params = CallParams(
            stage_id="3B_hypothesis_planning",
            model=PRO,
            capability="SEARCH_GROUNDING",
            thinking_budget=4096,
        )
        assert await client("plan", params) == "ok"
        await client.aclose()

        request = seen[0]
        assert request.headers["x-goog-api-key"] == "g-key"
        assert request.url.path.endswith(f"{PRO}:generateContent")
        body = json.loads(request.content)
        assert body["tools"] == [{"google_search": {}}]
        assert body["generationConfig"]["thinkingConfig"] == {"thinkingBudget": 4096}

    @pytest.mark.asyncio
    async def test_perplexity_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": "cited"}}]})

        client = ModelClient(BOTH, transport=httpx.MockTransport(handler))
        text = await client("cite", CallParams(stage_id="4_2", model=SONAR))
        await client.aclose()
        assert text == "cited"
        assert seen[0].headers["authorization"] == "Bearer p-key"
        assert json.loads(seen[0].content)["model"] == SONAR

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, monkeypatch):
        async def no_sleep(_seconds):
            return None

        monkeypatch.setattr("asrgot.llm_client.asyncio.sleep", no_sleep)
        statuses = [503, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            status = statuses.pop(0)
            return httpx.Response(status, json=_gemini_reply("recovered"))

        client = ModelClient(BOTH, transport=httpx.MockTransport(handler))
        text = await client("x", CallParams(stage_id="s", model=FLASH))
        await client.aclose()
        assert text == "recovered"
        assert statuses == []

    @pytest.mark.asyncio
    async def test_client_error_is_raised(self):
        client = ModelClient(
            BOTH, transport=httpx.MockTransport(lambda request: httpx.Response(400, json={}))
        )
        with pytest.raises(httpx.HTTPStatusError):
            await client("x", CallParams(stage_id="s", model=FLASH))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_empty_response(self):
        client = ModelClient(
            BOTH, transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        )
        with pytest.raises(RoutingError, match="Invalid response"):
            await client("x", CallParams(stage_id="s", model=FLASH))
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_key(self):
        client = ModelClient(GEMINI_ONLY, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        with pytest.raises(CredentialError, match="PERPLEXITY_KEY_REQUIRED"):
            await client("x", CallParams(stage_id="s", model=SONAR))
        await client.aclose()


class _Sample(BaseModel):
    name: str
    count: int = 0


class TestStructuredParsing:
    def test_extract_fenced_json(self):
        text = 'Here you go:\n```json\n{"name": "a"}\n```\nThanks'
        assert extract_json(text) == '{"name": "a"}'

    def test_extract_strips_thinking(self):
        assert extract_json('<think>{"x": 1}</think> {"name": "b"}') == '{"name": "b"}'

    def test_parse_valid(self):
        parsed, matched = parse_structured('{"name": "a", "count": 2}', _Sample, _Sample(name="d"))
        assert matched is True
        assert parsed.count == 2

    @pytest.mark.parametrize("text", ["not json at all", '{"count": 1}', '{"name": "a", "count": "x"}'])
    def test_parse_mismatch_returns_default(self, text):
        default = _Sample(name="default")
        parsed, matched = parse_structured(text, _Sample, default)
        assert matched is False
        assert parsed is default
