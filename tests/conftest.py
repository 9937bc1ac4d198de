"""Shared fixtures for ASR-GoT tests."""

from __future__ import annotations

import json

import pytest

from asrgot.config import AsrGotSettings, Credentials
from asrgot.engine.graph import Edge, GraphStore, Node
from asrgot.models import CallParams
from asrgot.session import ResearchSession

TOPIC = "Effects of microplastics on coral reef biodiversity"

INITIALIZATION = {
    "field": "Marine Ecology",
    "objectives": [
        "Quantify microplastic exposure on reefs",
        "Relate exposure to species richness",
    ],
    "field_analysis": "Marine ecology with ecotoxicology.",
    "background": "Microplastic loads on reefs have risen over two decades.",
    "key_researchers": "Reef ecology groups in Australia and the Caribbean.",
    "methodologies": "Field surveys, mesocosm exposure experiments.",
    "breakthroughs": "Evidence of coral ingestion of microfibres.",
}

DECOMPOSITION = {
    "dimensions": [
        {"name": "Scope", "description": "Which reefs and organisms"},
        {"name": "Mechanisms", "description": "How particles affect corals"},
    ]
}

HYPOTHESES = {
    "hypotheses": [
        {
            "dimension": "Scope",
            "statement": "Reefs near river outflows lose more species",
            "falsification_criteria": "No richness difference between outflow and remote reefs",
            "impact_score": 0.8,
            "disciplinary_tags": ["marine biology"],
            "competes_with": [2],
        },
        {
            "dimension": "Scope",
            "statement": "Remote reefs are affected as strongly as coastal reefs",
            "falsification_criteria": "Remote reefs show lower particle loads and higher richness",
            "competes_with": [1],
        },
        {
            "dimension": "Mechanisms",
            "statement": "Microfibre ingestion reduces coral energy reserves",
            "falsification_criteria": "Lipid reserves unchanged after controlled exposure",
            "disciplinary_tags": ["ecotoxicology"],
        },
    ]
}

EVIDENCE = {
    "assessments": [
        {
            "hypothesis_id": "3.1.1",
            "summary": "Survey of 40 reefs across three outflow gradients",
            "direction": "supports",
            "quality": "high",
            "signals": {
                "p_value": 0.003,
                "sample_size": 1200,
                "study_design": "rct",
                "peer_reviewed": True,
            },
            "disciplinary_tags": ["marine biology"],
        },
        {
            "hypothesis_id": "3.1.2",
            "summary": "Remote atolls carry a fraction of coastal particle loads",
            "direction": "contradicts",
        },
        {
            "hypothesis_id": "3.2.1",
            "summary": "Mesocosm exposure lowered lipid reserves",
            "causal": {"relationship": "direct", "mechanisms": ["gut blockage"]},
            "disciplinary_tags": ["marine biology"],
        },
    ]
}

COMPOSITION = {
    "title": "Microplastics and reef diversity",
    "summary": "Coastal reefs show the strongest declines.",
    "key_findings": ["Outflow reefs lose species", "Ingestion depletes reserves"],
}

RESPONSES = {
    "1_initialization": json.dumps(INITIALIZATION),
    "2_decomposition": json.dumps(DECOMPOSITION),
    "3A_hypothesis_generation": json.dumps(HYPOTHESES),
    "4_3_evidence_analysis": json.dumps(EVIDENCE),
    "7_narrative_composition": json.dumps(COMPOSITION),
}


class FakeCall:
    """Scripted ExternalCall.

    Returns the canned response for ``params.stage_id`` (or a short narrative)
    and records every call. ``errors`` maps a stage id to an exception, raised
    on every call, or to a list of exceptions consumed one call at a time.
    """

    def __init__(self, responses=None, errors=None):
        self.responses = {**RESPONSES, **(responses or {})}
        self.errors = dict(errors or {})
        self.calls: list[tuple[str, CallParams]] = []

    async def __call__(self, prompt: str, params: CallParams) -> str:
        self.calls.append((prompt, params))
        error = self.errors.get(params.stage_id)
        if isinstance(error, list):
            if error:
                raise error.pop(0)
        elif error is not None:
            raise error
        return self.responses.get(params.stage_id, f"Narrative output for {params.stage_id}.")

    @property
    def stage_ids(self) -> list[str]:
        return [params.stage_id for _, params in self.calls]

    @property
    def models(self) -> list[str]:
        return [params.model for _, params in self.calls]


@pytest.fixture()
def fake_call():
    return FakeCall()


@pytest.fixture()
def settings(tmp_path):
    """Settings with no auto-advance delay and a temporary sessions directory."""
    return AsrGotSettings(
        auto_advance_delay=0,
        sessions_dir=tmp_path / "sessions",
        gemini_api_key=None,
        perplexity_api_key=None,
    )


@pytest.fixture()
def credentials():
    return Credentials(gemini="test-gemini-key", perplexity="test-perplexity-key")


@pytest.fixture()
def session(fake_call, settings, credentials):
    """ResearchSession wired to the scripted fake call."""
    return ResearchSession(fake_call, settings=settings, credentials=credentials, session_id="s1")


@pytest.fixture()
def small_graph():
    """A hand-built graph covering every structural node type.

    Nodes (6):
        1.0 (root), 2.1 (dimension),
        3.1.1 and 3.1.2 (hypotheses of 2.1, competing),
        4.1 (evidence for 3.1.1), k1 (knowledge, unconnected)

    Edges (5):
        1.0 -> 2.1 supportive, 2.1 -> 3.1.1 supportive, 2.1 -> 3.1.2 supportive,
        3.1.1 -> 3.1.2 contradictory, 3.1.1 -> 4.1 supportive
    """
    store = GraphStore()
    store.add_node(Node("1.0", "Task Understanding", "root", [0.8] * 4, {"value": "topic"}))
    store.add_node(Node("2.1", "Scope", "dimension", [0.8] * 4))
    store.add_node(
        Node(
            "3.1.1",
            "Coastal reefs decline",
            "hypothesis",
            [0.8, 0.7, 0.8, 0.7],
            {"parent_dimension": "2.1", "falsification_criteria": "No decline observed anywhere"},
        )
    )
    store.add_node(
        Node(
            "3.1.2",
            "All reefs decline equally",
            "hypothesis",
            [0.5, 0.8, 0.6, 0.6],
            {"parent_dimension": "2.1", "falsification_criteria": ""},
        )
    )
    store.add_node(Node("4.1", "Survey evidence", "evidence", [0.9, 0.7, 0.9, 0.8]))
    store.add_node(Node("k1", "Background knowledge", "knowledge", [0.9] * 4))
    store.add_edge(Edge("e1", "1.0", "2.1", "supportive", 0.8))
    store.add_edge(Edge("e2", "2.1", "3.1.1", "supportive", 0.7))
    store.add_edge(Edge("e3", "2.1", "3.1.2", "supportive", 0.7))
    store.add_edge(Edge("e4", "3.1.1", "3.1.2", "contradictory", 0.6))
    store.add_edge(Edge("e5", "3.1.1", "4.1", "supportive", 0.9))
    return store
