"""Prompt builders.

Prompts are opaque to the rest of the pipeline. Only the structured-output
schemas they request are part of the contract.
"""

from __future__ import annotations

from collections.abc import Sequence

from asrgot.engine.graph import Node
from asrgot.llm_client import schema_instructions
from asrgot.models import ResearchContext
from asrgot.pipeline.schemas import (
    ANALYSIS_COMPONENTS,
    CompositionOutput,
    DecompositionOutput,
    EvidenceAnalysisOutput,
    HypothesisGenerationOutput,
    InitializationAnalysis,
)

REPORT_SECTIONS = {
    "9A_abstract": "Abstract & Executive Summary",
    "9B_introduction": "Introduction & Literature Review",
    "9C_methodology": "Methodology & Framework",
    "9D_results": "Results & Statistical Analysis",
    "9E_discussion": "Discussion & Implications",
    "9F_conclusions": "Conclusions & Future Directions",
    "9G_references": "References & Appendices",
}


def _bullets(items: Sequence[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"


def _hypothesis_lines(hypotheses: Sequence[Node]) -> str:
    return "\n".join(f"- [{h.id}] {h.label}" for h in hypotheses) or "- (none)"


def initialization(topic: str) -> str:
    components = "\n".join(f"{i}. {title}" for i, title in enumerate(ANALYSIS_COMPONENTS.values(), 1))
    return (
        f"Research question: {topic}\n\n"
        "Establish the research context. Identify the primary scientific field, "
        "the research objectives, and cover these analysis components:\n"
        f"{components}\n\n{schema_instructions(InitializationAnalysis)}"
    )


def decomposition(research: ResearchContext) -> str:
    return (
        f"Decompose the research question into analytical dimensions.\n"
        f"Topic: {research.topic}\nField: {research.field}\n"
        f"Objectives:\n{_bullets(research.objectives)}\n\n"
        "Cover scope, objectives, constraints, data needs, use cases, potential "
        f"biases and knowledge gaps.\n\n{schema_instructions(DecompositionOutput)}"
    )


def hypothesis_generation(research: ResearchContext, dimensions: Sequence[Node]) -> str:
    names = [d.label for d in dimensions]
    return (
        f"Generate 2-3 competing, falsifiable hypotheses for each dimension of: {research.topic}\n"
        f"Field: {research.field}\nDimensions:\n{_bullets(names)}\n\n"
        "Every hypothesis must state explicit falsification criteria. Use the "
        "dimension name exactly as given. Mark rival hypotheses in `competes_with`.\n\n"
        f"{schema_instructions(HypothesisGenerationOutput)}"
    )


def hypothesis_planning(research: ResearchContext, dimensions: Sequence[Node]) -> str:
    return (
        f"Plan how hypotheses about '{research.topic}' should be tested. "
        f"For each dimension below, name data sources, study designs and search strategies.\n"
        f"{_bullets([d.label for d in dimensions])}"
    )


def micro_service_decision(research: ResearchContext) -> str:
    return (
        f"Decide which analysis services (literature search, citation harvest, statistical "
        f"code execution) are needed to evaluate research on '{research.topic}' in "
        f"{research.field}. Answer with a short justified list."
    )


def evidence_harvest_web(research: ResearchContext, hypotheses: Sequence[Node]) -> str:
    return (
        f"{research.field}: find recent peer-reviewed research and statistical data for "
        f"these hypotheses about '{research.topic}':\n{_hypothesis_lines(hypotheses)}"
    )


def evidence_harvest_citations(research: ResearchContext, hypotheses: Sequence[Node]) -> str:
    return (
        f"List key citations (authors, year, venue, DOI) relevant to these hypotheses "
        f"in {research.field}:\n{_hypothesis_lines(hypotheses)}"
    )


def evidence_analysis(
    research: ResearchContext,
    hypotheses: Sequence[Node],
    harvest: str,
) -> str:
    return (
        f"Assess the evidence below for each hypothesis about '{research.topic}'. "
        "Report p-values, sample sizes, effect sizes, study design, peer-review status, "
        "whether the evidence supports or contradicts the hypothesis, and any causal "
        "relationship with its confounders and mechanisms.\n\n"
        f"Hypotheses:\n{_hypothesis_lines(hypotheses)}\n\nEvidence:\n{harvest}\n\n"
        f"{schema_instructions(EvidenceAnalysisOutput)}"
    )


def prune_merge_reasoning(summary: str) -> str:
    return (
        "Review this graph summary and explain which low-confidence relationships "
        f"and duplicate hypotheses should be pruned or merged, and why:\n{summary}"
    )


def subgraph_metrics(summary: str) -> str:
    return f"Compute and interpret centrality and cohesion metrics for these subgraphs:\n{summary}"


def composition(research: ResearchContext, findings: Sequence[str]) -> str:
    return (
        f"Compose a structured scientific narrative answering: {research.topic}\n"
        f"Field: {research.field}\nHighest-priority findings:\n{_bullets(findings)}\n\n"
        f"{schema_instructions(CompositionOutput)}"
    )


def audit_script(summary: str) -> str:
    return f"Write and run an audit of this reasoning graph for statistical soundness:\n{summary}"


def audit_outputs(summary: str) -> str:
    return f"Summarize audit findings (bias, coverage, falsifiability, gaps) for:\n{summary}"


def final_analysis(research: ResearchContext, prior: Sequence[str]) -> str:
    digest = "\n\n".join(text[:2000] for text in prior)
    return (
        f"Write the final analysis for: {research.topic}\nField: {research.field}\n"
        f"Use the stage outputs below.\n\n{digest}"
    )


def report_section(section_id: str, research: ResearchContext, prior: Sequence[str]) -> str:
    digest = "\n\n".join(text[:1500] for text in prior)
    return (
        f"Write the '{REPORT_SECTIONS[section_id]}' section of a scientific report on "
        f"'{research.topic}' ({research.field}), based on:\n\n{digest}"
    )
