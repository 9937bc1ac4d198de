"""The ASR-GoT stage functions.

Each stage is an async function of a ``StageContext``. It issues its
external calls first, through the orchestrator and usually as a sub-stage
fan-out. It then mutates the working graph synchronously and returns
narrative markdown. Raising aborts the stage; the pipeline discards the
working copy and records the failure.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from asrgot.analysis.competition import HypothesisCompetitionFramework
from asrgot.analysis.falsifiability import FalsifiabilityValidator
from asrgot.analysis.gaps import KnowledgeGapDetector
from asrgot.engine.confidence import (
    DEFAULT_EVIDENCE_CONFIDENCE,
    DEFAULT_HYPOTHESIS_CONFIDENCE,
    DEFAULT_ROOT_CONFIDENCE,
    aggregate_confidence,
    sample_size_bucket,
    significance_bucket,
    statistical_power,
    uniform_confidence,
    update_confidence,
    validate_confidence,
    weaken_confidence,
)
from asrgot.engine.graph import Edge, GraphStore, Node
from asrgot.engine.information_theory import graph_complexity, node_information_metrics
from asrgot.engine.relations import analyze_temporal, build_hyperedges, evidence_edge_type
from asrgot.errors import AsrGotError, ExecutionError, GraphIntegrityError, ValidationError
from asrgot.llm_client import parse_structured
from asrgot.models import ResearchContext
from asrgot.pipeline import prompts
from asrgot.pipeline.context import StageContext
from asrgot.pipeline.result import SubstageOutcome
from asrgot.pipeline.schemas import (
    ANALYSIS_COMPONENTS,
    DEFAULT_DECOMPOSITION,
    DEFAULT_FIELD,
    CompositionOutput,
    DecompositionOutput,
    EvidenceAnalysisOutput,
    EvidenceAssessment,
    HypothesisGenerationOutput,
    HypothesisSpec,
    InitializationAnalysis,
)
from asrgot.pipeline.substages import first_error, merge_outputs

logger = logging.getLogger(__name__)

STAGE_NAMES = (
    "Initialization",
    "Decomposition",
    "Hypothesis/Planning",
    "Evidence Integration",
    "Pruning/Merging",
    "Subgraph Extraction",
    "Composition",
    "Reflection",
    "Final Analysis",
    "Report Integration",
)

# Node types that pruning never removes
PROTECTED_TYPES = frozenset({"root", "knowledge", "gap"})

MIN_HYPOTHESES_PER_DIMENSION = 2
MAX_HYPOTHESES_PER_DIMENSION = 3


def stage_label(index: int) -> str:
    """Human-facing, 1-based stage label, e.g. ``Stage 2 (Decomposition)``."""
    return f"Stage {index + 1} ({STAGE_NAMES[index]})"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _meta(ctx: StageContext, source: str, **extra: Any) -> dict[str, Any]:
    return {"stage": ctx.index, "source_description": source, "timestamp": _now(), **extra}


def _next_id(store: GraphStore, prefix: str) -> str:
    k = 1
    while store.has_node(f"{prefix}.{k}"):
        k += 1
    return f"{prefix}.{k}"


def _raise_failures(outcomes: Mapping[str, SubstageOutcome]) -> None:
    """Fail the stage with the lowest-id sub-stage error, if any."""
    error = first_error(outcomes)
    if error is None:
        return
    if isinstance(error, AsrGotError):
        raise error
    raise ExecutionError(f"{type(error).__name__}: {error}") from error


def _root(store: GraphStore) -> Node:
    roots = store.get_nodes_by_type("root")
    if not roots:
        raise ExecutionError("The graph has no root node; run Stage 1 (Initialization) first")
    return roots[0]


def _graph_summary(store: GraphStore) -> str:
    stats = store.stats()
    lines = [
        f"Nodes: {stats['node_count']}  Edges: {stats['edge_count']}  "
        f"Hyperedges: {stats['hyperedge_count']}"
    ]
    for node in store.nodes():
        lines.append(
            f"- [{node.id}] {node.type}: {node.label} "
            f"(confidence {aggregate_confidence(node.confidence):.2f}, "
            f"degree {store.node_degree(node.id)})"
        )
    return "\n".join(lines)


def refresh_information_metrics(store: GraphStore, detector: KnowledgeGapDetector) -> int:
    """Store information metrics on every node and flag gap candidates.

    Returns:
        Number of nodes flagged as gap candidates
    """
    size = len(store)
    flagged = 0
    for node in store.nodes():
        degree = store.node_degree(node.id)
        metrics = node_information_metrics(node.confidence, degree, size)
        candidate = node.type not in PROTECTED_TYPES and (
            metrics["entropy"] > detector.entropy_threshold or degree < detector.min_connections
        )
        flagged += candidate
        store.update_node(
            node.id, metadata={"information_theory": metrics, "gap_candidate": candidate}
        )
    return flagged


# ---------------------------------------------------------------------------
# Stage 1: Initialization
# ---------------------------------------------------------------------------


async def initialization(ctx: StageContext) -> str:
    topic = (ctx.topic or "").strip()
    raw = await ctx.orchestrator.call_default(
        "1_initialization", prompts.initialization(topic), credentials=ctx.credentials
    )
    analysis, matched = parse_structured(raw, InitializationAnalysis, InitializationAnalysis())
    field = analysis.field.strip() or DEFAULT_FIELD
    components = {key: getattr(analysis, key) for key in ANALYSIS_COMPONENTS}

    confidence = ctx.options.get("root_confidence") or DEFAULT_ROOT_CONFIDENCE
    root = Node(
        "1.0",
        "Task Understanding",
        "root",
        list(confidence),
        _meta(
            ctx,
            "Initial research question",
            value=topic,
            field=field,
            objectives=list(analysis.objectives),
            analysis_components=components,
            structured_output=matched,
        ),
    )
    ctx.store.add_node(root)
    root.metadata["information_theory"] = node_information_metrics(root.confidence, 0, 1)
    ctx.store.refresh_metrics()

    ctx.research = ResearchContext(
        topic=topic,
        field=field,
        objectives=list(analysis.objectives),
        analysis_components=components,
    )

    sections = [
        f"## {title}\n\n{components[key] or 'No analysis returned.'}"
        for key, title in ANALYSIS_COMPONENTS.items()
    ]
    objectives = "\n".join(f"- {o}" for o in analysis.objectives) or "- (none identified)"
    return (
        "# Stage 1: Initialization Complete\n\n"
        f"**Research question**: {topic}\n\n**Field**: {field}\n\n"
        f"**Objectives**:\n{objectives}\n\n" + "\n\n".join(sections) + "\n\n"
        f"Root node `{root.id}` created with confidence {root.confidence}."
    )


# ---------------------------------------------------------------------------
# Stage 2: Decomposition
# ---------------------------------------------------------------------------


def require_topic_in_root(store: GraphStore) -> None:
    """The first graph node must carry the research topic.

    Raises:
        ValidationError: If the topic is absent or blank
    """
    nodes = store.nodes()
    value = nodes[0].metadata.get("value") if nodes else None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"{stage_label(1)} requires the root node metadata to carry the research "
            "topic as a non-empty string"
        )


async def decomposition(ctx: StageContext) -> str:
    root = _root(ctx.store)
    raw = await ctx.route("2_decomposition", prompts.decomposition(ctx.research))
    output, matched = parse_structured(raw, DecompositionOutput, DEFAULT_DECOMPOSITION)

    names: list[str] = []
    for spec in output.dimensions:
        name = spec.name.strip()
        if name and name.lower() not in {n.lower() for n in names}:
            dim_id = _next_id(ctx.store, "2")
            ctx.store.add_node(
                Node(
                    dim_id,
                    name,
                    "dimension",
                    uniform_confidence(0.8),
                    _meta(ctx, "Task decomposition", value=spec.description),
                )
            )
            ctx.store.add_edge(Edge(f"edge_{root.id}_{dim_id}", root.id, dim_id, "supportive", 0.8))
            names.append(name)

    ctx.research.dimensions = names
    ctx.store.refresh_metrics()
    lines = "\n".join(f"- **{name}**" for name in names)
    source = "structured model output" if matched else "default dimensions"
    return (
        "# Stage 2: Decomposition Complete\n\n"
        f"Decomposed the task into {len(names)} dimensions ({source}):\n\n{lines}"
    )


# ---------------------------------------------------------------------------
# Stage 3: Hypothesis/Planning
# ---------------------------------------------------------------------------


def _placeholder(dimension: str, j: int) -> HypothesisSpec:
    return HypothesisSpec(
        dimension=dimension,
        statement=f"Hypothesis {j} for {dimension}",
        impact_score=min(1.0, 0.7 + 0.05 * j),
    )


def _hypothesis_confidence(spec: HypothesisSpec) -> list[float]:
    if spec.confidence is None:
        return list(DEFAULT_HYPOTHESIS_CONFIDENCE)
    try:
        return validate_confidence(spec.confidence)
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring invalid hypothesis confidence %s: %s", spec.confidence, exc)
        return list(DEFAULT_HYPOTHESIS_CONFIDENCE)


async def hypothesis_planning(ctx: StageContext) -> str:
    store = ctx.store
    dimensions = store.get_nodes_by_type("dimension")
    if not dimensions:
        raise ExecutionError("No dimension nodes to generate hypotheses from")

    research = ctx.research
    outcomes = await ctx.fan_out(
        {
            "3A_hypothesis_generation": lambda: ctx.route(
                "3A_hypothesis_generation", prompts.hypothesis_generation(research, dimensions)
            ),
            "3B_hypothesis_planning": lambda: ctx.route(
                "3B_hypothesis_planning", prompts.hypothesis_planning(research, dimensions)
            ),
            "3C_micro_service_decision": lambda: ctx.route(
                "3C_micro_service_decision", prompts.micro_service_decision(research)
            ),
        }
    )
    _raise_failures(outcomes)
    output, matched = parse_structured(
        outcomes["3A_hypothesis_generation"].text,
        HypothesisGenerationOutput,
        HypothesisGenerationOutput(),
    )

    by_dimension: dict[str, list[HypothesisSpec]] = {d.label.lower(): [] for d in dimensions}
    for spec in output.hypotheses:
        key = spec.dimension.strip().lower()
        if key not in by_dimension:
            logger.warning("Hypothesis for unknown dimension %r dropped", spec.dimension)
            continue
        by_dimension[key].append(spec)

    created: list[Node] = []
    for dimension in dimensions:
        specs = by_dimension[dimension.label.lower()][:MAX_HYPOTHESES_PER_DIMENSION]
        parsed_count = len(specs)
        while len(specs) < MIN_HYPOTHESES_PER_DIMENSION:
            specs.append(_placeholder(dimension.label, len(specs) + 1))
        suffix = dimension.id.split(".", 1)[-1]
        ids: list[str] = []
        for j, spec in enumerate(specs, 1):
            hyp_id = f"3.{suffix}.{j}"
            confidence = _hypothesis_confidence(spec)
            node = store.add_node(
                Node(
                    hyp_id,
                    spec.statement,
                    "hypothesis",
                    confidence,
                    _meta(
                        ctx,
                        f"Hypothesis for {dimension.label}",
                        value=spec.statement,
                        parent_dimension=dimension.id,
                        falsification_criteria=(spec.falsification_criteria or "").strip(),
                        impact_score=spec.impact_score,
                        disciplinary_tags=list(spec.disciplinary_tags) or [research.field],
                        placeholder=j > parsed_count,
                    ),
                )
            )
            store.add_edge(
                Edge(
                    f"edge_{dimension.id}_{hyp_id}",
                    dimension.id,
                    hyp_id,
                    "supportive",
                    aggregate_confidence(confidence),
                )
            )
            ids.append(hyp_id)
            created.append(node)

        for j, spec in enumerate(specs, 1):
            for rival in spec.competes_with:
                if rival == j or not 1 <= rival <= len(ids):
                    continue
                a, b = sorted((ids[j - 1], ids[rival - 1]))
                edge_id = f"edge_{a}_{b}_contradicts"
                if store.get_edge(edge_id) is not None:
                    continue
                store.add_edge(
                    Edge(
                        edge_id,
                        a,
                        b,
                        "contradictory",
                        min(
                            aggregate_confidence(store.require_node(a).confidence),
                            aggregate_confidence(store.require_node(b).confidence),
                        ),
                        {"relationship": "competing_hypotheses"},
                    )
                )

    research.hypotheses = [node.label for node in created]
    store.refresh_metrics()

    missing = [n.id for n in created if not n.metadata["falsification_criteria"]]
    listing = "\n".join(f"- `{n.id}` {n.label}" for n in created)
    notes = (
        f"\n\n**Missing falsification criteria**: {', '.join(missing)}" if missing else ""
    )
    return (
        "# Stage 3: Hypothesis/Planning Complete\n\n"
        f"Generated {len(created)} hypotheses across {len(dimensions)} dimensions"
        f"{'' if matched else ' (default placeholders)'}:\n\n{listing}{notes}\n\n"
        + merge_outputs(
            {k: v for k, v in outcomes.items() if k != "3A_hypothesis_generation"},
            {
                "3B_hypothesis_planning": "Research Planning",
                "3C_micro_service_decision": "Analysis Services",
            },
        )
    )


# ---------------------------------------------------------------------------
# Stage 4: Evidence Integration
# ---------------------------------------------------------------------------

EVIDENCE_SUBSTAGES = (
    "4_1_evidence_harvest_web",
    "4_2_evidence_harvest_citations",
    "4_3_evidence_analysis",
)


async def evidence_integration(ctx: StageContext) -> str:
    store = ctx.store
    research = ctx.research
    hypotheses = store.get_nodes_by_type("hypothesis")
    if not hypotheses:
        raise ExecutionError("No hypothesis nodes to integrate evidence for")

    harvest = await ctx.fan_out(
        {
            "4_1_evidence_harvest_web": lambda: ctx.route(
                "4_1_evidence_harvest_web", prompts.evidence_harvest_web(research, hypotheses)
            ),
            "4_2_evidence_harvest_citations": lambda: ctx.route(
                "4_2_evidence_harvest_citations",
                prompts.evidence_harvest_citations(research, hypotheses),
            ),
        }
    )
    _raise_failures(harvest)
    harvest_text = merge_outputs(harvest)

    analysis = await ctx.fan_out(
        {
            "4_3_evidence_analysis": lambda: ctx.route(
                "4_3_evidence_analysis",
                prompts.evidence_analysis(research, hypotheses, harvest_text),
            )
        }
    )
    _raise_failures(analysis)
    parsed, matched = parse_structured(
        analysis["4_3_evidence_analysis"].text, EvidenceAnalysisOutput, EvidenceAnalysisOutput()
    )

    # 4_4: local graph update
    known = {h.id for h in hypotheses}
    assessments: dict[str, list[EvidenceAssessment]] = {h.id: [] for h in hypotheses}
    for assessment in parsed.assessments:
        if assessment.hypothesis_id in known:
            assessments[assessment.hypothesis_id].append(assessment)
        else:
            logger.warning("Assessment for unknown hypothesis %r dropped", assessment.hypothesis_id)

    evidence_cost = sum(
        ctx.orchestrator.get_stage_model_assignment(s).estimated_price for s in EVIDENCE_SUBSTAGES
    ) / len(hypotheses)

    created: list[Node] = []
    for hypothesis in hypotheses:
        for assessment in assessments[hypothesis.id] or [
            EvidenceAssessment(hypothesis_id=hypothesis.id)
        ]:
            signals = assessment.signals
            confidence = update_confidence(
                DEFAULT_EVIDENCE_CONFIDENCE, signals, assessment.impact_score, evidence_cost
            )
            evidence_id = _next_id(store, "4")
            evidence = store.add_node(
                Node(
                    evidence_id,
                    f"Evidence: {hypothesis.label}",
                    "evidence",
                    confidence,
                    _meta(
                        ctx,
                        "Evidence harvest and analysis",
                        value=assessment.summary,
                        hypothesis_id=hypothesis.id,
                        evidence_quality=assessment.quality,
                        statistical_power=statistical_power(signals),
                        significance=(
                            significance_bucket(signals.p_value)
                            if signals.p_value is not None
                            else None
                        ),
                        sample_size_category=(
                            sample_size_bucket(signals.sample_size)
                            if signals.sample_size is not None
                            else None
                        ),
                        signals=signals.model_dump(mode="json"),
                        impact_score=assessment.impact_score,
                        peer_review_status=(
                            "peer-reviewed" if signals.peer_reviewed else "unverified"
                        ),
                        disciplinary_tags=list(assessment.disciplinary_tags)
                        or list(hypothesis.metadata.get("disciplinary_tags", [])),
                        causal_metadata=assessment.causal.as_metadata(),
                        structured_output=matched,
                    ),
                )
            )
            temporal = analyze_temporal(hypothesis, evidence)
            evidence.metadata["temporal_metadata"] = temporal
            contradicts = assessment.direction == "contradicts"
            store.add_edge(
                Edge(
                    f"edge_{hypothesis.id}_{evidence_id}",
                    hypothesis.id,
                    evidence_id,
                    evidence_edge_type(contradicts, assessment.causal),
                    confidence[0],
                    {
                        "source_description": "Hypothesis-evidence relationship",
                        "causal_metadata": assessment.causal.as_metadata(),
                        "temporal_metadata": temporal,
                    },
                )
            )
            if contradicts:
                updated = weaken_confidence(
                    hypothesis.confidence, confidence, assessment.impact_score
                )
            else:
                updated = update_confidence(
                    hypothesis.confidence, signals, assessment.impact_score, evidence_cost
                )
            store.update_node(hypothesis.id, confidence=updated)
            research.knowledge_gaps.extend(
                gap for gap in assessment.knowledge_gaps if gap not in research.knowledge_gaps
            )
            created.append(evidence)

    evidence_by_hypothesis = {
        h.id: [
            e.target
            for e in store.edges_of(h.id)
            if e.source == h.id and store.require_node(e.target).type == "evidence"
        ]
        for h in hypotheses
    }
    hyperedges = build_hyperedges(
        hypotheses,
        store.get_nodes_by_type("evidence"),
        evidence_by_hypothesis,
        {h.id for h in store.hyperedges()},
    )
    for hyperedge in hyperedges:
        store.add_hyperedge(hyperedge)
    store.refresh_metrics()

    rows = "\n".join(
        f"- `{e.id}` quality={e.metadata['evidence_quality']} "
        f"power={e.metadata['statistical_power']:.2f} "
        f"confidence={aggregate_confidence(e.confidence):.2f}"
        for e in created
    )
    hyper_rows = "\n".join(f"- **{h.type}**: {len(h.nodes)} nodes (`{h.id}`)" for h in hyperedges)
    return (
        "# Stage 4: Evidence Integration Complete\n\n"
        f"Integrated {len(created)} evidence nodes for {len(hypotheses)} hypotheses.\n\n"
        f"{rows}\n\n## Hyperedges\n\n"
        f"{hyper_rows or 'No complex multi-node relationships identified.'}"
    )


# ---------------------------------------------------------------------------
# Stage 5: Pruning/Merging
# ---------------------------------------------------------------------------


def _normalized(label: str) -> str:
    return " ".join(label.lower().split())


def prune_and_merge(store: GraphStore, threshold: float, detector: KnowledgeGapDetector) -> dict:
    """Deterministic pruning pass. A second run on its own output changes nothing.

    Returns:
        Counts of what was removed, merged and flagged
    """
    edges_pruned = 0
    for edge in store.edges():
        if edge.confidence < threshold and store.remove_edge(edge.id):
            edges_pruned += 1

    nodes_pruned = 0
    for node in store.nodes():
        if node.type not in PROTECTED_TYPES and aggregate_confidence(node.confidence) < threshold:
            removed, _, _ = store.prune_node(node.id)
            nodes_pruned += removed

    merged = 0
    seen: dict[tuple[str, str], str] = {}
    for node in store.get_nodes_by_type("hypothesis"):
        key = (str(node.metadata.get("parent_dimension", "")), _normalized(node.label))
        keep_id = seen.get(key)
        if keep_id is None:
            seen[key] = node.id
            continue
        keep = store.require_node(keep_id)
        criteria = keep.metadata.get("falsification_criteria") or node.metadata.get(
            "falsification_criteria", ""
        )
        store.merge_nodes(keep_id, node.id, {"metadata": {"falsification_criteria": criteria}})
        merged += 1

    orphans = 0
    for node in store.nodes():
        if node.type in ("root", "knowledge") or store.node_degree(node.id) > 0:
            continue
        removed, _, _ = store.prune_node(node.id)
        orphans += removed

    flagged = refresh_information_metrics(store, detector)
    store.refresh_metrics()
    return {
        "edges_pruned": edges_pruned,
        "nodes_pruned": nodes_pruned,
        "nodes_merged": merged,
        "orphans_removed": orphans,
        "gap_candidates": flagged,
    }


async def pruning_merging(ctx: StageContext) -> str:
    store = ctx.store
    outcomes = await ctx.fan_out(
        {
            "5A_prune_merge_reasoning": lambda: ctx.route(
                "5A_prune_merge_reasoning", prompts.prune_merge_reasoning(_graph_summary(store))
            )
        }
    )
    _raise_failures(outcomes)

    # 5B: local graph mutation
    before = store.stats()
    detector = KnowledgeGapDetector()
    counts = prune_and_merge(store, ctx.settings.prune_threshold, detector)
    after = store.stats()
    store.extra["pruning"] = counts

    return (
        "# Stage 5: Pruning/Merging Complete\n\n"
        f"- **Nodes**: {before['node_count']} -> {after['node_count']}\n"
        f"- **Edges**: {before['edge_count']} -> {after['edge_count']}\n"
        f"- **Low-confidence edges removed** (< {ctx.settings.prune_threshold}): "
        f"{counts['edges_pruned']}\n"
        f"- **Low-confidence nodes pruned**: {counts['nodes_pruned']}\n"
        f"- **Duplicate hypotheses merged**: {counts['nodes_merged']}\n"
        f"- **Orphans removed**: {counts['orphans_removed']}\n"
        f"- **Gap candidates flagged**: {counts['gap_candidates']}\n\n"
        + merge_outputs(outcomes, {"5A_prune_merge_reasoning": "Pruning Rationale"})
    )


# ---------------------------------------------------------------------------
# Stage 6: Subgraph Extraction
# ---------------------------------------------------------------------------


def extract_subgraphs(store: GraphStore, min_confidence: float, limit: int) -> list[dict]:
    seeds = [
        n
        for n in store.nodes()
        if n.type in ("hypothesis", "evidence")
        and aggregate_confidence(n.confidence) >= min_confidence
    ]
    seeds.sort(
        key=lambda n: (-aggregate_confidence(n.confidence), -store.node_degree(n.id), n.id)
    )
    subgraphs = []
    for i, seed in enumerate(seeds[:limit]):
        members = [seed.id, *store.neighbors(seed.id)]
        member_set = set(members)
        internal = sum(
            1 for e in store.edges() if e.source in member_set and e.target in member_set
        )
        possible = len(members) * (len(members) - 1) / 2
        subgraphs.append(
            {
                "id": f"subgraph_{i + 1}",
                "seed": seed.id,
                "nodes": members,
                "priority_score": (limit - i) / limit,
                "metrics": {
                    "size": len(members),
                    "internal_edges": internal,
                    "density": internal / possible if possible else 0.0,
                    "mean_confidence": sum(
                        aggregate_confidence(store.require_node(m).confidence) for m in members
                    )
                    / len(members),
                    "complexity": graph_complexity(len(members), internal),
                },
            }
        )
    return subgraphs


async def subgraph_extraction(ctx: StageContext) -> str:
    store = ctx.store
    subgraphs = extract_subgraphs(
        store, ctx.settings.subgraph_min_confidence, ctx.settings.max_subgraphs
    )
    summary = "\n".join(
        f"- {sg['id']} seed={sg['seed']} size={sg['metrics']['size']} "
        f"density={sg['metrics']['density']:.2f}"
        for sg in subgraphs
    )
    outcomes = await ctx.fan_out(
        {
            "6A_subgraph_metrics": lambda: ctx.route(
                "6A_subgraph_metrics", prompts.subgraph_metrics(summary or "(no subgraphs)")
            )
        }
    )
    _raise_failures(outcomes)

    # 6B: emit
    store.subgraphs = subgraphs
    for rank, sg in enumerate(subgraphs, 1):
        store.update_node(sg["seed"], metadata={"subgraph_rank": rank})
    store.refresh_metrics()
    return (
        "# Stage 6: Subgraph Extraction Complete\n\n"
        f"Extracted {len(subgraphs)} high-value subgraphs:\n\n"
        f"{summary or '- (none met the confidence threshold)'}\n\n"
        + merge_outputs(outcomes, {"6A_subgraph_metrics": "Subgraph Metrics"})
    )


# ---------------------------------------------------------------------------
# Stage 7: Composition
# ---------------------------------------------------------------------------


async def composition(ctx: StageContext) -> str:
    store = ctx.store
    root = _root(store)
    seeds = [store.require_node(sg["seed"]) for sg in store.subgraphs if store.has_node(sg["seed"])]
    if not seeds:
        seeds = sorted(
            store.get_nodes_by_type("hypothesis"),
            key=lambda n: (-aggregate_confidence(n.confidence), n.id),
        )[:3]
    findings = [n.label for n in seeds]

    raw = await ctx.route("7_narrative_composition", prompts.composition(ctx.research, findings))
    output, matched = parse_structured(raw, CompositionOutput, CompositionOutput())

    sources = seeds or [root]
    confidence = [
        sum(n.confidence[i] for n in sources) / len(sources) for i in range(4)
    ]
    synthesis_id = _next_id(store, "7")
    store.add_node(
        Node(
            synthesis_id,
            output.title or f"Synthesis: {ctx.research.topic}",
            "synthesis",
            confidence,
            _meta(
                ctx,
                "Narrative composition",
                value=output.summary,
                key_findings=list(output.key_findings) or findings,
                structured_output=matched,
            ),
        )
    )
    for node in sources:
        store.add_edge(
            Edge(
                f"edge_{node.id}_{synthesis_id}",
                node.id,
                synthesis_id,
                "supportive",
                aggregate_confidence(node.confidence),
            )
        )
    store.refresh_metrics()

    key_findings = "\n".join(f"- {f}" for f in (output.key_findings or findings))
    return (
        "# Stage 7: Composition Complete\n\n"
        f"## {output.title or ctx.research.topic}\n\n"
        f"{output.summary or raw.strip()}\n\n### Key Findings\n\n{key_findings}"
    )


# ---------------------------------------------------------------------------
# Stage 8: Reflection
# ---------------------------------------------------------------------------


async def reflection(ctx: StageContext) -> str:
    store = ctx.store
    summary = _graph_summary(store)
    outcomes = await ctx.fan_out(
        {
            "8A_audit_script": lambda: ctx.route("8A_audit_script", prompts.audit_script(summary)),
            "8B_audit_outputs": lambda: ctx.route(
                "8B_audit_outputs", prompts.audit_outputs(summary)
            ),
        }
    )
    _raise_failures(outcomes)

    integrity = store.validate()
    if not integrity["valid"]:
        raise GraphIntegrityError("; ".join(integrity["errors"]))

    falsifiability = FalsifiabilityValidator().validate(store)
    competition = HypothesisCompetitionFramework().analyze(store)
    gaps = KnowledgeGapDetector().analyze(store, materialize=True)

    falsifiable_share = (
        1 - len(falsifiability.missing) / falsifiability.checked if falsifiability.checked else 1.0
    )
    gap_share = 1 - min(1.0, len(gaps.gaps) / max(len(store), 1))
    audit_score = (falsifiable_share + gap_share + 1.0) / 3

    anchor = (store.get_nodes_by_type("synthesis") or [_root(store)])[-1]
    reflection_id = _next_id(store, "8")
    store.add_node(
        Node(
            reflection_id,
            "Reflection Audit",
            "reflection",
            uniform_confidence(audit_score),
            _meta(
                ctx,
                "Reflection audit",
                audit_score=audit_score,
                falsifiability=falsifiability.model_dump(mode="json"),
                competition=competition.model_dump(mode="json"),
                knowledge_gaps=gaps.model_dump(mode="json"),
                integrity=integrity,
            ),
        )
    )
    store.add_edge(
        Edge(f"edge_{anchor.id}_{reflection_id}", anchor.id, reflection_id, "supportive", audit_score)
    )
    store.refresh_metrics()

    winners = "\n".join(
        f"- {group.dimension}: `{group.winner.hypothesis_id}` (score {group.winner.score:.2f})"
        for group in competition.groups
    )
    return (
        "# Stage 8: Reflection Complete\n\n"
        f"- **Audit score**: {audit_score:.2f}\n"
        f"- **Hypotheses checked for falsifiability**: {falsifiability.checked} "
        f"({len(falsifiability.missing)} missing criteria)\n"
        f"- **Competing hypothesis groups**: {len(competition.groups)}\n"
        f"- **Knowledge gaps**: {len(gaps.gaps)} ({len(gaps.created_nodes)} new gap nodes)\n\n"
        + (f"### Leading Hypotheses\n\n{winners}\n\n" if winners else "")
        + merge_outputs(outcomes, {"8A_audit_script": "Audit Script", "8B_audit_outputs": "Audit Findings"})
    )


# ---------------------------------------------------------------------------
# Stage 9: Final Analysis
# ---------------------------------------------------------------------------


async def final_analysis(ctx: StageContext) -> str:
    store = ctx.store
    text = await ctx.route(
        "9_final_analysis", prompts.final_analysis(ctx.research, ctx.prior_results)
    )
    scored = store.get_nodes_by_type("hypothesis") + store.get_nodes_by_type("evidence")
    scored = scored or [_root(store)]
    final_confidence = sum(aggregate_confidence(n.confidence) for n in scored) / len(scored)
    store.extra["final_confidence"] = final_confidence
    store.refresh_metrics()
    return (
        "# Stage 9: Final Analysis Complete\n\n"
        f"**Overall confidence**: {final_confidence:.2f}\n\n{text.strip()}"
    )


# ---------------------------------------------------------------------------
# Stage 10: Report Integration
# ---------------------------------------------------------------------------


async def report_integration(ctx: StageContext) -> str:
    research, prior = ctx.research, ctx.prior_results

    def section(section_id: str) -> Callable[[], Awaitable[str]]:
        return lambda: ctx.route(section_id, prompts.report_section(section_id, research, prior))

    outcomes = await ctx.fan_out({sid: section(sid) for sid in prompts.REPORT_SECTIONS})
    _raise_failures(outcomes)
    return (
        f"# Scientific Report: {research.topic}\n\n"
        + merge_outputs(outcomes, prompts.REPORT_SECTIONS)
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageDefinition:
    index: int
    name: str
    run: Callable[[StageContext], Awaitable[str]]
    substages: tuple[str, ...] = ()
    check: Callable[[GraphStore], None] | None = None


STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(0, STAGE_NAMES[0], initialization, ("1_initialization",)),
    StageDefinition(1, STAGE_NAMES[1], decomposition, ("2_decomposition",), require_topic_in_root),
    StageDefinition(
        2,
        STAGE_NAMES[2],
        hypothesis_planning,
        ("3A_hypothesis_generation", "3B_hypothesis_planning", "3C_micro_service_decision"),
    ),
    StageDefinition(3, STAGE_NAMES[3], evidence_integration, (*EVIDENCE_SUBSTAGES, "4_4_graph_update")),
    StageDefinition(
        4, STAGE_NAMES[4], pruning_merging, ("5A_prune_merge_reasoning", "5B_graph_mutation_persist")
    ),
    StageDefinition(5, STAGE_NAMES[5], subgraph_extraction, ("6A_subgraph_metrics", "6B_subgraph_emit")),
    StageDefinition(6, STAGE_NAMES[6], composition, ("7_narrative_composition",)),
    StageDefinition(7, STAGE_NAMES[7], reflection, ("8A_audit_script", "8B_audit_outputs")),
    StageDefinition(8, STAGE_NAMES[8], final_analysis, ("9_final_analysis",)),
    StageDefinition(9, STAGE_NAMES[9], report_integration, tuple(prompts.REPORT_SECTIONS)),
)
