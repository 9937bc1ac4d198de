"""Relationship analysis: temporal classification, causal edge typing and
hyperedge construction for the Evidence Integration stage."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from asrgot.engine.confidence import aggregate_confidence
from asrgot.engine.graph import Hyperedge, Node

SEQUENTIAL_WINDOW = timedelta(minutes=5)
DELAYED_AFTER = timedelta(weeks=1)

COMPLEX_RELATIONSHIP_MIN_CONFIDENCE = 0.8


class CausalAssessment(BaseModel):
    """Causal reading of a hypothesis/evidence pair.

    ``relationship`` defaults to "none", in which case the edge stays
    supportive (or contradictory).
    """

    relationship: Literal["direct", "counterfactual", "confounded", "none"] = "none"
    confounders: list[str] = Field(default_factory=list)
    mechanisms: list[str] = Field(default_factory=list)
    counterfactuals: list[str] = Field(default_factory=list)

    def edge_type(self) -> str | None:
        if self.relationship == "none":
            return None
        return f"causal_{self.relationship}"

    def as_metadata(self) -> dict[str, Any]:
        return {
            "relationship": self.relationship,
            "confounders": list(self.confounders),
            "mechanisms": list(self.mechanisms),
            "counterfactuals": list(self.counterfactuals),
        }


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
    else:
        parsed = datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def classify_temporal(delta: timedelta) -> str:
    """Temporal edge type for a target observed ``delta`` after its source."""
    if abs(delta) < SEQUENTIAL_WINDOW:
        return "temporal_sequential"
    if delta > timedelta(0):
        return "temporal_delayed" if delta > DELAYED_AFTER else "temporal_precedence"
    return "temporal_cyclic"


def temporal_confidence(delta: timedelta) -> float:
    """Confidence in a temporal link decays with the gap between the nodes."""
    gap = abs(delta)
    if gap < timedelta(hours=1):
        return 0.9
    if gap < timedelta(days=1):
        return 0.8
    if gap < timedelta(weeks=1):
        return 0.7
    if gap < timedelta(days=30):
        return 0.6
    return 0.5


def temporal_patterns(source: Node, target: Node) -> list[str]:
    patterns = []
    if source.type == target.type:
        patterns.append("same_type_connection")
    if source.type == "dimension" and target.type == "hypothesis":
        patterns.append("hierarchical_flow")
    if source.type == "hypothesis" and target.type == "evidence":
        patterns.append("evidence_support_flow")
    if target.type == "synthesis":
        patterns.append("synthesis_convergence")
    return patterns


def analyze_temporal(source: Node, target: Node) -> dict[str, Any]:
    """Temporal metadata for a ``source`` -> ``target`` link.

    Returns:
        Dict with ``type`` (temporal edge type), ``patterns``, ``precedence``
        ("forward"/"backward") and ``confidence``
    """
    delta = _parse_timestamp(target.metadata.get("timestamp")) - _parse_timestamp(
        source.metadata.get("timestamp")
    )
    return {
        "type": classify_temporal(delta),
        "patterns": temporal_patterns(source, target),
        "precedence": "forward" if delta >= timedelta(0) else "backward",
        "time_difference_hours": delta.total_seconds() / 3600,
        "confidence": temporal_confidence(delta),
    }


def evidence_edge_type(contradicts: bool, causal: CausalAssessment) -> str:
    """Contradiction wins, then an explicit causal reading, else supportive."""
    if contradicts:
        return "contradictory"
    return causal.edge_type() or "supportive"


def tag_slug(tag: str) -> str:
    """``"Marine  Biology"`` -> ``"marine_biology"``."""
    return "_".join(tag.lower().split())


def build_hyperedges(
    hypotheses: Sequence[Node],
    evidence: Sequence[Node],
    evidence_by_hypothesis: dict[str, list[str]],
    existing_ids: set[str] | frozenset[str] = frozenset(),
) -> list[Hyperedge]:
    """Hyperedges for multi-way relationships among hypotheses and evidence.

    - ``interdisciplinary``: evidence sharing a disciplinary tag (2+ nodes)
    - ``multi_causal``: a hypothesis together with 2+ evidence nodes
    - ``complex_relationship``: 3+ evidence nodes whose mean aggregate
      confidence exceeds 0.8

    Ids are derived from content, so rebuilding on the same input yields the
    same ids; ids in ``existing_ids`` are skipped.
    """
    result: list[Hyperedge] = []

    # Tags differing only in case or spacing share one slug and one hyperedge
    by_tag: dict[str, list[str]] = {}
    tag_names: dict[str, str] = {}
    for node in evidence:
        for tag in node.metadata.get("disciplinary_tags", []):
            slug = tag_slug(tag)
            if not slug:
                continue
            tag_names.setdefault(slug, tag.strip())
            members = by_tag.setdefault(slug, [])
            if node.id not in members:
                members.append(node.id)
    for slug in sorted(by_tag):
        members = by_tag[slug]
        tag = tag_names[slug]
        if len(members) >= 2:
            result.append(
                Hyperedge(
                    f"hyper_interdisciplinary_{slug}",
                    members,
                    "interdisciplinary",
                    0.7,
                    {
                        "source_description": f"Interdisciplinary connection in {tag}",
                        "disciplinary_tags": [tag],
                    },
                )
            )

    evidence_lookup = {node.id: node for node in evidence}
    for hypothesis in hypotheses:
        evidence_ids = [
            eid for eid in evidence_by_hypothesis.get(hypothesis.id, []) if eid in evidence_lookup
        ]
        if len(evidence_ids) >= 2:
            confidence = sum(
                aggregate_confidence(evidence_lookup[eid].confidence) for eid in evidence_ids
            ) / len(evidence_ids)
            result.append(
                Hyperedge(
                    f"hyper_multi_causal_{hypothesis.id}",
                    [hypothesis.id, *evidence_ids],
                    "multi_causal",
                    round(confidence, 6),
                    {"source_description": f"Multiple evidence lines for {hypothesis.label}"},
                )
            )

    if len(evidence) >= 3:
        mean = sum(aggregate_confidence(node.confidence) for node in evidence) / len(evidence)
    else:
        mean = 0.0
    if mean > COMPLEX_RELATIONSHIP_MIN_CONFIDENCE:
        result.append(
            Hyperedge(
                "hyper_complex_relationship",
                [node.id for node in evidence],
                "complex_relationship",
                round(mean, 6),
                {"source_description": "High-confidence evidence cluster"},
            )
        )

    return [hyperedge for hyperedge in result if hyperedge.id not in existing_ids]
