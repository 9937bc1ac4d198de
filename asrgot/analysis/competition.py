"""Hypothesis competition.

Two hypotheses compete (are mutually exclusive) when they share a parent
dimension and a ``contradictory`` edge connects them. Competing hypotheses
form groups (connected components of that relation). Within each group,
hypotheses are ranked by a composite score that favours predictive power and
simplicity.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from asrgot.engine.graph import GraphStore, Node
from asrgot.engine.information_theory import structural_complexity

CRITERIA_WEIGHTS = {
    "predictive_power": 0.35,
    "simplicity": 0.25,
    "empirical_support": 0.2,
    "theoretical_coherence": 0.1,
    "falsifiability": 0.1,
}

STRENGTH_THRESHOLD = 0.7
WEAKNESS_THRESHOLD = 0.3


class HypothesisScore(BaseModel):
    hypothesis_id: str
    label: str
    score: float
    criteria: dict[str, float]
    complexity: float
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)


class CompetitionGroup(BaseModel):
    dimension: str
    ranking: list[HypothesisScore]

    @property
    def winner(self) -> HypothesisScore:
        return self.ranking[0]


class CompetitionResult(BaseModel):
    exclusive_pairs: list[tuple[str, str]] = Field(default_factory=list)
    groups: list[CompetitionGroup] = Field(default_factory=list)
    scores: list[HypothesisScore] = Field(default_factory=list)


class HypothesisCompetitionFramework:
    """Identifies mutually exclusive hypotheses and ranks them."""

    def __init__(self, weights: dict[str, float] | None = None) -> None:
        self.weights = weights or dict(CRITERIA_WEIGHTS)

    def exclusive_pairs(self, store: GraphStore) -> list[tuple[str, str]]:
        """Sorted pairs (a < b) of mutually exclusive hypotheses."""
        hypotheses = {n.id: n for n in store.get_nodes_by_type("hypothesis")}
        pairs: set[tuple[str, str]] = set()
        for edge in store.edges():
            if edge.type != "contradictory":
                continue
            a, b = hypotheses.get(edge.source), hypotheses.get(edge.target)
            if a is None or b is None or a.id == b.id:
                continue
            parent = a.metadata.get("parent_dimension")
            if parent and parent == b.metadata.get("parent_dimension"):
                pairs.add(tuple(sorted((a.id, b.id))))
        return sorted(pairs)

    def score(self, store: GraphStore, node: Node) -> HypothesisScore:
        empirical, theoretical, rigor, consensus = node.confidence
        complexity = structural_complexity(len(node.confidence), store.node_degree(node.id))
        falsifiable = bool(str(node.metadata.get("falsification_criteria") or "").strip())
        criteria = {
            "predictive_power": (empirical + rigor + consensus) / 3,
            # Minimum complexity is log2(4) = 2 for an unconnected node
            "simplicity": min(1.0, 2.0 / complexity),
            "empirical_support": empirical,
            "theoretical_coherence": theoretical,
            "falsifiability": 1.0 if falsifiable else 0.0,
        }
        total_weight = sum(self.weights.values())
        score = sum(criteria[name] * weight for name, weight in self.weights.items()) / total_weight
        return HypothesisScore(
            hypothesis_id=node.id,
            label=node.label,
            score=round(score, 6),
            criteria=criteria,
            complexity=complexity,
            strengths=[name for name, value in criteria.items() if value >= STRENGTH_THRESHOLD],
            weaknesses=[name for name, value in criteria.items() if value <= WEAKNESS_THRESHOLD],
        )

    def rank(self, store: GraphStore, hypothesis_ids: list[str]) -> list[HypothesisScore]:
        scores = [self.score(store, store.require_node(hid)) for hid in hypothesis_ids]
        return sorted(scores, key=lambda s: (-s.score, s.hypothesis_id))

    def analyze(self, store: GraphStore) -> CompetitionResult:
        pairs = self.exclusive_pairs(store)

        # Union-find over the exclusivity relation
        parent: dict[str, str] = {}

        def find(x: str) -> str:
            parent.setdefault(x, x)
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for a, b in pairs:
            ra, rb = find(a), find(b)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)

        members: dict[str, list[str]] = {}
        for node_id in sorted(parent):
            members.setdefault(find(node_id), []).append(node_id)

        groups = []
        for root in sorted(members):
            ranking = self.rank(store, members[root])
            dimension = store.require_node(root).metadata.get("parent_dimension", "")
            groups.append(CompetitionGroup(dimension=dimension, ranking=ranking))

        all_ids = [n.id for n in store.get_nodes_by_type("hypothesis")]
        return CompetitionResult(
            exclusive_pairs=pairs,
            groups=groups,
            scores=self.rank(store, all_ids),
        )
