from __future__ import annotations

from collections.abc import Sequence

from tissue_migrate.models.graph import GraphNode

"""Identity matcher for derived nodes.

Pairs newly derived nodes with already-persisted nodes of the same lineage so
that a re-run updates the existing object instead of creating a duplicate.

The pairing is greedy and deterministic: new nodes are taken in input order
and each takes the first still-unmatched existing node that shares its lineage
root and has an equal lineage signature. Signature equality already splits the
candidates into classes in which any pairing is as good as another, so no
global optimization is attempted. Keep the first-match tie-break; callers rely
on arrival order.
"""

__all__ = [
    "lineage_match",
    "match",
]


def lineage_match(new: GraphNode, existing: GraphNode) -> bool:
    """Whether two nodes have comparable lineages with equal signatures."""
    if new.lineage is None or existing.lineage is None:
        return False
    if new.class_name != existing.class_name:
        return False
    return new.lineage.comparable(existing.lineage) and new.lineage.signature == existing.lineage.signature


def match(new: Sequence[GraphNode], existing: Sequence[GraphNode]) -> list[tuple[GraphNode, GraphNode]]:
    """Return (new, existing) pairs; each node appears in at most one pair. O(n·m)."""
    pairs: list[tuple[GraphNode, GraphNode]] = []
    available = list(existing)
    for n in new:
        for i, e in enumerate(available):
            if lineage_match(n, e):
                pairs.append((n, e))
                del available[i]
                break
    return pairs
