"""
Bucketing engine: align features from several LC-MS runs into buckets.

Strategy:
1. Filter each run with the FeatureSelector
2. Build a tolerance graph (nodes are features, edges join features of
   different runs within the mass and elution windows)
3. Take connected components (transitive closure)
4. Enforce at most one feature per run inside each component
5. Emit buckets in a stable order (mean mass, mean elution, input order)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np

from .features import FeatureRecord, FeatureSelector
from .reporting import StatusReporter, resolve_reporter


# Relative slack on tolerance windows so decimal boundaries (100.0 vs 100.2 at 0.2) stay inclusive.
BOUNDARY_RTOL = 1e-9


@dataclass(frozen=True)
class Bucket:
    """Features from different runs judged to be the same peptide."""

    bucket_id: int
    members: Tuple[FeatureRecord, ...]

    @property
    def run_count(self) -> int:
        return len(self.members)

    @property
    def run_ids(self) -> Tuple[str, ...]:
        return tuple(m.source_run_id for m in self.members)

    def member_for(self, run_id: str) -> Optional[FeatureRecord]:
        for m in self.members:
            if m.source_run_id == run_id:
                return m
        return None

    @property
    def mean_mass(self) -> float:
        return float(np.mean([m.mass for m in self.members]))

    @property
    def mean_retention_time(self) -> float:
        return float(np.mean([m.retention_time for m in self.members]))

    @property
    def min_mass(self) -> float:
        return min(m.mass for m in self.members)

    @property
    def max_mass(self) -> float:
        return max(m.mass for m in self.members)

    @property
    def min_retention_time(self) -> float:
        return min(m.retention_time for m in self.members)

    @property
    def max_retention_time(self) -> float:
        return max(m.retention_time for m in self.members)


@dataclass
class BucketingResult:
    run_ids: List[str]
    buckets: List[Bucket]
    selector: FeatureSelector
    n_features: Dict[str, int] = field(default_factory=dict)
    n_edges: int = 0

    @property
    def n_runs(self) -> int:
        return len(self.run_ids)

    def rows_with_one_from_each(self) -> int:
        return sum(1 for b in self.buckets if b.run_count == self.n_runs)


@dataclass(frozen=True)
class _Node:
    run_idx: int
    feature: FeatureRecord
    mass: float
    elution: float


def _is_well_formed(feature: object) -> bool:
    if not isinstance(feature, FeatureRecord):
        return False
    return math.isfinite(feature.mass) and math.isfinite(feature.retention_time) and math.isfinite(feature.intensity)


class BucketingEngine:
    """Group features from K runs into buckets of mutually matching features."""

    def __init__(self, selector: Optional[FeatureSelector] = None, reporter: Optional[StatusReporter] = None):
        self.selector = (selector or FeatureSelector()).validate()
        self.reporter = resolve_reporter(reporter)

    def run(self, runs: Sequence[Tuple[str, Optional[Sequence[FeatureRecord]]]]) -> BucketingResult:
        """
        Bucket the features of every run.

        Args:
            runs: ``(run_id, features)`` pairs in run order; ``None`` or an empty
                list is a zero-feature run

        Returns:
            BucketingResult with buckets in emission order (``bucket_id`` 1..N)
        """
        run_ids = [str(run_id) for run_id, _ in runs]
        if len(set(run_ids)) != len(run_ids):
            raise ValueError(f"Run ids must be unique, got {run_ids}.")

        self.reporter.info(f"Filtering features from {len(run_ids)} runs")
        nodes: List[_Node] = []
        n_features: Dict[str, int] = {}
        for run_idx, (run_id, features) in enumerate(runs):
            kept = 0
            for feature in features or []:
                if not _is_well_formed(feature) or not self.selector.accepts(feature):
                    continue
                nodes.append(_Node(run_idx, feature, float(feature.mass), self.selector.elution(feature)))
                kept += 1
            n_features[str(run_id)] = kept
            if kept == 0:
                self.reporter.warning(f"  Run {run_id} has no usable features")
            else:
                self.reporter.debug(f"  Run {run_id}: {kept} features")

        self.reporter.info(f"Bucketing {len(nodes)} features")
        graph = self._build_graph(nodes)

        groups: List[List[int]] = []
        for component in nx.connected_components(graph):
            groups.extend(self._one_per_run(graph, nodes, component))

        def emission_key(group: List[int]) -> Tuple[float, float, int]:
            return (
                float(np.mean([nodes[n].mass for n in group])),
                float(np.mean([nodes[n].elution for n in group])),
                group[0],
            )

        groups.sort(key=emission_key)
        buckets = [
            Bucket(bucket_id=i + 1, members=tuple(nodes[n].feature for n in group))
            for i, group in enumerate(groups)
        ]
        result = BucketingResult(
            run_ids=run_ids,
            buckets=buckets,
            selector=self.selector,
            n_features=n_features,
            n_edges=int(graph.number_of_edges()),
        )
        self.reporter.info(
            f"Found {len(buckets)} buckets ({result.rows_with_one_from_each()} with one feature from each run)"
        )
        return result

    def _build_graph(self, nodes: List[_Node]) -> nx.Graph:
        """Edges join features of different runs within both windows (inclusive)."""
        graph = nx.Graph()
        graph.add_nodes_from(range(len(nodes)))
        if len(nodes) < 2:
            return graph

        mass = np.array([n.mass for n in nodes], dtype=float)
        elution = np.array([n.elution for n in nodes], dtype=float)
        run_idx = np.array([n.run_idx for n in nodes], dtype=int)
        order = np.argsort(mass, kind="mergesort")
        sorted_mass = mass[order]

        sel = self.selector
        rt_window = float(sel.rt_tolerance) * (1.0 + BOUNDARY_RTOL)
        for p, a in enumerate(order):
            window = sel.mass_window(mass[a]) * (1.0 + BOUNDARY_RTOL)
            upper = mass[a] + window
            hi = int(np.searchsorted(sorted_mass, np.nextafter(upper, np.inf), side="right"))
            if hi <= p + 1:
                continue
            cand = order[p + 1 : hi]
            ok = (
                (run_idx[cand] != run_idx[a])
                & (mass[cand] - mass[a] <= window)
                & (np.abs(elution[cand] - elution[a]) <= rt_window)
            )
            for b in cand[ok]:
                if sel.charges_compatible(nodes[a].feature, nodes[int(b)].feature):
                    graph.add_edge(int(a), int(b))
        return graph

    @staticmethod
    def _one_per_run(graph: nx.Graph, nodes: List[_Node], component) -> List[List[int]]:
        """Split a component until every group holds at most one feature per run.

        For a run with several features in the group, the one closest to the group
        centroid (mass first, then elution, then input order) stays; kept and
        displaced features are re-split along their own connected components.
        """
        done: List[List[int]] = []
        pending: List[List[int]] = [sorted(component)]
        while pending:
            group = pending.pop()
            for comp in nx.connected_components(graph.subgraph(group)):
                comp = sorted(comp)
                by_run: Dict[int, List[int]] = {}
                for n in comp:
                    by_run.setdefault(nodes[n].run_idx, []).append(n)
                if all(len(v) == 1 for v in by_run.values()):
                    done.append(comp)
                    continue

                c_mass = float(np.mean([nodes[n].mass for n in comp]))
                c_elution = float(np.mean([nodes[n].elution for n in comp]))
                keep: List[int] = []
                displaced: List[int] = []
                for r in sorted(by_run):
                    best = min(
                        by_run[r],
                        key=lambda n: (abs(nodes[n].mass - c_mass), abs(nodes[n].elution - c_elution), n),
                    )
                    keep.append(best)
                    displaced.extend(n for n in by_run[r] if n != best)
                pending.append(sorted(keep))
                pending.append(sorted(displaced))
        return done


def bucket_features(
    runs: Sequence[Tuple[str, Optional[Sequence[FeatureRecord]]]],
    selector: Optional[FeatureSelector] = None,
    reporter: Optional[StatusReporter] = None,
) -> BucketingResult:
    """Convenience wrapper around :class:`BucketingEngine`."""
    return BucketingEngine(selector, reporter).run(runs)


__all__ = ["Bucket", "BucketingEngine", "BucketingResult", "bucket_features"]
