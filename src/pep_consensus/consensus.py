"""
Consensus reducer: turn buckets into one consensus feature per well-supported bucket.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .bucketing import Bucket, BucketingResult
from .errors import InvalidConfiguration
from .features import FeatureRecord
from .peptide_array import PeptideArray
from .reporting import StatusReporter, resolve_reporter


class IntensityMode(str, Enum):
    MEAN = "mean"
    MEDIAN = "median"
    SUM = "sum"
    MAX = "max"
    FIRST = "first"


def _first_eluting(members: Sequence[FeatureRecord]) -> float:
    # min() keeps the earliest run on ties
    return float(min(members, key=lambda m: m.retention_time).intensity)


IntensityAggregator = Callable[[Sequence[FeatureRecord]], float]

INTENSITY_AGGREGATORS: Dict[str, IntensityAggregator] = {
    IntensityMode.MEAN.value: lambda ms: float(np.mean([m.intensity for m in ms])),
    IntensityMode.MEDIAN.value: lambda ms: float(np.median([m.intensity for m in ms])),
    IntensityMode.SUM.value: lambda ms: float(np.sum([m.intensity for m in ms])),
    IntensityMode.MAX.value: lambda ms: float(np.max([m.intensity for m in ms])),
    IntensityMode.FIRST.value: _first_eluting,
}


def register_intensity_mode(name: str, aggregator: IntensityAggregator) -> None:
    """Make ``name`` usable as an intensity mode."""
    INTENSITY_AGGREGATORS[str(name).lower()] = aggregator


def _mode_name(mode: Union[IntensityMode, str]) -> str:
    return mode.value if isinstance(mode, IntensityMode) else str(mode).lower().strip()


@dataclass(frozen=True)
class ConsensusConfig:
    min_runs_per_feature: int = 2
    min_run_fraction: Optional[float] = None
    intensity_mode: Union[IntensityMode, str] = IntensityMode.MEAN
    require_same_peptide: bool = False
    allow_negative_scan_and_time: bool = False

    def validate(self) -> "ConsensusConfig":
        if isinstance(self.min_runs_per_feature, bool) or not isinstance(self.min_runs_per_feature, (int, np.integer)):
            raise InvalidConfiguration(f"min_runs_per_feature must be an integer, got {self.min_runs_per_feature!r}.")
        if int(self.min_runs_per_feature) <= 0:
            raise InvalidConfiguration(f"min_runs_per_feature must be >= 1, got {self.min_runs_per_feature}.")
        if self.min_run_fraction is not None:
            if isinstance(self.min_run_fraction, bool) or not isinstance(self.min_run_fraction, (int, float, np.number)):
                raise InvalidConfiguration(f"min_run_fraction must be a number, got {self.min_run_fraction!r}.")
            frac = float(self.min_run_fraction)
            if not (math.isfinite(frac) and 0.0 < frac <= 1.0):
                raise InvalidConfiguration(f"min_run_fraction must be in (0, 1], got {self.min_run_fraction!r}.")
        if _mode_name(self.intensity_mode) not in INTENSITY_AGGREGATORS:
            raise InvalidConfiguration(
                f"Unknown intensity mode {self.intensity_mode!r}; expected one of {sorted(INTENSITY_AGGREGATORS)}."
            )
        return self

    @property
    def mode_name(self) -> str:
        return _mode_name(self.intensity_mode)

    def threshold(self, n_runs: int) -> int:
        """Minimum run support for ``n_runs`` input runs (zero-feature runs included)."""
        threshold = int(self.min_runs_per_feature)
        if self.min_run_fraction is not None:
            threshold = max(threshold, int(math.ceil(float(self.min_run_fraction) * int(n_runs) - 1e-9)))
        return threshold


@dataclass(frozen=True)
class ConsensusFeature:
    bucket_id: int
    mass: float
    retention_time: float
    charge: Optional[int]
    intensity: float
    support_count: int
    scan: Optional[int] = None
    peptide: Optional[str] = None
    run_ids: Tuple[str, ...] = ()


@dataclass
class ConsensusSummary:
    n_runs: int
    n_buckets: int
    threshold: int
    n_consensus: int = 0
    n_peptide_conflicts: int = 0
    two_run_correlation: Optional[float] = None
    two_run_mean_cv: Optional[float] = None
    two_run_median_cv: Optional[float] = None


@dataclass
class ConsensusResult:
    features: List[ConsensusFeature]
    summary: ConsensusSummary
    run_ids: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.features


def _consensus_charge(members: Sequence[FeatureRecord]) -> Optional[int]:
    counts = Counter(m.charge for m in members if m.charge is not None)
    if not counts:
        return None
    top = max(counts.values())
    return min(c for c, n in counts.items() if n == top)


def _consensus_peptide(members: Sequence[FeatureRecord]) -> Optional[str]:
    with_peptide = [m for m in members if m.peptide]
    if not with_peptide:
        return None
    return max(with_peptide, key=lambda m: m.intensity).peptide


def _coefficient_of_variation(values: Sequence[float]) -> Optional[float]:
    mean = float(np.mean(values))
    if mean == 0.0:
        return None
    return float(np.std(values, ddof=1) / mean)


class ConsensusReducer:
    """Filter buckets by run support and aggregate each survivor into one feature."""

    def __init__(self, config: Optional[ConsensusConfig] = None, reporter: Optional[StatusReporter] = None):
        self.config = (config or ConsensusConfig()).validate()
        self.reporter = resolve_reporter(reporter)
        self._aggregate = INTENSITY_AGGREGATORS[self.config.mode_name]

    def reduce(
        self,
        buckets: Union[PeptideArray, BucketingResult, Sequence[Bucket]],
        n_runs: Optional[int] = None,
    ) -> ConsensusResult:
        """
        Args:
            buckets: array, bucketing result, or buckets in emission order
            n_runs: total input runs; taken from the array/result when omitted,
                otherwise the number of distinct runs seen in the buckets
        """
        run_ids: List[str] = []
        if isinstance(buckets, (PeptideArray, BucketingResult)):
            run_ids = list(buckets.run_ids)
            bucket_list = list(buckets.buckets)
        else:
            bucket_list = list(buckets)
            seen: Dict[str, None] = {}
            for b in bucket_list:
                for r in b.run_ids:
                    seen.setdefault(r, None)
            run_ids = list(seen)
        if n_runs is None:
            n_runs = len(run_ids)

        threshold = self.config.threshold(n_runs)
        summary = ConsensusSummary(n_runs=int(n_runs), n_buckets=len(bucket_list), threshold=threshold)
        self.reporter.info(
            f"Building consensus from {len(bucket_list)} buckets (min runs per feature: {threshold}, "
            f"intensity mode: {self.config.mode_name})"
        )

        if self.config.require_same_peptide and not any(m.peptide for b in bucket_list for m in b.members):
            self.reporter.warning("require_same_peptide is set but no feature carries a peptide; no buckets are filtered")

        features: List[ConsensusFeature] = []
        pairs: List[Tuple[float, float]] = []
        for bucket in bucket_list:
            if bucket.run_count < threshold:
                continue
            feature = self._reduce_bucket(bucket)
            if feature is None:
                summary.n_peptide_conflicts += 1
                continue
            features.append(feature)
            if n_runs == 2 and bucket.run_count == 2:
                pairs.append((bucket.members[0].intensity, bucket.members[1].intensity))

        summary.n_consensus = len(features)
        if pairs:
            self._two_run_stats(pairs, summary)
        if summary.n_peptide_conflicts:
            self.reporter.info(f"Skipped {summary.n_peptide_conflicts} buckets with conflicting peptides")
        self.reporter.info(f"Created consensus feature set with {len(features)} features")
        return ConsensusResult(features=features, summary=summary, run_ids=run_ids)

    def _reduce_bucket(self, bucket: Bucket) -> Optional[ConsensusFeature]:
        members = bucket.members
        if self.config.require_same_peptide:
            peptides = {m.peptide for m in members if m.peptide}
            if len(peptides) > 1:
                self.reporter.debug(f"SKIPPING bucket {bucket.bucket_id}: {len(peptides)} distinct peptides")
                return None

        rt = float(np.mean([m.retention_time for m in members]))
        scans = [m.scan for m in members if m.scan is not None]
        scan = int(round(float(np.mean(scans)))) if scans else None
        if not self.config.allow_negative_scan_and_time:
            rt = max(rt, 0.0)
            if scan is not None:
                scan = max(scan, 1)

        return ConsensusFeature(
            bucket_id=bucket.bucket_id,
            mass=float(np.mean([m.mass for m in members])),
            retention_time=rt,
            charge=_consensus_charge(members),
            intensity=self._aggregate(members),
            support_count=bucket.run_count,
            scan=scan,
            peptide=_consensus_peptide(members),
            run_ids=bucket.run_ids,
        )

    def _two_run_stats(self, pairs: List[Tuple[float, float]], summary: ConsensusSummary) -> None:
        x = np.array([p[0] for p in pairs], dtype=float)
        y = np.array([p[1] for p in pairs], dtype=float)
        if len(pairs) >= 2 and np.std(x) > 0 and np.std(y) > 0:
            summary.two_run_correlation = float(np.corrcoef(x, y)[0, 1])
        cvs = [cv for cv in (_coefficient_of_variation(p) for p in pairs) if cv is not None]
        if cvs:
            summary.two_run_mean_cv = float(np.mean(cvs))
            summary.two_run_median_cv = float(np.median(cvs))
        corr = "n/a" if summary.two_run_correlation is None else f"{summary.two_run_correlation:.4f}"
        mean_cv = "n/a" if summary.two_run_mean_cv is None else f"{summary.two_run_mean_cv:.4f}"
        median_cv = "n/a" if summary.two_run_median_cv is None else f"{summary.two_run_median_cv:.4f}"
        self.reporter.info(f"2-run feature intensity correlation: {corr}, Mean CV: {mean_cv}, Median CV: {median_cv}")


def reduce_buckets(
    buckets: Union[PeptideArray, BucketingResult, Sequence[Bucket]],
    config: Optional[ConsensusConfig] = None,
    *,
    n_runs: Optional[int] = None,
    reporter: Optional[StatusReporter] = None,
) -> List[ConsensusFeature]:
    """Consensus features for ``buckets`` in bucket order."""
    return ConsensusReducer(config, reporter).reduce(buckets, n_runs=n_runs).features


__all__ = [
    "ConsensusConfig",
    "ConsensusFeature",
    "ConsensusReducer",
    "ConsensusResult",
    "ConsensusSummary",
    "INTENSITY_AGGREGATORS",
    "IntensityMode",
    "reduce_buckets",
    "register_intensity_mode",
]
