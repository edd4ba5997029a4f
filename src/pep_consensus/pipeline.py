"""End-to-end consensus run: load runs, bucket, checkpoint the array, reduce, write.

Every failure inside :func:`run_consensus` surfaces as a single
ConsensusExecutionError whose ``cause`` is the original error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .bucketing import BucketingEngine, BucketingResult
from .config import PipelineConfig
from .consensus import ConsensusReducer, ConsensusResult
from .errors import ConsensusExecutionError, InputReadFailure, InvalidConfiguration
from .feature_set import write_consensus_feature_set
from .features import FeatureRecord, FeatureSelector, FeatureSource, as_feature_source, run_id_from_path
from .io_utils import write_json
from .peptide_array import PeptideArray, details_path_for, read_peptide_array, write_peptide_array
from .reporting import StatusReporter, resolve_reporter


@dataclass
class PipelineResult:
    run_ids: List[str]
    output_path: Path
    array_path: Path
    consensus: ConsensusResult
    details_path: Optional[Path] = None
    run_manifest_path: Optional[Path] = None
    n_features: Dict[str, int] = field(default_factory=dict)
    n_buckets: int = 0

    @property
    def n_consensus(self) -> int:
        return len(self.consensus.features)


def default_array_path(out_path: Path) -> Path:
    """``<out stem>.array.tsv`` next to the output, never the output itself."""
    out_path = Path(out_path)
    stem = run_id_from_path(out_path)
    path = out_path.with_name(f"{stem}.array.tsv")
    if path == out_path:
        path = out_path.with_name(f"{stem}.peptides.array.tsv")
    return path


def run_manifest_path_for(out_path: Path) -> Path:
    return Path(out_path).with_suffix(".run_manifest.json")


def _load_runs(
    sources: Sequence[FeatureSource],
    *,
    skip_unreadable_runs: bool,
    reporter: StatusReporter,
) -> List[Tuple[str, List[FeatureRecord]]]:
    runs: List[Tuple[str, List[FeatureRecord]]] = []
    for src in sources:
        reporter.info(f"Loading run {src.run_id}")
        try:
            features = src.load()
        except InputReadFailure as exc:
            if not skip_unreadable_runs:
                raise
            reporter.warning(f"Skipping unreadable run {src.run_id}: {exc}")
            features = []
        runs.append((str(src.run_id), features))
    return runs


def _check_run_ids(sources: Sequence[FeatureSource]) -> None:
    run_ids = [str(s.run_id) for s in sources]
    dupes = sorted({r for r in run_ids if run_ids.count(r) > 1})
    if dupes:
        raise InvalidConfiguration(f"Run ids must be unique; duplicated: {dupes}")
    bad = [r for r in run_ids if not r or "\t" in r or "\n" in r]
    if bad:
        raise InvalidConfiguration(f"Run ids must be non-empty and free of tabs/newlines: {bad!r}")


def build_peptide_array(
    sources: Sequence[Any],
    array_path: Path,
    selector: Optional[FeatureSelector] = None,
    *,
    skip_unreadable_runs: bool = False,
    write_details: bool = True,
    reporter: Optional[StatusReporter] = None,
) -> BucketingResult:
    """Bucket the runs in ``sources`` and write the array checkpoint to ``array_path``."""
    reporter = resolve_reporter(reporter)
    engine = BucketingEngine(selector, reporter)
    srcs = [as_feature_source(s) for s in sources]
    _check_run_ids(srcs)
    runs = _load_runs(srcs, skip_unreadable_runs=skip_unreadable_runs, reporter=reporter)
    result = engine.run(runs)
    write_peptide_array(PeptideArray.from_result(result), array_path, write_details=write_details, reporter=reporter)
    return result


def _run_manifest_payload(result: PipelineResult, cfg: PipelineConfig) -> Dict[str, Any]:
    from . import __version__

    summary = result.consensus.summary
    return {
        "command": "consensus",
        "pep_consensus_version": __version__,
        "run_ids": list(result.run_ids),
        "n_features_per_run": dict(result.n_features),
        "n_buckets": int(summary.n_buckets),
        "n_consensus": int(result.n_consensus),
        "min_runs_threshold": int(summary.threshold),
        "intensity_mode": cfg.consensus.mode_name,
        "selector": cfg.selector.as_dict(),
        "array_path": str(result.array_path),
        "details_path": None if result.details_path is None else str(result.details_path),
        "output_path": str(result.output_path),
        "two_run_correlation": summary.two_run_correlation,
    }


def run_consensus(
    out_path: Path,
    sources: Optional[Sequence[Any]] = None,
    *,
    peptide_array: Optional[Path] = None,
    config: Optional[PipelineConfig] = None,
    array_path: Optional[Path] = None,
    write_run_manifest: bool = True,
    reporter: Optional[StatusReporter] = None,
) -> PipelineResult:
    """
    Build (or reuse) a peptide array and write the consensus feature set.

    Args:
        out_path: consensus feature set to write
        sources: feature sources, paths, or ``(run_id, features)`` pairs
        peptide_array: existing array to reduce instead of bucketing ``sources``
        config: selector, consensus and loading settings
        array_path: where to write the array (default ``<out stem>.array.tsv``)
        write_run_manifest: also write ``<out>.run_manifest.json``

    Returns:
        PipelineResult; an empty consensus set is a valid result
    """
    reporter = resolve_reporter(reporter)
    cfg = config or PipelineConfig()
    out_path = Path(out_path)
    try:
        cfg.validate()
        if (sources is None) == (peptide_array is None):
            raise InvalidConfiguration("Specify feature sources or a peptide array, but not both.")

        if peptide_array is not None:
            array_path = Path(peptide_array)
        elif array_path is not None:
            array_path = Path(array_path)
        else:
            array_path = default_array_path(out_path)
        written = [array_path]
        if sources is not None and cfg.write_details:
            written.append(details_path_for(array_path))
        if any(p.resolve() == out_path.resolve() for p in written):
            raise InvalidConfiguration(f"Consensus output {out_path} would overwrite the peptide array or its details file.")

        n_features: Dict[str, int] = {}
        details_path: Optional[Path] = None
        if sources is not None:
            bucketed = build_peptide_array(
                sources,
                array_path,
                cfg.selector,
                skip_unreadable_runs=cfg.skip_unreadable_runs,
                write_details=cfg.write_details,
                reporter=reporter,
            )
            n_features = dict(bucketed.n_features)
            if cfg.write_details:
                details_path = details_path_for(array_path)

        reporter.info(f"Using peptide array {array_path}")
        array = read_peptide_array(array_path)
        consensus = ConsensusReducer(cfg.consensus, reporter).reduce(array)

        write_consensus_feature_set(
            consensus.features,
            out_path,
            properties={
                "intensity_mode": cfg.consensus.mode_name,
                "min_runs_per_feature": consensus.summary.threshold,
                "source_runs": ",".join(array.run_ids),
                "peptide_array": array_path.name,
            },
            reporter=reporter,
        )

        result = PipelineResult(
            run_ids=list(array.run_ids),
            output_path=out_path,
            array_path=array_path,
            consensus=consensus,
            details_path=details_path,
            n_features=n_features,
            n_buckets=len(array.buckets),
        )
        if write_run_manifest:
            result.run_manifest_path = run_manifest_path_for(out_path)
            write_json(result.run_manifest_path, _run_manifest_payload(result, cfg))
        return result
    except ConsensusExecutionError:
        raise
    except Exception as exc:
        raise ConsensusExecutionError("Consensus run failed", exc) from exc


__all__ = ["PipelineResult", "build_peptide_array", "default_array_path", "run_consensus", "run_manifest_path_for"]
