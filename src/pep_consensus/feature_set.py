"""Writer for consensus feature sets.

The file starts with sorted ``# key=value`` property lines (``feature_count``
always equals the number of rows), followed by a fixed header and one row per
consensus feature::

    id  mass  time  charge  intensity  supportCount  scan  peptide  runs
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from .consensus import ConsensusFeature
from .io_utils import atomic_output, format_float, format_int
from .reporting import StatusReporter, resolve_reporter


FEATURE_SET_COLUMNS = ["id", "mass", "time", "charge", "intensity", "supportCount", "scan", "peptide", "runs"]


def _feature_row(feature: ConsensusFeature) -> str:
    cells = [
        str(feature.bucket_id),
        format_float(feature.mass),
        format_float(feature.retention_time),
        format_int(feature.charge),
        format_float(feature.intensity),
        str(feature.support_count),
        format_int(feature.scan),
        feature.peptide or "",
        ",".join(feature.run_ids),
    ]
    return "\t".join(cells)


def write_consensus_feature_set(
    features: Sequence[ConsensusFeature],
    path: Path,
    *,
    properties: Optional[Mapping[str, Any]] = None,
    reporter: Optional[StatusReporter] = None,
) -> Path:
    """Write ``features`` to ``path`` (atomically) and report the count.

    ``properties`` are extra header entries; ``feature_count`` cannot be overridden.
    """
    reporter = resolve_reporter(reporter)
    path = Path(path)
    props: Dict[str, str] = {str(k): str(v) for k, v in (properties or {}).items()}
    props["feature_count"] = str(len(features))

    with atomic_output(path) as handle:
        for key in sorted(props):
            value = props[key].replace("\n", " ")
            handle.write(f"# {key}={value}\n")
        handle.write("\t".join(FEATURE_SET_COLUMNS) + "\n")
        for feature in features:
            handle.write(_feature_row(feature) + "\n")

    reporter.info(f"wrote {path} with {len(features)} consensus features")
    return path


__all__ = ["FEATURE_SET_COLUMNS", "write_consensus_feature_set"]
