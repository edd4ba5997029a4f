"""Peptide array: the tab-separated checkpoint between bucketing and consensus.

Layout::

    # Runs:<TAB>run_1<TAB>run_2 ...
    # Params: --mass_tolerance=0.2 ...
    id  minMass  maxMass  minTime  maxTime  featureCount  setCount  mass_<run>  time_<run>  ...

One row per bucket in emission order, one column group per run. Floats are
written with round-trip precision so a written array reads back to the same
buckets. The details sidecar (``<name>.details.<ext>``) holds one row per bucket
with a readable summary of every contributing feature and is never read back.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from .bucketing import Bucket, BucketingResult
from .errors import InputReadFailure
from .features import FeatureRecord
from .io_utils import atomic_output, format_float, format_int
from .reporting import StatusReporter, resolve_reporter


RUNS_HEADER = "# Runs:"
PARAMS_HEADER = "# Params:"
BASE_COLUMNS = ["id", "minMass", "maxMass", "minTime", "maxTime", "featureCount", "setCount"]
RUN_FIELDS = ["mass", "time", "charge", "intensity", "scan", "mz", "peptide"]


@dataclass
class PeptideArray:
    run_ids: List[str]
    buckets: List[Bucket]
    params: str = ""

    @property
    def n_runs(self) -> int:
        return len(self.run_ids)

    @classmethod
    def from_result(cls, result: BucketingResult) -> "PeptideArray":
        return cls(run_ids=list(result.run_ids), buckets=list(result.buckets), params=result.selector.describe())


def details_path_for(array_path: Path) -> Path:
    """``x.array.tsv`` -> ``x.array.details.tsv``; ``x`` -> ``x.details.tsv``."""
    array_path = Path(array_path)
    name = array_path.name
    dot = name.rfind(".")
    if dot <= 0:
        return array_path.with_name(name + ".details.tsv")
    return array_path.with_name(name[:dot] + ".details" + name[dot:])


def _run_columns(run_id: str) -> List[str]:
    return [f"{field}_{run_id}" for field in RUN_FIELDS]


def array_columns(run_ids: Sequence[str]) -> List[str]:
    cols = list(BASE_COLUMNS)
    for run_id in run_ids:
        cols.extend(_run_columns(run_id))
    return cols


def _feature_cells(feature: Optional[FeatureRecord]) -> List[str]:
    if feature is None:
        return [""] * len(RUN_FIELDS)
    return [
        format_float(feature.mass),
        format_float(feature.retention_time),
        format_int(feature.charge),
        format_float(feature.intensity),
        format_int(feature.scan),
        format_float(feature.mz),
        feature.peptide or "",
    ]


def _feature_summary(feature: FeatureRecord) -> str:
    parts = [
        f"mass={format_float(feature.mass)}",
        f"time={format_float(feature.retention_time)}",
        f"charge={format_int(feature.charge)}",
        f"intensity={format_float(feature.intensity)}",
    ]
    if feature.scan is not None:
        parts.append(f"scan={feature.scan}")
    if feature.mz is not None:
        parts.append(f"mz={format_float(feature.mz)}")
    if feature.peptide:
        parts.append(f"peptide={feature.peptide}")
    return ";".join(parts)


def _header_lines(array: PeptideArray) -> List[str]:
    return ["\t".join([RUNS_HEADER] + list(array.run_ids)), f"{PARAMS_HEADER} {array.params}".rstrip()]


def array_frame(array: PeptideArray) -> pd.DataFrame:
    rows = []
    for bucket in array.buckets:
        row = [
            str(bucket.bucket_id),
            format_float(bucket.min_mass),
            format_float(bucket.max_mass),
            format_float(bucket.min_retention_time),
            format_float(bucket.max_retention_time),
            str(bucket.run_count),
            str(len(set(bucket.run_ids))),
        ]
        for run_id in array.run_ids:
            row.extend(_feature_cells(bucket.member_for(run_id)))
        rows.append(row)
    return pd.DataFrame(rows, columns=array_columns(array.run_ids), dtype=object)


def details_frame(array: PeptideArray) -> pd.DataFrame:
    rows = []
    for bucket in array.buckets:
        row = [str(bucket.bucket_id), str(bucket.run_count)]
        for run_id in array.run_ids:
            member = bucket.member_for(run_id)
            row.append("" if member is None else _feature_summary(member))
        rows.append(row)
    return pd.DataFrame(rows, columns=["id", "setCount"] + list(array.run_ids), dtype=object)


def _write_table(path: Path, header: List[str], frame: pd.DataFrame) -> None:
    with atomic_output(path) as handle:
        for line in header:
            handle.write(line + "\n")
        frame.to_csv(handle, sep="\t", index=False, lineterminator="\n")


def write_peptide_array(
    array: PeptideArray,
    path: Path,
    *,
    write_details: bool = True,
    reporter: Optional[StatusReporter] = None,
) -> Tuple[Path, Optional[Path]]:
    """Write the array (and its details sidecar) atomically, replacing old files.

    Returns:
        (array_path, details_path or None)
    """
    reporter = resolve_reporter(reporter)
    path = Path(path)
    header = _header_lines(array)
    details_path = details_path_for(path) if write_details else None
    if details_path is not None:
        _write_table(details_path, header, details_frame(array))
    _write_table(path, header, array_frame(array))
    reporter.info(
        f"Peptide array complete. See {path}" + ("" if details_path is None else f" and {details_path}")
    )
    return path, details_path


def _parse_row(row: pd.Series, run_ids: Sequence[str]) -> Bucket:
    if any(not isinstance(v, str) for v in row.to_numpy()):
        raise ValueError(f"row {row.get('id')!r} has missing fields")
    members: List[FeatureRecord] = []
    for run_id in run_ids:
        mass, time, charge, intensity, scan, mz, peptide = (row[c] for c in _run_columns(run_id))
        if mass == "":
            continue
        members.append(
            FeatureRecord(
                mass=float(mass),
                retention_time=float(time),
                charge=int(charge) if charge != "" else None,
                intensity=float(intensity),
                source_run_id=run_id,
                scan=int(scan) if scan != "" else None,
                mz=float(mz) if mz != "" else None,
                peptide=peptide or None,
            )
        )
    bucket = Bucket(bucket_id=int(row["id"]), members=tuple(members))
    if int(row["setCount"]) != bucket.run_count:
        raise ValueError(f"row {bucket.bucket_id} lists setCount={row['setCount']} but has {bucket.run_count} features")
    return bucket


def read_peptide_array(path: Path) -> PeptideArray:
    """Read an array written by :func:`write_peptide_array`."""
    path = Path(path)
    if not path.exists():
        raise InputReadFailure(f"peptide array not found: {path}", path=path)

    run_ids: Optional[List[str]] = None
    params = ""
    n_header = 0
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                if not line.startswith("#"):
                    break
                n_header += 1
                line = line.rstrip("\n")
                if line.startswith(RUNS_HEADER):
                    run_ids = [r for r in line.split("\t")[1:] if r]
                elif line.startswith(PARAMS_HEADER):
                    params = line[len(PARAMS_HEADER):].strip()
        if run_ids is None:
            raise InputReadFailure(f"{path} is not a peptide array (missing '{RUNS_HEADER}' header)", path=path)
        frame = pd.read_csv(path, sep="\t", skiprows=n_header, dtype=str, keep_default_na=False)
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise InputReadFailure(f"could not read peptide array {path}: {exc}", path=path) from exc

    expected = array_columns(run_ids)
    if list(frame.columns) != expected:
        raise InputReadFailure(f"{path} has an unexpected column layout", path=path)

    try:
        buckets = [_parse_row(row, run_ids) for _, row in frame.iterrows()]
    except (TypeError, ValueError) as exc:
        raise InputReadFailure(f"{path} is corrupt or truncated: {exc}", path=path) from exc
    return PeptideArray(run_ids=run_ids, buckets=buckets, params=params)


__all__ = [
    "PeptideArray",
    "array_columns",
    "details_path_for",
    "read_peptide_array",
    "write_peptide_array",
]
