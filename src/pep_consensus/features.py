"""Feature records, the feature selector and per-run feature sources."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

import numpy as np
import pandas as pd

from .errors import InputReadFailure, InvalidConfiguration


PROTON_MASS = 1.007276466812

MASS_TOLERANCE_TYPES = ("da", "ppm")
ELUTION_MODES = ("time", "scan")

# Lower-cased input column name -> canonical column.
COLUMN_ALIASES: Dict[str, str] = {
    "mass": "mass",
    "monoisotopic_mass": "mass",
    "neutral_mass": "mass",
    "mz": "mz",
    "m/z": "mz",
    "time": "time",
    "rt": "time",
    "retention_time": "time",
    "retentiontime": "time",
    "scan": "scan",
    "charge": "charge",
    "z": "charge",
    "intensity": "intensity",
    "peptide": "peptide",
    "sequence": "peptide",
}


def ppm_diff(mass1: float, mass2: float) -> float:
    """PPM difference of ``mass2`` relative to ``mass1``."""
    return abs(mass1 - mass2) / mass1 * 1e6


def _require_number(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise InvalidConfiguration(f"{name} must be a number, got {value!r}.")
    return float(value)


@dataclass(frozen=True)
class FeatureRecord:
    mass: float
    retention_time: float
    charge: Optional[int]
    intensity: float
    source_run_id: str
    scan: Optional[int] = None
    mz: Optional[float] = None
    peptide: Optional[str] = None


@dataclass(frozen=True)
class FeatureSelector:
    """Match tolerances plus the per-feature filters applied before bucketing.

    Args:
        mass_tolerance: half-width of the mass window (Da or ppm)
        mass_tolerance_type: ``"da"`` or ``"ppm"``; ppm is relative to the lower mass
        rt_tolerance: half-width of the elution window (time units or scans)
        elution_mode: ``"time"`` uses retention time, ``"scan"`` the scan index
        match_charge: require equal charges for two features to match
        min_intensity: features below this intensity are dropped
    """

    mass_tolerance: float = 0.2
    mass_tolerance_type: str = "da"
    rt_tolerance: float = 1.0
    elution_mode: str = "time"
    match_charge: bool = False
    min_intensity: float = 0.0
    min_charge: Optional[int] = None
    max_charge: Optional[int] = None
    min_mass: Optional[float] = None
    max_mass: Optional[float] = None
    min_time: Optional[float] = None
    max_time: Optional[float] = None

    def validate(self) -> "FeatureSelector":
        for name in ("mass_tolerance", "rt_tolerance", "min_intensity"):
            _require_number(name, getattr(self, name))
        for name in ("min_charge", "max_charge", "min_mass", "max_mass", "min_time", "max_time"):
            if getattr(self, name) is not None:
                _require_number(name, getattr(self, name))
        if not (math.isfinite(float(self.mass_tolerance)) and float(self.mass_tolerance) > 0.0):
            raise InvalidConfiguration(f"mass_tolerance must be positive, got {self.mass_tolerance!r}.")
        if not (math.isfinite(float(self.rt_tolerance)) and float(self.rt_tolerance) > 0.0):
            raise InvalidConfiguration(f"rt_tolerance must be positive, got {self.rt_tolerance!r}.")
        if self.mass_tolerance_type not in MASS_TOLERANCE_TYPES:
            raise InvalidConfiguration(
                f"Unsupported mass_tolerance_type {self.mass_tolerance_type!r} (expected 'da' or 'ppm')."
            )
        if self.elution_mode not in ELUTION_MODES:
            raise InvalidConfiguration(f"Unsupported elution_mode {self.elution_mode!r} (expected 'time' or 'scan').")
        if float(self.min_intensity) < 0.0:
            raise InvalidConfiguration(f"min_intensity must be >= 0, got {self.min_intensity!r}.")
        for lo, hi in (("min_charge", "max_charge"), ("min_mass", "max_mass"), ("min_time", "max_time")):
            lo_v, hi_v = getattr(self, lo), getattr(self, hi)
            if lo_v is not None and hi_v is not None and lo_v > hi_v:
                raise InvalidConfiguration(f"{lo}={lo_v!r} is greater than {hi}={hi_v!r}.")
        return self

    def mass_window(self, lower_mass: float) -> float:
        """Absolute mass window (Da) around ``lower_mass``."""
        if self.mass_tolerance_type == "ppm":
            return abs(float(lower_mass)) * float(self.mass_tolerance) * 1e-6
        return float(self.mass_tolerance)

    def elution(self, feature: FeatureRecord) -> float:
        if self.elution_mode == "scan":
            return float(feature.scan)  # type: ignore[arg-type]
        return float(feature.retention_time)

    def accepts(self, feature: FeatureRecord) -> bool:
        if self.elution_mode == "scan" and feature.scan is None:
            return False
        if feature.intensity < self.min_intensity:
            return False
        if feature.charge is not None:
            if self.min_charge is not None and feature.charge < self.min_charge:
                return False
            if self.max_charge is not None and feature.charge > self.max_charge:
                return False
        if self.min_mass is not None and feature.mass < self.min_mass:
            return False
        if self.max_mass is not None and feature.mass > self.max_mass:
            return False
        if self.min_time is not None and feature.retention_time < self.min_time:
            return False
        if self.max_time is not None and feature.retention_time > self.max_time:
            return False
        return True

    def select(self, features: Iterable[FeatureRecord]) -> List[FeatureRecord]:
        return [f for f in features if self.accepts(f)]

    def charges_compatible(self, a: FeatureRecord, b: FeatureRecord) -> bool:
        return (not self.match_charge) or a.charge == b.charge

    def describe(self) -> str:
        """Render settings as ``--name=value`` pairs.

        Tolerances are always listed; filters only when set.
        """
        always = {"mass_tolerance", "mass_tolerance_type", "rt_tolerance", "elution_mode", "match_charge"}
        defaults = FeatureSelector()
        parts = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in always or value != getattr(defaults, f.name):
                parts.append(f"--{f.name}={value}")
        return " ".join(parts)

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class FeatureSource(Protocol):
    """Anything that yields the detected features of one run."""

    run_id: str

    def load(self) -> List[FeatureRecord]: ...


@dataclass
class InMemoryFeatureSource:
    run_id: str
    features: Sequence[FeatureRecord] = field(default_factory=list)

    def load(self) -> List[FeatureRecord]:
        return list(self.features)


def run_id_from_path(path: Union[str, Path]) -> str:
    """Run name: file name up to the first dot."""
    name = Path(path).name
    return name.split(".", 1)[0] or name


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v):
        return None
    return int(round(v))


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    text = str(value).strip()
    return text or None


def features_from_frame(df: pd.DataFrame, *, run_id: str, path: Optional[Path] = None) -> List[FeatureRecord]:
    """Convert a feature table to records.

    Columns are matched case-insensitively through ``COLUMN_ALIASES``. Rows with a
    missing or non-finite mass, retention time or intensity (or a negative
    intensity) are dropped.
    """
    rename: Dict[str, str] = {}
    for col in df.columns:
        canon = COLUMN_ALIASES.get(str(col).lower().strip())
        if canon is not None and canon not in rename.values():
            rename[col] = canon
    frame = df.loc[:, list(rename)].rename(columns=rename)

    if len(df) == 0:
        return []

    missing = [c for c in ("time", "intensity") if c not in frame.columns]
    if "mass" not in frame.columns and not {"mz", "charge"}.issubset(frame.columns):
        missing.insert(0, "mass (or mz + charge)")
    if missing:
        raise InputReadFailure(f"feature table is missing required columns {missing}", run_id=run_id, path=path)

    n = len(frame)
    charge = pd.to_numeric(frame["charge"], errors="coerce") if "charge" in frame.columns else pd.Series(np.nan, index=frame.index)
    mz = pd.to_numeric(frame["mz"], errors="coerce") if "mz" in frame.columns else pd.Series(np.nan, index=frame.index)
    if "mass" in frame.columns:
        mass = pd.to_numeric(frame["mass"], errors="coerce")
    else:
        z = charge.where(charge > 0)
        mass = (mz - PROTON_MASS) * z
    rt = pd.to_numeric(frame["time"], errors="coerce")
    intensity = pd.to_numeric(frame["intensity"], errors="coerce")
    scan = pd.to_numeric(frame["scan"], errors="coerce") if "scan" in frame.columns else pd.Series(np.nan, index=frame.index)
    peptide = frame["peptide"] if "peptide" in frame.columns else pd.Series([None] * n, index=frame.index)

    mass_v = mass.to_numpy(dtype=float)
    rt_v = rt.to_numpy(dtype=float)
    int_v = intensity.to_numpy(dtype=float)
    ok = np.isfinite(mass_v) & np.isfinite(rt_v) & np.isfinite(int_v) & (int_v >= 0.0)

    records: List[FeatureRecord] = []
    for i in np.flatnonzero(ok):
        mz_i = float(mz.iloc[i])
        records.append(
            FeatureRecord(
                mass=float(mass_v[i]),
                retention_time=float(rt_v[i]),
                charge=_optional_int(charge.iloc[i]),
                intensity=float(int_v[i]),
                source_run_id=str(run_id),
                scan=_optional_int(scan.iloc[i]),
                mz=mz_i if math.isfinite(mz_i) else None,
                peptide=_optional_str(peptide.iloc[i]),
            )
        )
    return records


@dataclass
class TableFeatureSource:
    """Feature table on disk (``.csv`` is comma separated, anything else tab separated)."""

    path: Path
    run_id: str = ""

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        if not self.run_id:
            self.run_id = run_id_from_path(self.path)

    def load(self) -> List[FeatureRecord]:
        if not self.path.exists():
            raise InputReadFailure(f"feature file not found: {self.path}", run_id=self.run_id, path=self.path)
        sep = "," if self.path.suffix.lower() == ".csv" else "\t"
        try:
            df = pd.read_csv(self.path, sep=sep, comment="#")
        except pd.errors.EmptyDataError:
            return []
        except (OSError, UnicodeDecodeError, pd.errors.ParserError) as exc:
            raise InputReadFailure(f"could not read {self.path}: {exc}", run_id=self.run_id, path=self.path) from exc
        return features_from_frame(df, run_id=self.run_id, path=self.path)


def as_feature_source(obj: Any) -> FeatureSource:
    """Accept a source, a path, or a ``(run_id, features)`` pair."""
    if isinstance(obj, (str, Path)):
        return TableFeatureSource(Path(obj))
    if isinstance(obj, tuple) and len(obj) == 2 and isinstance(obj[0], str):
        return InMemoryFeatureSource(run_id=obj[0], features=list(obj[1]))
    if hasattr(obj, "load") and hasattr(obj, "run_id"):
        return obj
    raise TypeError(f"Cannot use {type(obj).__name__} as a feature source.")


__all__ = [
    "PROTON_MASS",
    "FeatureRecord",
    "FeatureSelector",
    "FeatureSource",
    "InMemoryFeatureSource",
    "TableFeatureSource",
    "as_feature_source",
    "features_from_frame",
    "ppm_diff",
    "run_id_from_path",
]
