"""Pipeline configuration and run manifests (YAML or JSON).

A manifest is either a list of runs or a mapping::

    runs:
      - path: runs/sample_a.peptides.tsv
      - path: runs/sample_b.peptides.tsv
        run_id: B
      - runs/sample_c.peptides.tsv
    selector:
      mass_tolerance: 0.1
      rt_tolerance: 0.5
    consensus:
      min_runs_per_feature: 2
      intensity_mode: mean
    skip_unreadable_runs: false

Relative run paths are resolved against the manifest's directory.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from .consensus import ConsensusConfig
from .errors import InvalidConfiguration
from .features import FeatureSelector, TableFeatureSource


@dataclass(frozen=True)
class RunSpec:
    path: Path
    run_id: Optional[str] = None

    def source(self) -> TableFeatureSource:
        return TableFeatureSource(self.path, run_id=self.run_id or "")


@dataclass
class PipelineConfig:
    selector: FeatureSelector = field(default_factory=FeatureSelector)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    skip_unreadable_runs: bool = False
    write_details: bool = True

    def validate(self) -> "PipelineConfig":
        self.consensus.validate()
        self.selector.validate()
        return self


@dataclass
class Manifest:
    runs: List[RunSpec]
    config: PipelineConfig


def _safe_yaml_load(path: Path) -> Any:
    try:
        import yaml  # type: ignore
    except ImportError as exc:
        raise InvalidConfiguration(f"{path} is YAML but PyYAML is not installed; use a JSON manifest.") from exc
    with open(path, "r", encoding="utf-8") as handle:
        try:
            return yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise InvalidConfiguration(f"Malformed YAML manifest {path}: {exc}") from exc


def _build(cls, section: Any, name: str):
    if section is None:
        return cls()
    if not isinstance(section, dict):
        raise InvalidConfiguration(f"Manifest section {name!r} must be a mapping.")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise InvalidConfiguration(f"Unknown {name} settings: {unknown}")
    return cls(**section)


def _run_spec(item: Any, base: Path) -> RunSpec:
    if isinstance(item, str):
        item = {"path": item}
    if not isinstance(item, dict):
        raise InvalidConfiguration("Each run entry must be a path or a mapping.")
    raw_path = str(item.get("path") or "").strip()
    if not raw_path:
        raise InvalidConfiguration("Run entry missing 'path'.")
    path = Path(raw_path)
    if not path.is_absolute():
        path = base / path
    run_id = item.get("run_id")
    return RunSpec(path=path, run_id=str(run_id) if run_id else None)


def load_manifest(path: Path) -> Manifest:
    """Load runs and settings from a YAML or JSON manifest."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    suffix = path.suffix.lower().strip()
    if suffix in {".yaml", ".yml"}:
        obj = _safe_yaml_load(path)
    elif suffix == ".json":
        try:
            obj = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidConfiguration(f"Malformed JSON manifest {path}: {exc}") from exc
    else:
        raise InvalidConfiguration(f"Unsupported manifest type {suffix!r}; expected .yaml/.yml or .json")

    if isinstance(obj, list):
        obj = {"runs": obj}
    if not isinstance(obj, dict):
        raise InvalidConfiguration("Manifest must be a list of runs or a mapping with key 'runs'.")
    unknown = sorted(set(obj) - {"runs", "selector", "consensus", "skip_unreadable_runs", "write_details"})
    if unknown:
        raise InvalidConfiguration(f"Unknown manifest keys: {unknown}")
    runs_obj = obj.get("runs")
    if not isinstance(runs_obj, list) or not runs_obj:
        raise InvalidConfiguration("Manifest must list at least one run under 'runs'.")

    runs = [_run_spec(item, path.parent) for item in runs_obj]
    cfg = PipelineConfig(
        selector=_build(FeatureSelector, obj.get("selector"), "selector"),
        consensus=_build(ConsensusConfig, obj.get("consensus"), "consensus"),
        skip_unreadable_runs=bool(obj.get("skip_unreadable_runs", False)),
        write_details=bool(obj.get("write_details", True)),
    )
    return Manifest(runs=runs, config=cfg)


__all__ = ["Manifest", "PipelineConfig", "RunSpec", "load_manifest"]
