import argparse
import sys
from pathlib import Path

from .config import PipelineConfig, load_manifest
from .consensus import ConsensusConfig, INTENSITY_AGGREGATORS
from .errors import ConsensusError, ConsensusExecutionError, InvalidConfiguration
from .features import FeatureSelector
from .pipeline import build_peptide_array, run_consensus
from .reporting import PrintReporter


def _add_selector_args(p):
    p.add_argument("--mass-tolerance", dest="mass_tolerance", type=float, default=None, help="Mass window half-width (default 0.2)")
    p.add_argument("--ppm", action="store_true", help="Interpret --mass-tolerance as ppm instead of Da")
    p.add_argument("--rt-tolerance", dest="rt_tolerance", type=float, default=None, help="Elution window half-width (default 1.0)")
    p.add_argument("--scan-mode", dest="scan_mode", action="store_true", help="Match on scan index instead of retention time")
    p.add_argument("--match-charge", dest="match_charge", action="store_true", help="Only match features with equal charge")
    p.add_argument("--min-intensity", dest="min_intensity", type=float, default=None)
    p.add_argument("--min-charge", dest="min_charge", type=int, default=None)
    p.add_argument("--max-charge", dest="max_charge", type=int, default=None)
    p.add_argument("--min-mass", dest="min_mass", type=float, default=None)
    p.add_argument("--max-mass", dest="max_mass", type=float, default=None)
    p.add_argument("--min-time", dest="min_time", type=float, default=None)
    p.add_argument("--max-time", dest="max_time", type=float, default=None)
    p.add_argument("--skip-unreadable", dest="skip_unreadable", action="store_true", help="Treat unreadable runs as empty")
    p.add_argument("--no-details", dest="no_details", action="store_true", help="Do not write the array details file")
    p.add_argument("--verbose", "-v", action="store_true")


def _add_array_parser(sub):
    p = sub.add_parser("array", help="Bucket features from several runs into a peptide array")
    p.add_argument("runs", nargs="+", help="Feature tables, one per run (run name = file name up to the first dot)")
    p.add_argument("--out", required=True, help="Output peptide array (TSV)")
    _add_selector_args(p)
    return p


def _add_consensus_parser(sub):
    p = sub.add_parser("consensus", help="Build a consensus feature set from runs or an existing peptide array")
    p.add_argument("runs", nargs="*", help="Feature tables, one per run")
    p.add_argument("--peparray", type=str, default=None, help="Existing peptide array to reduce")
    p.add_argument("--manifest", type=str, default=None, help="YAML/JSON manifest listing runs and settings")
    p.add_argument("--out", required=True, help="Output consensus feature set (TSV)")
    p.add_argument("--array-out", dest="array_out", type=str, default=None, help="Where to write the peptide array")
    p.add_argument("--min-runs", dest="min_runs", type=int, default=None, help="Minimum runs supporting a feature (default 2)")
    p.add_argument("--min-run-fraction", dest="min_run_fraction", type=float, default=None)
    p.add_argument(
        "--intensity-mode",
        dest="intensity_mode",
        type=str,
        default=None,
        help=f"Intensity aggregation: {', '.join(sorted(INTENSITY_AGGREGATORS))} (default mean)",
    )
    p.add_argument("--same-peptide", dest="same_peptide", action="store_true", help="Skip buckets with conflicting peptides")
    p.add_argument("--allow-neg-scan-and-time", dest="allow_neg", action="store_true")
    p.add_argument("--no-manifest", dest="no_manifest", action="store_true", help="Do not write <out>.run_manifest.json")
    _add_selector_args(p)
    return p


def _selector_from_args(args, base: FeatureSelector) -> FeatureSelector:
    overrides = {}
    for name in ("mass_tolerance", "rt_tolerance", "min_intensity", "min_charge", "max_charge", "min_mass", "max_mass", "min_time", "max_time"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    if args.ppm:
        overrides["mass_tolerance_type"] = "ppm"
    if args.scan_mode:
        overrides["elution_mode"] = "scan"
    if args.match_charge:
        overrides["match_charge"] = True
    return FeatureSelector(**{**base.as_dict(), **overrides})


def _consensus_from_args(args, base: ConsensusConfig) -> ConsensusConfig:
    return ConsensusConfig(
        min_runs_per_feature=base.min_runs_per_feature if args.min_runs is None else args.min_runs,
        min_run_fraction=base.min_run_fraction if args.min_run_fraction is None else args.min_run_fraction,
        intensity_mode=base.intensity_mode if args.intensity_mode is None else args.intensity_mode.lower(),
        require_same_peptide=base.require_same_peptide or args.same_peptide,
        allow_negative_scan_and_time=base.allow_negative_scan_and_time or args.allow_neg,
    )


def _cmd_array(args, reporter) -> int:
    selector = _selector_from_args(args, FeatureSelector()).validate()
    result = build_peptide_array(
        args.runs,
        Path(args.out),
        selector,
        skip_unreadable_runs=args.skip_unreadable,
        write_details=not args.no_details,
        reporter=reporter,
    )
    print(f"wrote {args.out} with {len(result.buckets)} buckets from {result.n_runs} runs")
    return 0


def _cmd_consensus(args, reporter) -> int:
    runs = list(args.runs)
    base = PipelineConfig()
    if args.manifest:
        manifest = load_manifest(Path(args.manifest))
        base = manifest.config
        runs = [spec.source() for spec in manifest.runs] + runs
    if args.peparray and runs:
        raise InvalidConfiguration("Use either --peparray or feature files, not both.")
    if not args.peparray and not runs:
        raise InvalidConfiguration("No input: give feature files, --manifest, or --peparray.")

    cfg = PipelineConfig(
        selector=_selector_from_args(args, base.selector),
        consensus=_consensus_from_args(args, base.consensus),
        skip_unreadable_runs=base.skip_unreadable_runs or args.skip_unreadable,
        write_details=base.write_details and not args.no_details,
    ).validate()

    res = run_consensus(
        Path(args.out),
        runs or None,
        peptide_array=Path(args.peparray) if args.peparray else None,
        config=cfg,
        array_path=Path(args.array_out) if args.array_out else None,
        write_run_manifest=not args.no_manifest,
        reporter=reporter,
    )
    print(f"wrote {args.out} with {res.n_consensus} consensus features from {len(res.run_ids)} runs")
    return 0


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    ap = argparse.ArgumentParser(prog="pep-consensus", description="Consensus peptide features across LC-MS runs")
    sub = ap.add_subparsers(dest="cmd", required=True)
    _add_array_parser(sub)
    _add_consensus_parser(sub)
    args = ap.parse_args(argv)
    reporter = PrintReporter(verbose=args.verbose)

    try:
        if args.cmd == "array":
            return _cmd_array(args, reporter)
        if args.cmd == "consensus":
            return _cmd_consensus(args, reporter)
    except (InvalidConfiguration, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except ConsensusExecutionError as exc:
        if isinstance(exc.cause, InvalidConfiguration):
            print(f"error: {exc.cause}", file=sys.stderr)
            return 2
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except (ConsensusError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
