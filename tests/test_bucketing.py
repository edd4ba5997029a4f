import pytest

from pep_consensus.bucketing import BucketingEngine, bucket_features
from pep_consensus.features import FeatureRecord, FeatureSelector
from pep_consensus.reporting import NullReporter


def _f(mass, rt, run, *, charge=2, intensity=100.0, scan=None, peptide=None):
    return FeatureRecord(
        mass=mass,
        retention_time=rt,
        charge=charge,
        intensity=intensity,
        source_run_id=run,
        scan=scan,
        peptide=peptide,
    )


def _run(runs, **selector_kwargs):
    return bucket_features(runs, FeatureSelector(**selector_kwargs), NullReporter())


def test_mass_boundary_is_inclusive():
    runs = [("A", [_f(1000.0, 10.0, "A")]), ("B", [_f(1000.5, 10.0, "B")])]

    res = _run(runs, mass_tolerance=0.5)
    assert len(res.buckets) == 1
    assert res.buckets[0].run_ids == ("A", "B")

    res = _run(runs, mass_tolerance=0.25)
    assert len(res.buckets) == 2
    assert all(b.run_count == 1 for b in res.buckets)


def test_decimal_tolerance_boundaries_are_inclusive():
    def runs(mass_b, rt_b):
        return [("A", [_f(100.0, 10.0, "A")]), ("B", [_f(mass_b, rt_b, "B")])]

    res = _run(runs(100.2, 10.3), mass_tolerance=0.2, rt_tolerance=0.3)
    assert [b.run_count for b in res.buckets] == [2]
    assert res.n_edges == 1

    assert len(_run(runs(100.2001, 10.3), mass_tolerance=0.2, rt_tolerance=0.3).buckets) == 2
    assert len(_run(runs(100.2, 10.3001), mass_tolerance=0.2, rt_tolerance=0.3).buckets) == 2


def test_elution_boundary_is_inclusive():
    runs = [("A", [_f(1000.0, 10.0, "A")]), ("B", [_f(1000.0, 11.0, "B")])]
    assert len(_run(runs, rt_tolerance=1.0).buckets) == 1
    assert len(_run(runs, rt_tolerance=0.5).buckets) == 2


def test_features_from_the_same_run_never_share_a_bucket():
    runs = [("A", [_f(1000.0, 10.0, "A"), _f(1000.1, 10.0, "A")])]
    res = _run(runs)
    assert len(res.buckets) == 2
    assert [b.bucket_id for b in res.buckets] == [1, 2]


def test_transitive_matches_join_one_bucket():
    # A-C are 0.3 Da apart, but both match B
    runs = [
        ("A", [_f(1000.0, 10.0, "A")]),
        ("B", [_f(1000.15, 10.0, "B")]),
        ("C", [_f(1000.3, 10.0, "C")]),
    ]
    res = _run(runs, mass_tolerance=0.2)
    assert len(res.buckets) == 1
    assert res.buckets[0].run_ids == ("A", "B", "C")
    assert res.rows_with_one_from_each() == 1


def test_one_per_run_keeps_feature_closest_to_centroid():
    a_far = _f(1000.0, 10.0, "A", intensity=1.0)
    a_near = _f(1000.15, 10.0, "A", intensity=2.0)
    b = _f(1000.1, 10.0, "B", intensity=3.0)
    res = _run([("A", [a_far, a_near]), ("B", [b])], mass_tolerance=0.2)

    assert len(res.buckets) == 2
    pair = [bk for bk in res.buckets if bk.run_count == 2]
    single = [bk for bk in res.buckets if bk.run_count == 1]
    assert pair[0].members == (a_near, b)
    assert single[0].members == (a_far,)
    # every accepted feature lands in exactly one bucket
    assert sum(bk.run_count for bk in res.buckets) == 3


def test_match_charge_requires_equal_charges():
    runs = [("A", [_f(1000.0, 10.0, "A", charge=2)]), ("B", [_f(1000.0, 10.0, "B", charge=3)])]
    assert len(_run(runs, match_charge=False).buckets) == 1
    assert len(_run(runs, match_charge=True).buckets) == 2


def test_ppm_tolerance_scales_with_mass():
    near = [("A", [_f(1000.0, 10.0, "A")]), ("B", [_f(1000.009, 10.0, "B")])]
    far = [("A", [_f(1000.0, 10.0, "A")]), ("B", [_f(1000.011, 10.0, "B")])]
    assert len(_run(near, mass_tolerance=10.0, mass_tolerance_type="ppm").buckets) == 1
    assert len(_run(far, mass_tolerance=10.0, mass_tolerance_type="ppm").buckets) == 2


def test_scan_mode_matches_on_scans_and_drops_features_without_scan():
    runs = [
        ("A", [_f(1000.0, 10.0, "A", scan=100), _f(2000.0, 10.0, "A", scan=None)]),
        ("B", [_f(1000.0, 50.0, "B", scan=103)]),
    ]
    res = _run(runs, elution_mode="scan", rt_tolerance=5.0)
    assert len(res.buckets) == 1
    assert res.buckets[0].run_count == 2
    assert res.n_features == {"A": 1, "B": 1}


def test_buckets_are_emitted_by_mean_mass_with_sequential_ids():
    runs = [
        ("A", [_f(1500.0, 10.0, "A"), _f(900.0, 20.0, "A")]),
        ("B", [_f(1200.0, 30.0, "B"), _f(900.1, 20.0, "B")]),
    ]
    res = _run(runs)
    assert [b.bucket_id for b in res.buckets] == [1, 2, 3]
    masses = [b.mean_mass for b in res.buckets]
    assert masses == sorted(masses)
    assert res.buckets[0].run_count == 2


def test_bucketing_is_deterministic():
    runs = [
        ("A", [_f(1000.0 + 0.05 * i, 10.0 + i % 3, "A") for i in range(20)]),
        ("B", [_f(1000.02 + 0.05 * i, 10.2 + i % 3, "B") for i in range(20)]),
        ("C", [_f(1000.04 + 0.05 * i, 9.9 + i % 3, "C") for i in range(20)]),
    ]
    first = _run(runs)
    second = _run(runs)
    assert first.buckets == second.buckets
    assert sum(b.run_count for b in first.buckets) == 60
    assert all(len(set(b.run_ids)) == b.run_count for b in first.buckets)


def test_zero_feature_runs_are_kept_in_run_list():
    res = _run([("A", [_f(1000.0, 10.0, "A")]), ("B", []), ("C", None)])
    assert res.run_ids == ["A", "B", "C"]
    assert res.n_runs == 3
    assert res.n_features == {"A": 1, "B": 0, "C": 0}
    assert len(res.buckets) == 1


def test_selector_filters_apply_before_matching():
    runs = [
        ("A", [_f(1000.0, 10.0, "A", intensity=5.0), _f(1100.0, 10.0, "A", intensity=500.0)]),
        ("B", [_f(1000.0, 10.0, "B", intensity=500.0)]),
    ]
    res = _run(runs, min_intensity=10.0)
    assert sum(b.run_count for b in res.buckets) == 2
    assert all(b.run_count == 1 for b in res.buckets)


def test_duplicate_run_ids_are_rejected():
    with pytest.raises(ValueError):
        BucketingEngine(reporter=NullReporter()).run([("A", []), ("A", [])])
