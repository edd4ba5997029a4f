import logging

import pytest

from pep_consensus.bucketing import Bucket, bucket_features
from pep_consensus.consensus import (
    ConsensusConfig,
    ConsensusReducer,
    IntensityMode,
    reduce_buckets,
)
from pep_consensus.errors import InvalidConfiguration
from pep_consensus.features import FeatureRecord
from pep_consensus.reporting import NullReporter


def _f(mass, rt, run, *, charge=2, intensity=100.0, scan=None, peptide=None):
    return FeatureRecord(mass, rt, charge, intensity, run, scan=scan, peptide=peptide)


def _bucket(bucket_id, *members):
    return Bucket(bucket_id=bucket_id, members=tuple(members))


def _reduce(buckets, n_runs=None, **cfg):
    return ConsensusReducer(ConsensusConfig(**cfg), NullReporter()).reduce(buckets, n_runs=n_runs)


def test_full_support_bucket_uses_mean_intensity():
    bucket = _bucket(
        1,
        _f(1000.0, 10.0, "A", intensity=10.0),
        _f(1000.1, 10.2, "B", intensity=20.0),
        _f(1000.2, 10.4, "C", intensity=30.0),
    )
    res = _reduce([bucket], n_runs=3)
    assert len(res.features) == 1
    feat = res.features[0]
    assert feat.support_count == 3
    assert feat.intensity == pytest.approx(20.0)
    assert feat.mass == pytest.approx(1000.1)
    assert feat.retention_time == pytest.approx(10.2)
    assert feat.run_ids == ("A", "B", "C")
    assert feat.bucket_id == 1


def test_buckets_below_min_runs_are_dropped():
    buckets = [
        _bucket(1, _f(1000.0, 10.0, "A"), _f(1000.0, 10.0, "B")),
        _bucket(2, _f(1200.0, 10.0, "A")),
    ]
    res = _reduce(buckets, n_runs=2, min_runs_per_feature=2)
    assert [f.bucket_id for f in res.features] == [1]
    assert _reduce(buckets, n_runs=2, min_runs_per_feature=3).is_empty


def test_raising_min_runs_only_removes_features():
    buckets = [
        _bucket(i, *[_f(1000.0 + i, 10.0, r) for r in "ABCD"[: 1 + i % 4]])
        for i in range(1, 13)
    ]
    previous = None
    for min_runs in range(1, 6):
        ids = {f.bucket_id for f in _reduce(buckets, n_runs=4, min_runs_per_feature=min_runs).features}
        if previous is not None:
            assert ids <= previous
        previous = ids
    assert previous == set()


@pytest.mark.parametrize("bad", [0, -1, 1.5, True])
def test_invalid_min_runs_is_rejected(bad):
    with pytest.raises(InvalidConfiguration):
        ConsensusConfig(min_runs_per_feature=bad).validate()
    with pytest.raises(InvalidConfiguration):
        ConsensusReducer(ConsensusConfig(min_runs_per_feature=bad))


def test_invalid_fraction_and_mode_are_rejected():
    with pytest.raises(InvalidConfiguration):
        ConsensusConfig(min_run_fraction=0.0).validate()
    with pytest.raises(InvalidConfiguration):
        ConsensusConfig(min_run_fraction=1.5).validate()
    with pytest.raises(InvalidConfiguration):
        ConsensusConfig(intensity_mode="geometric").validate()


@pytest.mark.parametrize(
    "mode, expected",
    [
        (IntensityMode.MEAN, 20.0),
        ("median", 12.5),
        ("sum", 80.0),
        ("max", 50.0),
        ("first", 10.0),
    ],
)
def test_intensity_modes(mode, expected):
    bucket = _bucket(
        1,
        _f(1000.0, 9.0, "A", intensity=10.0),
        _f(1000.0, 10.0, "B", intensity=50.0),
        _f(1000.0, 11.0, "C", intensity=15.0),
        _f(1000.0, 12.0, "D", intensity=5.0),
    )
    (feat,) = reduce_buckets([bucket], ConsensusConfig(intensity_mode=mode), reporter=NullReporter())
    assert feat.intensity == pytest.approx(expected)


def test_run_fraction_counts_zero_feature_runs():
    res_bucketed = bucket_features(
        [
            ("A", [_f(1000.0, 10.0, "A")]),
            ("B", [_f(1000.0, 10.0, "B")]),
            ("C", [_f(1000.0, 10.0, "C")]),
            ("D", []),
        ],
        reporter=NullReporter(),
    )
    kept = _reduce(res_bucketed, min_run_fraction=0.75)
    assert kept.summary.n_runs == 4
    assert kept.summary.threshold == 3
    assert len(kept.features) == 1

    dropped = _reduce(res_bucketed, min_run_fraction=1.0)
    assert dropped.summary.threshold == 4
    assert dropped.is_empty


def test_same_peptide_requirement_skips_conflicting_buckets():
    buckets = [
        _bucket(1, _f(1000.0, 10.0, "A", peptide="PEPTIDE"), _f(1000.0, 10.0, "B", peptide="PEPTIDES")),
        _bucket(2, _f(1100.0, 10.0, "A", peptide="AAK"), _f(1100.0, 10.0, "B", peptide="AAK")),
    ]
    loose = _reduce(buckets, n_runs=2)
    assert len(loose.features) == 2

    strict = _reduce(buckets, n_runs=2, require_same_peptide=True)
    assert [f.bucket_id for f in strict.features] == [2]
    assert strict.features[0].peptide == "AAK"
    assert strict.summary.n_peptide_conflicts == 1


def test_negative_time_and_scan_are_clamped_unless_allowed():
    bucket = _bucket(1, _f(1000.0, -0.5, "A", scan=-3), _f(1000.0, -0.5, "B", scan=-3))
    (clamped,) = _reduce([bucket], n_runs=2).features
    assert clamped.retention_time == 0.0
    assert clamped.scan == 1

    (raw,) = _reduce([bucket], n_runs=2, allow_negative_scan_and_time=True).features
    assert raw.retention_time == -0.5
    assert raw.scan == -3


def test_consensus_charge_is_most_common_known_charge():
    bucket = _bucket(
        1,
        _f(1000.0, 10.0, "A", charge=3),
        _f(1000.0, 10.0, "B", charge=2),
        _f(1000.0, 10.0, "C", charge=3),
        _f(1000.0, 10.0, "D", charge=None),
    )
    (feat,) = _reduce([bucket], n_runs=4).features
    assert feat.charge == 3


def test_two_run_statistics():
    buckets = [
        _bucket(i, _f(1000.0 + i, 10.0, "A", intensity=10.0 * i), _f(1000.0 + i, 10.0, "B", intensity=20.0 * i))
        for i in range(1, 4)
    ]
    summary = _reduce(buckets, n_runs=2).summary
    assert summary.two_run_correlation == pytest.approx(1.0)
    # each pair (x, 2x) has CV = std([1, 2]) / 1.5
    assert summary.two_run_mean_cv == pytest.approx(0.4714045, rel=1e-6)
    assert summary.two_run_median_cv == pytest.approx(0.4714045, rel=1e-6)


def test_reducer_output_follows_bucket_order():
    buckets = [_bucket(i, _f(2000.0 - i, 10.0, "A"), _f(2000.0 - i, 10.0, "B")) for i in (3, 1, 2)]
    res = _reduce(buckets, n_runs=2)
    assert [f.bucket_id for f in res.features] == [3, 1, 2]


def test_consensus_count_equals_buckets_meeting_threshold():
    buckets = [
        _bucket(i, *[_f(1000.0 + i, 10.0, r) for r in "ABC"[: 1 + i % 3]])
        for i in range(1, 10)
    ]
    for min_runs in (1, 2, 3):
        res = _reduce(buckets, n_runs=3, min_runs_per_feature=min_runs)
        assert len(res.features) == sum(1 for b in buckets if b.run_count >= min_runs)


class _Recorder(NullReporter):
    def __init__(self):
        self.messages = []

    def emit(self, level, message):
        self.messages.append((level, message))


def test_same_peptide_without_any_peptides_warns():
    buckets = [_bucket(1, _f(1000.0, 10.0, "A"), _f(1000.0, 10.0, "B"))]
    rec = _Recorder()
    res = ConsensusReducer(ConsensusConfig(require_same_peptide=True), rec).reduce(buckets, n_runs=2)
    assert len(res.features) == 1
    warnings = [m for lvl, m in rec.messages if lvl == logging.WARNING]
    assert any("no feature carries a peptide" in m for m in warnings)

    rec = _Recorder()
    ConsensusReducer(ConsensusConfig(require_same_peptide=False), rec).reduce(buckets, n_runs=2)
    assert not [m for lvl, m in rec.messages if lvl == logging.WARNING]
