import pytest

from estimator import DurationEstimator, round_half_up


def test_starts_at_default():
    assert DurationEstimator().current() == 8
    assert DurationEstimator(12).current() == 12


def test_record_moves_a_quarter_towards_observed():
    estimator = DurationEstimator(8)
    assert estimator.record(12) == 9
    assert estimator.current() == 9


def test_record_rounds_half_up():
    estimator = DurationEstimator(8)
    # (24 + 10) / 4 = 8.5
    assert estimator.record(10) == 9


def test_single_outlier_does_not_dominate():
    estimator = DurationEstimator(8)
    estimator.record(60)
    assert estimator.current() == 21
    for _ in range(10):
        estimator.record(8)
    # half-up rounding settles one minute above the steady value
    assert estimator.current() == 10


@pytest.mark.parametrize("bad", [0, -3])
def test_record_rejects_non_positive_minutes(bad):
    estimator = DurationEstimator(8)
    with pytest.raises(ValueError):
        estimator.record(bad)
    assert estimator.current() == 8


def test_reset_restores_given_default():
    estimator = DurationEstimator(8)
    estimator.record(40)
    estimator.reset(8)
    assert estimator.current() == 8


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(6.25) == 6
    assert round_half_up(0.49) == 0
