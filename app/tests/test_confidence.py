import itertools

import pytest

from triagecore.confidence import aggregate_confidence


def test_aggregate_always_within_bounds():
    grid = (0.0, 0.001, 0.2, 0.5, 0.75, 0.99, 1.0)
    for values in itertools.product(grid, repeat=4):
        result = aggregate_confidence(list(values))
        assert 0.1 <= result <= 0.95


def test_extremes_are_clamped():
    assert aggregate_confidence([1.0, 1.0, 1.0, 1.0]) == pytest.approx(0.95)
    assert aggregate_confidence([0.0, 0.0, 0.0, 0.0]) == pytest.approx(0.1)


def test_uniform_confidences_are_preserved():
    assert aggregate_confidence([0.8, 0.8, 0.8, 0.8]) == pytest.approx(0.8)


def test_weak_stage_pulls_harmonic_mean_down():
    result = aggregate_confidence([0.9, 0.9, 0.9, 0.1])

    assert result == pytest.approx(1.0 / (0.85 / 0.9 + 0.15 / 0.1), rel=1e-6)
    assert result < 0.5


def test_custom_weights_are_respected():
    result = aggregate_confidence([0.9, 0.5, 0.5, 0.5], weights=(1.0, 0.0001, 0.0001, 0.0001))

    assert result == pytest.approx(0.9, abs=0.01)


def test_missing_values_are_skipped():
    assert aggregate_confidence([None, None, None, None]) == pytest.approx(0.5)
    assert aggregate_confidence([0.8, None, 0.8, None]) == pytest.approx(0.8)


def test_wrong_arity_raises():
    with pytest.raises(ValueError):
        aggregate_confidence([0.5, 0.5])
