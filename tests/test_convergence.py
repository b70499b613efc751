from __future__ import annotations

import pytest

from strudelcover.comparator import Comparison, compare
from strudelcover.config import ThresholdConfig
from strudelcover.convergence import CHECK_NAMES, evaluate, should_stop, threshold_checks
from strudelcover.errors import InvalidConfigError
from strudelcover.features import FeatureVector


def _comparison(**overrides: object) -> Comparison:
    values: dict[str, object] = {
        "tempo_diff": 0.0,
        "key_match": True,
        "energy_diff": 0.0,
        "brightness_diff": 0.0,
        "kick_similarity": 1.0,
        "snare_similarity": 1.0,
        "score": 100.0,
    }
    values.update(overrides)
    return Comparison.model_validate(values)


def test_auto_mode_stops_at_target() -> None:
    assert should_stop(_comparison(score=80.0), "auto", target=80.0) is True
    assert should_stop(_comparison(score=79.99), "auto", target=80.0) is False


def test_auto_mode_requires_target() -> None:
    with pytest.raises(InvalidConfigError):
        evaluate(_comparison(), "auto")


def test_unknown_mode_rejected() -> None:
    with pytest.raises(InvalidConfigError):
        evaluate(_comparison(), "hybrid", target=80.0)  # type: ignore[arg-type]


def test_manual_mode_all_checks_pass() -> None:
    decision = evaluate(_comparison(), "manual", thresholds=ThresholdConfig())

    assert decision.stop is True
    assert set(decision.checks) == set(CHECK_NAMES)
    assert all(decision.checks.values())
    assert decision.target is None


@pytest.mark.parametrize(
    ("check", "overrides"),
    [
        ("tempo", {"tempo_diff": 5.5}),
        ("key", {"key_match": False}),
        ("energy", {"energy_diff": 0.11}),
        ("brightness", {"brightness_diff": 0.25}),
        ("kick_similarity", {"kick_similarity": 0.5}),
        ("snare_similarity", {"snare_similarity": 0.69}),
    ],
)
def test_manual_mode_single_failure_blocks_stop(check: str, overrides: dict[str, object]) -> None:
    decision = evaluate(_comparison(**overrides), "manual", thresholds=ThresholdConfig())

    assert decision.checks[check] is False
    assert sum(not passed for passed in decision.checks.values()) == 1
    assert decision.stop is False


def test_manual_mode_key_not_required() -> None:
    checks = threshold_checks(_comparison(key_match=False), ThresholdConfig(key=False))

    assert checks["key"] is True


def test_manual_mode_ignores_high_score() -> None:
    reference = FeatureVector(tempo=120.0, key="C", energy=0.7)
    candidate = FeatureVector(tempo=126.0, key="C", energy=0.7)
    comparison = compare(reference, candidate)

    assert comparison.score > 90.0
    assert should_stop(comparison, "auto", target=90.0) is True
    assert should_stop(comparison, "manual", thresholds=ThresholdConfig(tempo=5.0)) is False


def test_decision_reports_checks_in_auto_mode() -> None:
    decision = evaluate(_comparison(tempo_diff=8.0, score=88.0), "auto", target=80.0)

    assert decision.stop is True
    assert decision.checks["tempo"] is False
    assert decision.target == 80.0
