from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict

from .comparator import Comparison
from .config import ConvergenceMode, ThresholdConfig
from .errors import InvalidConfigError

_LOGGER = logging.getLogger("strudelcover.convergence")

CHECK_NAMES = (
    "tempo",
    "key",
    "energy",
    "brightness",
    "kick_similarity",
    "snare_similarity",
)


class ConvergenceDecision(BaseModel):
    """Stop/continue verdict plus the per-check map used to reach it."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: ConvergenceMode
    stop: bool
    checks: dict[str, bool]
    score: float
    target: float | None = None


def threshold_checks(comparison: Comparison, thresholds: ThresholdConfig) -> dict[str, bool]:
    checks = {
        "tempo": comparison.tempo_diff <= thresholds.tempo,
        "key": (not thresholds.key) or comparison.key_match,
        "energy": comparison.energy_diff <= thresholds.energy,
        "brightness": comparison.brightness_diff <= thresholds.brightness,
        "kick_similarity": comparison.kick_similarity >= thresholds.kick_similarity,
        "snare_similarity": comparison.snare_similarity >= thresholds.snare_similarity,
    }
    return checks


def evaluate(
    comparison: Comparison,
    mode: ConvergenceMode,
    target: float | None = None,
    thresholds: ThresholdConfig | None = None,
) -> ConvergenceDecision:
    """Decide whether a comparison is good enough to stop iterating.

    Auto mode stops once the score reaches `target`. Manual mode stops only
    when every threshold check passes. The threshold map is reported in both
    modes so observers can show it.
    """
    checks = threshold_checks(comparison, thresholds or ThresholdConfig())
    match mode:
        case "auto":
            if target is None:
                raise InvalidConfigError("Auto mode requires a target score")
            stop = comparison.score >= target
        case "manual":
            stop = all(checks.values())
        case _:
            raise InvalidConfigError(f"Unknown convergence mode: {mode}")
    _LOGGER.debug("Convergence (%s): stop=%s checks=%s", mode, stop, checks)
    return ConvergenceDecision(
        mode=mode,
        stop=stop,
        checks=checks,
        score=comparison.score,
        target=target if mode == "auto" else None,
    )


def should_stop(
    comparison: Comparison,
    mode: ConvergenceMode,
    target: float | None = None,
    thresholds: ThresholdConfig | None = None,
) -> bool:
    return evaluate(comparison, mode, target, thresholds).stop
