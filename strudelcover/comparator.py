"""Feature comparison between a reference rendering and a candidate rendering.

`compare` is pure: identical inputs always give an identical `Comparison`.
Each metric is turned into a sub-score in [0, 1] (1 for a perfect match, 0 at
or beyond the metric's cap), weighted, normalised by the weight total, and
scaled to [0, 100].
"""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field

from .config import ScoreCaps, WeightConfig
from .features import BEATS_PER_CYCLE, FeatureVector

RHYTHM_TOLERANCE = 0.125
_SCORE_DECIMALS = 2


class Comparison(BaseModel):
    """Per-metric differences plus the combined similarity score."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tempo_diff: float = Field(..., ge=0.0)
    key_match: bool
    energy_diff: float = Field(..., ge=0.0)
    brightness_diff: float = Field(..., ge=0.0)
    rms_diff: float = Field(default=0.0, ge=0.0)
    kick_similarity: float = Field(..., ge=0.0, le=1.0)
    snare_similarity: float = Field(..., ge=0.0, le=1.0)
    score: float = Field(..., ge=0.0, le=100.0)


def _cyclic_distance(a: float, b: float) -> float:
    diff = abs(a - b) % BEATS_PER_CYCLE
    return min(diff, BEATS_PER_CYCLE - diff)


def rhythm_similarity(
    reference: Sequence[float],
    candidate: Sequence[float],
    *,
    tolerance: float = RHYTHM_TOLERANCE,
) -> float:
    """Fraction of reference hits matched by a candidate hit within `tolerance` beats.

    Distances wrap at the cycle boundary, so a hit just before the downbeat
    matches one on it.
    """
    if not reference:
        return 1.0 if not candidate else 0.0
    if not candidate:
        return 0.0
    matched = sum(
        1
        for position in reference
        if any(_cyclic_distance(position, other) <= tolerance for other in candidate)
    )
    return matched / len(reference)


def _closeness(diff: float, cap: float) -> float:
    if diff >= cap:
        return 0.0
    return 1.0 - (diff / cap)


def score_from_diffs(
    *,
    tempo_diff: float,
    key_match: bool,
    energy_diff: float,
    brightness_diff: float,
    kick_similarity: float,
    snare_similarity: float,
    weights: WeightConfig,
    caps: ScoreCaps,
) -> float:
    weighted = (
        weights.tempo * _closeness(tempo_diff, caps.tempo)
        + weights.key * (1.0 if key_match else 0.0)
        + weights.energy * _closeness(energy_diff, caps.energy)
        + weights.brightness * _closeness(brightness_diff, caps.brightness)
        + weights.kick_similarity * kick_similarity
        + weights.snare_similarity * snare_similarity
    )
    score = 100.0 * weighted / weights.total
    return round(min(100.0, max(0.0, score)), _SCORE_DECIMALS)


def compare(
    reference: FeatureVector,
    candidate: FeatureVector,
    weights: WeightConfig | None = None,
    *,
    caps: ScoreCaps | None = None,
    tolerance: float = RHYTHM_TOLERANCE,
) -> Comparison:
    weights = weights or WeightConfig()
    caps = caps or ScoreCaps()

    tempo_diff = abs(reference.tempo - candidate.tempo)
    key_match = reference.key == candidate.key
    energy_diff = abs(reference.energy - candidate.energy)
    brightness_diff = abs(reference.brightness - candidate.brightness)
    kick = rhythm_similarity(reference.rhythm.kick, candidate.rhythm.kick, tolerance=tolerance)
    snare = rhythm_similarity(reference.rhythm.snare, candidate.rhythm.snare, tolerance=tolerance)

    return Comparison(
        tempo_diff=tempo_diff,
        key_match=key_match,
        energy_diff=energy_diff,
        brightness_diff=brightness_diff,
        rms_diff=abs(reference.rms - candidate.rms),
        kick_similarity=kick,
        snare_similarity=snare,
        score=score_from_diffs(
            tempo_diff=tempo_diff,
            key_match=key_match,
            energy_diff=energy_diff,
            brightness_diff=brightness_diff,
            kick_similarity=kick,
            snare_similarity=snare,
            weights=weights,
            caps=caps,
        ),
    )
