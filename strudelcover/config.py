"""Configurable weights, caps, thresholds, and run settings for cover jobs."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidConfigError

ConvergenceMode = Literal["auto", "manual"]

DEFAULT_BANNED_OPERATORS = (".reverb(", ".chorus(", "..", "eval(", "require(", "import(")


class WeightConfig(BaseModel):
    """Weights for combining per-metric sub-scores into one score.

    Defaults sum to 1.0. Totals other than 1.0 are normalised at scoring
    time so the score stays in [0, 100].
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tempo: float = Field(default=0.3, ge=0.0, description="Weight for tempo closeness")
    key: float = Field(default=0.2, ge=0.0, description="Weight for key match")
    energy: float = Field(default=0.1, ge=0.0, description="Weight for energy closeness")
    brightness: float = Field(default=0.1, ge=0.0, description="Weight for brightness closeness")
    kick_similarity: float = Field(
        default=0.15,
        ge=0.0,
        description="Weight for kick rhythm-position similarity",
    )
    snare_similarity: float = Field(
        default=0.15,
        ge=0.0,
        description="Weight for snare rhythm-position similarity",
    )

    @model_validator(mode="after")
    def _check_total(self) -> WeightConfig:
        if self.total <= 0.0:
            raise InvalidConfigError("At least one weight must be positive")
        return self

    @property
    def total(self) -> float:
        return (
            self.tempo
            + self.key
            + self.energy
            + self.brightness
            + self.kick_similarity
            + self.snare_similarity
        )


class ScoreCaps(BaseModel):
    """Diff magnitudes at which a metric stops contributing to the score."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tempo: float = Field(default=20.0, gt=0.0, description="Tempo diff (BPM) scoring zero")
    energy: float = Field(default=0.5, gt=0.0, description="Energy diff scoring zero")
    brightness: float = Field(default=0.5, gt=0.0, description="Brightness diff scoring zero")


class ThresholdConfig(BaseModel):
    """Per-metric pass/fail bounds used in manual mode."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    tempo: float = Field(default=5.0, ge=0.0, description="Max tempo difference in BPM")
    key: bool = Field(default=True, description="Whether the key must match")
    energy: float = Field(default=0.1, ge=0.0, description="Max energy difference")
    brightness: float = Field(default=0.2, ge=0.0, description="Max brightness difference")
    kick_similarity: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Min kick similarity",
    )
    snare_similarity: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Min snare similarity",
    )


class LoopConfig(BaseModel):
    """Settings for one refinement-loop job."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: ConvergenceMode = "auto"
    target_score: float = Field(default=80.0, ge=0.0, le=100.0)
    max_iterations: int = Field(default=5, ge=1)
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Render retries per iteration; the last retry uses the fallback candidate",
    )
    render_duration: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound on seconds rendered per candidate",
    )
    validate_before_render: bool = True
    weights: WeightConfig = Field(default_factory=WeightConfig)
    caps: ScoreCaps = Field(default_factory=ScoreCaps)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    banned_operators: tuple[str, ...] = DEFAULT_BANNED_OPERATORS


class BuilderConfig(BaseModel):
    """Settings for the hierarchical section/measure/layer builder."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    measures_per_section: int = Field(
        default=2,
        ge=1,
        description="Representative measures generated per section",
    )
    max_layer_retries: int = Field(default=2, ge=0, le=10)
    preview_delay: float = Field(
        default=0.0,
        ge=0.0,
        description="Pacing delay after each accepted layer, for live listening",
    )
    sink_timeout: float = Field(
        default=1.0,
        gt=0.0,
        description="Max seconds to wait on a live-preview notification",
    )
    min_duration: float = Field(
        default=0.0,
        ge=0.0,
        description="Repeat the arrangement until it covers this many seconds",
    )
    banned_operators: tuple[str, ...] = DEFAULT_BANNED_OPERATORS


DEFAULT_LOOP_CONFIG = LoopConfig()
DEFAULT_BUILDER_CONFIG = BuilderConfig()
