from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

BEATS_PER_CYCLE = 4.0


class RhythmPositions(BaseModel):
    """Beat offsets within one cycle at which each drum voice hits."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kick: tuple[float, ...] = ()
    snare: tuple[float, ...] = ()
    hihat: tuple[float, ...] = ()

    @field_validator("kick", "snare", "hihat")
    @classmethod
    def _sorted_positions(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        return tuple(sorted(float(position) for position in value))


class FeatureVector(BaseModel):
    """Acoustic summary of one audio rendering.

    `energy` and `brightness` are normalised to [0, 1]; `brightness` is the
    spectral centroid relative to Nyquist.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    tempo: float = Field(..., gt=0.0, description="Beats per minute")
    key: str = Field(default="C", min_length=1, description="Root plus optional mode, e.g. 'A minor'")
    duration: float = Field(default=30.0, ge=0.0, description="Seconds")
    energy: float = Field(default=0.5, ge=0.0, le=1.0)
    brightness: float = Field(default=0.5, ge=0.0, le=1.0)
    rms: float = Field(default=0.0, ge=0.0)
    rhythm: RhythmPositions = Field(default_factory=RhythmPositions)

    @field_validator("key")
    @classmethod
    def _normalise_key(cls, value: str) -> str:
        return " ".join(value.split())

    @property
    def key_root(self) -> str:
        return self.key.split(" ")[0]

    @property
    def is_minor(self) -> bool:
        lowered = self.key.lower()
        return "minor" in lowered or lowered.endswith("m")
