"""Section / measure / layer records for the hierarchical builder.

Records are derived once per build from the reference features and are never
mutated; the builder only attaches generated fragments alongside them.
"""

from __future__ import annotations

import logging
import math
from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

from .features import BEATS_PER_CYCLE, FeatureVector
from .patterns import LayerType

_LOGGER = logging.getLogger("strudelcover.structure")


class Layer(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    type: LayerType
    style: str = ""


class Measure(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int = Field(..., ge=0, description="Bar index within the section")
    layers: tuple[Layer, ...]


class Section(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int = Field(..., ge=0)
    type: str
    energy: float = Field(..., ge=0.0, le=1.0)
    bars: int = Field(..., ge=1)
    start: float = Field(default=0.0, ge=0.0)
    duration: float = Field(..., gt=0.0)
    measures: tuple[Measure, ...]

    @property
    def name(self) -> str:
        return f"{self.type}-{self.index}"


class SectionTemplate(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str
    bars: int = Field(..., ge=1)
    energy: float = Field(..., ge=0.0, le=1.0)


class SongStructure(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    sections: tuple[SectionTemplate, ...]


def _structure(name: str, *sections: tuple[str, int, float]) -> SongStructure:
    return SongStructure(
        name=name,
        sections=tuple(
            SectionTemplate(type=kind, bars=bars, energy=energy) for kind, bars, energy in sections
        ),
    )


SONG_STRUCTURES: Mapping[str, SongStructure] = MappingProxyType(
    {
        "pop": _structure(
            "Pop/Rock",
            ("intro", 4, 0.3),
            ("verse", 8, 0.5),
            ("chorus", 8, 0.8),
            ("verse", 8, 0.5),
            ("chorus", 8, 0.8),
            ("bridge", 8, 0.6),
            ("chorus", 8, 0.9),
            ("outro", 4, 0.3),
        ),
        "electronic": _structure(
            "Electronic/Dance",
            ("intro", 8, 0.2),
            ("buildup", 8, 0.4),
            ("drop", 16, 0.9),
            ("breakdown", 8, 0.5),
            ("buildup", 8, 0.6),
            ("drop", 16, 1.0),
            ("outro", 8, 0.3),
        ),
        "hiphop": _structure(
            "Hip-Hop",
            ("intro", 4, 0.4),
            ("verse", 16, 0.6),
            ("hook", 8, 0.8),
            ("verse", 16, 0.6),
            ("hook", 8, 0.8),
            ("verse", 16, 0.7),
            ("hook", 8, 0.8),
            ("outro", 4, 0.4),
        ),
        "experimental": _structure(
            "Experimental/Ambient",
            ("intro", 16, 0.1),
            ("development", 32, 0.4),
            ("climax", 16, 0.7),
            ("resolution", 24, 0.3),
            ("coda", 8, 0.1),
        ),
    }
)

_ATMOSPHERE = "atmosphere"
_CHORDS = "chords"
_LEAD = "lead"

# Build order per section type; earlier layers are given to later ones as context.
SECTION_LAYERS: Mapping[str, tuple[Layer, ...]] = MappingProxyType(
    {
        "intro": (
            Layer(id=_ATMOSPHERE, type="fx", style="ambient pad"),
            Layer(id="drums", type="drums", style="minimal"),
            Layer(id="bass", type="bass", style="sparse"),
        ),
        "verse": (
            Layer(id="drums", type="drums", style="steady groove"),
            Layer(id="bass", type="bass", style="melodic bassline"),
            Layer(id=_CHORDS, type="harmony", style="warm chords"),
        ),
        "chorus": (
            Layer(id="drums", type="drums", style="energetic"),
            Layer(id="bass", type="bass", style="driving bassline"),
            Layer(id=_CHORDS, type="harmony", style="full chords"),
            Layer(id=_LEAD, type="melody", style="catchy hook"),
        ),
        "bridge": (
            Layer(id=_ATMOSPHERE, type="fx", style="ethereal"),
            Layer(id="bass", type="bass", style="minimal"),
            Layer(id=_LEAD, type="melody", style="contrasting melody"),
        ),
        "outro": (
            Layer(id=_ATMOSPHERE, type="fx", style="fading"),
            Layer(id="drums", type="drums", style="sparse"),
        ),
    }
)
_SECTION_ALIASES = {
    "hook": "chorus",
    "drop": "chorus",
    "climax": "chorus",
    "buildup": "verse",
    "development": "verse",
    "breakdown": "bridge",
    "resolution": "bridge",
    "coda": "outro",
}


def detect_structure(tempo: float) -> SongStructure:
    if 120 < tempo < 140:
        return SONG_STRUCTURES["electronic"]
    if 80 < tempo < 100:
        return SONG_STRUCTURES["hiphop"]
    if tempo < 80 or tempo > 160:
        return SONG_STRUCTURES["experimental"]
    return SONG_STRUCTURES["pop"]


def layers_for(section_type: str) -> tuple[Layer, ...]:
    canonical = _SECTION_ALIASES.get(section_type, section_type)
    return SECTION_LAYERS.get(canonical, SECTION_LAYERS["verse"])


def bar_seconds(tempo: float) -> float:
    return BEATS_PER_CYCLE * 60.0 / tempo


def derive_sections(
    reference: FeatureVector,
    *,
    structure: SongStructure | None = None,
) -> tuple[Section, ...]:
    """Lay the structure over the reference timeline, truncating at its duration.

    A reference with zero duration keeps the whole structure.
    """
    structure = structure or detect_structure(reference.tempo)
    bar = bar_seconds(reference.tempo)
    limit = reference.duration if reference.duration > 0 else math.inf
    sections: list[Section] = []
    start = 0.0
    for template in structure.sections:
        if start >= limit - 1e-9:
            break
        bars = template.bars
        remaining = limit - start
        if bars * bar > remaining:
            bars = max(1, math.ceil(remaining / bar - 1e-9))
        duration = min(bars * bar, remaining)
        layers = layers_for(template.type)
        sections.append(
            Section(
                index=len(sections),
                type=template.type,
                energy=template.energy,
                bars=bars,
                start=start,
                duration=duration,
                measures=tuple(Measure(index=i, layers=layers) for i in range(bars)),
            )
        )
        start += duration
    _LOGGER.info(
        "Derived %d section(s) from %s structure at %.1f BPM",
        len(sections),
        structure.name,
        reference.tempo,
    )
    return tuple(sections)
