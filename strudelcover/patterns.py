"""Candidate text helpers: response cleanup, tempo pinning, and fallback patterns."""

from __future__ import annotations

import re
from types import MappingProxyType
from typing import Literal, Mapping

from pydantic import BaseModel, ConfigDict

LayerType = Literal["drums", "bass", "harmony", "melody", "fx"]

_FENCE = re.compile(r"```[\w-]*[ \t]*\n?")
_SETCPS = re.compile(r"setcps\([^)]*\)")
_BPM_EXPR = re.compile(r"(\d+(?:\.\d+)?)\s*/\s*60\s*/\s*4")
_PATTERN_STARTS = ("setcps", "setcpm", "$:", "stack(", "cat(", "const ")
_CALL_START = re.compile(r"[a-z]\w*(?:\.\w+)*\(")
_EXPLANATION_MARKERS = (
    "\nExplanation:",
    "\nNote:",
    "\nThis pattern",
    "\nThe pattern",
    "\nI've created",
    "\nI created",
    "\nHere's what",
    "\n---",
    "\n###",
    "\n##",
)

NOTE_TO_SEMITONE: Mapping[str, int] = MappingProxyType(
    {
        "c": 0, "c#": 1, "db": 1, "d": 2, "d#": 3, "eb": 3, "e": 4, "f": 5, "f#": 6,
        "gb": 6, "g": 7, "g#": 8, "ab": 8, "a": 9, "a#": 10, "bb": 10, "b": 11,
    }
)
_MAJOR_INTERVALS = (0, 2, 4, 5, 7, 9, 11)
_MINOR_INTERVALS = (0, 2, 3, 5, 7, 8, 10)


class ScaleDegrees(BaseModel):
    """MIDI note numbers for the diatonic degrees of a key at one octave."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    root: int
    second: int
    third: int
    fourth: int
    fifth: int
    sixth: int
    seventh: int
    octave: int


class DrumTemplate(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str
    kick: str
    snare: str
    hihat: str


DRUM_TEMPLATES: Mapping[str, DrumTemplate] = MappingProxyType(
    {
        template.name: template
        for template in (
            DrumTemplate(
                name="four_on_floor",
                description="Basic four-on-floor house/techno pattern",
                kick='s("bd*4")',
                snare='s("~ cp ~ cp")',
                hihat='s("hh*8")',
            ),
            DrumTemplate(
                name="rock",
                description="Classic rock beat",
                kick='s("bd ~ ~ bd ~ ~ bd ~")',
                snare='s("~ ~ cp ~ ~ ~ cp ~")',
                hihat='s("hh*8")',
            ),
            DrumTemplate(
                name="hiphop",
                description="Hip-hop boom bap pattern",
                kick='s("bd ~ ~ bd ~ ~ ~ bd")',
                snare='s("~ ~ ~ cp ~ ~ cp ~")',
                hihat='s("hh ~ hh hh ~ hh hh ~")',
            ),
            DrumTemplate(
                name="trap",
                description="Trap-style with rapid hi-hats",
                kick='s("bd ~ ~ ~ bd ~ ~ ~")',
                snare='s("~ ~ ~ cp ~ ~ ~ ~")',
                hihat='s("hh hh hh hh hh hh <hh*2 hh> hh")',
            ),
            DrumTemplate(
                name="dnb",
                description="Drum & bass pattern",
                kick='s("bd ~ ~ ~ ~ ~ bd ~")',
                snare='s("~ ~ cp ~ ~ ~ ~ cp")',
                hihat='s("hh*16")',
            ),
            DrumTemplate(
                name="garage",
                description="UK garage shuffle",
                kick='s("bd ~ ~ ~ bd ~ ~ ~")',
                snare='s("~ ~ cp ~ ~ cp ~ ~")',
                hihat='s("hh ~ hh ~ hh ~ hh ~")',
            ),
            DrumTemplate(
                name="reggaeton",
                description="Reggaeton dembow rhythm",
                kick='s("bd ~ ~ bd ~ ~ bd ~")',
                snare='s("~ ~ cp ~ ~ cp ~ cp")',
                hihat='s("hh ~ hh ~ hh ~ hh ~")',
            ),
            DrumTemplate(
                name="techno",
                description="Driving techno pattern",
                kick='s("bd*4")',
                snare='s("~ cp ~ cp")',
                hihat='s("hh ~ hh ~ hh ~ <hh*2 hh> ~")',
            ),
            DrumTemplate(
                name="ambient",
                description="Minimal ambient percussion",
                kick='s("bd ~ ~ ~ ~ ~ ~ ~")',
                snare='s("~ ~ ~ ~ ~ ~ ~ ~")',
                hihat='s("hh ~ ~ hh ~ ~ ~ ~")',
            ),
            DrumTemplate(
                name="jungle",
                description="Fast jungle/breakcore pattern",
                kick='s("bd ~ ~ bd ~ ~ bd ~")',
                snare='s("~ cp ~ ~ cp ~ cp ~")',
                hihat='s("hh*16")',
            ),
        )
    }
)


def format_number(value: float) -> str:
    rounded = round(float(value), 2)
    if rounded == int(rounded):
        return str(int(rounded))
    return f"{rounded:g}"


def clean_pattern(text: str) -> str:
    """Strip markdown fences and surrounding prose from a raw completion."""
    cleaned = _FENCE.sub("", text).strip()
    lines = cleaned.splitlines()
    start = 0
    for index, line in enumerate(lines):
        stripped = line.strip()
        if (
            stripped.startswith(_PATTERN_STARTS)
            or "stack(" in stripped
            or _CALL_START.match(stripped)
        ):
            start = index
            break
    body = "\n".join(lines[start:])
    for marker in _EXPLANATION_MARKERS:
        position = body.find(marker)
        if position > 0:
            body = body[:position]

    kept = body.rstrip().splitlines()
    for end in range(len(kept), 0, -1):
        line = kept[end - 1].strip()
        if line and not line.startswith("//") and not line[0].isupper():
            kept = kept[:end]
            break
    return "\n".join(kept).strip()


def clean_fragment(text: str) -> str:
    """Reduce a completion to a bare layer expression (no tempo line, no `$:`)."""
    lines = [
        line
        for line in clean_pattern(text).splitlines()
        if not line.strip().startswith(("setcps", "setcpm"))
    ]
    fragment = "\n".join(lines).strip()
    if fragment.startswith("$:"):
        fragment = fragment[2:].strip()
    return fragment.rstrip(",;").strip()


def ensure_tempo(pattern: str, bpm: float) -> str:
    """Pin the pattern's cycle rate to `bpm`, adding a setcps line when missing."""
    line = f"setcps({format_number(bpm)}/60/4)"
    if _SETCPS.search(pattern) is None:
        return f"{line}\n{pattern}" if pattern else line
    return _SETCPS.sub(line, pattern, count=1)


def extract_tempo(pattern: str) -> float | None:
    match = _SETCPS.search(pattern)
    if match is None:
        return None
    expression = match.group(0)[len("setcps(") : -1]
    bpm = _BPM_EXPR.search(expression)
    if bpm is not None:
        return float(bpm.group(1))
    try:
        return round(float(expression) * 60 * 4, 2)
    except ValueError:
        return None


def key_to_semitone(key: str) -> int:
    root = key.strip().split(" ")[0].lower()
    if root.endswith("m") and root[:-1] in NOTE_TO_SEMITONE:
        root = root[:-1]
    return NOTE_TO_SEMITONE.get(root, 0)


def is_minor_key(key: str) -> bool:
    lowered = key.strip().lower()
    return "minor" in lowered or lowered.endswith("m")


def scale_degrees(key: str, octave: int = 3) -> ScaleDegrees:
    base = key_to_semitone(key) + (octave + 1) * 12
    intervals = _MINOR_INTERVALS if is_minor_key(key) else _MAJOR_INTERVALS
    notes = [base + interval for interval in intervals]
    return ScaleDegrees(
        root=notes[0],
        second=notes[1],
        third=notes[2],
        fourth=notes[3],
        fifth=notes[4],
        sixth=notes[5],
        seventh=notes[6],
        octave=base + 12,
    )


def select_drum_template(tempo: float, energy: float) -> DrumTemplate:
    if tempo < 90:
        name = "hiphop" if energy > 0.5 else "ambient"
    elif tempo < 110:
        name = "rock" if energy > 0.5 else "reggaeton"
    elif tempo < 130:
        name = "four_on_floor" if energy > 0.6 else "garage"
    elif tempo < 150:
        name = "techno" if energy > 0.5 else "trap"
    elif tempo < 170:
        name = "dnb"
    else:
        name = "jungle"
    return DRUM_TEMPLATES[name]


def drum_stack(template: DrumTemplate, gain: float = 0.8) -> list[str]:
    return [
        f"{template.kick}.gain({format_number(gain)})",
        f"{template.snare}.gain({format_number(gain * 0.9)})",
        f"{template.hihat}.gain({format_number(gain * 0.5)}).pan(sine.range(-0.2,0.2))",
    ]


def layer_fallback(layer_type: LayerType, key: str, energy: float = 0.5) -> str:
    """Deterministic, statically valid fragment for one layer type."""
    scale = scale_degrees(key)
    level = min(1.0, max(0.1, energy))
    match layer_type:
        case "drums":
            return f's("bd ~ bd ~, ~ cp ~ cp, hh*8").gain({format_number(0.3 + 0.5 * level)})'
        case "bass":
            return (
                f'n("{scale.root - 12} ~ {scale.fifth - 12} ~")'
                f'.s("saw").gain({format_number(0.3 + 0.2 * level)}).lpf(700)'
            )
        case "harmony":
            return (
                f'n("<[{scale.root},{scale.third},{scale.fifth}] '
                f'[{scale.fourth},{scale.sixth},{scale.octave}]>")'
                ".s(\"square\").gain(0.2).room(0.4)"
            )
        case "melody":
            return (
                f'n("{scale.root + 12} ~ {scale.third + 12} {scale.fifth + 12}")'
                '.s("tri").gain(0.3).delay(0.25)'
            )
        case "fx":
            return f'n("{scale.root + 24}").s("sine").gain(0.1).room(0.8).slow(4)'
        case _:
            raise ValueError(f"Unknown layer type: {layer_type}")


def fallback_candidate(tempo: float, key: str, energy: float = 0.5) -> str:
    """Known-good full pattern used once recovery retries are exhausted."""
    template = select_drum_template(tempo, energy)
    scale = scale_degrees(key)
    layers = [
        *drum_stack(template, 0.6),
        f'n("{scale.root - 12} ~ {scale.root} ~").s("saw").gain(0.4).lpf(800)',
        f'n("<{scale.root + 12} {scale.third + 12} {scale.fifth + 12}>").s("square").gain(0.2).room(0.5)',
    ]
    body = ",\n  ".join(layers)
    return f"setcps({format_number(tempo)}/60/4)\n$: stack(\n  {body}\n).room(0.3)"


def minimal_fallback(tempo: float) -> str:
    """Last-resort single-layer pattern."""
    return f'setcps({format_number(tempo)}/60/4)\n$: s("bd*4").gain(0.8)'


def describe_level(value: float) -> str:
    if value < 0.2:
        return "very low"
    if value < 0.4:
        return "low"
    if value < 0.6:
        return "medium"
    if value < 0.8:
        return "high"
    return "very high"


def describe_brightness(value: float) -> str:
    if value < 0.05:
        return "very dark"
    if value < 0.1:
        return "dark"
    if value < 0.2:
        return "balanced"
    if value < 0.35:
        return "bright"
    return "very bright"
