"""Conversation builders for every Refiner call the core makes."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from .classifier import ErrorDiagnosis
from .collaborators import ChatMessage
from .comparator import Comparison
from .config import ThresholdConfig
from .features import FeatureVector
from .patterns import (
    describe_brightness,
    describe_level,
    drum_stack,
    format_number,
    scale_degrees,
    select_drum_template,
)

if TYPE_CHECKING:
    from .recovery import ErrorAttempt
    from .structure import Layer, Section

_STRUDEL_BASICS = """Basic Strudel syntax:
- Samples: s("bd"), s("cp"), s("hh") are drum sounds
- Synths: n("60").s("sine"), n("48").s("saw") are melodic sounds
- "sine", "saw", "tri", "square" are synths, not samples; always use them with n().s()
- Valid effects: .gain(), .room(), .delay(), .lpf(), .hpf(), .pan()
- Do not use .reverb(), .chorus(), eval(), require() or '..'"""

INITIAL_SYSTEM_PROMPT = (
    "You create Strudel live coding patterns from audio analysis.\n"
    "Only respond with valid Strudel JavaScript code.\n\n" + _STRUDEL_BASICS
)
REFINE_SYSTEM_PROMPT = (
    "You refine Strudel patterns. Adjust them based on the comparison data.\n"
    "Only respond with valid Strudel code."
)
RECOVERY_SYSTEM_PROMPT = (
    "You fix Strudel pattern errors.\n"
    "Only respond with valid Strudel code.\n\n" + _STRUDEL_BASICS
)
LAYER_SYSTEM_PROMPT = (
    "You write one instrument layer of a Strudel pattern at a time.\n"
    "Return a single Strudel expression for that layer only: no setcps, no $:, "
    "no markdown fences, no explanations.\n\n" + _STRUDEL_BASICS
)

EMPTY_REPLY = "<empty reply>"

_SECTION_GOALS = {
    "intro": "Start sparse and atmospheric, gradually building tension",
    "verse": "Establish the main groove and harmonic foundation",
    "chorus": "Full energy with all elements, memorable and catchy",
    "hook": "Full energy with all elements, memorable and catchy",
    "bridge": "Create contrast, maybe a breakdown or build-up",
    "buildup": "Raise tension towards the drop",
    "drop": "Peak energy, heavy drums and bass",
    "breakdown": "Strip back to a few elements",
    "outro": "Wind down, return to sparse elements",
}
_LAYER_GOALS = {
    "fx": "Create ambient pads, textures, and space",
    "drums": "Build the rhythmic foundation with kick, snare and hats",
    "bass": "Provide low-end support and groove",
    "harmony": "Add harmonic content and progression",
    "melody": "Create melodic interest and hooks",
}


def _replayed(candidate: str) -> str:
    # Chat providers reject empty assistant turns.
    return candidate or EMPTY_REPLY


def _positions(values: Sequence[float]) -> str:
    if not values:
        return "None detected"
    return ", ".join(format_number(value) for value in values)


def build_initial_prompt(reference: FeatureVector, artist: str, song: str) -> str:
    tempo = format_number(reference.tempo)
    scale = scale_degrees(reference.key)
    template = select_drum_template(reference.tempo, reference.energy)
    drums = ",\n".join(drum_stack(template, 0.6))
    return f"""Create a Strudel pattern for "{song}" by {artist}.

Audio Analysis:
- Tempo: {tempo} BPM (use setcps({tempo}/60/4))
- Key: {reference.key}
- Duration: {reference.duration:.1f} seconds
- Energy: {reference.energy:.2f} ({describe_level(reference.energy)})
- Brightness: {reference.brightness:.2f} ({describe_brightness(reference.brightness)})
- RMS: {reference.rms:.3f}

Detected Rhythm Pattern (beat offsets within a 4-beat cycle):
- Kick positions: {_positions(reference.rhythm.kick)}
- Snare positions: {_positions(reference.rhythm.snare)}
- Hihat positions: {_positions(reference.rhythm.hihat)}

Scale MIDI numbers for {reference.key}:
- Root (octave 2): {scale.root - 24}
- Root (octave 3): {scale.root - 12}
- Root (octave 4): {scale.root}
- Third: {scale.third}
- Fifth: {scale.fifth}
- Octave: {scale.octave}

Suggested drum pattern ({template.description}):
{drums}

Working example:
setcps({tempo}/60/4)
$: stack(
  s("bd ~ ~ bd").gain(0.7),
  s("~ cp ~ cp").gain(0.5),
  s("hh*8").gain(0.3),
  n("{scale.root - 24} ~ {scale.root - 12} ~").s("saw").gain(0.4).lpf(800),
  n("<{scale.root} {scale.third} {scale.fifth}>").s("square").gain(0.2).room(0.5),
  n("~ {scale.root + 12} ~ {scale.fifth + 12}").s("tri").gain(0.3).delay(0.25)
).room(0.3)

Create something that captures the feel of "{song}" by {artist}."""


def build_initial_conversation(
    reference: FeatureVector, artist: str, song: str
) -> list[ChatMessage]:
    return [
        {"role": "system", "content": INITIAL_SYSTEM_PROMPT},
        {"role": "user", "content": build_initial_prompt(reference, artist, song)},
    ]


def refinement_improvements(
    comparison: Comparison,
    reference: FeatureVector,
    thresholds: ThresholdConfig | None = None,
) -> list[str]:
    thresholds = thresholds or ThresholdConfig()
    improvements: list[str] = []
    if comparison.tempo_diff > thresholds.tempo:
        improvements.append(
            f"Adjust tempo: currently {format_number(comparison.tempo_diff)} BPM off. "
            f"Target: {format_number(reference.tempo)} BPM"
        )
    if not comparison.key_match:
        improvements.append(f"Change key to {reference.key}")
    if comparison.energy_diff > thresholds.energy:
        improvements.append(
            f"Adjust volume/dynamics towards energy {reference.energy:.2f} "
            f"({describe_level(reference.energy)})"
        )
    if comparison.brightness_diff > thresholds.brightness:
        improvements.append(
            f"Adjust brightness towards {reference.brightness:.2f} "
            f"({describe_brightness(reference.brightness)}) with .lpf()/.hpf()"
        )
    if comparison.kick_similarity < thresholds.kick_similarity:
        improvements.append(
            f"Improve kick pattern. Target positions: {_positions(reference.rhythm.kick)}"
        )
    if comparison.snare_similarity < thresholds.snare_similarity:
        improvements.append(
            f"Improve snare pattern. Target positions: {_positions(reference.rhythm.snare)}"
        )
    return improvements


def build_refinement_prompt(
    candidate: str,
    comparison: Comparison,
    reference: FeatureVector,
    thresholds: ThresholdConfig | None = None,
) -> str:
    improvements = refinement_improvements(comparison, reference, thresholds)
    if improvements:
        listing = "\n".join(f"{index}. {item}" for index, item in enumerate(improvements, 1))
    else:
        listing = "1. Every metric is within bounds; polish the arrangement without changing the groove"
    return f"""Refine this Strudel pattern:

```
{candidate}
```

Needed improvements:
{listing}

Comparison score: {format_number(comparison.score)}/100

Make minimal changes to improve the match. Keep the overall structure but adjust the specific issues listed."""


def build_refinement_conversation(
    candidate: str,
    comparison: Comparison,
    reference: FeatureVector,
    thresholds: ThresholdConfig | None = None,
) -> list[ChatMessage]:
    return [
        {"role": "system", "content": REFINE_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": build_refinement_prompt(candidate, comparison, reference, thresholds),
        },
    ]


def build_recovery_prompt(
    candidate: str,
    diagnosis: ErrorDiagnosis,
    tempo: float | None = None,
) -> str:
    lines = [
        "The pattern failed to play:",
        "",
        candidate or EMPTY_REPLY,
        "",
        f"Error: {diagnosis.message}",
        "",
        "Possible causes:",
        *(f"- {cause}" for cause in diagnosis.causes),
    ]
    if diagnosis.suggestions:
        lines.extend(["", "Suggested fixes:", *(f"- {tip}" for tip in diagnosis.suggestions)])
    if tempo is not None:
        lines.extend(["", f"Keep setcps({format_number(tempo)}/60/4)."])
    lines.extend(["", "Return the corrected pattern only. Do not repeat any earlier failed version."])
    return "\n".join(lines)


def build_recovery_conversation(
    candidate: str,
    diagnosis: ErrorDiagnosis,
    attempts: Sequence[ErrorAttempt],
    tempo: float | None = None,
) -> list[ChatMessage]:
    """System prompt, earlier failures as assistant/user pairs, then the fix request.

    The most recent attempt is `candidate` itself and is only shown in the fix
    request.
    """
    messages: list[ChatMessage] = [{"role": "system", "content": RECOVERY_SYSTEM_PROMPT}]
    earlier = attempts[:-1] if attempts and attempts[-1].candidate == candidate else attempts
    for attempt in earlier:
        messages.append({"role": "assistant", "content": _replayed(attempt.candidate)})
        messages.append({"role": "user", "content": f"Error: {attempt.error}"})
    messages.append(
        {"role": "user", "content": build_recovery_prompt(candidate, diagnosis, tempo)}
    )
    return messages


def build_layer_prompt(
    section: Section,
    layer: Layer,
    reference: FeatureVector,
    accepted: Sequence[tuple[str, str]],
    *,
    measure_index: int,
    artist: str = "",
    song: str = "",
) -> str:
    title = f'"{artist} - {song}"' if artist or song else "the reference track"
    scale = scale_degrees(reference.key)
    goal = _SECTION_GOALS.get(section.type, "Create an engaging pattern")
    task = _LAYER_GOALS.get(layer.type, "fits the section")
    lines = [
        f"You are creating a Strudel pattern to recreate {title}.",
        "",
        "CONTEXT:",
        f"- Building the {section.type.upper()} section ({section.bars} bars), "
        f"measure {measure_index + 1}",
        f"- Currently working on: {layer.id} layer ({layer.style or layer.type})",
        f"- Musical parameters: {format_number(reference.tempo)} BPM, Key: {reference.key}",
        f"- Scale MIDI numbers: root {scale.root}, third {scale.third}, fifth {scale.fifth}",
        f"- Section energy: {describe_level(section.energy)}",
        "",
        f"SECTION GOAL: {goal}",
    ]
    if accepted:
        lines.extend(["", "LAYERS ALREADY IN THIS MEASURE (complement them, do not repeat them):"])
        lines.extend(f"- {layer_id}: {fragment}" for layer_id, fragment in accepted)
    lines.extend(
        [
            "",
            f"YOUR TASK: Generate the {layer.id} layer. {task}.",
            "Return ONLY one Strudel expression for this layer.",
        ]
    )
    return "\n".join(lines)


def build_layer_conversation(
    section: Section,
    layer: Layer,
    reference: FeatureVector,
    accepted: Sequence[tuple[str, str]],
    failures: Sequence[ErrorAttempt] = (),
    *,
    measure_index: int,
    artist: str = "",
    song: str = "",
) -> list[ChatMessage]:
    messages: list[ChatMessage] = [
        {"role": "system", "content": LAYER_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": build_layer_prompt(
                section,
                layer,
                reference,
                accepted,
                measure_index=measure_index,
                artist=artist,
                song=song,
            ),
        },
    ]
    for failure in failures:
        messages.append({"role": "assistant", "content": _replayed(failure.candidate)})
        messages.append(
            {"role": "user", "content": f"Error: {failure.error}\nFix it and return the layer only."}
        )
    return messages
