from __future__ import annotations

import pytest

from strudelcover.patterns import (
    DRUM_TEMPLATES,
    clean_fragment,
    clean_pattern,
    ensure_tempo,
    extract_tempo,
    fallback_candidate,
    layer_fallback,
    minimal_fallback,
    scale_degrees,
    select_drum_template,
)
from strudelcover.validation import validate_pattern


def test_clean_pattern_strips_fences_and_prose() -> None:
    raw = (
        "Here is your pattern:\n"
        "```javascript\n"
        "setcps(120/60/4)\n"
        '$: s("bd*4")\n'
        "```\n"
        "This pattern uses a four on the floor kick."
    )

    assert clean_pattern(raw) == 'setcps(120/60/4)\n$: s("bd*4")'


def test_clean_pattern_drops_trailing_capitalised_lines() -> None:
    raw = 'setcps(1)\n$: stack(\n  s("bd")\n)\nEnjoy the groove!'

    assert clean_pattern(raw) == 'setcps(1)\n$: stack(\n  s("bd")\n)'


def test_clean_pattern_keeps_plain_code() -> None:
    assert clean_pattern('s("hh*8")') == 's("hh*8")'


def test_clean_fragment_drops_prose_before_bare_call() -> None:
    raw = 'Here is the bass layer:\nn("36 ~ 43 ~").s("saw")'

    fragment = clean_fragment(raw)

    assert fragment == 'n("36 ~ 43 ~").s("saw")'
    assert validate_pattern(fragment).valid


def test_clean_pattern_starts_at_first_call_line() -> None:
    raw = 'Sure, here it is:\n\nnote("c e g").sound("piano")\n  .gain(0.5)'

    assert clean_pattern(raw) == 'note("c e g").sound("piano")\n  .gain(0.5)'


def test_clean_fragment_removes_tempo_and_play_prefix() -> None:
    raw = '```\nsetcps(120/60/4)\n$: s("bd*4"),\n```'

    assert clean_fragment(raw) == 's("bd*4")'


def test_ensure_tempo_rewrites_existing_line() -> None:
    pattern = 'setcps(0.5)\n$: s("bd")'

    assert ensure_tempo(pattern, 128) == 'setcps(128/60/4)\n$: s("bd")'


def test_ensure_tempo_adds_missing_line() -> None:
    assert ensure_tempo('s("bd")', 97.5) == 'setcps(97.5/60/4)\ns("bd")'


def test_extract_tempo() -> None:
    assert extract_tempo('setcps(128/60/4)\n$: s("bd")') == 128.0
    assert extract_tempo("setcps(0.5)") == 120.0
    assert extract_tempo('s("bd")') is None


def test_scale_degrees_major_and_minor() -> None:
    c_major = scale_degrees("C")
    a_minor = scale_degrees("A minor")

    assert c_major.root == 48
    assert c_major.third == 52
    assert c_major.octave == 60
    assert a_minor.root == 57
    assert a_minor.third == 60
    assert scale_degrees("Am").third == a_minor.third


@pytest.mark.parametrize(
    ("tempo", "energy", "name"),
    [
        (80.0, 0.2, "ambient"),
        (100.0, 0.8, "rock"),
        (125.0, 0.9, "four_on_floor"),
        (140.0, 0.3, "trap"),
        (174.0, 0.5, "jungle"),
    ],
)
def test_select_drum_template(tempo: float, energy: float, name: str) -> None:
    assert select_drum_template(tempo, energy) is DRUM_TEMPLATES[name]


@pytest.mark.parametrize(("tempo", "key"), [(120.0, "C"), (87.5, "F# minor"), (174.0, "Bb")])
def test_fallback_candidate_is_valid_and_deterministic(tempo: float, key: str) -> None:
    candidate = fallback_candidate(tempo, key)

    assert validate_pattern(candidate).valid
    assert candidate == fallback_candidate(tempo, key)
    assert extract_tempo(candidate) == tempo


def test_minimal_fallback_is_valid() -> None:
    pattern = minimal_fallback(120.0)

    assert validate_pattern(pattern).valid
    assert pattern.startswith("setcps(120/60/4)")


@pytest.mark.parametrize("layer_type", ["drums", "bass", "harmony", "melody", "fx"])
def test_layer_fallbacks_are_valid(layer_type: str) -> None:
    fragment = layer_fallback(layer_type, "E minor", 0.6)  # type: ignore[arg-type]

    assert validate_pattern(fragment).valid
    assert "setcps" not in fragment


def test_layer_fallback_unknown_type() -> None:
    with pytest.raises(ValueError):
        layer_fallback("vocals", "C")  # type: ignore[arg-type]
