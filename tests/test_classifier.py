from __future__ import annotations

from strudelcover.classifier import SILENT_MESSAGE, classify_failure, learned_corrections

_VALID = 'setcps(120/60/4)\n$: s("bd*4")'


def test_silent_failure_message_and_suggestions() -> None:
    diagnosis = classify_failure(_VALID, "silent")

    assert diagnosis.kind == "silent"
    assert diagnosis.message == SILENT_MESSAGE
    assert SILENT_MESSAGE in diagnosis.causes
    assert any(".gain()" in suggestion for suggestion in diagnosis.suggestions)


def test_undefined_synth_alias() -> None:
    candidate = 'n("60").s(triangle)'
    diagnosis = classify_failure(candidate, "error", "ReferenceError: triangle is not defined")

    assert "Unknown identifier 'triangle'" in diagnosis.causes
    assert "Replace 'triangle' with 'tri'" in diagnosis.suggestions
    assert 'Use .s("tri") not .s("triangle")' in diagnosis.suggestions
    assert diagnosis.corrections[0].correct == "tri"


def test_unbalanced_delimiters_reported() -> None:
    diagnosis = classify_failure('s("bd").gain(0.5', "error", "SyntaxError: missing ) after argument list")

    assert "Unclosed '(' (missing ')')" in diagnosis.causes
    assert any("Balance" in suggestion for suggestion in diagnosis.suggestions)


def test_banned_operator_gets_specific_fix() -> None:
    diagnosis = classify_failure('s("bd").reverb(0.4)', "validation")

    assert "Disallowed operator '.reverb('" in diagnosis.causes
    assert "Use .room() for reverb" in diagnosis.suggestions


def test_unknown_method_suggests_close_match() -> None:
    diagnosis = classify_failure('s("bd").gainn(0.5)', "error")

    assert "Unknown identifier 'gainn'" in diagnosis.causes
    assert "Replace 'gainn' with 'gain'" in diagnosis.suggestions


def test_unknown_method_without_match() -> None:
    diagnosis = classify_failure('s("bd").zzqx(1)', "error")

    assert "Remove 'zzqx'; it is not a known pattern function" in diagnosis.suggestions


def test_generic_failure_keeps_detail() -> None:
    diagnosis = classify_failure(_VALID, "error", "Renderer crashed")

    assert diagnosis.causes == ("Renderer crashed",)
    assert diagnosis.message == "Renderer crashed"


def test_missing_sample_correction() -> None:
    corrections = learned_corrections("Error: sound pad not found! Is it loaded?")

    assert len(corrections) == 1
    assert corrections[0].wrong == 's("pad")'
    assert corrections[0].correct == "synthesis"


def test_synth_used_as_sample() -> None:
    corrections = learned_corrections("sine is not a function")

    assert corrections[0].correct == 'n("note").s("sine")'


def test_causes_are_deduplicated() -> None:
    diagnosis = classify_failure(
        's("bd").foo(1).foo(2)',
        "error",
        "foo is not a function",
    )

    assert diagnosis.causes.count("Unknown identifier 'foo'") == 1
