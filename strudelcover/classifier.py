"""Classify render failures into probable causes and fix suggestions.

The classifier only looks at the candidate text and the failure detail the
renderer reported; it never renders or parses the pattern grammar.
"""

from __future__ import annotations

import difflib
import logging
import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_BANNED_OPERATORS
from .validation import (
    KNOWN_FUNCTIONS,
    banned_operator_problems,
    delimiter_problems,
    quoting_problems,
    unknown_functions,
)

_LOGGER = logging.getLogger("strudelcover.classifier")

FailureKind = Literal["error", "silent", "validation"]

SILENT_MESSAGE = "Pattern is generating silence"

_NOT_DEFINED = re.compile(r"([A-Za-z_$][\w$]*)\s+is not (?:defined|a function)")
_SOUND_NOT_FOUND = re.compile(r"sound\s+['\"]?([\w:]+)['\"]?\s+not found", re.IGNORECASE)
_SYNTAX_HINTS = ("unexpected token", "unterminated string", "missing ) after", "unexpected end")

_OPERATOR_FIXES = {
    ".reverb(": "Use .room() for reverb",
    ".chorus(": "Remove .chorus(); it is not a pattern effect",
    "..": "Replace '..' with a single '.' between chained calls",
    "eval(": "Remove eval(); write the pattern directly",
    "require(": "Remove require(); no modules are available",
    "import(": "Remove import(); no modules are available",
}
_SYNTH_ALIASES = {"triangle": "tri", "sawtooth": "saw"}
_SYNTH_NAMES = frozenset({"sine", "saw", "tri", "square"})
_NON_SAMPLES = frozenset({"pad", "noise", "lead", "pluck"})


class Correction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    wrong: str
    correct: str
    context: str


class ErrorDiagnosis(BaseModel):
    """Probable causes and suggested fixes for one failed candidate."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: FailureKind
    detail: str
    causes: tuple[str, ...] = Field(default_factory=tuple)
    suggestions: tuple[str, ...] = Field(default_factory=tuple)
    corrections: tuple[Correction, ...] = Field(default_factory=tuple)

    @property
    def message(self) -> str:
        """One-line summary suitable for an error-attempt record."""
        if self.detail:
            return self.detail
        if self.causes:
            return self.causes[0]
        return SILENT_MESSAGE if self.kind == "silent" else "Render failed"


def learned_corrections(runtime_error: str) -> list[Correction]:
    corrections: list[Correction] = []
    for match in _NOT_DEFINED.finditer(runtime_error):
        name = match.group(1)
        if name in _SYNTH_ALIASES:
            alias = _SYNTH_ALIASES[name]
            corrections.append(
                Correction(
                    wrong=name,
                    correct=alias,
                    context=f'Use .s("{alias}") not .s("{name}")',
                )
            )
        elif name in _SYNTH_NAMES:
            corrections.append(
                Correction(
                    wrong=f's("{name}")',
                    correct=f'n("note").s("{name}")',
                    context=f"{name} is a synth, use it with n()",
                )
            )
    for match in _SOUND_NOT_FOUND.finditer(runtime_error):
        sound = match.group(1)
        if sound in _SYNTH_ALIASES:
            alias = _SYNTH_ALIASES[sound]
            corrections.append(
                Correction(wrong=f's("{sound}")', correct=f's("{alias}")', context=f"Use {alias}")
            )
        elif sound in _NON_SAMPLES:
            corrections.append(
                Correction(
                    wrong=f's("{sound}")',
                    correct="synthesis",
                    context=f"{sound} is not a sample, use a synth such as n(...).s(\"saw\")",
                )
            )
    return corrections


def _suggest_name(name: str) -> str | None:
    matches = difflib.get_close_matches(name, sorted(KNOWN_FUNCTIONS), n=1, cutoff=0.75)
    return matches[0] if matches else None


def classify_failure(
    candidate: str,
    kind: FailureKind,
    detail: str = "",
    *,
    banned_operators: tuple[str, ...] = DEFAULT_BANNED_OPERATORS,
) -> ErrorDiagnosis:
    causes: list[str] = []
    suggestions: list[str] = []
    detail = (detail or "").strip()
    lowered = detail.lower()

    delimiter_issues = delimiter_problems(candidate)
    if delimiter_issues:
        causes.extend(delimiter_issues)
        suggestions.append("Balance every (, [ and { and close every string literal")

    for problem in banned_operator_problems(candidate, banned_operators):
        causes.append(problem)
        operator = problem.split("'")[1]
        suggestions.append(_OPERATOR_FIXES.get(operator, f"Remove {operator}"))

    quoting = quoting_problems(candidate)
    if quoting or any(hint in lowered for hint in _SYNTAX_HINTS):
        causes.extend(quoting or [f"Syntax error: {detail}"])
        suggestions.append('Wrap mini-notation and sound names in double quotes, e.g. s("bd hh")')

    unknown = [match.group(1) for match in _NOT_DEFINED.finditer(detail)]
    unknown.extend(name for name in unknown_functions(candidate) if name not in unknown)
    for name in unknown:
        causes.append(f"Unknown identifier '{name}'")
        replacement = _SYNTH_ALIASES.get(name) or _suggest_name(name)
        if replacement:
            suggestions.append(f"Replace '{name}' with '{replacement}'")
        else:
            suggestions.append(f"Remove '{name}'; it is not a known pattern function")

    corrections = learned_corrections(detail)
    suggestions.extend(correction.context for correction in corrections)

    if kind == "silent":
        causes.append(SILENT_MESSAGE)
        suggestions.extend(
            (
                "Check that every layer has a non-zero .gain()",
                'Use sample names that exist (bd, sd, hh, cp, oh) and synths via n("...").s("saw")',
                "Make sure the final expression is played with $: or stack()",
            )
        )

    if not causes:
        causes.append(detail or "Render failed without details")
        suggestions.append("Simplify the pattern to a single stack() of known sounds")

    diagnosis = ErrorDiagnosis(
        kind=kind,
        detail=detail,
        causes=tuple(dict.fromkeys(causes)),
        suggestions=tuple(dict.fromkeys(suggestions)),
        corrections=tuple(corrections),
    )
    _LOGGER.debug("Classified %s failure: %s", kind, diagnosis.causes)
    return diagnosis
