"""Cheap static checks run on candidate text before it is rendered."""

from __future__ import annotations

import re
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict

from .config import DEFAULT_BANNED_OPERATORS
from .errors import PatternValidationError

KNOWN_FUNCTIONS = frozenset(
    {
        # sound and note
        "sound", "s", "note", "n", "scale", "mode", "bank",
        # time
        "slow", "fast", "rev", "palindrome", "iter", "iterBack", "euclid", "euclidRot",
        "euclidLegato", "early", "late", "ply", "hurry",
        # structure
        "cat", "seq", "fastcat", "slowcat", "stack", "superimpose", "add", "sub", "mul",
        "div", "struct", "mask", "when", "every", "firstOf", "lastOf", "someCycles",
        "someCyclesBy", "off", "layer",
        # randomness
        "sometimes", "sometimesBy", "rarely", "often", "almostAlways", "almostNever",
        "degrade", "degradeBy", "choose", "wchoose", "pick", "range", "segment",
        # effects
        "jux", "juxBy", "delay", "delaytime", "delayfeedback", "room", "roomsize", "size",
        "dry", "lpf", "hpf", "bpf", "lpq", "hpq", "bpq", "cutoff", "resonance", "gain",
        "velocity", "pan", "speed", "crush", "coarse", "shape", "distort", "vowel", "orbit",
        # envelopes
        "attack", "decay", "sustain", "release", "hold", "legato", "clip",
        # sample manipulation
        "chop", "striate", "slice", "splice", "cut", "chunk", "begin", "end", "loopAt",
        # tempo and misc
        "setcps", "setcpm", "cpm", "silence", "arrange",
    }
)

_DELIMITERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {value: key for key, value in _DELIMITERS.items()}
_QUOTES = frozenset({'"', "'", "`"})
_METHOD_CALL = re.compile(r"\.\s*([A-Za-z_]\w*)\s*\(")
_UNQUOTED_SOUND = re.compile(r"\.(?:sound|s)\s*\(\s*([^'\"`\)\s][^\)]*)\)")


class ValidationReport(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.errors


def delimiter_problems(pattern: str) -> list[str]:
    """Report unbalanced (), [], {} and unclosed string literals, ignoring string contents."""
    problems: list[str] = []
    stack: list[str] = []
    quote: str | None = None
    escaped = False
    for char in pattern:
        if quote is not None:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in _QUOTES:
            quote = char
        elif char in _DELIMITERS:
            stack.append(char)
        elif char in _CLOSERS:
            if not stack or stack[-1] != _CLOSERS[char]:
                problems.append(f"Unexpected closing '{char}'")
                continue
            stack.pop()
    if quote is not None:
        problems.append(f"Unclosed string literal ({quote})")
    for opener in reversed(stack):
        problems.append(f"Unclosed '{opener}' (missing '{_DELIMITERS[opener]}')")
    return problems


def banned_operator_problems(pattern: str, banned: Iterable[str]) -> list[str]:
    return [f"Disallowed operator '{operator}'" for operator in banned if operator in pattern]


def unknown_functions(pattern: str) -> list[str]:
    seen: list[str] = []
    for match in _METHOD_CALL.finditer(pattern):
        name = match.group(1)
        if name not in KNOWN_FUNCTIONS and name not in seen:
            seen.append(name)
    return seen


def quoting_problems(pattern: str) -> list[str]:
    problems: list[str] = []
    for match in _UNQUOTED_SOUND.finditer(pattern):
        argument = match.group(1).strip()
        if argument and not re.fullmatch(r"[A-Za-z_]\w*", argument):
            problems.append(f'Sound argument should be quoted: .s("{argument}")')
    return problems


def validate_pattern(
    pattern: str,
    *,
    banned_operators: Iterable[str] = DEFAULT_BANNED_OPERATORS,
) -> ValidationReport:
    if not pattern or not pattern.strip():
        return ValidationReport(errors=("Pattern is empty",))

    errors = [
        *delimiter_problems(pattern),
        *banned_operator_problems(pattern, banned_operators),
        *quoting_problems(pattern),
    ]
    warnings = [f"Unknown function '{name}'" for name in unknown_functions(pattern)]
    if "setcps" not in pattern and "cpm" not in pattern:
        warnings.append("No tempo set; consider setcps()")
    return ValidationReport(errors=tuple(errors), warnings=tuple(warnings))


def ensure_valid(
    pattern: str,
    *,
    banned_operators: Iterable[str] = DEFAULT_BANNED_OPERATORS,
) -> str:
    report = validate_pattern(pattern, banned_operators=banned_operators)
    if not report.valid:
        raise PatternValidationError(report.errors)
    return pattern
