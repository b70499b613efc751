"""Bounded retry around a single render, ending in a known-good fallback.

`render_with_recovery` with `max_retries=N` renders at most `N + 1` times.
The first render is the candidate as given; each later regular attempt is a
Refiner correction that sees every earlier failure; the final slot is the
fallback candidate, rendered once with no further recovery. With `N = 0` the
fallback still gets its one render after the first attempt.

Only failures of regular attempts are recorded as `ErrorAttempt`s; a failing
fallback raises `RecoveryExhaustedError` carrying that history.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from pydantic import BaseModel, ConfigDict

from .classifier import ErrorDiagnosis, FailureKind, classify_failure
from .collaborators import Refiner, Renderer, RenderResult
from .config import DEFAULT_BANNED_OPERATORS
from .errors import (
    CollaboratorUnavailableError,
    RecoveryExhaustedError,
    RefinerResponseError,
    RenderFailedError,
    StrudelCoverError,
)
from .patterns import clean_pattern, ensure_tempo
from .prompts import build_recovery_conversation
from .validation import validate_pattern

_LOGGER = logging.getLogger("strudelcover.recovery")


class ErrorAttempt(BaseModel):
    """A rejected candidate and the reason it was rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    candidate: str
    error: str
    kind: FailureKind = "error"


class RecoveryOutcome(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    candidate: str
    result: RenderResult
    attempts: tuple[ErrorAttempt, ...] = ()
    used_fallback: bool = False
    renders: int = 0

    @property
    def audio_bytes(self) -> bytes:
        if self.result.audio_bytes is None:
            raise StrudelCoverError("Recovery outcome carries no audio")
        return self.result.audio_bytes


class _Failure(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: FailureKind
    detail: str


async def _render_once(
    renderer: Renderer,
    candidate: str,
    duration: float,
) -> RenderResult | _Failure:
    try:
        result = await renderer.render(candidate, duration)
    except CollaboratorUnavailableError:
        raise
    except RenderFailedError as exc:
        return _Failure(kind=exc.status, detail=exc.detail)
    except Exception as exc:
        _LOGGER.warning("Renderer raised: %s", exc)
        return _Failure(kind="error", detail=str(exc) or type(exc).__name__)
    match result.status:
        case "ok":
            return result
        case "silent":
            return _Failure(kind="silent", detail=result.error_detail or "")
        case _:
            return _Failure(kind="error", detail=result.error_detail or "Render failed")


async def _request_fix(
    refiner: Refiner,
    candidate: str,
    diagnosis: ErrorDiagnosis,
    attempts: list[ErrorAttempt],
    tempo: float | None,
) -> str:
    conversation = build_recovery_conversation(candidate, diagnosis, attempts, tempo)
    try:
        raw = await refiner.complete(conversation)
    except RefinerResponseError as exc:
        _LOGGER.warning("Refiner returned no usable fix: %s", exc)
        return ""
    _LOGGER.debug("Recovery completion: %s", raw)
    fixed = clean_pattern(raw)
    if fixed and tempo is not None:
        fixed = ensure_tempo(fixed, tempo)
    return fixed


async def render_with_recovery(
    candidate: str,
    renderer: Renderer,
    refiner: Refiner,
    *,
    max_retries: int,
    duration: float,
    fallback: str | None = None,
    tempo: float | None = None,
    validate: bool = True,
    banned_operators: Iterable[str] = DEFAULT_BANNED_OPERATORS,
    on_failure: Callable[[ErrorAttempt], None] | None = None,
) -> RecoveryOutcome:
    """Render `candidate`, asking the Refiner for fixes on failure.

    Raises `RecoveryExhaustedError` when every regular attempt failed and
    either no fallback was given or the fallback failed too. Collaborator
    unavailability propagates untouched.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    banned = tuple(banned_operators)
    if fallback is None:
        regular_slots = max_retries + 1
    else:
        regular_slots = max(max_retries, 1)

    attempts: list[ErrorAttempt] = []
    renders = 0
    current = candidate
    diagnosis: ErrorDiagnosis | None = None
    for index in range(regular_slots):
        if index > 0 and diagnosis is not None:
            current = await _request_fix(refiner, attempts[-1].candidate, diagnosis, attempts, tempo)

        outcome: RenderResult | _Failure
        report = validate_pattern(current, banned_operators=banned) if validate else None
        if report is not None and not report.valid:
            outcome = _Failure(kind="validation", detail="; ".join(report.errors))
        else:
            renders += 1
            outcome = await _render_once(renderer, current, duration)

        if isinstance(outcome, RenderResult):
            if attempts:
                _LOGGER.info("Recovered after %d failed attempt(s)", len(attempts))
            return RecoveryOutcome(
                candidate=current,
                result=outcome,
                attempts=tuple(attempts),
                used_fallback=False,
                renders=renders,
            )

        diagnosis = classify_failure(current, outcome.kind, outcome.detail, banned_operators=banned)
        attempt = ErrorAttempt(candidate=current, error=diagnosis.message, kind=outcome.kind)
        attempts.append(attempt)
        _LOGGER.warning(
            "Attempt %d/%d failed (%s): %s",
            index + 1,
            regular_slots,
            outcome.kind,
            diagnosis.message,
        )
        if on_failure is not None:
            on_failure(attempt)

    if fallback is None:
        raise RecoveryExhaustedError(
            f"Render failed after {len(attempts)} attempt(s) with no fallback", attempts
        )

    _LOGGER.warning("Retries exhausted; rendering fallback candidate")
    renders += 1
    outcome = await _render_once(renderer, fallback, duration)
    if isinstance(outcome, _Failure):
        raise RecoveryExhaustedError(
            f"Fallback candidate failed ({outcome.kind}): {outcome.detail or 'no detail'}",
            attempts,
        )
    return RecoveryOutcome(
        candidate=fallback,
        result=outcome,
        attempts=tuple(attempts),
        used_fallback=True,
        renders=renders,
    )
