"""Generate, render, analyze, score, decide, refine.

`RefinementLoop.run` keeps the full ordered history and separately tracks the
best iteration (strict `>` so the first-seen maximum wins ties). The caller
always gets the best candidate seen, which is not necessarily the last one.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Callable, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from .collaborators import Analyzer, Refiner, Renderer, renderer_session
from .comparator import Comparison, compare
from .config import DEFAULT_LOOP_CONFIG, LoopConfig, ThresholdConfig
from .convergence import ConvergenceDecision, evaluate
from .errors import CollaboratorUnavailableError, RecoveryExhaustedError, RefinerResponseError
from .features import FeatureVector
from .logging_utils import debug_enabled
from .patterns import clean_pattern, ensure_tempo, fallback_candidate, minimal_fallback
from .prompts import build_initial_conversation, build_refinement_conversation
from .recovery import ErrorAttempt, RecoveryOutcome, render_with_recovery

_LOGGER = logging.getLogger("strudelcover.loop")

StopReason = Literal["converged", "max_iterations", "cancelled"]


class IterationRecord(BaseModel):
    """One append-only history entry."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int = Field(..., ge=0)
    candidate: str
    comparison: Comparison
    audio_ref: str
    checks: dict[str, bool] = Field(default_factory=dict)
    used_fallback: bool = False
    failed_attempts: tuple[ErrorAttempt, ...] = ()

    @property
    def score(self) -> float:
        return self.comparison.score


class CoverResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    best_pattern: str | None
    best_score: float | None
    best_iteration: int | None = None
    history: tuple[IterationRecord, ...] = ()
    stop_reason: StopReason


class LoopHooks(BaseModel):
    on_iteration_start: Callable[[int, str], None] | None = None
    on_render_failure: Callable[[int, ErrorAttempt], None] | None = None
    on_fallback: Callable[[int, str], None] | None = None
    on_iteration: Callable[[IterationRecord, ConvergenceDecision], None] | None = None
    on_new_best: Callable[[IterationRecord], None] | None = None
    on_finish: Callable[[CoverResult], None] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class IterationRecorder(Protocol):
    def store_audio(self, index: int, audio_bytes: bytes) -> str: ...

    def record_iteration(self, record: IterationRecord, decision: ConvergenceDecision) -> None: ...

    def record_final(self, result: CoverResult) -> None: ...


def _emit(
    hooks: LoopHooks | None,
    *,
    kind: Literal["iteration_start", "render_failure", "fallback", "iteration", "new_best", "finish"],
    index: int | None = None,
    candidate: str | None = None,
    attempt: ErrorAttempt | None = None,
    record: IterationRecord | None = None,
    decision: ConvergenceDecision | None = None,
    result: CoverResult | None = None,
) -> None:
    if hooks is None:
        return
    try:
        match kind:
            case "iteration_start":
                if hooks.on_iteration_start is not None and index is not None:
                    hooks.on_iteration_start(index, candidate or "")
            case "render_failure":
                if hooks.on_render_failure is not None and index is not None and attempt is not None:
                    hooks.on_render_failure(index, attempt)
            case "fallback":
                if hooks.on_fallback is not None and index is not None and candidate is not None:
                    hooks.on_fallback(index, candidate)
            case "iteration":
                if hooks.on_iteration is not None and record is not None and decision is not None:
                    hooks.on_iteration(record, decision)
            case "new_best":
                if hooks.on_new_best is not None and record is not None:
                    hooks.on_new_best(record)
            case "finish":
                if hooks.on_finish is not None and result is not None:
                    hooks.on_finish(result)
            case _:
                pass
    except Exception as exc:
        _LOGGER.warning("Loop hook failed: %s", exc, exc_info=debug_enabled())


def audio_digest(audio_bytes: bytes) -> str:
    return f"sha256:{hashlib.sha256(audio_bytes).hexdigest()}"


def _is_cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


async def generate_initial_candidate(
    reference: FeatureVector,
    refiner: Refiner,
    artist: str = "",
    song: str = "",
) -> str:
    """Ask the Refiner for a first candidate; falls back to a template when it returns nothing."""
    conversation = build_initial_conversation(reference, artist or "Unknown artist", song or "Untitled")
    try:
        raw = await refiner.complete(conversation)
    except RefinerResponseError as exc:
        _LOGGER.warning("Initial generation unusable, using fallback candidate: %s", exc)
        return fallback_candidate(reference.tempo, reference.key, reference.energy)
    _LOGGER.debug("Initial completion: %s", raw)
    candidate = clean_pattern(raw)
    if not candidate:
        _LOGGER.warning("Initial generation was empty, using fallback candidate")
        return fallback_candidate(reference.tempo, reference.key, reference.energy)
    return ensure_tempo(candidate, reference.tempo)


async def refine_candidate(
    refiner: Refiner,
    candidate: str,
    comparison: Comparison,
    reference: FeatureVector,
    thresholds: ThresholdConfig | None = None,
) -> str:
    conversation = build_refinement_conversation(candidate, comparison, reference, thresholds)
    try:
        raw = await refiner.complete(conversation)
    except RefinerResponseError as exc:
        _LOGGER.warning("Refinement unusable, keeping current candidate: %s", exc)
        return candidate
    _LOGGER.debug("Refinement completion: %s", raw)
    refined = clean_pattern(raw)
    if not refined:
        _LOGGER.warning("Refinement was empty, keeping current candidate")
        return candidate
    return ensure_tempo(refined, reference.tempo)


class RefinementLoop:
    """Bounded best-so-far search over candidates for one reference."""

    def __init__(
        self,
        renderer: Renderer,
        refiner: Refiner,
        analyzer: Analyzer,
        config: LoopConfig = DEFAULT_LOOP_CONFIG,
        *,
        hooks: LoopHooks | None = None,
        recorder: IterationRecorder | None = None,
    ) -> None:
        self._renderer = renderer
        self._refiner = refiner
        self._analyzer = analyzer
        self._config = config
        self._hooks = hooks
        self._recorder = recorder

    @property
    def config(self) -> LoopConfig:
        return self._config

    def _render_duration(self, reference: FeatureVector) -> float:
        if reference.duration > 0:
            return min(reference.duration, self._config.render_duration)
        return self._config.render_duration

    async def _render(
        self,
        index: int,
        candidate: str,
        reference: FeatureVector,
        duration: float,
    ) -> RecoveryOutcome:
        config = self._config

        def _on_failure(attempt: ErrorAttempt) -> None:
            _emit(self._hooks, kind="render_failure", index=index, attempt=attempt)

        try:
            outcome = await render_with_recovery(
                candidate,
                self._renderer,
                self._refiner,
                max_retries=config.max_retries,
                duration=duration,
                fallback=fallback_candidate(reference.tempo, reference.key, reference.energy),
                tempo=reference.tempo,
                validate=config.validate_before_render,
                banned_operators=config.banned_operators,
                on_failure=_on_failure,
            )
        except RecoveryExhaustedError as exc:
            return await self._render_last_resort(index, reference, duration, exc)
        if outcome.used_fallback:
            _emit(self._hooks, kind="fallback", index=index, candidate=outcome.candidate)
        return outcome

    async def _render_last_resort(
        self,
        index: int,
        reference: FeatureVector,
        duration: float,
        exhausted: RecoveryExhaustedError,
    ) -> RecoveryOutcome:
        last_resort = minimal_fallback(reference.tempo)
        _LOGGER.warning("Recovery exhausted (%s); rendering last-resort pattern", exhausted)
        _emit(self._hooks, kind="fallback", index=index, candidate=last_resort)
        try:
            result = await self._renderer.render(last_resort, duration)
        except CollaboratorUnavailableError:
            raise
        except Exception as exc:
            raise exhausted from exc
        if result.status != "ok":
            raise exhausted
        return RecoveryOutcome(
            candidate=last_resort,
            result=result,
            attempts=tuple(exhausted.attempts),
            used_fallback=True,
        )

    async def run(
        self,
        reference: FeatureVector,
        initial_candidate: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> CoverResult:
        config = self._config
        history: list[IterationRecord] = []
        best: IterationRecord | None = None
        stop_reason: StopReason = "max_iterations"
        duration = self._render_duration(reference)
        current = initial_candidate

        async with renderer_session(self._renderer):
            for index in range(config.max_iterations):
                if _is_cancelled(cancel):
                    stop_reason = "cancelled"
                    break
                _emit(self._hooks, kind="iteration_start", index=index, candidate=current)
                _LOGGER.info("Iteration %d/%d", index + 1, config.max_iterations)

                outcome = await self._render(index, current, reference, duration)
                features = await self._analyzer.analyze(outcome.audio_bytes)
                comparison = compare(reference, features, config.weights, caps=config.caps)
                decision = evaluate(comparison, config.mode, config.target_score, config.thresholds)
                if self._recorder is not None:
                    audio_ref = self._recorder.store_audio(index, outcome.audio_bytes)
                else:
                    audio_ref = audio_digest(outcome.audio_bytes)

                record = IterationRecord(
                    index=index,
                    candidate=outcome.candidate,
                    comparison=comparison,
                    audio_ref=audio_ref,
                    checks=decision.checks,
                    used_fallback=outcome.used_fallback,
                    failed_attempts=outcome.attempts,
                )
                history.append(record)
                if best is None or record.score > best.score:
                    best = record
                    _emit(self._hooks, kind="new_best", record=record)
                _LOGGER.info(
                    "Iteration %d score %.2f (best %.2f, stop=%s)",
                    index + 1,
                    record.score,
                    best.score,
                    decision.stop,
                )
                _emit(self._hooks, kind="iteration", record=record, decision=decision)
                if self._recorder is not None:
                    self._recorder.record_iteration(record, decision)

                if decision.stop:
                    stop_reason = "converged"
                    break
                if index == config.max_iterations - 1:
                    break
                if _is_cancelled(cancel):
                    stop_reason = "cancelled"
                    break
                current = await refine_candidate(
                    self._refiner,
                    outcome.candidate,
                    comparison,
                    reference,
                    config.thresholds,
                )

        result = CoverResult(
            best_pattern=best.candidate if best is not None else None,
            best_score=best.score if best is not None else None,
            best_iteration=best.index if best is not None else None,
            history=tuple(history),
            stop_reason=stop_reason,
        )
        _LOGGER.info(
            "Loop finished (%s) after %d iteration(s); best score %s",
            stop_reason,
            len(history),
            result.best_score,
        )
        if self._recorder is not None:
            self._recorder.record_final(result)
        _emit(self._hooks, kind="finish", result=result)
        return result


async def run_refinement(
    reference: FeatureVector,
    initial_candidate: str,
    renderer: Renderer,
    refiner: Refiner,
    analyzer: Analyzer,
    config: LoopConfig | None = None,
    *,
    hooks: LoopHooks | None = None,
    recorder: IterationRecorder | None = None,
    cancel: asyncio.Event | None = None,
) -> CoverResult:
    loop = RefinementLoop(
        renderer,
        refiner,
        analyzer,
        config or DEFAULT_LOOP_CONFIG,
        hooks=hooks,
        recorder=recorder,
    )
    return await loop.run(reference, initial_candidate, cancel=cancel)


async def cover(
    reference_audio: bytes,
    renderer: Renderer,
    refiner: Refiner,
    analyzer: Analyzer,
    *,
    artist: str = "",
    song: str = "",
    config: LoopConfig | None = None,
    hooks: LoopHooks | None = None,
    recorder: IterationRecorder | None = None,
    cancel: asyncio.Event | None = None,
    initial_candidate: str | None = None,
) -> CoverResult:
    """Analyze the reference, generate a first candidate, and run the loop."""
    reference = await analyzer.analyze(reference_audio)
    _LOGGER.info(
        "Reference: %.1f BPM, key %s, %.1fs",
        reference.tempo,
        reference.key,
        reference.duration,
    )
    candidate = initial_candidate or await generate_initial_candidate(
        reference, refiner, artist, song
    )
    return await run_refinement(
        reference,
        candidate,
        renderer,
        refiner,
        analyzer,
        config,
        hooks=hooks,
        recorder=recorder,
        cancel=cancel,
    )
