from __future__ import annotations

import asyncio

import pytest
from _fakes import VALID_PATTERN, PatternAnalyzer, ScriptedRefiner, ScriptedRenderer

from strudelcover.collaborators import RenderResult
from strudelcover.config import LoopConfig, ThresholdConfig
from strudelcover.errors import RecoveryExhaustedError, RefinerResponseError
from strudelcover.features import FeatureVector
from strudelcover.loop import (
    LoopHooks,
    RefinementLoop,
    audio_digest,
    cover,
    generate_initial_candidate,
    run_refinement,
)
from strudelcover.patterns import fallback_candidate, minimal_fallback

REFERENCE = FeatureVector(tempo=120.0, key="C", duration=30.0)
SECOND = 'setcps(120/60/4)\n$: s("bd ~ bd ~")'
THIRD = 'setcps(120/60/4)\n$: s("bd*2, hh*8")'


def _features(tempo: float, key: str) -> FeatureVector:
    return FeatureVector(tempo=tempo, key=key, duration=30.0)


@pytest.mark.asyncio
async def test_converges_on_first_iteration_without_refining() -> None:
    renderer = ScriptedRenderer()
    refiner = ScriptedRefiner()
    analyzer = PatternAnalyzer({VALID_PATTERN: REFERENCE})

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        renderer,
        refiner,
        analyzer,
        LoopConfig(mode="auto", target_score=80.0, max_iterations=5),
    )

    assert result.stop_reason == "converged"
    assert len(result.history) == 1
    assert result.best_pattern == VALID_PATTERN
    assert result.best_score == 100.0
    assert result.best_iteration == 0
    assert refiner.conversations == []
    assert renderer.opened and renderer.closed


@pytest.mark.asyncio
async def test_best_candidate_is_not_necessarily_last() -> None:
    # Key mismatch caps the score at 80; tempo error lowers it further.
    analyzer = PatternAnalyzer(
        {
            VALID_PATTERN: _features(110.0, "D"),
            SECOND: _features(120.0, "D"),
            THIRD: _features(100.0, "D"),
        }
    )
    refiner = ScriptedRefiner([SECOND, THIRD])

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        refiner,
        analyzer,
        LoopConfig(target_score=95.0, max_iterations=3),
    )

    assert [record.score for record in result.history] == [65.0, 80.0, 50.0]
    assert result.stop_reason == "max_iterations"
    assert result.best_iteration == 1
    assert result.best_pattern == SECOND
    assert result.best_score == max(record.score for record in result.history)
    assert len(refiner.conversations) == 2


@pytest.mark.asyncio
async def test_tied_scores_keep_the_earlier_iteration() -> None:
    analyzer = PatternAnalyzer({}, default=_features(120.0, "D"))

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner([SECOND]),
        analyzer,
        LoopConfig(target_score=95.0, max_iterations=2),
    )

    assert [record.score for record in result.history] == [80.0, 80.0]
    assert result.best_iteration == 0
    assert result.best_pattern == VALID_PATTERN


@pytest.mark.asyncio
async def test_manual_mode_ignores_score_target() -> None:
    analyzer = PatternAnalyzer({VALID_PATTERN: _features(126.0, "C")})

    auto = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner(),
        analyzer,
        LoopConfig(mode="auto", target_score=90.0, max_iterations=1),
    )
    manual = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner(),
        analyzer,
        LoopConfig(mode="manual", max_iterations=1, thresholds=ThresholdConfig(tempo=5.0)),
    )

    assert auto.stop_reason == "converged"
    assert manual.stop_reason == "max_iterations"
    assert manual.history[0].checks["tempo"] is False
    assert manual.history[0].score == auto.history[0].score


@pytest.mark.asyncio
async def test_cancel_before_first_iteration() -> None:
    renderer = ScriptedRenderer()
    cancel = asyncio.Event()
    cancel.set()

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        renderer,
        ScriptedRefiner(),
        PatternAnalyzer({}),
        cancel=cancel,
    )

    assert result.stop_reason == "cancelled"
    assert result.history == ()
    assert result.best_pattern is None
    assert result.best_score is None
    assert renderer.calls == []
    assert renderer.closed


@pytest.mark.asyncio
async def test_cancel_between_iterations_skips_refine() -> None:
    cancel = asyncio.Event()
    refiner = ScriptedRefiner()
    hooks = LoopHooks(on_iteration=lambda record, decision: cancel.set())

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        refiner,
        PatternAnalyzer({}, default=_features(100.0, "D")),
        LoopConfig(max_iterations=4),
        hooks=hooks,
        cancel=cancel,
    )

    assert result.stop_reason == "cancelled"
    assert len(result.history) == 1
    assert result.best_pattern == VALID_PATTERN
    assert refiner.conversations == []


@pytest.mark.asyncio
async def test_renderer_closed_when_analyzer_fails() -> None:
    class BrokenAnalyzer:
        async def analyze(self, audio_bytes: bytes) -> FeatureVector:
            raise RuntimeError("analysis crashed")

    renderer = ScriptedRenderer()

    with pytest.raises(RuntimeError, match="analysis crashed"):
        await run_refinement(REFERENCE, VALID_PATTERN, renderer, ScriptedRefiner(), BrokenAnalyzer())

    assert renderer.opened
    assert renderer.closed


@pytest.mark.asyncio
async def test_last_resort_pattern_when_recovery_is_exhausted() -> None:
    last_resort = minimal_fallback(REFERENCE.tempo)

    def respond(candidate: str) -> RenderResult:
        if candidate == last_resort:
            return RenderResult.ok(candidate.encode())
        return RenderResult.silent()

    fallbacks: list[str] = []
    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(respond=respond),
        ScriptedRefiner(default=SECOND),
        PatternAnalyzer({}, default=REFERENCE),
        LoopConfig(max_retries=1),
        hooks=LoopHooks(on_fallback=lambda index, candidate: fallbacks.append(candidate)),
    )

    record = result.history[0]
    assert record.candidate == last_resort
    assert record.used_fallback is True
    assert len(record.failed_attempts) == 1
    assert fallbacks == [last_resort]


@pytest.mark.asyncio
async def test_exhausted_error_when_last_resort_fails() -> None:
    renderer = ScriptedRenderer(respond=lambda candidate: RenderResult.error("no audio device"))

    with pytest.raises(RecoveryExhaustedError):
        await run_refinement(
            REFERENCE,
            VALID_PATTERN,
            renderer,
            ScriptedRefiner(default=SECOND),
            PatternAnalyzer({}, default=REFERENCE),
            LoopConfig(max_retries=0),
        )

    assert renderer.candidates[-1] == minimal_fallback(REFERENCE.tempo)
    assert renderer.closed


@pytest.mark.asyncio
async def test_fallback_iteration_is_flagged() -> None:
    fallback = fallback_candidate(REFERENCE.tempo, REFERENCE.key, REFERENCE.energy)
    renderer = ScriptedRenderer([RenderResult.silent(), RenderResult.silent()])

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        renderer,
        ScriptedRefiner([SECOND]),
        PatternAnalyzer({}, default=REFERENCE),
        LoopConfig(max_retries=2),
    )

    assert result.history[0].used_fallback is True
    assert result.history[0].candidate == fallback
    assert [attempt.kind for attempt in result.history[0].failed_attempts] == ["silent", "silent"]


@pytest.mark.asyncio
async def test_failing_hook_does_not_stop_the_loop() -> None:
    def explode(index: int, candidate: str) -> None:
        raise RuntimeError("hook bug")

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner(),
        PatternAnalyzer({}, default=REFERENCE),
        hooks=LoopHooks(on_iteration_start=explode),
    )

    assert result.stop_reason == "converged"


@pytest.mark.asyncio
async def test_hooks_see_each_event() -> None:
    events: list[str] = []
    hooks = LoopHooks(
        on_iteration_start=lambda index, candidate: events.append(f"start:{index}"),
        on_iteration=lambda record, decision: events.append(f"iteration:{record.index}"),
        on_new_best=lambda record: events.append(f"best:{record.index}"),
        on_finish=lambda result: events.append(f"finish:{result.stop_reason}"),
    )

    await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner([SECOND]),
        PatternAnalyzer({VALID_PATTERN: _features(100.0, "C"), SECOND: REFERENCE}),
        hooks=hooks,
    )

    assert events == [
        "start:0",
        "best:0",
        "iteration:0",
        "start:1",
        "best:1",
        "iteration:1",
        "finish:converged",
    ]


@pytest.mark.asyncio
async def test_audio_ref_is_a_digest_without_recorder() -> None:
    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner(),
        PatternAnalyzer({}, default=REFERENCE),
    )

    assert result.history[0].audio_ref == audio_digest(VALID_PATTERN.encode())
    assert result.history[0].audio_ref.startswith("sha256:")


@pytest.mark.asyncio
async def test_render_duration_bounded_by_reference() -> None:
    renderer = ScriptedRenderer()
    short = FeatureVector(tempo=120.0, key="C", duration=12.0)

    await run_refinement(
        short,
        VALID_PATTERN,
        renderer,
        ScriptedRefiner(),
        PatternAnalyzer({}, default=short),
        LoopConfig(render_duration=30.0),
    )

    assert renderer.calls[0][1] == 12.0


@pytest.mark.asyncio
async def test_unusable_refinement_keeps_current_candidate() -> None:
    renderer = ScriptedRenderer()

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        renderer,
        ScriptedRefiner([RefinerResponseError("empty completion")]),
        PatternAnalyzer({}, default=_features(100.0, "D")),
        LoopConfig(max_iterations=2),
    )

    assert renderer.candidates == [VALID_PATTERN, VALID_PATTERN]
    assert result.stop_reason == "max_iterations"


@pytest.mark.asyncio
async def test_refined_candidate_keeps_reference_tempo() -> None:
    renderer = ScriptedRenderer()

    await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        renderer,
        ScriptedRefiner(['```\nsetcps(0.9)\n$: s("bd sd")\n```']),
        PatternAnalyzer({}, default=_features(100.0, "D")),
        LoopConfig(max_iterations=2),
    )

    assert renderer.candidates[1] == 'setcps(120/60/4)\n$: s("bd sd")'


@pytest.mark.asyncio
async def test_generate_initial_candidate_adds_tempo() -> None:
    refiner = ScriptedRefiner(['Sure!\n```\n$: s("bd*4")\n```'])

    candidate = await generate_initial_candidate(REFERENCE, refiner, "Daft Punk", "Da Funk")

    assert candidate == 'setcps(120/60/4)\n$: s("bd*4")'
    prompt = refiner.conversations[0][-1]["content"]
    assert '"Da Funk" by Daft Punk' in prompt
    assert "setcps(120/60/4)" in prompt


@pytest.mark.asyncio
async def test_generate_initial_candidate_falls_back() -> None:
    expected = fallback_candidate(REFERENCE.tempo, REFERENCE.key, REFERENCE.energy)

    empty = await generate_initial_candidate(REFERENCE, ScriptedRefiner([""]))
    failed = await generate_initial_candidate(
        REFERENCE, ScriptedRefiner([RefinerResponseError("no choices")])
    )

    assert empty == expected
    assert failed == expected


@pytest.mark.asyncio
async def test_cover_analyzes_reference_and_runs_loop() -> None:
    analyzer = PatternAnalyzer({"reference": REFERENCE, VALID_PATTERN: REFERENCE})
    refiner = ScriptedRefiner([VALID_PATTERN])

    result = await cover(
        b"reference",
        ScriptedRenderer(),
        refiner,
        analyzer,
        artist="Daft Punk",
        song="Da Funk",
    )

    assert result.stop_reason == "converged"
    assert result.best_pattern == VALID_PATTERN
    assert analyzer.calls == 2
    assert len(refiner.conversations) == 1


@pytest.mark.asyncio
async def test_refinement_loop_exposes_config() -> None:
    config = LoopConfig(max_iterations=2)
    loop = RefinementLoop(ScriptedRenderer(), ScriptedRefiner(), PatternAnalyzer({}), config)

    assert loop.config is config
