from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
from _fakes import VALID_PATTERN, PatternAnalyzer, ScriptedRefiner, ScriptedRenderer
from rich.console import Console

from strudelcover.config import LoopConfig
from strudelcover.features import FeatureVector
from strudelcover.loop import run_refinement
from strudelcover.reporting import (
    FINAL_FILE,
    FINAL_PATTERN_FILE,
    ConsoleReporter,
    RunRecorder,
    iter_iterations,
    load_result,
)

REFERENCE = FeatureVector(tempo=120.0, key="C", duration=30.0)
SECOND = 'setcps(120/60/4)\n$: s("bd ~ bd ~")'


@pytest.mark.asyncio
async def test_run_recorder_persists_trace(tmp_path: Path) -> None:
    recorder = RunRecorder(tmp_path / "run")
    analyzer = PatternAnalyzer(
        {VALID_PATTERN: FeatureVector(tempo=100.0, key="C"), SECOND: REFERENCE}
    )

    result = await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner([SECOND]),
        analyzer,
        LoopConfig(max_iterations=3),
        recorder=recorder,
    )

    rows = list(iter_iterations(recorder.iterations_path))
    assert [row["index"] for row in rows] == [0, 1]
    assert [row["stop"] for row in rows] == [False, True]
    assert rows[1]["candidate"] == SECOND
    assert rows[0]["audio_ref"] == str(recorder.directory / "iteration-0.wav")
    assert (recorder.directory / "iteration-1.wav").read_bytes() == SECOND.encode()

    assert load_result(recorder.directory) == result
    assert (recorder.directory / FINAL_PATTERN_FILE).read_text(encoding="utf-8") == SECOND + "\n"
    final = json.loads((recorder.directory / FINAL_FILE).read_text(encoding="utf-8"))
    assert final["stop_reason"] == "converged"
    assert final["best_iteration"] == 1


def test_iter_iterations_skips_blank_and_non_object_lines(tmp_path: Path) -> None:
    path = tmp_path / "iterations.jsonl"
    path.write_text('{"index": 0}\n\n[1, 2]\n{"index": 1}\n', encoding="utf-8")

    assert list(iter_iterations(path)) == [{"index": 0}, {"index": 1}]


@pytest.mark.asyncio
async def test_console_reporter_prints_checks() -> None:
    buffer = io.StringIO()
    reporter = ConsoleReporter(Console(file=buffer, width=120, color_system=None))

    await run_refinement(
        REFERENCE,
        VALID_PATTERN,
        ScriptedRenderer(),
        ScriptedRefiner(),
        PatternAnalyzer({}, default=FeatureVector(tempo=126.0, key="C")),
        LoopConfig(mode="manual", max_iterations=1),
        hooks=reporter.hooks(),
    )

    output = buffer.getvalue()
    assert "Iteration 1" in output
    assert "6.0 BPM off" in output
    assert "fail" in output
    assert "pass" in output
    assert "Done (max_iterations)" in output
