"""Persisted search trace and an optional rich console observer."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

from pydantic import JsonValue
from rich.console import Console
from rich.table import Table

from .convergence import CHECK_NAMES, ConvergenceDecision
from .loop import CoverResult, IterationRecord, LoopHooks
from .recovery import ErrorAttempt

_LOGGER = logging.getLogger("strudelcover.reporting")

JsonDict = dict[str, JsonValue]

ITERATIONS_FILE = "iterations.jsonl"
FINAL_FILE = "final.json"
FINAL_PATTERN_FILE = "final.strudel"


def iteration_payload(
    record: IterationRecord,
    decision: ConvergenceDecision | None = None,
) -> JsonDict:
    payload: JsonDict = record.model_dump(mode="json")
    if decision is not None:
        payload["stop"] = decision.stop
    return payload


class RunRecorder:
    """Writes one JSON line per iteration plus a final record for replay."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def iterations_path(self) -> Path:
        return self._directory / ITERATIONS_FILE

    def store_audio(self, index: int, audio_bytes: bytes) -> str:
        path = self._directory / f"iteration-{index}.wav"
        path.write_bytes(audio_bytes)
        return str(path)

    def record_iteration(
        self,
        record: IterationRecord,
        decision: ConvergenceDecision | None = None,
    ) -> None:
        with self.iterations_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(iteration_payload(record, decision), separators=(",", ":")))
            handle.write("\n")

    def record_final(self, result: CoverResult) -> None:
        final_path = self._directory / FINAL_FILE
        final_path.write_text(
            json.dumps(result.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
        if result.best_pattern is not None:
            (self._directory / FINAL_PATTERN_FILE).write_text(
                result.best_pattern + "\n", encoding="utf-8"
            )
        _LOGGER.info("Wrote final record to %s", final_path)


def iter_iterations(path: str | Path) -> Iterable[JsonDict]:
    with Path(path).open("r", encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                continue
            row = json.loads(stripped)
            match row:
                case dict():
                    yield row
                case _:
                    pass


def load_result(directory: str | Path) -> CoverResult:
    return CoverResult.model_validate_json(
        (Path(directory) / FINAL_FILE).read_text(encoding="utf-8")
    )


def _mark(passed: bool) -> str:
    return "[green]pass[/green]" if passed else "[red]fail[/red]"


class ConsoleReporter:
    """Prints per-iteration comparison tables; wire it in through `hooks()`."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    def hooks(self) -> LoopHooks:
        return LoopHooks(
            on_iteration_start=self.iteration_start,
            on_render_failure=self.render_failure,
            on_fallback=self.fallback,
            on_iteration=self.iteration,
            on_finish=self.finish,
        )

    def iteration_start(self, index: int, candidate: str) -> None:
        _ = candidate
        self._console.rule(f"Iteration {index + 1}")

    def render_failure(self, index: int, attempt: ErrorAttempt) -> None:
        _ = index
        self._console.print(f"[yellow]Render {attempt.kind}:[/yellow] {attempt.error}")

    def fallback(self, index: int, candidate: str) -> None:
        _ = candidate
        self._console.print(f"[yellow]Iteration {index + 1} is using a fallback pattern[/yellow]")

    def iteration(self, record: IterationRecord, decision: ConvergenceDecision) -> None:
        comparison = record.comparison
        values = {
            "tempo": f"{comparison.tempo_diff:.1f} BPM off",
            "key": "match" if comparison.key_match else "mismatch",
            "energy": f"{comparison.energy_diff:.3f} off",
            "brightness": f"{comparison.brightness_diff:.3f} off",
            "kick_similarity": f"{comparison.kick_similarity:.0%}",
            "snare_similarity": f"{comparison.snare_similarity:.0%}",
        }
        table = Table(title=f"Score {comparison.score:.2f}/100")
        table.add_column("Metric")
        table.add_column("Value")
        table.add_column("Threshold")
        for name in CHECK_NAMES:
            table.add_row(name, values[name], _mark(decision.checks.get(name, False)))
        self._console.print(table)

    def finish(self, result: CoverResult) -> None:
        self._console.print(
            f"[bold]Done ({result.stop_reason})[/bold]: best score {result.best_score} "
            f"after {len(result.history)} iteration(s)"
        )
