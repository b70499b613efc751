"""Hierarchical incremental builder: section -> measure -> layer.

Each layer fragment is requested on its own, with the fragments already
accepted for earlier layers of the same measure as context, statically
checked, retried a bounded number of times, and replaced by a per-layer-type
fallback when it keeps failing. Accepted fragments are appended to a live
accumulator that an optional preview sink can play while the build runs.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from .collaborators import Analyzer, PreviewSink, Refiner, Renderer, renderer_session
from .config import DEFAULT_BUILDER_CONFIG, BuilderConfig
from .errors import RefinerResponseError
from .features import FeatureVector
from .logging_utils import debug_enabled
from .patterns import clean_fragment, format_number, layer_fallback
from .prompts import build_layer_conversation
from .recovery import ErrorAttempt, render_with_recovery
from .structure import Layer, Measure, Section, SongStructure, derive_sections
from .validation import validate_pattern

_LOGGER = logging.getLogger("strudelcover.builder")

BuildStopReason = Literal["completed", "cancelled"]
_PREVIEW_RENDER_SECONDS = 30.0


class LayerFragment(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    layer: Layer
    fragment: str
    used_fallback: bool = False
    failures: tuple[ErrorAttempt, ...] = ()


class MeasureBuild(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    measure: Measure
    fragments: tuple[LayerFragment, ...]

    @property
    def pattern(self) -> str:
        return stack_fragments([item.fragment for item in self.fragments])


class SectionBuild(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    section: Section
    measures: tuple[MeasureBuild, ...]
    pattern: str
    render_fallback: bool = False


class BuildResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    composition: str
    sections: tuple[SectionBuild, ...]
    accumulator: tuple[str, ...]
    stop_reason: BuildStopReason = "completed"

    @property
    def fallback_layers(self) -> int:
        return sum(
            1
            for section in self.sections
            for measure in section.measures
            for item in measure.fragments
            if item.used_fallback
        )


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line if line else line for line in text.splitlines())


def stack_fragments(fragments: Sequence[str]) -> str:
    if len(fragments) == 1:
        return fragments[0]
    body = ",\n".join(_indent(fragment) for fragment in fragments)
    return f"stack(\n{body}\n)"


def section_pattern(measure_patterns: Sequence[str]) -> str:
    """One cycle per measure, looping over the representative measures."""
    if len(measure_patterns) == 1:
        return measure_patterns[0]
    body = ",\n".join(_indent(pattern) for pattern in measure_patterns)
    return f"cat(\n{body}\n)"


def assemble(
    sections: Sequence[tuple[Section, str]],
    tempo: float,
    *,
    min_duration: float = 0.0,
) -> str:
    """Sequence section patterns in order, defining identical texts only once."""
    names: dict[str, str] = {}
    definitions: list[str] = []
    entries: list[str] = []
    for section, pattern in sections:
        name = names.get(pattern)
        if name is None:
            name = f"s{len(names)}"
            names[pattern] = name
            definitions.append(f"const {name} = {pattern}")
        entries.append(f"[{section.bars}, {name}]")

    total = sum(section.duration for section, _ in sections)
    repeats = 1
    if total > 0 and min_duration > total:
        repeats = math.ceil(min_duration / total)
    body = ",\n".join(f"  {entry}" for entry in entries * repeats)
    return "\n".join(
        [f"setcps({format_number(tempo)}/60/4)", *definitions, f"$: arrange(\n{body}\n)"]
    )


class LiveAccumulator:
    """Append-only record of every accepted fragment, playable as one stack."""

    def __init__(self, tempo: float) -> None:
        self._tempo = tempo
        self._fragments: list[str] = []

    def append(self, fragment: str) -> None:
        self._fragments.append(fragment)

    @property
    def fragments(self) -> tuple[str, ...]:
        return tuple(self._fragments)

    def render(self) -> str:
        header = f"setcps({format_number(self._tempo)}/60/4)"
        if not self._fragments:
            return header
        return f"{header}\n$: {stack_fragments(self._fragments)}"


class HierarchicalBuilder:
    def __init__(
        self,
        refiner: Refiner,
        config: BuilderConfig = DEFAULT_BUILDER_CONFIG,
        *,
        sink: PreviewSink | None = None,
        renderer: Renderer | None = None,
    ) -> None:
        self._refiner = refiner
        self._config = config
        self._sink = sink
        self._renderer = renderer

    async def build(
        self,
        reference: FeatureVector,
        *,
        artist: str = "",
        song: str = "",
        structure: SongStructure | None = None,
        cancel: asyncio.Event | None = None,
    ) -> BuildResult:
        sections = derive_sections(reference, structure=structure)
        if self._renderer is None:
            return await self._build(sections, reference, artist, song, cancel)
        async with renderer_session(self._renderer):
            return await self._build(sections, reference, artist, song, cancel)

    async def _build(
        self,
        sections: Sequence[Section],
        reference: FeatureVector,
        artist: str,
        song: str,
        cancel: asyncio.Event | None,
    ) -> BuildResult:
        accumulator = LiveAccumulator(reference.tempo)
        built: list[SectionBuild] = []
        stop_reason: BuildStopReason = "completed"

        for section in sections:
            _LOGGER.info(
                "Section %s: %d bars, energy %.2f", section.name, section.bars, section.energy
            )
            measures: list[MeasureBuild] = []
            for measure in section.measures[: self._config.measures_per_section]:
                fragments: list[LayerFragment] = []
                for layer in measure.layers:
                    if cancel is not None and cancel.is_set():
                        stop_reason = "cancelled"
                        break
                    accepted = [(item.layer.id, item.fragment) for item in fragments]
                    item = await self._generate_layer(
                        section, measure, layer, reference, accepted, artist, song
                    )
                    fragments.append(item)
                    accumulator.append(item.fragment)
                    await self._notify(
                        "on_fragment_accepted",
                        f"{section.name}:{measure.index}:{layer.id}",
                        item.fragment,
                    )
                    await self._notify("on_accumulator_updated", accumulator.render())
                    if self._sink is not None and self._config.preview_delay > 0:
                        await asyncio.sleep(self._config.preview_delay)
                if fragments:
                    measures.append(MeasureBuild(measure=measure, fragments=tuple(fragments)))
                if stop_reason == "cancelled":
                    break
            if measures:
                built.append(
                    await self._finish_section(
                        section, measures, reference, render=stop_reason != "cancelled"
                    )
                )
            if stop_reason == "cancelled":
                _LOGGER.info("Build cancelled during section %s", section.name)
                break

        composition = ""
        if built:
            composition = assemble(
                [(item.section, item.pattern) for item in built],
                reference.tempo,
                min_duration=self._config.min_duration,
            )
        result = BuildResult(
            composition=composition,
            sections=tuple(built),
            accumulator=accumulator.fragments,
            stop_reason=stop_reason,
        )
        _LOGGER.info(
            "Build %s: %d section(s), %d fallback layer(s)",
            stop_reason,
            len(built),
            result.fallback_layers,
        )
        return result

    async def _generate_layer(
        self,
        section: Section,
        measure: Measure,
        layer: Layer,
        reference: FeatureVector,
        accepted: Sequence[tuple[str, str]],
        artist: str,
        song: str,
    ) -> LayerFragment:
        failures: list[ErrorAttempt] = []
        for _ in range(self._config.max_layer_retries + 1):
            conversation = build_layer_conversation(
                section,
                layer,
                reference,
                accepted,
                failures,
                measure_index=measure.index,
                artist=artist,
                song=song,
            )
            try:
                raw = await self._refiner.complete(conversation)
            except RefinerResponseError as exc:
                _LOGGER.warning("Layer %s got no usable reply: %s", layer.id, exc)
                failures.append(ErrorAttempt(candidate="", error=str(exc), kind="validation"))
                continue
            _LOGGER.debug("Layer %s completion: %s", layer.id, raw)
            fragment = clean_fragment(raw)
            report = validate_pattern(fragment, banned_operators=self._config.banned_operators)
            if report.valid:
                return LayerFragment(layer=layer, fragment=fragment, failures=tuple(failures))
            error = "; ".join(report.errors)
            _LOGGER.warning("Layer %s rejected: %s", layer.id, error)
            failures.append(ErrorAttempt(candidate=fragment, error=error, kind="validation"))

        _LOGGER.warning(
            "Layer %s in %s fell back after %d attempt(s)", layer.id, section.name, len(failures)
        )
        return LayerFragment(
            layer=layer,
            fragment=layer_fallback(layer.type, reference.key, section.energy),
            used_fallback=True,
            failures=tuple(failures),
        )

    async def _finish_section(
        self,
        section: Section,
        measures: Sequence[MeasureBuild],
        reference: FeatureVector,
        *,
        render: bool = True,
    ) -> SectionBuild:
        pattern = section_pattern([measure.pattern for measure in measures])
        if self._renderer is None or not render:
            return SectionBuild(section=section, measures=tuple(measures), pattern=pattern)

        header = f"setcps({format_number(reference.tempo)}/60/4)"
        layers = measures[0].measure.layers
        fallback = stack_fragments(
            [layer_fallback(layer.type, reference.key, section.energy) for layer in layers]
        )
        outcome = await render_with_recovery(
            f"{header}\n$: {pattern}",
            self._renderer,
            self._refiner,
            max_retries=self._config.max_layer_retries,
            duration=min(section.duration, _PREVIEW_RENDER_SECONDS),
            fallback=f"{header}\n$: {fallback}",
            tempo=reference.tempo,
            banned_operators=self._config.banned_operators,
        )
        rendered = clean_fragment(outcome.candidate)
        if rendered != pattern:
            _LOGGER.info("Section %s replaced after render recovery", section.name)
        return SectionBuild(
            section=section,
            measures=tuple(measures),
            pattern=rendered,
            render_fallback=outcome.used_fallback,
        )

    async def _notify(self, hook: str, *args: Any) -> None:
        if self._sink is None:
            return
        method = getattr(self._sink, hook, None)
        if method is None:
            return
        try:
            result = method(*args)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self._config.sink_timeout)
        except asyncio.TimeoutError:
            _LOGGER.warning("Preview sink %s timed out after %.1fs", hook, self._config.sink_timeout)
        except Exception as exc:
            _LOGGER.warning("Preview sink %s failed: %s", hook, exc, exc_info=debug_enabled())


async def build_cover(
    reference_audio: bytes,
    refiner: Refiner,
    analyzer: Analyzer,
    *,
    artist: str = "",
    song: str = "",
    config: BuilderConfig | None = None,
    sink: PreviewSink | None = None,
    renderer: Renderer | None = None,
    structure: SongStructure | None = None,
    cancel: asyncio.Event | None = None,
) -> BuildResult:
    reference = await analyzer.analyze(reference_audio)
    builder = HierarchicalBuilder(
        refiner,
        config or DEFAULT_BUILDER_CONFIG,
        sink=sink,
        renderer=renderer,
    )
    return await builder.build(
        reference, artist=artist, song=song, structure=structure, cancel=cancel
    )
