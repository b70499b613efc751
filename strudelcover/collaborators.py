"""Contracts for the external services the cover loop drives.

The core only talks to these through the protocols below: a renderer that
turns candidate text into audio, an analyzer that turns audio into a
`FeatureVector`, a refiner that completes chat conversations, and an optional
live-preview sink for the hierarchical builder.
"""

from __future__ import annotations

import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, model_validator

from .features import FeatureVector

_LOGGER = logging.getLogger("strudelcover.collaborators")

RenderStatus = Literal["ok", "silent", "error"]
ChatMessage = dict[str, str]


class RenderResult(BaseModel):
    """Outcome of one render call; failures are reported through `status`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: RenderStatus
    audio_bytes: bytes | None = None
    error_detail: str | None = None

    @model_validator(mode="after")
    def _ok_has_audio(self) -> RenderResult:
        if self.status == "ok" and not self.audio_bytes:
            raise ValueError("status 'ok' requires audio_bytes")
        return self

    @classmethod
    def ok(cls, audio_bytes: bytes) -> RenderResult:
        return cls(status="ok", audio_bytes=audio_bytes)

    @classmethod
    def silent(cls, detail: str | None = None) -> RenderResult:
        return cls(status="silent", error_detail=detail)

    @classmethod
    def error(cls, detail: str) -> RenderResult:
        return cls(status="error", error_detail=detail)


class Renderer(Protocol):
    async def render(self, candidate: str, duration: float) -> RenderResult: ...


class Analyzer(Protocol):
    async def analyze(self, audio_bytes: bytes) -> FeatureVector: ...


class Refiner(Protocol):
    async def complete(self, conversation: Sequence[ChatMessage]) -> str: ...


class PreviewSink(Protocol):
    async def on_fragment_accepted(self, layer_id: str, fragment: str) -> None: ...

    async def on_accumulator_updated(self, composite: str) -> None: ...


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


@asynccontextmanager
async def renderer_session(renderer: Renderer) -> AsyncIterator[Renderer]:
    """Open the renderer (if it has `aopen`) and always close it on exit."""
    opener = getattr(renderer, "aopen", None)
    if opener is not None:
        await _maybe_await(opener())
    try:
        yield renderer
    finally:
        closer = getattr(renderer, "aclose", None) or getattr(renderer, "close", None)
        if closer is not None:
            try:
                await _maybe_await(closer())
            except Exception as exc:
                _LOGGER.warning("Renderer close failed: %s", exc, exc_info=True)
