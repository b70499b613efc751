from __future__ import annotations

import asyncio
import logging
import warnings
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from ..collaborators import ChatMessage
from ..errors import InvalidConfigError, RefinerResponseError, RefinerUnavailableError

_DEFAULT_TEMPERATURE = 0.2
_DEFAULT_TIMEOUT = 60.0
_LOGGER = logging.getLogger("strudelcover.providers.litellm")
_RESERVED_LITELLM_KWARGS = frozenset({"model", "messages", "api_key", "stream"})
_litellm_logging_configured = False


def _configure_litellm_logging(litellm_module: Any) -> None:
    global _litellm_logging_configured
    if _litellm_logging_configured:
        return
    _litellm_logging_configured = True
    try:
        litellm_module.turn_off_message_logging = True
        litellm_module.disable_streaming_logging = True
        litellm_module.logging = False
    except Exception as exc:
        _LOGGER.info("LiteLLM logging config failed: %s", exc, exc_info=True)
    warnings.filterwarnings("ignore", message="Pydantic serializer warnings")


def _content_snippet(content: str, limit: int = 200) -> str:
    cleaned = content.strip()
    if len(cleaned) <= limit:
        return cleaned
    return f"{cleaned[:limit]}..."


class _LiteLLMRequest(BaseModel):
    model: str
    messages: list[dict[str, str]]
    temperature: float | None = None
    api_key: str | None = None


class LiteLLMRefiner:
    """Refiner that sends chat conversations through LiteLLM."""

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        litellm_kwargs: Mapping[str, Any] | None = None,
        temperature: float | None = _DEFAULT_TEMPERATURE,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        if not model:
            raise InvalidConfigError("model is required")
        if timeout <= 0:
            raise InvalidConfigError("timeout must be positive")
        self._model = model
        self._api_key = api_key
        self._litellm_kwargs = dict(litellm_kwargs or {})
        self._temperature = temperature
        self._timeout = timeout
        if self._api_key is None:
            _LOGGER.debug("No API key provided; letting LiteLLM read from env vars.")
        invalid_keys = _RESERVED_LITELLM_KWARGS.intersection(self._litellm_kwargs)
        if invalid_keys:
            keys = ", ".join(sorted(invalid_keys))
            raise InvalidConfigError(f"litellm_kwargs cannot override: {keys}")

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, conversation: Sequence[ChatMessage]) -> str:
        try:
            import litellm  # type: ignore[import]
            from litellm import acompletion  # type: ignore[import]
        except ImportError as exc:
            _LOGGER.warning("LiteLLM not installed: %s", exc)
            raise RefinerUnavailableError("litellm is not installed") from exc

        _configure_litellm_logging(litellm)
        request = _LiteLLMRequest(
            model=self._model,
            messages=[dict(message) for message in conversation],
            temperature=self._temperature,
            api_key=self._api_key or None,
        ).model_dump(exclude_none=True)
        request.update(self._litellm_kwargs)
        _LOGGER.debug("LiteLLM request to %s with %d message(s)", self._model, len(conversation))

        try:
            response: Any = await asyncio.wait_for(acompletion(**request), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            _LOGGER.warning("LiteLLM request timed out after %.1fs", self._timeout)
            raise RefinerUnavailableError(
                f"LiteLLM request timed out after {self._timeout:.1f}s"
            ) from exc
        except Exception as exc:
            _LOGGER.warning("LiteLLM request failed: %s", exc, exc_info=True)
            raise RefinerUnavailableError(str(exc)) from exc

        choices = getattr(response, "choices", None)
        if not choices:
            raise RefinerResponseError("LiteLLM response missing choices")
        raw_content = choices[0].message.content
        if not isinstance(raw_content, str) or not raw_content.strip():
            raise RefinerResponseError("LiteLLM returned empty content")
        _LOGGER.debug("LiteLLM returned: %s", _content_snippet(raw_content))
        return raw_content.strip()
