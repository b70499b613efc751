from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Sequence

if TYPE_CHECKING:
    from .recovery import ErrorAttempt


class StrudelCoverError(Exception):
    """Base error for the StrudelCover library."""


class InvalidConfigError(StrudelCoverError):
    """Raised when a config cannot be parsed or validated."""


class RenderFailedError(StrudelCoverError):
    """Raised when a candidate renders to an error or to silence."""

    def __init__(self, status: Literal["error", "silent"], detail: str) -> None:
        super().__init__(detail)
        self.status: Literal["error", "silent"] = status
        self.detail = detail


class PatternValidationError(StrudelCoverError):
    """Raised when a candidate fails the static pre-render check."""

    def __init__(self, problems: Sequence[str]) -> None:
        super().__init__("; ".join(problems) or "invalid pattern")
        self.problems = list(problems)


class RecoveryExhaustedError(StrudelCoverError):
    """Raised when retries and the fallback candidate all failed to render."""

    def __init__(self, message: str, attempts: Sequence[ErrorAttempt]) -> None:
        super().__init__(message)
        self.attempts = list(attempts)


class CollaboratorUnavailableError(StrudelCoverError):
    """Raised when an external collaborator cannot be reached."""


class RendererUnavailableError(CollaboratorUnavailableError):
    """Raised when the renderer service is unreachable."""


class RefinerUnavailableError(CollaboratorUnavailableError):
    """Raised when the text-generation provider fails to produce a response."""


class RefinerResponseError(StrudelCoverError):
    """Raised when the text-generation provider returns unusable content."""


class AudioDecodeError(StrudelCoverError):
    """Raised when audio bytes cannot be decoded."""
