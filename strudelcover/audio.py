from __future__ import annotations

import io
from collections.abc import Sequence
from typing import Any

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray

from .errors import AudioDecodeError

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

SAMPLE_RATE = 44_100


def ensure_audio_contract(audio: AudioNumbers) -> FloatArray:
    """Normalize dtype/range/shape to mono float32 in [-1, 1]."""

    samples: FloatArray = np.asarray(audio, dtype=np.float32)
    match samples.ndim:
        case 0 | 1:
            mono = samples.reshape(-1)
        case 2:
            # soundfile returns (frames, channels)
            mono = np.mean(samples, axis=1).astype(np.float32)
        case _:
            raise AudioDecodeError("Audio must be 1D or 2D")
    if mono.size == 0:
        return mono
    peak = float(np.max(np.abs(mono)))
    if peak > 1.0:
        mono = mono / peak
    return mono


def encode_wav(audio: AudioNumbers, *, sample_rate: int = SAMPLE_RATE) -> bytes:
    buffer = io.BytesIO()
    sf.write(buffer, ensure_audio_contract(audio), sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def decode_wav(data: bytes) -> tuple[FloatArray, int]:
    """Decode WAV (or any soundfile-readable) bytes to mono samples and a sample rate."""
    if not data:
        raise AudioDecodeError("No audio data")
    try:
        samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except RuntimeError as exc:
        raise AudioDecodeError(f"Could not decode audio: {exc}") from exc
    return ensure_audio_contract(samples), int(sample_rate)
