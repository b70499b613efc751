"""Reference analyzer: numpy features from decoded audio.

This is a small, dependency-light implementation of the Analyzer contract so
the package runs end to end. Anything with the same `analyze` signature (an
external DSP service, a librosa wrapper) can replace it.
"""

from __future__ import annotations

import asyncio
import logging

import numpy as np

from .audio import FloatArray, decode_wav
from .features import BEATS_PER_CYCLE, FeatureVector, RhythmPositions

_LOGGER = logging.getLogger("strudelcover.analysis")

NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")
# Krumhansl-Kessler key profiles.
MAJOR_PROFILE = np.array(
    [6.35, 2.23, 3.48, 2.33, 4.38, 4.09, 2.52, 5.19, 2.39, 3.66, 2.29, 2.88]
)
MINOR_PROFILE = np.array(
    [6.33, 2.68, 3.52, 5.38, 2.60, 3.53, 2.54, 4.75, 3.98, 2.69, 3.34, 3.17]
)

_KICK_BAND = (20.0, 150.0)
_SNARE_BAND = (150.0, 2500.0)
_HIHAT_BAND = (5000.0, 16000.0)
_PITCH_BAND = (55.0, 4200.0)


def _frames(mono: FloatArray, frame_size: int, hop_size: int) -> np.ndarray:
    if mono.size < frame_size:
        mono = np.pad(mono, (0, frame_size - mono.size))
    windows = np.lib.stride_tricks.sliding_window_view(mono, frame_size)[::hop_size]
    return windows * np.hanning(frame_size)


def _band_flux(spectrum: np.ndarray, freqs: np.ndarray, band: tuple[float, float]) -> np.ndarray:
    mask = (freqs >= band[0]) & (freqs < band[1])
    if not np.any(mask) or spectrum.shape[0] < 2:
        return np.zeros(max(spectrum.shape[0] - 1, 0))
    energy = np.sum(spectrum[:, mask], axis=1)
    return np.clip(np.diff(energy), 0.0, None)


def estimate_key(spectrum: np.ndarray, freqs: np.ndarray) -> str:
    mask = (freqs >= _PITCH_BAND[0]) & (freqs < _PITCH_BAND[1])
    power = np.sum(spectrum[:, mask] ** 2, axis=0)
    if power.size == 0 or float(np.sum(power)) <= 0.0:
        return "C major"
    midi = 69 + 12 * np.log2(freqs[mask] / 440.0)
    classes = np.mod(np.rint(midi).astype(int), 12)
    chroma = np.bincount(classes, weights=power, minlength=12)

    best = ("C major", -np.inf)
    for root in range(12):
        for profile, mode in ((MAJOR_PROFILE, "major"), (MINOR_PROFILE, "minor")):
            score = float(np.corrcoef(chroma, np.roll(profile, root))[0, 1])
            if score > best[1]:
                best = (f"{NOTE_NAMES[root]} {mode}", score)
    return best[0]


class SpectralAnalyzer:
    """Analyzer over WAV bytes using numpy FFTs."""

    def __init__(
        self,
        *,
        frame_size: int = 2048,
        hop_size: int = 512,
        min_tempo: float = 60.0,
        max_tempo: float = 200.0,
        default_tempo: float = 120.0,
    ) -> None:
        self._frame_size = frame_size
        self._hop_size = hop_size
        self._min_tempo = min_tempo
        self._max_tempo = max_tempo
        self._default_tempo = default_tempo

    async def analyze(self, audio_bytes: bytes) -> FeatureVector:
        samples, sample_rate = decode_wav(audio_bytes)
        return await asyncio.to_thread(self.analyze_samples, samples, sample_rate)

    def analyze_samples(self, samples: FloatArray, sample_rate: int) -> FeatureVector:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        mono = np.asarray(samples, dtype=np.float32).reshape(-1)
        duration = mono.size / sample_rate
        if mono.size == 0:
            return FeatureVector(tempo=self._default_tempo, duration=0.0, energy=0.0, brightness=0.0)

        rms = float(np.sqrt(np.mean(mono.astype(np.float64) ** 2)))
        spectrum = np.abs(np.fft.rfft(_frames(mono, self._frame_size, self._hop_size), axis=1))
        freqs = np.fft.rfftfreq(self._frame_size, d=1.0 / sample_rate)

        total = float(np.sum(spectrum))
        centroid = float(np.sum(spectrum * freqs) / total) if total > 0 else 0.0
        brightness = min(1.0, centroid / (sample_rate / 2.0))

        flux = np.clip(np.diff(np.sum(spectrum, axis=1)), 0.0, None)
        tempo = self.estimate_tempo(flux, sample_rate)
        rhythm = RhythmPositions(
            kick=self._positions(_band_flux(spectrum, freqs, _KICK_BAND), sample_rate, tempo),
            snare=self._positions(_band_flux(spectrum, freqs, _SNARE_BAND), sample_rate, tempo),
            hihat=self._positions(_band_flux(spectrum, freqs, _HIHAT_BAND), sample_rate, tempo),
        )
        features = FeatureVector(
            tempo=tempo,
            key=estimate_key(spectrum, freqs),
            duration=duration,
            energy=min(1.0, rms * float(np.sqrt(2.0))),
            brightness=brightness,
            rms=rms,
            rhythm=rhythm,
        )
        _LOGGER.debug("Analyzed %.2fs of audio: %s", duration, features)
        return features

    def estimate_tempo(self, onset_envelope: np.ndarray, sample_rate: int) -> float:
        """Autocorrelation tempo estimate, clamped to the configured range."""
        frames_per_minute = 60.0 * sample_rate / self._hop_size
        min_lag = max(1, int(np.floor(frames_per_minute / self._max_tempo)))
        max_lag = int(np.ceil(frames_per_minute / self._min_tempo))
        envelope = onset_envelope - np.mean(onset_envelope) if onset_envelope.size else onset_envelope
        if envelope.size <= max_lag + 1 or not np.any(envelope):
            return self._default_tempo

        correlation = np.correlate(envelope, envelope, mode="full")[envelope.size - 1 :]
        window = correlation[min_lag : max_lag + 1]
        peak = int(np.argmax(window))
        if window[peak] <= 0:
            return self._default_tempo
        lag = float(min_lag + peak)
        if 0 < peak < window.size - 1:
            left, centre, right = window[peak - 1], window[peak], window[peak + 1]
            denominator = left - 2 * centre + right
            if denominator != 0:
                lag += 0.5 * float(left - right) / float(denominator)
        tempo = frames_per_minute / lag
        return round(float(np.clip(tempo, self._min_tempo, self._max_tempo)), 1)

    def _positions(
        self,
        envelope: np.ndarray,
        sample_rate: int,
        tempo: float,
    ) -> tuple[float, ...]:
        """Beat offsets (eighth-note grid) of onset peaks within one 4-beat cycle."""
        if envelope.size < 3 or float(np.max(envelope)) <= 0.0:
            return ()
        threshold = 0.3 * float(np.max(envelope))
        is_peak = (
            (envelope[1:-1] > envelope[:-2])
            & (envelope[1:-1] >= envelope[2:])
            & (envelope[1:-1] >= threshold)
        )
        frames = np.nonzero(is_peak)[0] + 2
        # frame centres
        seconds = (frames * self._hop_size + self._frame_size / 2) / sample_rate
        beats = seconds * tempo / 60.0
        grid = np.mod(np.round(beats * 2.0) / 2.0, BEATS_PER_CYCLE)
        return tuple(sorted({float(position) for position in grid}))
