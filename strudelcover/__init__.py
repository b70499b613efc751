from __future__ import annotations

from .analysis import SpectralAnalyzer
from .builder import BuildResult, HierarchicalBuilder, assemble, build_cover
from .classifier import ErrorDiagnosis, classify_failure, learned_corrections
from .collaborators import (
    Analyzer,
    PreviewSink,
    Refiner,
    Renderer,
    RenderResult,
    renderer_session,
)
from .comparator import Comparison, compare, rhythm_similarity
from .config import (
    BuilderConfig,
    LoopConfig,
    ScoreCaps,
    ThresholdConfig,
    WeightConfig,
)
from .convergence import ConvergenceDecision, evaluate, should_stop
from .errors import (
    AudioDecodeError,
    CollaboratorUnavailableError,
    InvalidConfigError,
    PatternValidationError,
    RecoveryExhaustedError,
    RefinerResponseError,
    RefinerUnavailableError,
    RendererUnavailableError,
    StrudelCoverError,
)
from .features import FeatureVector, RhythmPositions
from .logging_utils import configure_logging as _configure_logging
from .loop import (
    CoverResult,
    IterationRecord,
    LoopHooks,
    RefinementLoop,
    cover,
    generate_initial_candidate,
    run_refinement,
)
from .patterns import clean_pattern, fallback_candidate, layer_fallback, minimal_fallback
from .recovery import ErrorAttempt, RecoveryOutcome, render_with_recovery
from .reporting import ConsoleReporter, RunRecorder
from .structure import Layer, Measure, Section, derive_sections
from .validation import ValidationReport, validate_pattern

__all__ = [
    "Analyzer",
    "AudioDecodeError",
    "BuildResult",
    "BuilderConfig",
    "CollaboratorUnavailableError",
    "Comparison",
    "ConsoleReporter",
    "ConvergenceDecision",
    "CoverResult",
    "ErrorAttempt",
    "ErrorDiagnosis",
    "FeatureVector",
    "HierarchicalBuilder",
    "InvalidConfigError",
    "IterationRecord",
    "Layer",
    "LoopConfig",
    "LoopHooks",
    "Measure",
    "PatternValidationError",
    "PreviewSink",
    "RecoveryExhaustedError",
    "RecoveryOutcome",
    "RefinementLoop",
    "Refiner",
    "RefinerResponseError",
    "RefinerUnavailableError",
    "RenderResult",
    "Renderer",
    "RendererUnavailableError",
    "RhythmPositions",
    "RunRecorder",
    "ScoreCaps",
    "Section",
    "SpectralAnalyzer",
    "StrudelCoverError",
    "ThresholdConfig",
    "ValidationReport",
    "WeightConfig",
    "assemble",
    "build_cover",
    "classify_failure",
    "clean_pattern",
    "compare",
    "cover",
    "derive_sections",
    "evaluate",
    "fallback_candidate",
    "generate_initial_candidate",
    "layer_fallback",
    "learned_corrections",
    "minimal_fallback",
    "render_with_recovery",
    "renderer_session",
    "rhythm_similarity",
    "run_refinement",
    "should_stop",
    "validate_pattern",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
