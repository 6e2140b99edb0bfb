from .correction import CorrectionMetrics, CorrectionService
from .engine import HealingEngine
from .errors import (
    AmbiguousMatchError,
    CorrectionServiceError,
    HealedError,
    HealingCancelledError,
    HealingError,
    NoMatchError,
    PatchBuildError,
    PatchFormatError,
    PositionalApplyError,
)
from .flags import HealingFlags
from .patch_healing import PatchHealer, build_commit, parse_patch
from .string_healing import StringReplaceHealer
from .telemetry import LoggingTelemetrySink, RecordingTelemetrySink, TelemetrySink
from .types import (
    Commit,
    DocumentContent,
    EditParams,
    EditRequest,
    HealingAttempt,
    HealingOutcome,
    PatchDocument,
    PatchOutcome,
    SourceModel,
    Strategy,
)

__all__ = [
    "AmbiguousMatchError",
    "Commit",
    "CorrectionMetrics",
    "CorrectionService",
    "CorrectionServiceError",
    "DocumentContent",
    "EditParams",
    "EditRequest",
    "HealedError",
    "HealingAttempt",
    "HealingCancelledError",
    "HealingEngine",
    "HealingError",
    "HealingFlags",
    "HealingOutcome",
    "LoggingTelemetrySink",
    "NoMatchError",
    "PatchBuildError",
    "PatchDocument",
    "PatchFormatError",
    "PatchHealer",
    "PatchOutcome",
    "PositionalApplyError",
    "RecordingTelemetrySink",
    "SourceModel",
    "Strategy",
    "StringReplaceHealer",
    "TelemetrySink",
    "build_commit",
    "parse_patch",
]
