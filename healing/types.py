from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Strategy(str, Enum):
    """Healing phases, in the order the string pipeline runs them."""

    NONE = "none"
    UNESCAPE = "unescape"
    LLM_CORRECTION = "llm_correction"
    NEWSTRING_CORRECTION = "newstring_correction"
    TRIM_OPTIMIZATION = "trim_optimization"

    @classmethod
    def list(cls) -> List[str]:
        return [s.value for s in cls]


class LineEnding(str, Enum):
    LF = "\n"
    CRLF = "\r\n"


class TelemetryOutcome(str, Enum):
    HEALING_SUCCEEDED = "healingSucceeded"
    HEALING_FAILED = "healingFailed"
    NORMAL_EXECUTION = "normalExecution"


class HunkLineKind(str, Enum):
    CONTEXT = " "
    ADDITION = "+"
    DELETION = "-"


# ---------------------------------------------------------------------------
# String replacement data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceModel:
    """The model that produced a tool call, e.g. family ``gemini``."""

    family: str
    name: str

    @classmethod
    def parse(cls, model: Optional[str]) -> Optional["SourceModel"]:
        """Build a SourceModel from an id such as ``google/gemini-2.5-pro``."""
        if not model:
            return None
        lowered = model.lower()
        if "gemini" in lowered or lowered.startswith("google/"):
            family = "gemini"
        elif "claude" in lowered or lowered.startswith("anthropic/"):
            family = "claude"
        elif "gpt" in lowered or lowered.startswith("openai/"):
            family = "gpt"
        else:
            family = lowered.split("/", 1)[0] if "/" in lowered else "unknown"
        return cls(family=family, name=model)


@dataclass(kw_only=True, frozen=True)
class EditParams:
    old_text: str
    new_text: str

    def replace(self, **kwargs) -> "EditParams":
        return replace(self, **kwargs)


@dataclass(kw_only=True, frozen=True)
class EditRequest:
    """A replacement the model asked for."""

    old_text: str
    new_text: str
    expected_occurrences: int = 1
    source_model: Optional[SourceModel] = None

    def __post_init__(self):
        if self.expected_occurrences < 1:
            raise ValueError("expected_occurrences must be at least 1")

    @property
    def params(self) -> EditParams:
        return EditParams(old_text=self.old_text, new_text=self.new_text)


@dataclass(frozen=True)
class DocumentContent:
    """Immutable snapshot of the text an edit targets."""

    text: str
    line_ending: LineEnding = LineEnding.LF

    @classmethod
    def from_text(cls, text: str) -> "DocumentContent":
        crlf = text.count("\r\n")
        lf = text.count("\n") - crlf
        ending = LineEnding.CRLF if crlf > lf else LineEnding.LF
        return cls(text=text, line_ending=ending)

    @property
    def eol(self) -> str:
        return self.line_ending.value


@dataclass(kw_only=True, frozen=True)
class HealingAttempt:
    """One evaluated hypothesis."""

    strategy: Strategy
    params: EditParams
    occurrences: int
    success: bool


@dataclass(kw_only=True, frozen=True)
class HealingOutcome:
    """Result of the string pipeline.

    ``healed_params`` is what the caller should re-attempt the edit with.
    ``success`` is True when the healed pair matches the expected count.
    """

    healed_params: EditParams
    occurrences: int
    healing_applied: bool
    strategy: Strategy
    success: bool
    attempts: Tuple[HealingAttempt, ...] = ()
    error: Optional[str] = None

    @classmethod
    def failed(cls, params: EditParams, occurrences: int = 0, error: Optional[str] = None) -> "HealingOutcome":
        return cls(
            healed_params=params,
            occurrences=occurrences,
            healing_applied=False,
            strategy=Strategy.NONE,
            success=False,
            error=error,
        )


# ---------------------------------------------------------------------------
# Patch data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HunkLine:
    kind: HunkLineKind
    text: str


@dataclass
class Hunk:
    """A contiguous change anchored at a 1-based line of the original file."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[HunkLine] = field(default_factory=list)
    header: str = ""

    @property
    def additions(self) -> int:
        return sum(1 for line in self.lines if line.kind is HunkLineKind.ADDITION)

    @property
    def deletions(self) -> int:
        return sum(1 for line in self.lines if line.kind is HunkLineKind.DELETION)

    @property
    def old_span(self) -> int:
        return sum(1 for line in self.lines if line.kind is not HunkLineKind.ADDITION)


@dataclass
class FilePatch:
    old_path: Optional[str]
    new_path: Optional[str]
    hunks: List[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        return self.new_path or self.old_path or ""

    @property
    def additions(self) -> int:
        return sum(h.additions for h in self.hunks)

    @property
    def deletions(self) -> int:
        return sum(h.deletions for h in self.hunks)

    def matches(self, uri: str) -> bool:
        """True when this patch targets ``uri`` (suffix match on path parts)."""
        if not uri or not self.path:
            return False
        target = PurePosixPath(uri.replace("\\", "/")).parts
        mine = PurePosixPath(self.path).parts
        return len(mine) <= len(target) and target[-len(mine):] == mine


@dataclass(kw_only=True, frozen=True)
class PatchDocument:
    uri: str
    content: str
    language: Optional[str] = None
    version: Optional[int] = None

    @property
    def language_id(self) -> str:
        if self.language:
            return self.language
        suffix = PurePosixPath(self.uri.replace("\\", "/")).suffix.lstrip(".")
        return suffix or "plaintext"


@dataclass(kw_only=True, frozen=True)
class Commit:
    patch: str
    files: List[str]
    additions: int
    deletions: int
    content: str
    message: str = ""


@dataclass(kw_only=True, frozen=True)
class PatchOutcome:
    commit: Commit
    was_healed: bool
    healed_patch: Optional[str] = None


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class HealingTelemetry:
    """One record per top-level healing invocation."""

    model: Optional[str]
    outcome: TelemetryOutcome
    healing_attempts: int = 0
    execution_time: float = 0.0
    heal_error: Optional[str] = None
    application_error: Optional[str] = None
    strategy: Optional[Strategy] = None

    def to_properties(self) -> Dict[str, Any]:
        props: Dict[str, Any] = {
            "model": self.model or "unknown",
            "outcome": self.outcome.value,
            "healing_attempts": self.healing_attempts,
            "execution_time": round(self.execution_time, 4),
        }
        if self.strategy is not None:
            props["strategy"] = self.strategy.value
        if self.heal_error:
            props["heal_error"] = self.heal_error
        if self.application_error:
            props["application_error"] = self.application_error
        return props


# ---------------------------------------------------------------------------
# Correction service contract
# ---------------------------------------------------------------------------

SuggestedMethod = Literal["unescape", "llm_correction", "newstring_adjustment", "manual_intervention"]


class CorrectionResponse(BaseModel):
    """JSON object the correction backend must return."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    success: bool
    corrected_parameters: Optional[Dict[str, Any]] = Field(default=None, alias="correctedParameters")
    corrected_patch: Optional[str] = Field(default=None, alias="correctedPatch")
    reasoning: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_method: SuggestedMethod = Field(alias="suggestedMethod")

    @model_validator(mode="after")
    def _require_payload(self) -> "CorrectionResponse":
        if self.success and not self.corrected_parameters and not self.corrected_patch:
            raise ValueError("success=true requires correctedParameters or correctedPatch")
        return self

    @property
    def declined(self) -> bool:
        return not self.success or self.suggested_method == "manual_intervention"

    def parameter(self, *names: str) -> Optional[str]:
        """First string value under any of ``names`` in correctedParameters."""
        params = self.corrected_parameters or {}
        for name in names:
            value = params.get(name)
            if isinstance(value, str):
                return value
        return None
