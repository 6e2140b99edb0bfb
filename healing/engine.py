"""Entry point for callers that want healed edits and patches.

A :class:`HealingEngine` owns its correction service, flags, telemetry sink
and concurrency limit. Create one per process (or per test) and pass it to
the tools that need it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from .correction import CorrectionService
from .errors import HealedError, HealingCancelledError, NoMatchError
from .flags import HealingFlags
from .patch_healing import PatchHealer
from .string_healing import StringReplaceHealer
from .telemetry import (
    APPLY_PATCH_EVENT,
    REPLACE_STRING_EVENT,
    STRING_HEAL_EVENT,
    LoggingTelemetrySink,
    TelemetrySink,
    emit_event,
    sanitize_file_path,
)
from .types import (
    DocumentContent,
    EditParams,
    EditRequest,
    HealingOutcome,
    HealingTelemetry,
    PatchDocument,
    PatchOutcome,
    SourceModel,
    Strategy,
    TelemetryOutcome,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALING_DISABLED = "healing_disabled_by_feature_flag"


class HealingStats:
    """Per-engine counters behind :meth:`HealingEngine.health_check`."""

    def __init__(self):
        self._lock = threading.Lock()
        self.total = 0
        self.successful = 0
        self.total_time = 0.0
        self.strategies: Dict[str, Dict[str, int]] = {}

    def record(self, strategy: str, success: bool, elapsed: float) -> None:
        with self._lock:
            self.total += 1
            self.successful += int(success)
            self.total_time += elapsed
            entry = self.strategies.setdefault(strategy, {"uses": 0, "successes": 0})
            entry["uses"] += 1
            entry["successes"] += int(success)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total_healings": self.total,
                "successful_healings": self.successful,
                "failed_healings": self.total - self.successful,
                "success_rate": self.successful / self.total if self.total else 0.0,
                "average_healing_time": self.total_time / self.total if self.total else 0.0,
                "strategies": {
                    name: {**data, "success_rate": data["successes"] / max(data["uses"], 1)}
                    for name, data in self.strategies.items()
                },
            }


class HealingEngine:
    def __init__(
        self,
        correction: Optional[CorrectionService] = None,
        flags: Optional[HealingFlags] = None,
        telemetry: Optional[TelemetrySink] = None,
    ):
        self.correction = correction
        self.flags = flags or HealingFlags()
        self.telemetry = telemetry or LoggingTelemetrySink()
        self.stats = HealingStats()
        self._limiter: Optional[asyncio.Semaphore] = None
        self._limiter_size = 0

    @property
    def limiter(self) -> asyncio.Semaphore:
        size = self.flags.concurrent_limit()
        if self._limiter is None or size != self._limiter_size:
            self._limiter = asyncio.Semaphore(size)
            self._limiter_size = size
        return self._limiter

    # ------------------------------------------------------------------
    # String replacement
    # ------------------------------------------------------------------

    async def heal_string(
        self,
        old_text: str,
        new_text: str,
        content: str,
        expected_occurrences: int = 1,
        model: Optional[str] = None,
        cancellation: Optional[asyncio.Event] = None,
        file_path: Optional[str] = None,
    ) -> HealingOutcome:
        """Run the string pipeline and emit one telemetry event."""
        request = EditRequest(
            old_text=old_text,
            new_text=new_text,
            expected_occurrences=expected_occurrences,
            source_model=SourceModel.parse(model),
        )
        started = time.monotonic()
        if not self.flags.is_string_replace_healing_enabled():
            outcome = HealingOutcome.failed(request.params, error=HEALING_DISABLED)
            self._emit_string_event(STRING_HEAL_EVENT, model, outcome, started, heal_error=HEALING_DISABLED)
            return outcome

        outcome = await self._run_string_pipeline(request, content, cancellation, file_path)
        self.stats.record(outcome.strategy.value, outcome.success, time.monotonic() - started)
        self._emit_string_event(STRING_HEAL_EVENT, model, outcome, started, heal_error=outcome.error)
        return outcome

    async def _run_string_pipeline(
        self,
        request: EditRequest,
        content: str,
        cancellation: Optional[asyncio.Event],
        file_path: Optional[str],
    ) -> HealingOutcome:
        healer = StringReplaceHealer(
            correction=self.correction,
            flags=self.flags,
            limiter=self.limiter,
            cancellation=cancellation,
            file_path=file_path,
        )
        try:
            return await healer.heal(request, DocumentContent.from_text(content))
        except HealingCancelledError as exc:
            logger.info("String healing cancelled")
            return HealingOutcome.failed(request.params, error=str(exc))

    async def apply_edit_with_healing(
        self,
        apply_edit: Callable[[EditParams], Awaitable[T]],
        request: EditRequest,
        content: str,
        cancellation: Optional[asyncio.Event] = None,
        file_path: Optional[str] = None,
    ) -> Tuple[T, HealingOutcome]:
        """Apply an edit, healing its parameters after a NoMatchError.

        The caller sees either the healed edit's result or the original error.
        Errors other than NoMatchError propagate unchanged and are never healed.
        """
        started = time.monotonic()
        model_name = request.source_model.name if request.source_model else None
        baseline = HealingOutcome(
            healed_params=request.params,
            occurrences=request.expected_occurrences,
            healing_applied=False,
            strategy=Strategy.NONE,
            success=True,
        )
        try:
            result = await apply_edit(request.params)
        except NoMatchError as error:
            original = error
        except Exception as error:
            self._emit(REPLACE_STRING_EVENT, HealingTelemetry(
                model=model_name,
                outcome=TelemetryOutcome.HEALING_FAILED,
                execution_time=time.monotonic() - started,
                application_error=str(error),
            ))
            raise
        else:
            self._emit(REPLACE_STRING_EVENT, HealingTelemetry(
                model=model_name,
                outcome=TelemetryOutcome.NORMAL_EXECUTION,
                execution_time=time.monotonic() - started,
            ))
            return result, baseline

        if not self.flags.is_string_replace_healing_enabled():
            self._emit(REPLACE_STRING_EVENT, HealingTelemetry(
                model=model_name,
                outcome=TelemetryOutcome.HEALING_FAILED,
                execution_time=time.monotonic() - started,
                heal_error=HEALING_DISABLED,
            ))
            raise original

        outcome = await self._run_string_pipeline(request, content, cancellation, file_path)
        self.stats.record(outcome.strategy.value, outcome.success, time.monotonic() - started)
        heal_error = outcome.error
        if outcome.success and outcome.healing_applied:
            try:
                result = await apply_edit(outcome.healed_params)
            except Exception as healed_error:
                heal_error = str(healed_error)
            else:
                self._emit(REPLACE_STRING_EVENT, HealingTelemetry(
                    model=model_name,
                    outcome=TelemetryOutcome.HEALING_SUCCEEDED,
                    healing_attempts=len(outcome.attempts),
                    execution_time=time.monotonic() - started,
                    strategy=outcome.strategy,
                ))
                return result, outcome

        self._emit(REPLACE_STRING_EVENT, HealingTelemetry(
            model=model_name,
            outcome=TelemetryOutcome.HEALING_FAILED,
            healing_attempts=len(outcome.attempts),
            execution_time=time.monotonic() - started,
            heal_error=heal_error or "healing did not produce a unique match",
            application_error=str(original),
        ))
        raise original

    # ------------------------------------------------------------------
    # Patches
    # ------------------------------------------------------------------

    async def heal_patch(
        self,
        patch_text: str,
        document: PatchDocument,
        explanation: str = "",
        cancellation: Optional[asyncio.Event] = None,
    ) -> PatchOutcome:
        """Build a commit from ``patch_text``, healing it on failure.

        Raises the original PatchBuildError, or HealedError when the healed
        patch also fails. Emits one telemetry event either way.
        """
        started = time.monotonic()
        healer = PatchHealer(
            correction=self.correction,
            flags=self.flags,
            limiter=self.limiter,
            cancellation=cancellation,
        )
        properties: Dict[str, Any] = {"file": sanitize_file_path(document.uri)}
        try:
            outcome = await healer.apply_patch(patch_text, document, explanation)
        except Exception as error:
            # a HealedError means a healed patch existed but still failed
            properties.update(healed=isinstance(error, HealedError), success=False)
            if self.flags.is_error_reporting_enabled():
                properties["error"] = str(error)
            self._emit_patch_event(properties, started)
            self.stats.record("patch", False, time.monotonic() - started)
            raise
        properties.update(healed=outcome.was_healed, success=True)
        self._emit_patch_event(properties, started)
        self.stats.record("patch", True, time.monotonic() - started)
        return outcome

    # ------------------------------------------------------------------
    # Telemetry helpers
    # ------------------------------------------------------------------

    def _emit(self, name: str, record: HealingTelemetry) -> None:
        properties = record.to_properties()
        if not self.flags.is_performance_metrics_enabled():
            properties.pop("execution_time", None)
        if not self.flags.is_error_reporting_enabled():
            properties.pop("heal_error", None)
            properties.pop("application_error", None)
        emit_event(self.telemetry, name, properties)

    def _emit_string_event(
        self,
        name: str,
        model: Optional[str],
        outcome: HealingOutcome,
        started: float,
        heal_error: Optional[str] = None,
    ) -> None:
        if outcome.success and outcome.healing_applied:
            result = TelemetryOutcome.HEALING_SUCCEEDED
        elif outcome.success:
            result = TelemetryOutcome.NORMAL_EXECUTION
        else:
            result = TelemetryOutcome.HEALING_FAILED
        record = HealingTelemetry(
            model=model,
            outcome=result,
            healing_attempts=len(outcome.attempts),
            execution_time=time.monotonic() - started,
            heal_error=heal_error,
            strategy=outcome.strategy if self.flags.is_detailed_telemetry_enabled() else None,
        )
        self._emit(name, record)

    def _emit_patch_event(self, properties: Dict[str, Any], started: float) -> None:
        if self.flags.is_performance_metrics_enabled():
            properties["execution_time"] = round(time.monotonic() - started, 4)
        emit_event(self.telemetry, APPLY_PATCH_EVENT, properties)

    # ------------------------------------------------------------------
    # Metrics / health
    # ------------------------------------------------------------------

    def metrics(self) -> Dict[str, Any]:
        data = {"healing": self.stats.snapshot()}
        if self.correction is not None:
            data["correction"] = self.correction.get_metrics()
        return data

    def health_check(self) -> Dict[str, Any]:
        stats = self.stats.snapshot()
        issues = []
        status = "healthy"
        if stats["total_healings"] > 0:
            rate = stats["success_rate"]
            if rate < 0.3:
                issues.append(f"Low healing success rate: {rate * 100:.1f}%")
                status = "warning"
            if rate < 0.1:
                issues.append("Critical: healing almost never succeeds")
                status = "error"
        if stats["average_healing_time"] > 10.0:
            issues.append(f"Slow healing: {stats['average_healing_time']:.1f}s on average")
            if status == "healthy":
                status = "warning"
        return {"status": status, "issues": issues, "metrics": stats}
