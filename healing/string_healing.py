"""Recovery pipeline for exact-text replacement edits.

The pipeline is an ordered list of phases. Each phase takes the current
immutable :class:`HealingState` and returns the next one; a phase runs at
most once and later phases only refine a pair an earlier phase accepted.

    baseline -> unescape -> old-text correction -> new-text correction -> trim
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from config import get_constant

from .correction import CorrectionService
from .errors import CorrectionServiceError
from .flags import HealingFlags
from .text_utils import create_healing_context, match_and_count, trim_pair_if_possible
from .types import (
    DocumentContent,
    EditParams,
    EditRequest,
    HealingAttempt,
    HealingOutcome,
    Strategy,
)
from .unescape import create_unescape_function

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealingState:
    request: EditRequest
    document: DocumentContent
    params: EditParams
    occurrences: int
    strategy: Strategy = Strategy.NONE
    healing_applied: bool = False
    attempts: Tuple[HealingAttempt, ...] = ()
    error: Optional[str] = None
    finished: bool = False
    normalizer: Callable[[str], str] = field(default=lambda s: s, compare=False)

    @property
    def expected(self) -> int:
        return self.request.expected_occurrences

    @property
    def matched(self) -> bool:
        return self.occurrences == self.expected

    def count(self, old_text: str) -> int:
        return match_and_count(self.document.text, old_text, self.document.eol)

    def record(self, strategy: Strategy, params: EditParams, occurrences: int) -> "HealingState":
        attempt = HealingAttempt(
            strategy=strategy,
            params=params,
            occurrences=occurrences,
            success=occurrences == self.expected,
        )
        return replace(self, attempts=self.attempts + (attempt,))

    def to_outcome(self) -> HealingOutcome:
        return HealingOutcome(
            healed_params=self.params,
            occurrences=self.occurrences,
            healing_applied=self.healing_applied,
            strategy=self.strategy,
            success=self.matched,
            attempts=self.attempts,
            error=self.error,
        )


Phase = Callable[[HealingState], Awaitable[HealingState]]


class StringReplaceHealer:
    """Runs the string replacement phases against one document."""

    def __init__(
        self,
        correction: Optional[CorrectionService] = None,
        flags: Optional[HealingFlags] = None,
        limiter: Optional[asyncio.Semaphore] = None,
        cancellation: Optional[asyncio.Event] = None,
        file_path: Optional[str] = None,
    ):
        self.correction = correction
        self.flags = flags or HealingFlags()
        self.limiter = limiter
        self.cancellation = cancellation
        self.file_path = file_path
        self.phases: List[Phase] = [
            self._baseline,
            self._unescape,
            self._correct_old_text,
            self._correct_new_text,
            self._trim,
        ]

    async def heal(self, request: EditRequest, document: DocumentContent) -> HealingOutcome:
        model = request.source_model
        state = HealingState(
            request=request,
            document=document,
            params=request.params,
            occurrences=0,
            normalizer=create_unescape_function(model, self.flags),
        )
        for phase in self.phases:
            if state.finished:
                break
            state = await phase(state)
        logger.debug(
            f"String healing finished: strategy={state.strategy.value} "
            f"occurrences={state.occurrences} applied={state.healing_applied}"
        )
        return state.to_outcome()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _baseline(self, state: HealingState) -> HealingState:
        occurrences = state.count(state.params.old_text)
        state = replace(state, occurrences=occurrences).record(Strategy.NONE, state.params, occurrences)
        if occurrences >= state.expected:
            # exact match needs no healing, more matches than expected is ambiguity
            return replace(state, finished=True)
        return state

    async def _unescape(self, state: HealingState) -> HealingState:
        original = state.request.params
        unescaped_old = state.normalizer(original.old_text)
        if unescaped_old == original.old_text:
            return state
        occurrences = state.count(unescaped_old)
        candidate = EditParams(old_text=unescaped_old, new_text=state.normalizer(original.new_text))
        state = state.record(Strategy.UNESCAPE, candidate, occurrences)
        if occurrences != state.expected:
            return replace(state, occurrences=occurrences)
        logger.info("Healed old text by collapsing over-escaped sequences")
        return replace(
            state,
            params=candidate,
            occurrences=occurrences,
            strategy=Strategy.UNESCAPE,
            healing_applied=True,
        )

    async def _correct_old_text(self, state: HealingState) -> HealingState:
        if state.occurrences != 0 or self.correction is None:
            return state
        content = state.document.text
        if len(content) > self.flags.memory_limit():
            logger.warning("Document exceeds healing memory limit, skipping old text correction")
            return state

        original = state.request.params
        search = state.normalizer(original.old_text)
        if self.flags.is_context_truncation_enabled():
            context = create_healing_context(content, search, get_constant("HEALING_MAX_CONTEXT_CHARS", 2000))
        else:
            context = content
        try:
            async with self._limit():
                corrected = await self.correction.correct_old_string(
                    old_string=search,
                    new_string=original.new_text,
                    file_context=context,
                    source_model=self._model_name(state),
                    attempts=_attempt_history(state.attempts),
                    file_path=self.file_path,
                    timeout=self.flags.string_replace_timeout(),
                    max_attempts=self.flags.string_replace_max_attempts(),
                    cancellation=self.cancellation,
                )
        except CorrectionServiceError as exc:
            logger.warning(f"Old text correction failed, continuing without it: {exc}")
            return replace(state, error=str(exc))

        if not corrected:
            return state
        occurrences = state.count(corrected)
        candidate = state.params.replace(old_text=corrected)
        state = state.record(Strategy.LLM_CORRECTION, candidate, occurrences)
        if occurrences != state.expected:
            logger.info(f"Corrected old text matched {occurrences} times, expected {state.expected}")
            return state
        return replace(
            state,
            params=candidate,
            occurrences=occurrences,
            strategy=Strategy.LLM_CORRECTION,
            healing_applied=True,
        )

    async def _correct_new_text(self, state: HealingState) -> HealingState:
        original = state.request.params
        if not state.healing_applied or self.correction is None:
            return state
        if state.normalizer(original.new_text) == original.new_text:
            return state
        try:
            async with self._limit():
                corrected = await self.correction.correct_new_string(
                    original_old=original.old_text,
                    corrected_old=state.params.old_text,
                    original_new=original.new_text,
                    file_sample=state.document.text,
                    source_model=self._model_name(state),
                    timeout=self.flags.string_replace_timeout(),
                    max_attempts=self.flags.string_replace_max_attempts(),
                    cancellation=self.cancellation,
                )
        except CorrectionServiceError as exc:
            logger.warning(f"New text correction failed, keeping current new text: {exc}")
            return replace(state, error=str(exc))

        if corrected is None or corrected == original.new_text:
            return state
        candidate = state.params.replace(new_text=corrected)
        state = state.record(Strategy.NEWSTRING_CORRECTION, candidate, state.occurrences)
        return replace(state, params=candidate, strategy=Strategy.NEWSTRING_CORRECTION)

    async def _trim(self, state: HealingState) -> HealingState:
        if not state.matched or len(state.params.old_text) <= 1:
            return state
        old, new = trim_pair_if_possible(
            state.params.old_text,
            state.params.new_text,
            state.document.text,
            state.expected,
            state.document.eol,
        )
        if old == state.params.old_text:
            return state
        candidate = EditParams(old_text=old, new_text=new)
        occurrences = state.count(old)
        state = state.record(Strategy.TRIM_OPTIMIZATION, candidate, occurrences)
        return replace(
            state,
            params=candidate,
            occurrences=occurrences,
            strategy=Strategy.TRIM_OPTIMIZATION,
            healing_applied=True,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _limit(self):
        return self.limiter if self.limiter is not None else contextlib.nullcontext()

    @staticmethod
    def _model_name(state: HealingState) -> str:
        model = state.request.source_model
        return model.name if model else "unknown"


def _attempt_history(attempts: Tuple[HealingAttempt, ...]) -> List[Dict[str, Any]]:
    return [
        {
            "method": attempt.strategy.value,
            "parameters": {"old_string": attempt.params.old_text, "new_string": attempt.params.new_text},
            "success": attempt.success,
            "error": None if attempt.success else f"{attempt.occurrences} occurrences",
        }
        for attempt in attempts
    ]
