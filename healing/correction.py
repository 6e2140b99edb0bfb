"""Client for the generative correction backend.

Requests go through an :class:`utils.llm_client.LLMClient`, are retried with
exponential backoff by ``tenacity`` and bounded per attempt by a timeout.
Replies must be a single JSON object that validates as
:class:`healing.types.CorrectionResponse`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import get_constant
from models import base_model_name, estimate_cost
from system_prompt.healing_prompts import (
    connection_test_prompt,
    new_string_correction_prompt,
    old_string_correction_prompt,
    patch_correction_prompt,
    patch_healing_system_prompt,
    string_healing_system_prompt,
)
from utils.json_utils import extract_json_object
from utils.llm_client import (
    ChatRequest,
    ChatResponse,
    FailureKind,
    LLMClient,
    LLMClientError,
    create_llm_client,
)

from .errors import CorrectionServiceError, HealingCancelledError
from .text_utils import extract_patch_from_response
from .types import CorrectionResponse

logger = logging.getLogger(__name__)

OLD_STRING_KEYS = ("old_string", "oldString", "old_str")
NEW_STRING_KEYS = ("new_string", "newString", "new_str")
ERROR_CATEGORIES = ("timeout", "rate_limit", "authentication", "quota_exceeded", "network", "parse", "other")


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def categorize_error(message: str) -> str:
    lowered = (message or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "rate limit" in lowered:
        return "rate_limit"
    if "auth" in lowered:
        return "authentication"
    if "quota" in lowered:
        return "quota_exceeded"
    if "network" in lowered or "connection" in lowered:
        return "network"
    return "other"


class CorrectionMetrics:
    """Running totals for correction requests. Safe to share across tasks and threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._data: Dict[str, Any] = {
                "total_requests": 0,
                "successful_requests": 0,
                "failed_requests": 0,
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens_used": 0,
                "total_cost": 0.0,
                "average_response_time": 0.0,
                "requests_by_model": {},
                "errors_by_type": {},
            }

    def _count(self, model: str, elapsed: float) -> None:
        data = self._data
        data["total_requests"] += 1
        total = data["total_requests"]
        data["average_response_time"] = (data["average_response_time"] * (total - 1) + elapsed) / total
        name = base_model_name(model or "unknown")
        data["requests_by_model"][name] = data["requests_by_model"].get(name, 0) + 1

    def record_success(self, model: str, prompt_tokens: int, completion_tokens: int, elapsed: float) -> None:
        with self._lock:
            self._count(model, elapsed)
            self._data["successful_requests"] += 1
            self._data["prompt_tokens"] += prompt_tokens
            self._data["completion_tokens"] += completion_tokens
            self._data["total_tokens_used"] += prompt_tokens + completion_tokens
            self._data["total_cost"] += estimate_cost(model, prompt_tokens, completion_tokens)

    def record_failure(self, model: str, error: str, elapsed: float, kind: Optional[str] = None) -> None:
        with self._lock:
            self._count(model, elapsed)
            self._data["failed_requests"] += 1
            kind = kind if kind in ERROR_CATEGORIES else categorize_error(error)
            self._data["errors_by_type"][kind] = self._data["errors_by_type"].get(kind, 0) + 1

    def record_parse_failure(self) -> None:
        """Move a request already counted as successful to the failed column."""
        with self._lock:
            data = self._data
            data["successful_requests"] = max(0, data["successful_requests"] - 1)
            data["failed_requests"] += 1
            data["errors_by_type"]["parse"] = data["errors_by_type"].get("parse", 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            data = dict(self._data)
            data["requests_by_model"] = dict(self._data["requests_by_model"])
            data["errors_by_type"] = dict(self._data["errors_by_type"])
        total = data["total_requests"]
        data["success_rate"] = data["successful_requests"] / total if total else 1.0
        return data


# ---------------------------------------------------------------------------
# Retry helpers
# ---------------------------------------------------------------------------


def should_retry_correction_call(exception: BaseException) -> bool:
    """Return True if the exception warrants a retry."""
    if isinstance(exception, LLMClientError) and exception.kind.transient:
        logger.warning(f"Retry triggered by {exception.kind.value} error: {str(exception)[:200]}")
        return True
    return False


def _log_correction_retry(retry_state: RetryCallState) -> None:
    if retry_state.outcome and retry_state.outcome.failed:
        exc = retry_state.outcome.exception()
        wait = f"Waiting {retry_state.next_action.sleep:.2f}s..." if retry_state.next_action else "No further retries."
        logger.warning(
            f"Correction request attempt {retry_state.attempt_number} failed "
            f"({type(exc).__name__}: {str(exc)[:200]}). {wait}"
        )


async def run_cancellable(awaitable, cancellation: Optional[asyncio.Event]):
    """Await ``awaitable`` unless ``cancellation`` is set first."""
    if cancellation is None:
        return await awaitable
    if cancellation.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise HealingCancelledError()
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancellation.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if work not in done:
        work.cancel()
        raise HealingCancelledError()
    return work.result()


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def parse_correction_response(content: str) -> CorrectionResponse:
    """Validate a backend reply; raises CorrectionServiceError(kind="parse")."""
    payload = extract_json_object(content)
    if not isinstance(payload, dict):
        raise CorrectionServiceError("No JSON object found in response", kind=FailureKind.PARSE.value)
    try:
        return CorrectionResponse.model_validate(payload)
    except ValidationError as exc:
        raise CorrectionServiceError(f"Invalid correction response: {exc}", kind=FailureKind.PARSE.value) from exc


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CorrectionService:
    """Issues old-text, new-text and patch correction requests."""

    def __init__(
        self,
        client: Optional[LLMClient] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        metrics: Optional[CorrectionMetrics] = None,
        client_factory: Callable[[str], LLMClient] = create_llm_client,
        retry_wait=None,
    ):
        self.model = model or get_constant("HEALING_MODEL", "openai/gpt-4o-mini")
        self.max_retries = int(max_retries if max_retries is not None else get_constant("HEALING_MAX_RETRIES", 3))
        self.timeout = float(timeout if timeout is not None else get_constant("HEALING_REQUEST_TIMEOUT", 30.0))
        if not 1 <= self.max_retries <= 10:
            raise ValueError("max_retries must be between 1 and 10")
        if not 5 <= self.timeout <= 300:
            raise ValueError("timeout must be between 5 and 300 seconds")
        self.temperature = float(get_constant("HEALING_TEMPERATURE", 0.1))
        self.max_tokens = int(get_constant("HEALING_MAX_TOKENS", 2000))
        self.metrics = metrics or CorrectionMetrics()
        self._client = client
        self._client_factory = client_factory
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = self._client_factory(self.model)
        return self._client

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _attempt(self, request: ChatRequest, timeout: float, cancellation: Optional[asyncio.Event]) -> ChatResponse:
        try:
            client = self.client
        except ValueError as exc:
            # missing API key
            raise LLMClientError(str(exc), FailureKind.AUTH) from exc
        try:
            return await asyncio.wait_for(run_cancellable(client.complete(request), cancellation), timeout)
        except asyncio.TimeoutError as exc:
            raise LLMClientError(f"Request timeout after {timeout:.1f}s", FailureKind.TIMEOUT) from exc

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> ChatResponse:
        """Send one logical request, retrying transient failures."""
        request = ChatRequest(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        per_attempt = timeout or self.timeout
        attempts = max(1, max_attempts or self.max_retries)
        started = time.monotonic()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(should_retry_correction_call),
                before_sleep=_log_correction_retry,
                reraise=True,
            ):
                with attempt:
                    response = await self._attempt(request, per_attempt, cancellation)
        except LLMClientError as exc:
            self.metrics.record_failure(self.model, str(exc), time.monotonic() - started, kind=exc.kind.value)
            raise CorrectionServiceError(str(exc), kind=exc.kind.value) from exc
        except HealingCancelledError:
            self.metrics.record_failure(self.model, "cancelled", time.monotonic() - started)
            raise
        except Exception as exc:
            logger.error(f"Correction backend failed unexpectedly: {type(exc).__name__}: {exc}", exc_info=True)
            self.metrics.record_failure(self.model, str(exc), time.monotonic() - started)
            raise CorrectionServiceError(str(exc), kind=FailureKind.OTHER.value) from exc

        usage = response.usage
        self.metrics.record_success(
            response.model or self.model, usage.prompt_tokens, usage.completion_tokens, time.monotonic() - started
        )
        logger.debug(
            f"Correction request completed in {time.monotonic() - started:.2f}s "
            f"({usage.total_tokens} tokens, model {response.model})"
        )
        return response

    @contextmanager
    def _reply_parsing(self):
        """Count a request whose reply cannot be read as a failed one."""
        try:
            yield
        except CorrectionServiceError as exc:
            logger.warning(f"Unusable correction reply: {str(exc)[:200]}")
            self.metrics.record_parse_failure()
            raise

    # ------------------------------------------------------------------
    # Correction requests
    # ------------------------------------------------------------------

    async def correct_old_string(
        self,
        *,
        old_string: str,
        new_string: str,
        file_context: str,
        source_model: Optional[str] = None,
        error_message: str = "No match found for replacement",
        attempts: Optional[List[Dict[str, Any]]] = None,
        file_path: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Return a corrected old text, or None when the backend declines."""
        prompt = old_string_correction_prompt(
            source_model=source_model or "unknown",
            error_message=error_message,
            failed_parameters={"old_string": old_string, "new_string": new_string},
            file_context=file_context,
            attempts=attempts,
            file_path=file_path,
        )
        response = await self.complete(
            string_healing_system_prompt(), prompt,
            timeout=timeout, max_attempts=max_attempts, cancellation=cancellation,
        )
        with self._reply_parsing():
            parsed = parse_correction_response(response.content)
            if parsed.declined:
                logger.info(f"Old text correction declined: {parsed.reasoning[:200]}")
                return None
            corrected = parsed.parameter(*OLD_STRING_KEYS)
            if corrected is None:
                raise CorrectionServiceError("Correction response carries no old_string", kind=FailureKind.PARSE.value)
        return corrected

    async def correct_new_string(
        self,
        *,
        original_old: str,
        corrected_old: str,
        original_new: str,
        file_sample: str = "",
        source_model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Return a replacement text consistent with ``corrected_old``."""
        prompt = new_string_correction_prompt(
            source_model=source_model or "unknown",
            original_old=original_old,
            corrected_old=corrected_old,
            original_new=original_new,
            file_sample=file_sample,
        )
        response = await self.complete(
            string_healing_system_prompt(), prompt,
            timeout=timeout, max_attempts=max_attempts, cancellation=cancellation,
        )
        with self._reply_parsing():
            parsed = parse_correction_response(response.content)
            if parsed.declined:
                return None
            corrected = parsed.parameter(*NEW_STRING_KEYS)
            if corrected is None:
                raise CorrectionServiceError("Correction response carries no new_string", kind=FailureKind.PARSE.value)
        return corrected

    async def correct_patch(
        self,
        *,
        patch: str,
        explanation: str,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancellation: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Return a corrected patch, or None when the backend declines.

        A reply without any JSON object is read as a bare (possibly fenced) diff.
        """
        response = await self.complete(
            patch_healing_system_prompt(), patch_correction_prompt(patch, explanation),
            timeout=timeout, max_attempts=max_attempts, cancellation=cancellation,
        )
        if extract_json_object(response.content) is None:
            return extract_patch_from_response(response.content) or None
        with self._reply_parsing():
            parsed = parse_correction_response(response.content)
            if parsed.declined:
                return None
            corrected = parsed.corrected_patch or parsed.parameter("patch", "corrected_patch")
            if not corrected:
                raise CorrectionServiceError("Correction response carries no patch", kind=FailureKind.PARSE.value)
        return extract_patch_from_response(corrected)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            response = await self.complete("", connection_test_prompt(), max_attempts=1)
        except CorrectionServiceError as exc:
            return {"success": False, "error": str(exc), "kind": exc.kind}
        return {
            "success": True,
            "model": response.model,
            "response_time": time.monotonic() - started,
        }

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.snapshot()

    def get_config(self) -> Dict[str, Any]:
        api_key = getattr(self._client, "api_key", None)
        return {
            "model": self.model,
            "max_retries": self.max_retries,
            "timeout": self.timeout,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "api_key": "[CONFIGURED]" if api_key else "[NOT SET]",
        }

    def describe(self) -> str:
        return json.dumps(self.get_config(), indent=2)
