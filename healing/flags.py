"""Feature flags for the healing engine.

Lookups are synchronous and resolve in the order: override, explicit flag,
caller default. Remote values are merged in by an optional background task
and only for keys that have a built-in default.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

RemoteFlagProvider = Callable[[], Awaitable[Dict[str, Any]]]

SYNC_INTERVAL = 5 * 60  # seconds between remote pulls
FIRST_SYNC_DELAY = 30  # seconds before the first pull

DEFAULT_HEALING_FLAGS: Dict[str, Any] = {
    "string_replace_healing": True,
    "string_replace_healing_max_attempts": 3,
    "string_replace_healing_timeout": 10.0,
    "patch_apply_healing": True,
    "patch_healing_max_attempts": 2,
    "patch_healing_timeout": 15.0,
    "gemini_unescape_fix": True,
    "claude_formatting_fix": True,
    "gpt_context_fix": True,
    "healing_concurrent_limit": 3,
    "healing_memory_limit": 50 * 1024 * 1024,
    "healing_context_truncation": True,
    "healing_detailed_telemetry": True,
    "healing_performance_metrics": True,
    "healing_error_reporting": True,
}

_FAMILY_FLAGS = {
    "gemini": "gemini_unescape_fix",
    "claude": "claude_formatting_fix",
    "gpt": "gpt_context_fix",
}


class HealingFlags:
    """In-memory flag store with overrides and optional remote sync."""

    def __init__(
        self,
        initial: Optional[Dict[str, Any]] = None,
        remote_provider: Optional[RemoteFlagProvider] = None,
    ):
        self._flags: Dict[str, Any] = dict(DEFAULT_HEALING_FLAGS)
        self._overrides: Dict[str, Any] = {}
        self._remote_provider = remote_provider
        self._sync_task: Optional[asyncio.Task] = None
        if initial:
            self.set_flags(initial)

    # ------------------------------------------------------------------
    # Lookup / mutation
    # ------------------------------------------------------------------

    def get_treatment_variable(self, key: str, default: Any = None) -> Any:
        if key in self._overrides:
            return self._overrides[key]
        if key in self._flags:
            return self._flags[key]
        return default

    def set_flag(self, key: str, value: Any) -> None:
        self._flags[key] = value

    def set_flags(self, flags: Dict[str, Any]) -> None:
        for key, value in flags.items():
            self._flags[key] = value

    def set_override(self, key: str, value: Any) -> None:
        self._overrides[key] = value

    def clear_override(self, key: str) -> None:
        self._overrides.pop(key, None)

    def clear_all_overrides(self) -> None:
        self._overrides.clear()

    @contextlib.contextmanager
    def override(self, **values: Any) -> Iterator["HealingFlags"]:
        """Temporarily override flags, restoring previous overrides on exit."""
        previous = dict(self._overrides)
        self._overrides.update(values)
        try:
            yield self
        finally:
            self._overrides = previous

    def all_flags(self) -> Dict[str, Any]:
        merged = dict(self._flags)
        merged.update(self._overrides)
        return merged

    def merge_remote_flags(self, remote: Dict[str, Any]) -> None:
        """Accept remote values for known keys only."""
        for key, value in remote.items():
            if key in DEFAULT_HEALING_FLAGS:
                self._flags[key] = value
            else:
                logger.debug(f"Ignoring unknown remote flag '{key}'")

    # ------------------------------------------------------------------
    # Typed accessors
    # ------------------------------------------------------------------

    def is_string_replace_healing_enabled(self) -> bool:
        return bool(self.get_treatment_variable("string_replace_healing", True))

    def is_patch_healing_enabled(self) -> bool:
        return bool(self.get_treatment_variable("patch_apply_healing", True))

    def string_replace_max_attempts(self) -> int:
        return int(self.get_treatment_variable("string_replace_healing_max_attempts", 3))

    def string_replace_timeout(self) -> float:
        return float(self.get_treatment_variable("string_replace_healing_timeout", 10.0))

    def patch_healing_max_attempts(self) -> int:
        return int(self.get_treatment_variable("patch_healing_max_attempts", 2))

    def patch_healing_timeout(self) -> float:
        return float(self.get_treatment_variable("patch_healing_timeout", 15.0))

    def concurrent_limit(self) -> int:
        return max(1, int(self.get_treatment_variable("healing_concurrent_limit", 3)))

    def memory_limit(self) -> int:
        return int(self.get_treatment_variable("healing_memory_limit", 50 * 1024 * 1024))

    def is_context_truncation_enabled(self) -> bool:
        return bool(self.get_treatment_variable("healing_context_truncation", True))

    def is_detailed_telemetry_enabled(self) -> bool:
        return bool(self.get_treatment_variable("healing_detailed_telemetry", True))

    def is_performance_metrics_enabled(self) -> bool:
        return bool(self.get_treatment_variable("healing_performance_metrics", True))

    def is_error_reporting_enabled(self) -> bool:
        return bool(self.get_treatment_variable("healing_error_reporting", True))

    def is_model_fix_enabled(self, family: Optional[str]) -> bool:
        """Whether escape normalization applies to a model family.

        Unknown or missing families are enabled.
        """
        key = _FAMILY_FLAGS.get((family or "").lower())
        if key is None:
            return True
        return bool(self.get_treatment_variable(key, True))

    # ------------------------------------------------------------------
    # Remote sync
    # ------------------------------------------------------------------

    async def sync_once(self) -> bool:
        if self._remote_provider is None:
            return False
        try:
            remote = await self._remote_provider()
        except Exception as exc:
            logger.warning(f"Failed to sync remote healing flags: {exc}")
            return False
        self.merge_remote_flags(remote or {})
        return True

    async def _sync_loop(self, first_delay: float, interval: float) -> None:
        await asyncio.sleep(first_delay)
        while True:
            await self.sync_once()
            await asyncio.sleep(interval)

    def start_periodic_sync(
        self, first_delay: float = FIRST_SYNC_DELAY, interval: float = SYNC_INTERVAL
    ) -> Optional[asyncio.Task]:
        """Start the background pull. Must be called from a running event loop."""
        if self._remote_provider is None:
            return None
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.get_running_loop().create_task(
                self._sync_loop(first_delay, interval)
            )
        return self._sync_task

    async def stop_periodic_sync(self) -> None:
        if self._sync_task is None:
            return
        self._sync_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sync_task
        self._sync_task = None

    # ------------------------------------------------------------------
    # Presets
    # ------------------------------------------------------------------

    @classmethod
    def development(cls) -> "HealingFlags":
        return cls({
            "string_replace_healing_timeout": 30.0,
            "patch_healing_timeout": 30.0,
            "healing_detailed_telemetry": True,
        })

    @classmethod
    def production(cls) -> "HealingFlags":
        return cls({
            "healing_detailed_telemetry": False,
            "healing_concurrent_limit": 2,
        })

    @classmethod
    def testing(cls) -> "HealingFlags":
        return cls({
            "string_replace_healing_timeout": 5.0,
            "patch_healing_timeout": 5.0,
            "healing_concurrent_limit": 1,
            "healing_detailed_telemetry": False,
            "healing_performance_metrics": False,
        })

    @classmethod
    def disabled(cls) -> "HealingFlags":
        return cls({
            "string_replace_healing": False,
            "patch_apply_healing": False,
            "gemini_unescape_fix": False,
            "claude_formatting_fix": False,
            "gpt_context_fix": False,
        })

    @classmethod
    def from_env(cls, prefix: str = "HEALING_FLAG_") -> "HealingFlags":
        """Build flags from ``HEALING_FLAG_<KEY>`` environment variables."""
        values: Dict[str, Any] = {}
        for key, default in DEFAULT_HEALING_FLAGS.items():
            raw = os.environ.get(prefix + key.upper())
            if raw is None:
                continue
            try:
                if isinstance(default, bool):
                    values[key] = raw.strip().lower() in {"1", "true", "yes", "on"}
                else:
                    values[key] = type(default)(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {prefix}{key.upper()}: {raw!r}")
        return cls(values)


PRESETS = {
    "development": HealingFlags.development,
    "production": HealingFlags.production,
    "testing": HealingFlags.testing,
    "disabled": HealingFlags.disabled,
}
